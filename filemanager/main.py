from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session

from .config import settings
from .db import Base, SessionLocal, engine
from .deps import enforce_csrf, get_page_user
from .logging_setup import configure_logging
from .models import User
from .routers import auth, files, ui, users
from .security import decode_token, hash_password

log = logging.getLogger(__name__)

_SECURITY_HEADERS = {
    'Content-Security-Policy': "default-src 'self'; frame-ancestors 'none'; form-action 'self'",
    'X-Frame-Options': 'DENY',
    'X-Content-Type-Options': 'nosniff',
    'Referrer-Policy': 'strict-origin-when-cross-origin',
}

_RATE_LIMIT_CAPACITY = 20.0
_RATE_LIMIT_REFILL_PER_SECOND = _RATE_LIMIT_CAPACITY / 60.0
_rate_limit_bucket: dict[str, dict[str, float]] = {}
_rate_limit_lock = asyncio.Lock()

_ERROR_PAGE = """<!doctype html>
<html lang="en"><head><meta charset="utf-8"><title>Error</title></head>
<body><h1>Unexpected error</h1><p>Something went wrong. Please try again.</p>
<p><a href="/files">Back to files</a></p></body></html>"""


def _sqlite_file(url: str) -> Path | None:
    parsed = make_url(url)
    if parsed.get_backend_name() != 'sqlite' or not parsed.database or parsed.database == ':memory:':
        return None
    return Path(parsed.database)


def _bootstrap_admin(db: Session) -> None:
    if db.query(User).first():
        return
    admin = User(username='admin', password_hash=hash_password(settings.bootstrap_admin_password), role='admin')
    db.add(admin)
    db.commit()
    log.warning('Created initial admin user; change its password')


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if settings.jwt_secret == 'change-me':
        raise RuntimeError('Refusing to start with insecure default JWT secret. Set JWT_SECRET in .env')

    configure_logging(settings.log_level)
    Path(settings.fm_root).mkdir(parents=True, exist_ok=True)
    db_file = _sqlite_file(settings.database_url)
    if db_file is not None:
        db_file.parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=engine)

    db: Session = SessionLocal()
    try:
        _bootstrap_admin(db)
    finally:
        db.close()

    log.info('File manager serving %s', Path(settings.fm_root).resolve())
    yield


app = FastAPI(title=settings.app_name, lifespan=lifespan)


def _parse_cors_origins(value: str) -> list[str]:
    return [origin.strip() for origin in value.split(',') if origin.strip()]


cors_origins = _parse_cors_origins(settings.cors_origins)
if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS'],
        allow_headers=['Authorization', 'Content-Type', 'X-CSRF-Token'],
    )


def _apply_security_headers(response):
    for key, value in _SECURITY_HEADERS.items():
        response.headers[key] = value
    return response


def _client_ip(request: Request) -> str:
    xff = request.headers.get('x-forwarded-for', '')
    if xff:
        return xff.split(',')[0].strip()
    return request.client.host if request.client else 'unknown'


def _request_is_authenticated(request: Request) -> bool:
    auth_header = request.headers.get('Authorization', '')
    token = ''
    if auth_header.startswith('Bearer '):
        token = auth_header.split(' ', 1)[1].strip()
    elif request.cookies.get('access_token'):
        token = request.cookies.get('access_token', '').strip()

    if not token:
        return False

    try:
        payload = decode_token(token)
    except ValueError:
        return False

    return bool(payload.get('sub'))


async def _allow_unauthenticated_request(ip: str) -> bool:
    now = time.monotonic()
    async with _rate_limit_lock:
        bucket = _rate_limit_bucket.get(ip)
        if bucket is None:
            _rate_limit_bucket[ip] = {'tokens': _RATE_LIMIT_CAPACITY - 1.0, 'updated_at': now}
            return True

        elapsed = max(0.0, now - bucket['updated_at'])
        bucket['tokens'] = min(_RATE_LIMIT_CAPACITY, bucket['tokens'] + elapsed * _RATE_LIMIT_REFILL_PER_SECOND)
        bucket['updated_at'] = now

        if bucket['tokens'] < 1.0:
            return False

        bucket['tokens'] -= 1.0
        return True


@app.middleware('http')
async def security_middleware(request: Request, call_next):
    path = request.url.path

    if request.method in {'POST', 'PUT', 'PATCH', 'DELETE'} and path.startswith('/api/') and path != '/api/auth/login':
        try:
            enforce_csrf(request)
        except HTTPException as exc:
            return _apply_security_headers(JSONResponse({'detail': exc.detail}, status_code=exc.status_code))

    rate_limited = path.startswith('/api/') or path == '/login'
    if rate_limited and not _request_is_authenticated(request):
        allowed = await _allow_unauthenticated_request(_client_ip(request))
        if not allowed:
            return _apply_security_headers(JSONResponse({'detail': 'Rate limit exceeded'}, status_code=429))

    response = await call_next(request)
    return _apply_security_headers(response)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log.exception('Unhandled error on %s %s', request.method, request.url.path, exc_info=exc)
    if request.url.path.startswith('/api/'):
        response = JSONResponse({'detail': 'Internal server error. Please try again.'}, status_code=500)
    else:
        response = HTMLResponse(_ERROR_PAGE, status_code=500)
    return _apply_security_headers(response)


@app.get('/', response_class=HTMLResponse)
def root(request: Request, user: Optional[User] = Depends(get_page_user)):
    if user is not None:
        return RedirectResponse('/files')
    return ui.templates.TemplateResponse(request, 'login.html', {})


@app.get('/healthz')
def healthz():
    return {'ok': True}


app.include_router(auth.router)
app.include_router(auth.ui_router)
app.include_router(files.router)
app.include_router(ui.router)
app.include_router(users.router)
