from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Form, HTTPException, Request, Response, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..models import LoginAttempt, User
from ..schemas import LoginRequest, TokenResponse
from ..security import create_access_token, new_csrf_token, verify_password
from .ui import templates

log = logging.getLogger(__name__)

router = APIRouter(prefix='/api/auth', tags=['auth'])
ui_router = APIRouter(tags=['auth'])

REMEMBER_ME_MINUTES = 30 * 24 * 60


def _client_ip(request: Request) -> str:
    xff = request.headers.get('x-forwarded-for')
    if xff:
        return xff.split(',')[0].strip()
    return request.client.host if request.client else 'unknown'


def authenticate(db: Session, username: str, password: str, ip: str) -> User:
    """Check credentials and track failures per username and address.

    Raises 429 while the pair is locked out and 401 on bad credentials.
    """
    now = datetime.now(timezone.utc).replace(tzinfo=None)

    attempt = db.query(LoginAttempt).filter(LoginAttempt.username == username, LoginAttempt.ip_address == ip).first()
    if attempt and attempt.lock_until and attempt.lock_until > now:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail='Too many failed attempts. Please try again later.',
        )

    user = db.query(User).filter(User.username == username, User.is_active.is_(True)).first()
    if not user or not verify_password(password, user.password_hash):
        if not attempt:
            attempt = LoginAttempt(username=username, ip_address=ip, failed_count=0, last_attempt=now)
            db.add(attempt)
        attempt.failed_count += 1
        attempt.last_attempt = now
        if attempt.failed_count >= settings.max_login_attempts:
            attempt.lock_until = now + timedelta(seconds=settings.login_cooldown_sec)
            attempt.failed_count = 0
            log.warning('Locking out %s from %s for %ss', username, ip, settings.login_cooldown_sec)
        db.commit()
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Invalid username or password')

    if attempt:
        attempt.failed_count = 0
        attempt.lock_until = None
        attempt.last_attempt = now
        db.commit()
    return user


def _issue_cookies(response: Response, request: Request, user: User, remember_me: bool) -> str:
    minutes = REMEMBER_ME_MINUTES if remember_me else settings.jwt_expire_minutes
    token = create_access_token(user.username, user.role, expire_minutes=minutes)
    is_https = request.url.scheme == 'https'
    response.set_cookie('access_token', token, httponly=True, secure=is_https, samesite='strict', max_age=minutes * 60)
    response.set_cookie('csrf_token', new_csrf_token(), httponly=False, secure=is_https, samesite='strict', max_age=minutes * 60)
    return token


def _clear_cookies(response: Response) -> None:
    response.delete_cookie('access_token')
    response.delete_cookie('csrf_token')


@router.post('/login', response_model=TokenResponse)
def login(payload: LoginRequest, request: Request, response: Response, db: Session = Depends(get_db)):
    user = authenticate(db, payload.username, payload.password, _client_ip(request))
    token = _issue_cookies(response, request, user, payload.remember_me)
    log.info('User %s logged in', user.username)
    return TokenResponse(access_token=token)


@router.post('/logout')
def logout(response: Response):
    _clear_cookies(response)
    return {'success': True, 'message': 'Logged out'}


@ui_router.post('/login')
def login_form(
    request: Request,
    username: str = Form(default=''),
    password: str = Form(default=''),
    remember_me: bool = Form(default=False),
    db: Session = Depends(get_db),
):
    try:
        user = authenticate(db, username.strip(), password, _client_ip(request))
    except HTTPException as exc:
        return templates.TemplateResponse(request, 'login.html', {'error': exc.detail}, status_code=exc.status_code)

    response = RedirectResponse('/files', status_code=303)
    _issue_cookies(response, request, user, remember_me)
    log.info('User %s logged in', user.username)
    return response


@ui_router.post('/logout')
def logout_form():
    response = RedirectResponse('/', status_code=303)
    _clear_cookies(response)
    return response
