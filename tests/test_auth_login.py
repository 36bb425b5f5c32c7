from __future__ import annotations

import pytest
from fastapi import HTTPException, Response
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from starlette.requests import Request

from filemanager.db import Base
from filemanager.models import User
from filemanager.routers import auth
from filemanager.schemas import LoginRequest
from filemanager.security import decode_token, hash_password


def _request(ip: str = '10.0.0.5') -> Request:
    scope = {
        'type': 'http',
        'http_version': '1.1',
        'method': 'POST',
        'scheme': 'http',
        'path': '/api/auth/login',
        'raw_path': b'/api/auth/login',
        'query_string': b'',
        'headers': [],
        'client': (ip, 12345),
        'server': ('testserver', 80),
    }
    return Request(scope)


@pytest.fixture
def db():
    engine = create_engine('sqlite:///:memory:', connect_args={'check_same_thread': False})
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    session.add(User(username='alice', password_hash=hash_password('correct-horse'), role='editor'))
    session.commit()
    try:
        yield session
    finally:
        session.close()


def _set_cookies(response: Response) -> list[str]:
    return [value.decode() for key, value in response.raw_headers if key == b'set-cookie']


def test_login_sets_token_and_csrf_cookies(db):
    response = Response()

    token = auth.login(LoginRequest(username='alice', password='correct-horse'), _request(), response, db=db)

    assert decode_token(token.access_token)['sub'] == 'alice'
    assert decode_token(token.access_token)['role'] == 'editor'
    cookies = _set_cookies(response)
    assert any(c.startswith('access_token=') and 'HttpOnly' in c for c in cookies)
    assert any(c.startswith('csrf_token=') for c in cookies)


def test_lockout_after_max_failed_attempts(db, monkeypatch):
    monkeypatch.setattr(auth.settings, 'max_login_attempts', 2)
    monkeypatch.setattr(auth.settings, 'login_cooldown_sec', 300)

    for _ in range(2):
        with pytest.raises(HTTPException) as exc:
            auth.authenticate(db, 'alice', 'wrong', '10.0.0.5')
        assert exc.value.status_code == 401

    with pytest.raises(HTTPException) as exc:
        auth.authenticate(db, 'alice', 'correct-horse', '10.0.0.5')
    assert exc.value.status_code == 429

    assert auth.authenticate(db, 'alice', 'correct-horse', '10.0.0.6').username == 'alice'


def test_successful_login_resets_failures(db, monkeypatch):
    monkeypatch.setattr(auth.settings, 'max_login_attempts', 2)

    with pytest.raises(HTTPException):
        auth.authenticate(db, 'alice', 'wrong', '10.0.0.5')
    auth.authenticate(db, 'alice', 'correct-horse', '10.0.0.5')

    with pytest.raises(HTTPException) as exc:
        auth.authenticate(db, 'alice', 'wrong', '10.0.0.5')
    assert exc.value.status_code == 401


def test_login_form_renders_error_and_redirects_on_success(db):
    failed = auth.login_form(_request(), username='alice', password='nope', remember_me=False, db=db)
    assert failed.status_code == 401
    assert 'Invalid username or password' in failed.body.decode()

    ok = auth.login_form(_request(), username='alice', password='correct-horse', remember_me=True, db=db)
    assert ok.status_code == 303
    assert ok.headers['location'] == '/files'
    assert any('Max-Age=2592000' in c for c in _set_cookies(ok))
