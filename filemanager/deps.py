from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from .config import FileManagerConfig, settings
from .db import get_db
from .models import User
from .security import csrf_tokens_match, decode_token
from .services.archive import ArchiveService
from .services.catalog import DirectoryCatalog
from .services.file_ops import FileOps
from .services.path_guard import PathGuard
from .services.permissions import PermissionManager
from .services.session_store import SessionStore


@dataclass(frozen=True)
class Workspace:
    """Core services bound to one root for the duration of a request."""

    config: FileManagerConfig
    guard: PathGuard
    catalog: DirectoryCatalog
    ops: FileOps
    archive: ArchiveService

    @classmethod
    def for_config(cls, config: FileManagerConfig) -> Workspace:
        guard = PathGuard(config.root)
        return cls(
            config=config,
            guard=guard,
            catalog=DirectoryCatalog(guard, config),
            ops=FileOps(guard, config),
            archive=ArchiveService(guard),
        )


def get_fm_config() -> FileManagerConfig:
    return settings.file_manager()


def get_workspace(config: FileManagerConfig = Depends(get_fm_config)) -> Workspace:
    return Workspace.for_config(config)


def _extract_token(request: Request) -> str:
    auth = request.headers.get('Authorization', '')
    if auth.startswith('Bearer '):
        return auth.split(' ', 1)[1]
    token = request.cookies.get('access_token')
    if token:
        return token
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Missing token')


def _user_from_token(token: str, db: Session) -> Optional[User]:
    try:
        payload = decode_token(token)
    except ValueError:
        return None
    username = payload.get('sub')
    if not username:
        return None
    return db.query(User).filter(User.username == username, User.is_active.is_(True)).first()


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    token = _extract_token(request)
    user = _user_from_token(token, db)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Invalid token')
    return user


def get_page_user(request: Request, db: Session = Depends(get_db)) -> Optional[User]:
    """Like ``get_current_user`` but returns None so pages can redirect to login."""
    token = request.cookies.get('access_token')
    if not token:
        return None
    return _user_from_token(token, db)


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != 'admin':
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Admin role required')
    return current_user


def permissions_for(user: User, config: FileManagerConfig) -> PermissionManager:
    return PermissionManager(config.role_actions, user.role)


def require_action(action: str):
    """Dependency gate for JSON routes: 403 when the user's role lacks *action*."""

    def _check(
        current_user: User = Depends(get_current_user),
        config: FileManagerConfig = Depends(get_fm_config),
    ) -> User:
        if not permissions_for(current_user, config).can_action(action):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='You do not have permission to perform this action.',
            )
        return current_user

    return _check


def session_store_for(user: User, db: Session) -> SessionStore:
    return SessionStore(db, user.username)


def enforce_csrf(request: Request):
    if request.method in {'GET', 'HEAD', 'OPTIONS'}:
        return

    if request.url.path.startswith('/api/auth/login'):
        return

    if not csrf_tokens_match(request.cookies.get('csrf_token'), request.headers.get('X-CSRF-Token')):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='CSRF validation failed')


def form_csrf_valid(request: Request, submitted: str | None) -> bool:
    return csrf_tokens_match(request.cookies.get('csrf_token'), submitted)
