from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..deps import require_admin
from ..models import User
from ..schemas import ApiResponse, UserCreate, UserOut, UserUpdateRequest
from ..security import hash_password

log = logging.getLogger(__name__)

router = APIRouter(prefix='/api/users', tags=['users'])


def _check_role(role: str) -> None:
    if role not in settings.fm_role_actions:
        raise HTTPException(status_code=400, detail=f'Unknown role: {role}')


@router.get('', response_model=list[UserOut])
def list_users(_: User = Depends(require_admin), db: Session = Depends(get_db)):
    return db.query(User).order_by(User.username).all()


@router.post('', response_model=UserOut)
def create_user(payload: UserCreate, _: User = Depends(require_admin), db: Session = Depends(get_db)):
    _check_role(payload.role)
    if db.query(User).filter(User.username == payload.username).first():
        raise HTTPException(status_code=400, detail='User exists')
    user = User(username=payload.username, password_hash=hash_password(payload.password), role=payload.role)
    db.add(user)
    db.commit()
    db.refresh(user)
    log.info('Created user %s with role %s', user.username, user.role)
    return user


@router.patch('/{username}')
def update_user(
    username: str,
    payload: UserUpdateRequest,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    user = db.query(User).filter(User.username == username).first()
    if not user:
        raise HTTPException(status_code=404, detail='User not found')
    _check_role(payload.role)

    user.role = payload.role
    if payload.new_password:
        user.password_hash = hash_password(payload.new_password)
    db.commit()
    return ApiResponse(success=True, message='User updated')


@router.delete('/{username}')
def delete_user(
    username: str,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    user = db.query(User).filter(User.username == username).first()
    if not user:
        raise HTTPException(status_code=404, detail='User not found')
    if user.username == current_user.username:
        raise HTTPException(status_code=400, detail='Cannot delete currently logged-in admin user')

    db.delete(user)
    db.commit()
    log.info('Deleted user %s', username)
    return ApiResponse(success=True, message='User deleted')
