from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
import pytest
from fastapi import HTTPException

from filemanager.db import Base
from filemanager.models import User
from filemanager.routers import users
from filemanager.schemas import UserCreate, UserUpdateRequest
from filemanager.security import hash_password, verify_password


def _db_session():
    engine = create_engine('sqlite:///:memory:', connect_args={'check_same_thread': False})
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    return SessionLocal()


def test_update_user_changes_role_and_password():
    db = _db_session()
    try:
        user = User(username='alice', password_hash=hash_password('oldpass123'), role='viewer')
        admin = User(username='admin', password_hash=hash_password('adminpass123'), role='admin')
        old_hash = user.password_hash
        db.add_all([user, admin])
        db.commit()

        users.update_user(
            'alice',
            UserUpdateRequest(role='editor', new_password='newpass123'),
            _=admin,
            db=db,
        )

        updated = db.query(User).filter(User.username == 'alice').first()
        assert updated is not None
        assert updated.role == 'editor'
        assert updated.password_hash != old_hash
        assert verify_password('newpass123', updated.password_hash)
    finally:
        db.close()


def test_update_user_rejects_unknown_role():
    db = _db_session()
    try:
        admin = User(username='admin', password_hash=hash_password('adminpass123'), role='admin')
        db.add(admin)
        db.commit()

        with pytest.raises(HTTPException) as exc:
            users.update_user('admin', UserUpdateRequest(role='superuser'), _=admin, db=db)

        assert exc.value.status_code == 400
    finally:
        db.close()


def test_create_and_list_users():
    db = _db_session()
    try:
        admin = User(username='admin', password_hash=hash_password('adminpass123'), role='admin')
        db.add(admin)
        db.commit()

        created = users.create_user(UserCreate(username='bob', password='bobpass123', role='viewer'), _=admin, db=db)

        assert created.role == 'viewer'
        assert [u.username for u in users.list_users(_=admin, db=db)] == ['admin', 'bob']

        with pytest.raises(HTTPException) as exc:
            users.create_user(UserCreate(username='bob', password='another123'), _=admin, db=db)
        assert exc.value.status_code == 400
    finally:
        db.close()


def test_delete_user_removes_target_user():
    db = _db_session()
    try:
        victim = User(username='victim', password_hash=hash_password('victimpass123'), role='viewer')
        admin = User(username='admin', password_hash=hash_password('adminpass123'), role='admin')
        db.add_all([victim, admin])
        db.commit()

        users.delete_user('victim', current_user=admin, db=db)

        missing = db.query(User).filter(User.username == 'victim').first()
        assert missing is None
    finally:
        db.close()


def test_delete_user_rejects_current_admin():
    db = _db_session()
    try:
        admin = User(username='admin', password_hash=hash_password('adminpass123'), role='admin')
        db.add(admin)
        db.commit()

        with pytest.raises(HTTPException) as exc:
            users.delete_user('admin', current_user=admin, db=db)

        assert exc.value.status_code == 400
    finally:
        db.close()
