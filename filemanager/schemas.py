from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

_ROLE_PATTERN = r'^[a-z][a-z0-9_-]{1,31}$'


class LoginRequest(BaseModel):
    username: str
    password: str
    remember_me: bool = False


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = 'bearer'


class UserCreate(BaseModel):
    username: str = Field(min_length=2, max_length=32)
    password: str = Field(min_length=8, max_length=72)
    role: str = Field(default='viewer', pattern=_ROLE_PATTERN)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    role: str
    is_active: bool
    created_at: datetime


class UserUpdateRequest(BaseModel):
    role: str = Field(pattern=_ROLE_PATTERN)
    new_password: Optional[str] = Field(default=None, min_length=8, max_length=72)


class ItemsRequest(BaseModel):
    items: list[str]
    path: str = ''


class PasteRequest(BaseModel):
    items: list[str]
    sourcePath: str = ''
    destPath: str = ''
    operation: str = Field(default='copy', pattern='^(copy|cut)$')


class ChmodRequest(BaseModel):
    p: str = ''
    name: str
    mode: str


class ApiResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Any] = None
