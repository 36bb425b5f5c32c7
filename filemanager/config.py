from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_ROLE_ACTIONS: dict[str, list[str]] = {
    'admin': ['*'],
    'editor': ['upload', 'download', 'delete', 'rename', 'new_folder', 'copy', 'move', 'view', 'view_pdf', 'extract', 'zip'],
    'viewer': ['view', 'view_pdf', 'download'],
}


def _split_csv(value: str) -> frozenset[str]:
    return frozenset(part.strip() for part in value.split(',') if part.strip())


@dataclass(frozen=True)
class FileManagerConfig:
    """Per-request view of the file manager settings."""

    root: Path
    exclude_items: frozenset[str] = frozenset()
    show_hidden: bool = True
    max_upload_size: int = 50 * 1024 * 1024
    allowed_extensions: frozenset[str] = frozenset({'*'})
    role_actions: Mapping[str, frozenset[str]] = field(default_factory=lambda: MappingProxyType({'admin': frozenset({'*'})}))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8')

    app_name: str = 'File Manager'
    app_host: str = '0.0.0.0'
    app_port: int = 8080
    database_url: str = 'sqlite:////var/lib/filemanager/filemanager.db'
    jwt_secret: str = 'change-me'
    jwt_algorithm: str = 'HS256'
    jwt_expire_minutes: int = 120
    bootstrap_admin_password: str = 'admin12345'
    max_login_attempts: int = Field(default=3, ge=1, le=100)
    login_cooldown_sec: int = Field(default=300, ge=1)
    log_level: str = 'info'
    cors_origins: str = ''

    fm_root: str = '/srv/files'
    fm_exclude_items: str = '.git,.gitignore,.htaccess,vendor,node_modules'
    fm_show_hidden: bool = True
    fm_max_upload_size: int = Field(default=50 * 1024 * 1024, ge=1)
    fm_allowed_extensions: str = '*'
    fm_default_role: str = 'admin'
    fm_role_actions: dict[str, list[str]] = Field(default_factory=lambda: dict(_DEFAULT_ROLE_ACTIONS))

    def file_manager(self) -> FileManagerConfig:
        return FileManagerConfig(
            root=Path(self.fm_root).resolve(strict=False),
            exclude_items=_split_csv(self.fm_exclude_items),
            show_hidden=self.fm_show_hidden,
            max_upload_size=self.fm_max_upload_size,
            allowed_extensions=frozenset(ext.lower().lstrip('.') for ext in _split_csv(self.fm_allowed_extensions)),
            role_actions=MappingProxyType({role: frozenset(actions) for role, actions in self.fm_role_actions.items()}),
        )


settings = Settings()
