"""Role based access to file manager actions.

Roles come from configuration and map to permission names; ``*`` grants all
of them. Request actions (``delete-multiple``, ``paste``...) are mapped to the
permission they need through ``ACTION_PERMISSIONS``. Actions missing from
that map only require an authenticated user.
"""

from __future__ import annotations

from typing import Mapping

ALL_PERMISSIONS = (
    'upload', 'download', 'delete', 'rename', 'new_folder',
    'copy', 'move', 'view', 'view_pdf', 'extract', 'zip', 'permissions',
)

ACTION_PERMISSIONS = {
    'upload': 'upload',
    'download': 'download',
    'download-multiple': 'download',
    'delete': 'delete',
    'delete-multiple': 'delete',
    'rename': 'rename',
    'new': 'new_folder',
    'copy': 'copy',
    'move': 'move',
    'paste': 'move',
    'select-destination': 'move',
    'execute-copy-move': 'move',
    'chmod': 'permissions',
    'view': 'view',
    'view-pdf': 'view_pdf',
    'save': 'rename',
    'zip': 'zip',
    'extract': 'extract',
}


class PermissionManager:
    def __init__(self, role_actions: Mapping[str, frozenset[str] | set[str] | list[str]], role: str):
        self.role = role
        self._allowed = frozenset(role_actions.get(role, ()))

    def can(self, permission: str) -> bool:
        return '*' in self._allowed or permission in self._allowed

    def can_action(self, action: str) -> bool:
        permission = ACTION_PERMISSIONS.get(action)
        return permission is None or self.can(permission)

    def allowed_permissions(self) -> list[str]:
        if '*' in self._allowed:
            return list(ALL_PERMISSIONS)
        return [p for p in ALL_PERMISSIONS if p in self._allowed]
