from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..models import FlashMessage, PendingTransfer

PENDING_TRANSFER_TTL = timedelta(hours=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class Transfer:
    operation: str
    source: str
    source_path: str
    created_at: datetime

    @property
    def full_source(self) -> str:
        return f'{self.source_path}/{self.source}' if self.source_path else self.source


@dataclass(frozen=True)
class Flash:
    kind: str
    text: str


class SessionStore:
    """Per-user session state: at most one pending transfer and one flash message."""

    def __init__(self, db: Session, username: str, clock: Callable[[], datetime] = _utcnow):
        self.db = db
        self.username = username
        self._clock = clock

    def set_pending_transfer(self, operation: str, source: str, source_path: str) -> Transfer:
        if operation not in ('copy', 'move'):
            raise ValueError(f'Unknown transfer operation: {operation}')
        row = self.db.get(PendingTransfer, self.username)
        if row is None:
            row = PendingTransfer(username=self.username)
            self.db.add(row)
        row.operation = operation
        row.source = source
        row.source_path = source_path
        row.created_at = self._clock()
        self.db.commit()
        return Transfer(operation, source, source_path, row.created_at)

    def get_pending_transfer(self) -> Optional[Transfer]:
        row = self.db.get(PendingTransfer, self.username)
        if row is None:
            return None
        if self._clock() - row.created_at > PENDING_TRANSFER_TTL:
            self.clear_pending_transfer()
            return None
        return Transfer(row.operation, row.source, row.source_path, row.created_at)

    def clear_pending_transfer(self) -> None:
        row = self.db.get(PendingTransfer, self.username)
        if row is not None:
            self.db.delete(row)
            self.db.commit()

    def flash(self, kind: str, text: str) -> None:
        row = self.db.get(FlashMessage, self.username)
        if row is None:
            row = FlashMessage(username=self.username)
            self.db.add(row)
        row.kind = kind
        row.text = text
        self.db.commit()

    def pop_flash(self) -> Optional[Flash]:
        row = self.db.get(FlashMessage, self.username)
        if row is None:
            return None
        message = Flash(row.kind, row.text)
        self.db.delete(row)
        self.db.commit()
        return message
