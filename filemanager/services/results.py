from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class OperationResult:
    success: bool
    message: str

    @classmethod
    def ok(cls, message: str) -> OperationResult:
        return cls(True, message)

    @classmethod
    def fail(cls, message: str) -> OperationResult:
        return cls(False, message)

    def as_dict(self) -> dict:
        return {'success': self.success, 'message': self.message}


@dataclass(frozen=True)
class ItemResult:
    name: str
    success: bool
    message: str


@dataclass
class BatchResult:
    """Accumulates per-item outcomes; one failure never stops the batch."""

    action: str
    done: str
    items: list[ItemResult] = field(default_factory=list)

    def add(self, name: str, result: OperationResult) -> None:
        self.items.append(ItemResult(name, result.success, result.message))

    @property
    def success_count(self) -> int:
        return sum(1 for item in self.items if item.success)

    @property
    def failure_count(self) -> int:
        return len(self.items) - self.success_count

    @property
    def success(self) -> bool:
        return self.success_count > 0

    @property
    def message(self) -> str:
        total = len(self.items)
        if self.failure_count == 0:
            return f'{self.done} {total} item(s) successfully'
        if self.success_count == 0:
            return f'Failed to {self.action} all {total} item(s)'
        return f'{self.done} {self.success_count} of {total} item(s). {self.failure_count} failed.'

    def as_dict(self) -> dict:
        return {
            'success': self.success,
            'message': self.message,
            'successCount': self.success_count,
            'failureCount': self.failure_count,
            'items': [{'name': i.name, 'success': i.success, 'message': i.message} for i in self.items],
        }


@dataclass
class UploadResult:
    uploaded: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.uploaded)

    @property
    def message(self) -> str:
        if self.uploaded:
            return f'Uploaded {len(self.uploaded)} file(s)'
        return 'No files uploaded'

    def as_dict(self) -> dict:
        return {
            'success': self.success,
            'message': self.message,
            'uploaded': len(self.uploaded),
            'files': list(self.uploaded),
            'errors': list(self.errors),
        }
