"""Root confinement for every user supplied path.

Two layers are applied. ``normalize_path`` works on strings only and removes
traversal sequences; ``contained_in_root`` resolves against the filesystem and
is the authoritative check. Callers re-check containment right before each
mutating call rather than once per request.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

log = logging.getLogger(__name__)

_MULTI_SLASH = re.compile(r'/+')


def normalize_path(raw: str) -> str:
    path = (raw or '').strip().strip('\\/')
    path = path.replace('\0', '')
    path = path.replace('\\', '/')

    # ....// collapses to ../ after one pass, so loop until nothing changes
    while True:
        stripped = path.replace('../', '').replace('..', '')
        if stripped == path:
            break
        path = stripped

    path = _MULTI_SLASH.sub('/', path).strip('/')
    if path == '.':
        return ''
    return path


def is_valid_entry_name(name: str) -> bool:
    if not name or name in ('.', '..'):
        return False
    if '/' in name or '\\' in name or '\0' in name:
        return False
    return True


def _is_same_or_child(candidate: Path, root: Path) -> bool:
    return candidate == root or root in candidate.parents


def contained_in_root(candidate: str | Path, root: str | Path) -> bool:
    """True when *candidate* resolves to *root* or somewhere below it.

    Both sides must exist; a path that does not resolve is never contained.
    """
    try:
        real_root = Path(root).resolve(strict=True)
        real_candidate = Path(candidate).resolve(strict=True)
    except (OSError, RuntimeError, ValueError):
        return False
    return _is_same_or_child(real_candidate, real_root)


def is_path_within(path: str | Path, root: str | Path) -> bool:
    """Containment check for a path that may not exist yet.

    The path is normalized lexically, then its nearest existing ancestor is
    resolved so that a symlinked directory on the way cannot lead outside.
    """
    try:
        real_root = Path(root).resolve(strict=True)
    except (OSError, RuntimeError):
        return False

    predicted = Path(os.path.normpath(str(path)))
    if not _is_same_or_child(predicted, real_root):
        return False

    existing = predicted
    while not os.path.lexists(existing):
        if existing == existing.parent:
            return False
        existing = existing.parent
    return contained_in_root(existing, real_root)


class PathGuard:
    def __init__(self, root: str | Path):
        self.root = Path(root).resolve(strict=False)

    def contains(self, candidate: str | Path) -> bool:
        return contained_in_root(candidate, self.root)

    def contains_entry(self, path: Path) -> bool:
        """Containment for an entry that may itself be a symlink.

        A link is judged by the directory holding it, so links pointing outside
        can still be removed but never followed.
        """
        if path.is_symlink():
            return self.contains(path.parent)
        return self.contains(path)

    def full_path(self, rel: str) -> Path:
        clean = normalize_path(rel)
        return self.root / clean if clean else self.root

    def resolve_dir(self, rel: str) -> Path | None:
        target = self.full_path(rel)
        if not target.is_dir() or not self.contains(target):
            if rel:
                log.debug('Rejected directory %r', rel)
            return None
        return target.resolve()

    def resolve_item(self, rel: str, name: str, follow: bool = True) -> Path | None:
        """Existing entry *name* inside directory *rel*.

        With ``follow`` the entry must resolve inside root, which is what reading
        or copying needs. Without it a symlink is accepted as long as it lives
        inside root, for operations acting on the link itself.
        """
        if not is_valid_entry_name(name):
            log.warning('Rejected entry name %r', name)
            return None
        parent = self.resolve_dir(rel)
        if parent is None:
            return None
        target = parent / name
        if not os.path.lexists(target):
            return None
        if not (self.contains(target) if follow else self.contains_entry(target)):
            log.warning('Rejected %r: resolves outside root', target)
            return None
        return target

    def resolve_new(self, rel: str, name: str) -> Path | None:
        if not is_valid_entry_name(name):
            log.warning('Rejected entry name %r', name)
            return None
        parent = self.resolve_dir(rel)
        if parent is None:
            return None
        return parent / name

    def resolve_relative(self, rel: str, follow: bool = True) -> Path | None:
        """Existing, contained path for a full relative path (file or directory)."""
        clean = normalize_path(rel)
        if not clean:
            return self.root if self.root.is_dir() else None
        parent_rel, _, name = clean.rpartition('/')
        return self.resolve_item(parent_rel, name, follow=follow)

    def relative(self, path: Path) -> str:
        rel = Path(os.path.normpath(str(path))).relative_to(self.root)
        return '' if str(rel) == '.' else rel.as_posix()
