from __future__ import annotations

import logging
import os
import pwd
import stat
from dataclasses import dataclass, field
from pathlib import Path

from ..config import FileManagerConfig
from .file_helper import extension_of, format_size, icon_for
from .path_guard import PathGuard, normalize_path

log = logging.getLogger(__name__)

SEARCH_MAX_DEPTH = 5


@dataclass(frozen=True)
class ItemInfo:
    name: str
    kind: str
    size: int
    modified: int
    owner: str
    permissions: str
    extension: str = ''
    path: str | None = None

    @property
    def is_dir(self) -> bool:
        return self.kind == 'directory'

    @property
    def icon(self) -> str:
        return icon_for(self.name, self.is_dir)

    @property
    def size_formatted(self) -> str:
        return format_size(self.size)

    def as_dict(self) -> dict:
        data = {
            'name': self.name,
            'type': self.kind,
            'size': self.size,
            'size_formatted': self.size_formatted,
            'modified': self.modified,
            'owner': self.owner,
            'permissions': self.permissions,
            'icon': self.icon,
        }
        if not self.is_dir:
            data['extension'] = self.extension
        if self.path is not None:
            data['path'] = self.path
        return data


@dataclass
class Listing:
    directories: list[ItemInfo] = field(default_factory=list)
    files: list[ItemInfo] = field(default_factory=list)

    def sort(self) -> Listing:
        self.directories.sort(key=lambda item: item.name.lower())
        self.files.sort(key=lambda item: item.name.lower())
        return self

    def as_dict(self) -> dict:
        return {
            'directories': [item.as_dict() for item in self.directories],
            'files': [item.as_dict() for item in self.files],
        }


def _owner_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except (KeyError, OverflowError):
        return 'unknown'


def item_info(path: Path, name: str | None = None, rel_dir: str | None = None) -> ItemInfo:
    st = path.stat()
    is_dir = stat.S_ISDIR(st.st_mode)
    name = name or path.name
    return ItemInfo(
        name=name,
        kind='directory' if is_dir else 'file',
        size=0 if is_dir else st.st_size,
        modified=int(st.st_mtime),
        owner=_owner_name(st.st_uid),
        permissions=format(stat.S_IMODE(st.st_mode), '04o'),
        extension='' if is_dir else extension_of(name),
        path=rel_dir,
    )


class DirectoryCatalog:
    def __init__(self, guard: PathGuard, config: FileManagerConfig):
        self.guard = guard
        self.config = config

    def _visible(self, name: str) -> bool:
        if name in ('.', '..') or name in self.config.exclude_items:
            return False
        if not self.config.show_hidden and name.startswith('.'):
            return False
        return True

    def list(self, rel: str = '') -> Listing:
        listing = Listing()
        target = self.guard.resolve_dir(rel)
        if target is None:
            return listing

        try:
            entries = list(os.scandir(target))
        except OSError as exc:
            log.warning('Cannot list %s: %s', target, exc)
            return listing

        for entry in entries:
            if not self._visible(entry.name):
                continue
            try:
                info = item_info(Path(entry.path), entry.name)
            except OSError:
                # dangling symlink or entry removed while listing
                continue
            if info.is_dir:
                listing.directories.append(info)
            else:
                listing.files.append(info)
        return listing.sort()

    def search(self, query: str, rel: str = '') -> Listing:
        result = Listing()
        if not query:
            return result

        start = self.guard.resolve_dir(rel)
        if start is None:
            return result

        self._search(start, query.lower(), normalize_path(rel), result, 0)
        return result.sort()

    def _search(self, directory: Path, query: str, rel: str, result: Listing, depth: int) -> None:
        if depth > SEARCH_MAX_DEPTH:
            return
        try:
            entries = list(os.scandir(directory))
        except OSError:
            return

        for entry in entries:
            if not self._visible(entry.name):
                continue
            if query in entry.name.lower():
                try:
                    info = item_info(Path(entry.path), entry.name, rel)
                except OSError:
                    info = None
                if info is not None:
                    (result.directories if info.is_dir else result.files).append(info)
            if entry.is_dir(follow_symlinks=False):
                child_rel = f'{rel}/{entry.name}' if rel else entry.name
                self._search(Path(entry.path), query, child_rel, result, depth + 1)

    def breadcrumbs(self, rel: str = '') -> list[dict]:
        crumbs = [{'name': 'Home', 'path': ''}]
        current = ''
        clean = normalize_path(rel)
        if not clean:
            return crumbs
        for part in clean.split('/'):
            current = f'{current}/{part}' if current else part
            crumbs.append({'name': part, 'path': current})
        return crumbs

    def statistics(self, rel: str = '') -> dict:
        listing = self.list(rel)
        total_size = sum(item.size for item in listing.files)
        return {
            'totalFiles': len(listing.files),
            'totalDirectories': len(listing.directories),
            'totalSize': total_size,
            'totalSizeFormatted': format_size(total_size),
        }

    def folder_tree(self, rel: str = '') -> list[dict]:
        clean = normalize_path(rel)
        return [
            {'name': item.name, 'path': f'{clean}/{item.name}' if clean else item.name}
            for item in self.list(clean).directories
        ]
