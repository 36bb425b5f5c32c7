from __future__ import annotations

import errno
import logging
import os
import re
import shutil
from pathlib import Path
from typing import BinaryIO, Iterable

from ..config import FileManagerConfig
from .catalog import item_info
from .file_helper import (
    format_size,
    guess_mime_type,
    is_allowed_extension,
    is_image_file,
    is_text_file,
    sanitize_upload_name,
)
from .path_guard import PathGuard, is_valid_entry_name, normalize_path
from .results import BatchResult, OperationResult, UploadResult

log = logging.getLogger(__name__)

MAX_TREE_DEPTH = 64
DIR_MODE = 0o755
UPLOAD_MODE = 0o644
_CHUNK_SIZE = 1024 * 1024
_MODE_PATTERN = re.compile(r'0?[0-7]{3}')


class TreeTooDeep(OSError):
    pass


def _join(rel: str, name: str) -> str:
    rel = normalize_path(rel)
    return f'{rel}/{name}' if rel else name


def _is_same_or_inside(child: Path, parent: Path) -> bool:
    return child == parent or parent in child.parents


class FileOps:
    """Mutating operations confined to the guard's root.

    Expected failures (bad names, missing items, escapes, collisions) come back
    as results. Unexpected ``OSError`` is logged and reported as a failed result.
    """

    def __init__(self, guard: PathGuard, config: FileManagerConfig):
        self.guard = guard
        self.config = config

    # -- single items -----------------------------------------------------

    def create_directory(self, rel: str, name: str) -> OperationResult:
        target = self.guard.resolve_new(rel, name)
        if target is None:
            return OperationResult.fail('Invalid folder name or path')
        if os.path.lexists(target):
            return OperationResult.fail('File or folder already exists')
        if not self.guard.contains(target.parent):
            return OperationResult.fail('Invalid path')
        try:
            target.mkdir(mode=DIR_MODE, parents=True, exist_ok=False)
        except OSError as exc:
            log.error('mkdir %s failed: %s', target, exc)
            return OperationResult.fail(f'Error: {exc.strerror or exc}')
        log.info('Created directory %s', target)
        return OperationResult.ok(f'Created directory: {name}')

    def delete(self, rel: str, name: str) -> OperationResult:
        target = self.guard.resolve_item(rel, name, follow=False)
        if target is None:
            return OperationResult.fail('Item not found')
        try:
            self._remove(target)
        except OSError as exc:
            log.error('delete %s failed: %s', target, exc)
            return OperationResult.fail(f'Error: {exc.strerror or exc}')
        log.info('Deleted %s', target)
        return OperationResult.ok('Deleted')

    def rename(self, rel: str, old_name: str, new_name: str) -> OperationResult:
        if not is_valid_entry_name(new_name):
            return OperationResult.fail('Invalid name')
        source = self.guard.resolve_item(rel, old_name, follow=False)
        if source is None:
            return OperationResult.fail('Item not found')
        target = source.parent / new_name
        if os.path.lexists(target):
            return OperationResult.fail('A file or folder with that name already exists')
        if not self.guard.contains(source.parent):
            return OperationResult.fail('Invalid path')
        try:
            os.rename(source, target)
        except OSError as exc:
            log.error('rename %s -> %s failed: %s', source, target, exc)
            return OperationResult.fail(f'Error: {exc.strerror or exc}')
        return OperationResult.ok(f'Renamed to: {new_name}')

    def copy_item(self, source_rel: str, dest_rel: str) -> OperationResult:
        return self._transfer(source_rel, dest_rel, move=False)

    def move_item(self, source_rel: str, dest_rel: str) -> OperationResult:
        return self._transfer(source_rel, dest_rel, move=True)

    def change_permissions(self, rel: str, name: str, mode: str) -> OperationResult:
        if not _MODE_PATTERN.fullmatch(mode or ''):
            return OperationResult.fail('Invalid permission mode')
        target = self.guard.resolve_item(rel, name)
        if target is None:
            return OperationResult.fail('Item not found')
        try:
            os.chmod(target, int(mode, 8))
        except OSError as exc:
            log.error('chmod %s %s failed: %s', mode, target, exc)
            return OperationResult.fail(f'Error: {exc.strerror or exc}')
        return OperationResult.ok('Permissions updated')

    # -- batches ----------------------------------------------------------

    def delete_multiple(self, names: Iterable[str], rel: str) -> BatchResult:
        batch = BatchResult('delete', 'Deleted')
        for name in names:
            batch.add(name, self.delete(rel, name))
        return batch

    def copy_multiple(self, names: Iterable[str], source_rel: str, dest_rel: str) -> BatchResult:
        batch = BatchResult('copy', 'Copied')
        for name in names:
            batch.add(name, self._batch_transfer(name, source_rel, dest_rel, move=False))
        return batch

    def move_multiple(self, names: Iterable[str], source_rel: str, dest_rel: str) -> BatchResult:
        batch = BatchResult('move', 'Moved')
        for name in names:
            batch.add(name, self._batch_transfer(name, source_rel, dest_rel, move=True))
        return batch

    def _batch_transfer(self, name: str, source_rel: str, dest_rel: str, move: bool) -> OperationResult:
        if not is_valid_entry_name(name):
            return OperationResult.fail('Invalid path')
        return self._transfer(_join(source_rel, name), dest_rel, move=move)

    # -- copy / move ------------------------------------------------------

    def _transfer(self, source_rel: str, dest_rel: str, move: bool) -> OperationResult:
        verb = 'move' if move else 'copy'
        source = self.guard.resolve_relative(source_rel, follow=not move)
        dest_dir = self.guard.resolve_dir(dest_rel)
        if source is None and not os.path.lexists(self.guard.full_path(source_rel)):
            return OperationResult.fail('Source does not exist')
        if source is None:
            return OperationResult.fail('Invalid path')
        if dest_dir is None:
            if self.guard.full_path(dest_rel).is_dir():
                return OperationResult.fail('Invalid path')
            return OperationResult.fail('Destination directory does not exist')

        # a moved link travels as itself; a copied one is followed into its target
        if source.is_dir() and not (move and source.is_symlink()):
            if _is_same_or_inside(dest_dir, source.resolve()):
                return OperationResult.fail(f'Cannot {verb} a folder into itself')

        destination = dest_dir / source.name
        if os.path.lexists(destination):
            return OperationResult.fail('File or folder already exists at destination')

        try:
            if move:
                self._move(source, destination)
            else:
                self._copy(source, destination)
        except OSError as exc:
            log.error('%s %s -> %s failed: %s', verb, source, destination, exc)
            return OperationResult.fail(f'Error: {exc.strerror or exc}')

        log.info('%s %s -> %s', 'Moved' if move else 'Copied', source, destination)
        return OperationResult.ok('Moved successfully' if move else 'Copied successfully')

    def _move(self, source: Path, destination: Path) -> None:
        if not (self.guard.contains_entry(source) and self.guard.contains(destination.parent)):
            raise PermissionError(errno.EACCES, 'Path outside root')
        try:
            os.rename(source, destination)
            return
        except OSError as exc:
            if exc.errno != errno.EXDEV:
                raise
        # different filesystem under the same root (e.g. a mount point)
        self._copy(source, destination)
        self._remove(source)

    def _copy(self, source: Path, destination: Path) -> None:
        if not self.guard.contains(source):
            raise PermissionError(errno.EACCES, 'Source outside root')
        if not self.guard.contains(destination.parent):
            raise PermissionError(errno.EACCES, 'Path outside root')
        try:
            if source.is_dir():
                self._copy_tree(source, destination, set(), 0)
            else:
                shutil.copy2(source, destination)
        except OSError:
            self._discard_partial(destination)
            raise

    def _discard_partial(self, destination: Path) -> None:
        """Remove what a failed copy wrote; callers guarantee it did not exist before."""
        if not os.path.lexists(destination):
            return
        try:
            self._remove(destination)
        except OSError as exc:
            log.warning('Could not remove partial copy %s: %s', destination, exc)

    def _copy_entry(self, source: Path, destination: Path) -> None:
        if not self.guard.contains(destination.parent):
            raise PermissionError(errno.EACCES, 'Path outside root')
        if source.is_symlink():
            if not self.guard.contains(source):
                log.warning('Skipping symlink %s: target outside root', source)
                return
            os.symlink(os.readlink(source), destination)
            return
        shutil.copy2(source, destination)

    def _copy_tree(self, source: Path, destination: Path, visited: set[Path], depth: int) -> None:
        if depth > MAX_TREE_DEPTH:
            raise TreeTooDeep(errno.ELOOP, f'Directory tree deeper than {MAX_TREE_DEPTH} levels')
        real = source.resolve()
        if real in visited:
            return
        visited.add(real)

        if not self.guard.contains(destination.parent):
            raise PermissionError(errno.EACCES, 'Path outside root')
        destination.mkdir(mode=DIR_MODE)
        with os.scandir(source) as entries:
            for entry in entries:
                src = Path(entry.path)
                dst = destination / entry.name
                if entry.is_dir(follow_symlinks=False):
                    self._copy_tree(src, dst, visited, depth + 1)
                else:
                    self._copy_entry(src, dst)
        shutil.copystat(source, destination)

    # -- delete -----------------------------------------------------------

    def _remove(self, target: Path, depth: int = 0) -> None:
        if not self.guard.contains_entry(target):
            raise PermissionError(errno.EACCES, 'Path outside root')
        if target.is_symlink() or not target.is_dir():
            target.unlink()
            return
        if depth > MAX_TREE_DEPTH:
            raise TreeTooDeep(errno.ELOOP, f'Directory tree deeper than {MAX_TREE_DEPTH} levels')
        with os.scandir(target) as entries:
            children = [Path(entry.path) for entry in entries]
        for child in children:
            self._remove(child, depth + 1)
        target.rmdir()

    # -- upload / edit ----------------------------------------------------

    def upload(self, rel: str, uploads: Iterable[tuple[str, BinaryIO]]) -> UploadResult:
        result = UploadResult()
        target_dir = self.guard.resolve_dir(rel)
        if target_dir is None:
            result.errors.append('Invalid upload path')
            return result

        for filename, stream in uploads:
            size = _stream_size(stream)
            if size <= 0 or size > self.config.max_upload_size:
                result.errors.append(f'{filename}: File too large' if size > 0 else f'{filename}: Empty file')
                continue
            if not is_allowed_extension(filename, self.config.allowed_extensions):
                result.errors.append(f'{filename}: File type not allowed')
                continue
            safe_name = sanitize_upload_name(filename)
            if not is_valid_entry_name(safe_name):
                result.errors.append(f'{filename}: Invalid file name')
                continue

            target = _unique_path(target_dir, safe_name)
            if not self.guard.contains(target.parent):
                result.errors.append(f'{filename}: Invalid upload path')
                continue
            try:
                with target.open('xb') as handle:
                    shutil.copyfileobj(stream, handle, _CHUNK_SIZE)
                os.chmod(target, UPLOAD_MODE)
            except OSError as exc:
                log.error('upload %s failed: %s', target, exc)
                target.unlink(missing_ok=True)
                result.errors.append(f'{filename}: Failed to save file')
                continue
            result.uploaded.append(target.name)

        if result.uploaded:
            log.info('Uploaded %d file(s) into %s', len(result.uploaded), target_dir)
        return result

    def read_file(self, rel: str, name: str) -> str | None:
        target = self.guard.resolve_item(rel, name)
        if target is None or not target.is_file():
            return None
        return target.read_text(encoding='utf-8', errors='replace')

    def write_file(self, rel: str, name: str, content: str) -> OperationResult:
        target = self.guard.resolve_item(rel, name)
        if target is None or not target.is_file():
            return OperationResult.fail('File not found')
        try:
            target.write_text(content, encoding='utf-8')
        except OSError as exc:
            log.error('write %s failed: %s', target, exc)
            return OperationResult.fail(f'Error: {exc.strerror or exc}')
        return OperationResult.ok(f'File saved: {name}')

    def file_info(self, rel: str, name: str) -> dict | None:
        target = self.guard.resolve_item(rel, name)
        if target is None or not target.is_file():
            return None
        info = item_info(target, name)
        return {
            'name': info.name,
            'path': normalize_path(rel),
            'full_path': str(target),
            'size': info.size,
            'size_formatted': format_size(info.size),
            'mime_type': guess_mime_type(target),
            'modified': info.modified,
            'permissions': info.permissions,
            'is_image': is_image_file(target),
            'is_text': is_text_file(target),
        }


def _stream_size(stream: BinaryIO) -> int:
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(0)
    return size


def _unique_path(directory: Path, name: str) -> Path:
    target = directory / name
    if not os.path.lexists(target):
        return target
    base, ext = os.path.splitext(name)
    counter = 1
    while os.path.lexists(target):
        target = directory / f'{base}_{counter}{ext}'
        counter += 1
    return target
