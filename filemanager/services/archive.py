from __future__ import annotations

import logging
import os
import shutil
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .path_guard import PathGuard, is_path_within, is_valid_entry_name, normalize_path
from .results import OperationResult

log = logging.getLogger(__name__)

DIR_MODE = 0o755


@dataclass(frozen=True)
class PlannedEntry:
    info: zipfile.ZipInfo
    destination: Path
    is_dir: bool


class ExtractionRejected(Exception):
    pass


class ArchiveService:
    def __init__(self, guard: PathGuard):
        self.guard = guard

    # -- creation ---------------------------------------------------------

    def create_archive(self, names: Iterable[str], rel: str, archive_name: str) -> str | None:
        source_dir = self.guard.resolve_dir(rel)
        if source_dir is None:
            return None

        archive_name = (archive_name or '').strip() or 'archive'
        if not archive_name.endswith('.zip'):
            archive_name += '.zip'
        if not is_valid_entry_name(archive_name):
            log.warning('Rejected archive name %r', archive_name)
            return None

        base = archive_name[:-len('.zip')]
        archive_path = source_dir / archive_name
        counter = 1
        while os.path.lexists(archive_path):
            archive_path = source_dir / f'{base}_{counter}.zip'
            counter += 1

        if not self.guard.contains(archive_path.parent):
            return None
        try:
            with zipfile.ZipFile(archive_path, 'x', compression=zipfile.ZIP_DEFLATED) as zf:
                for name in names:
                    self._add_item(zf, source_dir, name)
        except (OSError, zipfile.LargeZipFile) as exc:
            log.error('Creating %s failed: %s', archive_path, exc)
            archive_path.unlink(missing_ok=True)
            return None

        log.info('Created archive %s', archive_path)
        return archive_path.name

    def build_download_archive(self, rel: str, names: Iterable[str]) -> Path | None:
        """Zip the selected items into a temporary file; the caller removes it."""
        source_dir = self.guard.resolve_dir(rel)
        if source_dir is None:
            return None

        fd, tmp_name = tempfile.mkstemp(prefix='fm_zip_', suffix='.zip')
        os.close(fd)
        tmp_path = Path(tmp_name)
        added = 0
        try:
            with zipfile.ZipFile(tmp_path, 'w', compression=zipfile.ZIP_DEFLATED) as zf:
                for name in names:
                    if self._add_item(zf, source_dir, name):
                        added += 1
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise

        if added == 0:
            tmp_path.unlink(missing_ok=True)
            return None
        return tmp_path

    def _add_item(self, zf: zipfile.ZipFile, source_dir: Path, name: str) -> bool:
        if not is_valid_entry_name(name):
            return False
        item = source_dir / name
        if not self.guard.contains(item):
            return False
        if item.is_file():
            zf.write(item, name)
            return True
        if item.is_dir():
            self._add_directory(zf, item, name)
            return True
        return False

    def _add_directory(self, zf: zipfile.ZipFile, path: Path, arcname: str) -> None:
        zf.write(path, arcname)
        with os.scandir(path) as entries:
            children = sorted(entries, key=lambda e: e.name)
        for entry in children:
            child = Path(entry.path)
            child_arcname = f'{arcname}/{entry.name}'
            if not self.guard.contains(child):
                log.warning('Skipping %s: outside root', child)
                continue
            if entry.is_dir(follow_symlinks=False):
                self._add_directory(zf, child, child_arcname)
            elif child.is_file():
                zf.write(child, child_arcname)

    # -- extraction -------------------------------------------------------

    def extract_archive(self, rel: str, archive_name: str, target_folder: str | None = None) -> OperationResult:
        archive = self.guard.resolve_item(rel, archive_name)
        if archive is None or not archive.is_file():
            log.warning('Extract: invalid archive path or outside root: %r in %r', archive_name, rel)
            return OperationResult.fail(f'Failed to extract: {archive_name}')

        target = archive.parent
        clean_target = normalize_path(target_folder or '')
        if clean_target:
            target = target / clean_target
            if not is_path_within(target, self.guard.root):
                log.warning('Extract: target folder outside root: %r', target_folder)
                return OperationResult.fail('Invalid target folder')
            if os.path.lexists(target) and not target.is_dir():
                return OperationResult.fail(f'Target folder is not a directory: {clean_target}')

        try:
            with zipfile.ZipFile(archive) as zf:
                plan = self._plan(zf, target)
                created = self._extract(zf, target, plan)
        except ExtractionRejected as exc:
            log.warning('Extract %s rejected: %s', archive, exc)
            return OperationResult.fail(str(exc))
        except zipfile.BadZipFile:
            return OperationResult.fail(f'Not a valid zip archive: {archive_name}')

        log.info('Extracted %s into %s (%d entries)', archive, target, created)
        message = f'Extracted: {archive_name}'
        if clean_target:
            message += f' to {clean_target}'
        return OperationResult.ok(message)

    def _plan(self, zf: zipfile.ZipFile, target: Path) -> list[PlannedEntry]:
        """Validate every entry before anything is written."""
        plan: list[PlannedEntry] = []
        planned_files: set[Path] = set()
        planned_dirs: set[Path] = set()
        for info in zf.infolist():
            name = info.filename
            if '..' in name or '\0' in name:
                raise ExtractionRejected(f'Malicious entry detected: {name}')

            cleaned = normalize_path(name)
            if not cleaned:
                continue
            destination = target / cleaned
            if not is_path_within(destination, self.guard.root):
                raise ExtractionRejected('Path traversal out of root detected')

            is_dir = name.endswith('/') or name.endswith('\\')
            if not is_dir and destination.is_dir():
                raise ExtractionRejected(
                    f"Collision detected: Cannot extract file '{cleaned}' because a directory "
                    'with the same name already exists.'
                )
            if is_dir and os.path.lexists(destination) and not destination.is_dir():
                raise ExtractionRejected(
                    f"Collision detected: Cannot extract folder '{cleaned}' because a file "
                    'with the same name already exists.'
                )
            for parent in destination.parents:
                if parent == target or parent == self.guard.root:
                    break
                if os.path.lexists(parent) and not parent.is_dir():
                    raise ExtractionRejected(
                        f"Collision detected: '{self.guard.relative(parent)}' is a file, not a folder."
                    )
            self._check_against_plan(cleaned, destination, is_dir, target, planned_files, planned_dirs)
            plan.append(PlannedEntry(info, destination, is_dir))
        return plan

    @staticmethod
    def _check_against_plan(
        cleaned: str,
        destination: Path,
        is_dir: bool,
        target: Path,
        planned_files: set[Path],
        planned_dirs: set[Path],
    ) -> None:
        """Reject entries that would need the same path as both a file and a folder."""
        parents = []
        for parent in destination.parents:
            if parent == target:
                break
            parents.append(parent)

        clash = any(parent in planned_files for parent in parents)
        clash = clash or destination in (planned_files if is_dir else planned_dirs)
        if clash:
            raise ExtractionRejected(
                f"Collision detected: '{cleaned}' is used as both a file and a folder in the archive."
            )

        planned_dirs.update(parents)
        if is_dir:
            planned_dirs.add(destination)
        else:
            planned_files.add(destination)

    def _extract(self, zf: zipfile.ZipFile, target: Path, plan: list[PlannedEntry]) -> int:
        created: list[Path] = []
        try:
            self._mkdirs(target, created)
            for entry in plan:
                if entry.is_dir:
                    self._mkdirs(entry.destination, created)
                    continue
                self._mkdirs(entry.destination.parent, created)
                existed = os.path.lexists(entry.destination)
                with zf.open(entry.info) as src, open(entry.destination, 'wb') as dst:
                    if not existed:
                        created.append(entry.destination)
                    shutil.copyfileobj(src, dst)
        except (OSError, RuntimeError, zipfile.BadZipFile) as exc:
            log.error('Extraction into %s failed, rolling back %d path(s): %s', target, len(created), exc)
            self._rollback(created)
            raise ExtractionRejected(f'Extraction failed: {exc}') from exc
        return len(plan)

    def _mkdirs(self, path: Path, created: list[Path]) -> None:
        missing = []
        current = path
        while not os.path.lexists(current):
            missing.append(current)
            current = current.parent
        for directory in reversed(missing):
            directory.mkdir(mode=DIR_MODE)
            created.append(directory)

    @staticmethod
    def _rollback(created: list[Path]) -> None:
        for path in reversed(created):
            try:
                if path.is_dir() and not path.is_symlink():
                    path.rmdir()
                else:
                    path.unlink()
            except OSError as exc:
                log.warning('Rollback could not remove %s: %s', path, exc)
