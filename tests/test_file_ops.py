from __future__ import annotations

import errno
import io
import os
import shutil
import stat
from pathlib import Path

import pytest

from filemanager.config import FileManagerConfig
from filemanager.services.catalog import DirectoryCatalog
from filemanager.services.file_ops import FileOps
from filemanager.services.path_guard import PathGuard


def _setup(tmp_path: Path, **overrides) -> tuple[FileOps, Path]:
    root = tmp_path / 'root'
    root.mkdir()
    config = FileManagerConfig(root=root.resolve(), **overrides)
    guard = PathGuard(config.root)
    return FileOps(guard, config), guard.root


def _snapshot(path: Path) -> list[str]:
    return sorted(str(p.relative_to(path)) for p in path.rglob('*'))


@pytest.fixture
def outside(tmp_path):
    path = tmp_path / 'outside'
    path.mkdir()
    (path / 'secret.txt').write_text('secret')
    return path


def test_create_directory_then_listing_contains_it(tmp_path):
    ops, root = _setup(tmp_path)

    result = ops.create_directory('', 'projects')
    listing = DirectoryCatalog(ops.guard, ops.config).list('')

    assert result.success
    assert result.message == 'Created directory: projects'
    assert [(d.name, d.kind) for d in listing.directories] == [('projects', 'directory')]
    assert stat.S_IMODE((root / 'projects').stat().st_mode) & 0o700 == 0o700


@pytest.mark.parametrize('name', ['../evil', 'a/b', '..', '', 'bad\0name'])
def test_create_directory_rejects_invalid_names(tmp_path, name):
    ops, root = _setup(tmp_path)

    result = ops.create_directory('', name)

    assert not result.success
    assert result.message == 'Invalid folder name or path'
    assert _snapshot(root) == []
    assert not (tmp_path / 'evil').exists()


def test_create_directory_existing_and_missing_parent(tmp_path):
    ops, root = _setup(tmp_path)
    (root / 'docs').mkdir()

    assert ops.create_directory('', 'docs').message == 'File or folder already exists'
    assert ops.create_directory('missing', 'x').message == 'Invalid folder name or path'


def test_delete_multiple_reports_partial_failure_without_stopping(tmp_path):
    ops, root = _setup(tmp_path)
    (root / 'a').write_text('a')
    (root / 'b').mkdir()
    (root / 'b' / 'nested.txt').write_text('n')
    (root / 'keep.txt').write_text('k')

    result = ops.delete_multiple(['a', 'missing', 'b'], '')

    assert result.success is True
    assert result.success_count == 2
    assert result.failure_count == 1
    assert result.message == 'Deleted 2 of 3 item(s). 1 failed.'
    assert not (root / 'a').exists()
    assert not (root / 'b').exists()
    assert (root / 'keep.txt').read_text() == 'k'
    data = result.as_dict()
    assert data['successCount'] == 2
    assert data['items'][1] == {'name': 'missing', 'success': False, 'message': 'Item not found'}


def test_delete_multiple_all_failed(tmp_path):
    ops, _ = _setup(tmp_path)

    result = ops.delete_multiple(['x', 'y'], '')

    assert result.success is False
    assert result.message == 'Failed to delete all 2 item(s)'


def test_delete_symlink_removes_link_not_target(tmp_path, outside):
    ops, root = _setup(tmp_path)
    os.symlink(outside, root / 'link')

    result = ops.delete('', 'link')

    assert result.success
    assert not os.path.lexists(root / 'link')
    assert (outside / 'secret.txt').read_text() == 'secret'


def test_delete_directory_with_inner_link_keeps_link_target(tmp_path, outside):
    ops, root = _setup(tmp_path)
    (root / 'd').mkdir()
    os.symlink(outside, root / 'd' / 'out')

    assert ops.delete('', 'd').success
    assert not (root / 'd').exists()
    assert (outside / 'secret.txt').exists()


def test_rename(tmp_path):
    ops, root = _setup(tmp_path)
    (root / 'old.txt').write_text('x')
    (root / 'taken.txt').write_text('y')

    assert ops.rename('', 'old.txt', '../escape.txt').message == 'Invalid name'
    assert ops.rename('', 'nope.txt', 'new.txt').message == 'Item not found'
    assert ops.rename('', 'old.txt', 'taken.txt').message == 'A file or folder with that name already exists'

    result = ops.rename('', 'old.txt', 'new.txt')

    assert result.success
    assert result.message == 'Renamed to: new.txt'
    assert (root / 'new.txt').read_text() == 'x'
    assert not (root / 'old.txt').exists()


@pytest.mark.parametrize('dest', ['d', 'd/sub', 'd/sub/deeper'])
def test_copy_folder_into_itself_fails_without_changes(tmp_path, dest):
    ops, root = _setup(tmp_path)
    (root / 'd' / 'sub' / 'deeper').mkdir(parents=True)
    (root / 'd' / 'file.txt').write_text('x')
    before = _snapshot(root)

    result = ops.copy_item('d', dest)

    assert not result.success
    assert result.message == 'Cannot copy a folder into itself'
    assert _snapshot(root) == before


def test_copy_link_into_its_own_target_fails_without_changes(tmp_path):
    ops, root = _setup(tmp_path)
    (root / 'a' / 'sub').mkdir(parents=True)
    os.symlink(root / 'a', root / 'a' / 'link')
    before = _snapshot(root)

    result = ops.copy_item('a/link', 'a/sub')

    assert result.message == 'Cannot copy a folder into itself'
    assert _snapshot(root) == before

    # moving the link only relocates the link itself
    assert ops.move_item('a/link', 'a/sub').success
    assert (root / 'a' / 'sub' / 'link').is_symlink()


def test_failed_copy_removes_partial_destination(tmp_path, monkeypatch):
    ops, root = _setup(tmp_path)
    (root / 'd').mkdir()
    for name in ('one.txt', 'two.txt', 'three.txt'):
        (root / 'd' / name).write_text(name)
    (root / 'dest').mkdir()
    real_copy2 = shutil.copy2
    calls = {'count': 0}

    def _flaky_copy2(src, dst, *args, **kwargs):
        calls['count'] += 1
        if calls['count'] == 2:
            raise OSError(errno.ENOSPC, 'No space left on device')
        return real_copy2(src, dst, *args, **kwargs)

    monkeypatch.setattr(shutil, 'copy2', _flaky_copy2)

    result = ops.copy_item('d', 'dest')

    assert not result.success
    assert result.message == 'Error: No space left on device'
    assert not os.path.lexists(root / 'dest' / 'd')
    assert sorted(p.name for p in (root / 'd').iterdir()) == ['one.txt', 'three.txt', 'two.txt']


def test_move_folder_into_itself_fails(tmp_path):
    ops, root = _setup(tmp_path)
    (root / 'd' / 'sub').mkdir(parents=True)
    before = _snapshot(root)

    result = ops.move_item('d', 'd/sub')

    assert result.message == 'Cannot move a folder into itself'
    assert _snapshot(root) == before


def test_copy_and_move_validation_messages(tmp_path, outside):
    ops, root = _setup(tmp_path)
    (root / 'a.txt').write_text('a')
    (root / 'dest').mkdir()
    (root / 'dest' / 'a.txt').write_text('existing')
    os.symlink(outside / 'secret.txt', root / 'secret-link')

    assert ops.copy_item('missing.txt', 'dest').message == 'Source does not exist'
    assert ops.copy_item('a.txt', 'nowhere').message == 'Destination directory does not exist'
    assert ops.copy_item('a.txt', 'dest').message == 'File or folder already exists at destination'
    assert ops.copy_item('secret-link', 'dest').message == 'Invalid path'
    assert (root / 'dest' / 'a.txt').read_text() == 'existing'


def test_copy_file_and_directory(tmp_path):
    ops, root = _setup(tmp_path)
    (root / 'a.txt').write_text('a')
    (root / 'd' / 'inner').mkdir(parents=True)
    (root / 'd' / 'inner' / 'f.txt').write_text('f')
    (root / 'dest').mkdir()

    assert ops.copy_item('a.txt', 'dest').message == 'Copied successfully'
    assert ops.copy_item('d', 'dest').success

    assert (root / 'dest' / 'a.txt').read_text() == 'a'
    assert (root / 'dest' / 'd' / 'inner' / 'f.txt').read_text() == 'f'
    assert (root / 'a.txt').exists()
    assert (root / 'd' / 'inner' / 'f.txt').exists()


def test_copy_tree_recreates_inner_links_and_skips_escaping_ones(tmp_path, outside):
    ops, root = _setup(tmp_path)
    (root / 'd').mkdir()
    (root / 'other').mkdir()
    (root / 'd' / 'inner.txt').write_text('inner')
    os.symlink('inner.txt', root / 'd' / 'in-link')
    os.symlink(root / 'other', root / 'd' / 'dir-link')
    os.symlink(root / 'd', root / 'd' / 'loop')
    os.symlink(outside / 'secret.txt', root / 'd' / 'out-link')
    (root / 'dest').mkdir()

    result = ops.copy_item('d', 'dest')

    copied = root / 'dest' / 'd'
    assert result.success
    assert (copied / 'inner.txt').read_text() == 'inner'
    assert (copied / 'in-link').is_symlink()
    assert (copied / 'dir-link').is_symlink()
    assert (copied / 'loop').is_symlink()
    assert not os.path.lexists(copied / 'out-link')


def test_copy_stops_at_depth_cap(tmp_path):
    ops, root = _setup(tmp_path)
    deep = root.joinpath('d', *(['n'] * 70))
    deep.mkdir(parents=True)
    (root / 'dest').mkdir()

    result = ops.copy_item('d', 'dest')

    assert not result.success
    assert result.message.startswith('Error:')
    assert not os.path.lexists(root / 'dest' / 'd')


def test_move_item(tmp_path):
    ops, root = _setup(tmp_path)
    (root / 'd').mkdir()
    (root / 'd' / 'f.txt').write_text('f')
    (root / 'dest').mkdir()

    result = ops.move_item('d', 'dest')

    assert result.message == 'Moved successfully'
    assert (root / 'dest' / 'd' / 'f.txt').read_text() == 'f'
    assert not (root / 'd').exists()


def test_move_symlink_moves_the_link(tmp_path, outside):
    ops, root = _setup(tmp_path)
    os.symlink(outside, root / 'link')
    (root / 'dest').mkdir()

    result = ops.move_item('link', 'dest')

    assert result.success
    assert (root / 'dest' / 'link').is_symlink()
    assert (outside / 'secret.txt').exists()


def test_copy_and_move_multiple(tmp_path):
    ops, root = _setup(tmp_path)
    (root / 'src').mkdir()
    (root / 'src' / 'a.txt').write_text('a')
    (root / 'src' / 'b.txt').write_text('b')
    (root / 'dest').mkdir()

    copied = ops.copy_multiple(['a.txt', '../b.txt', 'missing'], 'src', 'dest')
    moved = ops.move_multiple(['b.txt'], 'src', 'dest')

    assert copied.success_count == 1
    assert copied.message == 'Copied 1 of 3 item(s). 2 failed.'
    assert copied.items[1].message == 'Invalid path'
    assert moved.message == 'Moved 1 item(s) successfully'
    assert (root / 'dest' / 'a.txt').exists()
    assert (root / 'src' / 'a.txt').exists()
    assert (root / 'dest' / 'b.txt').exists()
    assert not (root / 'src' / 'b.txt').exists()


def test_change_permissions(tmp_path):
    ops, root = _setup(tmp_path)
    (root / 'script.sh').write_text('#!/bin/sh')

    for bad in ('abc', '7777', '89', ''):
        assert ops.change_permissions('', 'script.sh', bad).message == 'Invalid permission mode'

    assert ops.change_permissions('', 'script.sh', '755').success
    assert stat.S_IMODE((root / 'script.sh').stat().st_mode) == 0o755

    assert ops.change_permissions('', 'script.sh', '0640').success
    assert stat.S_IMODE((root / 'script.sh').stat().st_mode) == 0o640

    assert ops.change_permissions('', 'missing', '644').message == 'Item not found'


def test_upload_validates_and_renames_collisions(tmp_path):
    ops, root = _setup(tmp_path, max_upload_size=10, allowed_extensions=frozenset({'txt'}))
    (root / 'notes.txt').write_text('old')

    result = ops.upload('', [
        ('notes.txt', io.BytesIO(b'hello')),
        ('big.txt', io.BytesIO(b'x' * 11)),
        ('empty.txt', io.BytesIO(b'')),
        ('evil.exe', io.BytesIO(b'x')),
        ('../../etc/my file.txt', io.BytesIO(b'y')),
    ])

    assert result.success
    assert result.uploaded == ['notes_1.txt', 'my_file.txt']
    assert result.errors == [
        'big.txt: File too large',
        'empty.txt: Empty file',
        'evil.exe: File type not allowed',
    ]
    assert result.message == 'Uploaded 2 file(s)'
    assert (root / 'notes.txt').read_text() == 'old'
    assert (root / 'notes_1.txt').read_bytes() == b'hello'
    assert stat.S_IMODE((root / 'notes_1.txt').stat().st_mode) == 0o644
    assert not (tmp_path / 'etc').exists()


def test_upload_to_invalid_directory(tmp_path):
    ops, _ = _setup(tmp_path)

    result = ops.upload('missing', [('a.txt', io.BytesIO(b'a'))])

    assert not result.success
    assert result.errors == ['Invalid upload path']
    assert result.as_dict()['uploaded'] == 0


def test_read_write_and_file_info(tmp_path, outside):
    ops, root = _setup(tmp_path)
    (root / 'readme.txt').write_text('hello')
    os.symlink(outside / 'secret.txt', root / 'secret-link')

    assert ops.read_file('', 'readme.txt') == 'hello'
    assert ops.read_file('', 'secret-link') is None
    assert ops.write_file('', 'readme.txt', 'changed').message == 'File saved: readme.txt'
    assert (root / 'readme.txt').read_text() == 'changed'
    assert ops.write_file('', 'new.txt', 'x').message == 'File not found'
    assert ops.write_file('', 'secret-link', 'pwned').message == 'File not found'
    assert (outside / 'secret.txt').read_text() == 'secret'

    info = ops.file_info('', 'readme.txt')
    assert info['name'] == 'readme.txt'
    assert info['size'] == 7
    assert info['mime_type'] == 'text/plain'
    assert info['is_text'] is True
    assert info['is_image'] is False
    assert ops.file_info('', 'missing') is None
