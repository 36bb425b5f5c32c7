from __future__ import annotations

import mimetypes
import os
import re
from pathlib import Path

_SIZE_UNITS = ('B', 'KB', 'MB', 'GB', 'TB')

_ICONS = {
    'fa-file-image': ('jpg', 'jpeg', 'png', 'gif', 'bmp', 'svg', 'webp', 'heic', 'heif'),
    'fa-file-video': ('mp4', 'avi', 'mov', 'mkv', 'webm'),
    'fa-file-audio': ('mp3', 'wav', 'ogg', 'flac'),
    'fa-file-pdf': ('pdf',),
    'fa-file-word': ('doc', 'docx'),
    'fa-file-excel': ('xls', 'xlsx'),
    'fa-file-powerpoint': ('ppt', 'pptx'),
    'fa-file-zipper': ('zip', 'rar', '7z', 'tar', 'gz'),
    'fa-file-lines': ('txt', 'md', 'log'),
    'fa-file-code': ('php', 'js', 'py', 'java', 'c', 'cpp', 'css', 'html'),
}
_ICON_BY_EXT = {ext: icon for icon, exts in _ICONS.items() for ext in exts}

_TEXT_EXTENSIONS = {'txt', 'md', 'json', 'xml', 'yaml', 'yml', 'ini', 'conf', 'log', 'csv', 'py', 'js', 'css', 'html', 'sh'}
_TEXT_MIME_PREFIXES = ('text/', 'application/json', 'application/xml', 'application/javascript', 'application/x-sh')

_UNSAFE_FILENAME_CHARS = re.compile(r'[^A-Za-z0-9._-]')
_UNSAFE_HEADER_CHARS = re.compile(r'[^\x20-\x7E]')


def format_size(num_bytes: int) -> str:
    size = float(max(num_bytes, 0))
    for unit in _SIZE_UNITS[:-1]:
        if size < 1024:
            return f'{size:.2f} {unit}'
        size /= 1024
    return f'{size:.2f} {_SIZE_UNITS[-1]}'


def extension_of(name: str) -> str:
    return os.path.splitext(name)[1].lstrip('.').lower()


def icon_for(name: str, is_dir: bool = False) -> str:
    if is_dir:
        return 'fa-folder'
    return _ICON_BY_EXT.get(extension_of(name), 'fa-file')


def guess_mime_type(path: str | Path) -> str:
    mime, _ = mimetypes.guess_type(str(path))
    return mime or 'application/octet-stream'


def is_text_file(path: str | Path) -> bool:
    mime = guess_mime_type(path)
    return mime.startswith(_TEXT_MIME_PREFIXES) or extension_of(str(path)) in _TEXT_EXTENSIONS


def is_image_file(path: str | Path) -> bool:
    return guess_mime_type(path).startswith('image/') or extension_of(str(path)) in ('heic', 'heif')


def is_allowed_extension(name: str, allowed: frozenset[str] | set[str]) -> bool:
    if '*' in allowed:
        return True
    return extension_of(name) in {ext.lower() for ext in allowed}


def sanitize_upload_name(filename: str) -> str:
    # browsers on Windows may send the full client path
    name = os.path.basename((filename or '').replace('\\', '/'))
    name = _UNSAFE_FILENAME_CHARS.sub('_', name)
    return name.lstrip('.')


def sanitize_header_filename(filename: str) -> str:
    name = filename.replace('\r', '').replace('\n', '').replace('\0', '')
    name = _UNSAFE_HEADER_CHARS.sub('', name)
    return name.replace('"', '\\"')
