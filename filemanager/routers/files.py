from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import FileResponse
from starlette.background import BackgroundTask

from ..config import FileManagerConfig
from ..deps import Workspace, get_current_user, get_fm_config, get_workspace, permissions_for, require_action
from ..models import User
from ..schemas import ChmodRequest, ItemsRequest, PasteRequest
from ..services.file_helper import sanitize_header_filename
from ..services.path_guard import normalize_path

log = logging.getLogger(__name__)

router = APIRouter(prefix='/api/files', tags=['files'])

MAX_PREVIEW_BYTES = 2 * 1024 * 1024


def _zip_response(archive: Path, download_name: str) -> FileResponse:
    return FileResponse(
        archive,
        media_type='application/zip',
        filename=sanitize_header_filename(download_name),
        background=BackgroundTask(os.unlink, archive),
    )


@router.get('/list')
def list_files(
    p: str = Query(default=''),
    ws: Workspace = Depends(get_workspace),
    current_user: User = Depends(get_current_user),
):
    path = normalize_path(p)
    if ws.guard.resolve_dir(path) is None:
        raise HTTPException(status_code=404, detail='Directory not found')

    listing = ws.catalog.list(path)
    return {
        'success': True,
        'path': path,
        'breadcrumbs': ws.catalog.breadcrumbs(path),
        'statistics': ws.catalog.statistics(path),
        'permissions': permissions_for(current_user, ws.config).allowed_permissions(),
        **listing.as_dict(),
    }


@router.get('/search')
def search(
    q: str = Query(default=''),
    p: str = Query(default=''),
    ws: Workspace = Depends(get_workspace),
    _=Depends(get_current_user),
):
    return ws.catalog.search(q.strip(), normalize_path(p)).as_dict()


@router.get('/folder-tree')
def folder_tree(p: str = Query(default=''), ws: Workspace = Depends(get_workspace), _=Depends(get_current_user)):
    return {'success': True, 'folders': ws.catalog.folder_tree(p)}


@router.get('/download')
def download(
    p: str = Query(default=''),
    file: str = Query(...),
    ws: Workspace = Depends(get_workspace),
    _=Depends(require_action('download')),
):
    target = ws.guard.resolve_item(p, file)
    if target is None:
        raise HTTPException(status_code=404, detail='File not found')

    if target.is_dir():
        archive = ws.archive.build_download_archive(p, [file])
        if archive is None:
            raise HTTPException(status_code=404, detail='File not found')
        return _zip_response(archive, f'{file}.zip')

    if not target.is_file():
        raise HTTPException(status_code=404, detail='File not found')
    return FileResponse(target, filename=sanitize_header_filename(target.name))


@router.post('/download-multiple')
def download_multiple(
    payload: ItemsRequest,
    ws: Workspace = Depends(get_workspace),
    _=Depends(require_action('download-multiple')),
):
    if not payload.items:
        raise HTTPException(status_code=400, detail='No items specified')

    if len(payload.items) == 1:
        return download(p=payload.path, file=payload.items[0], ws=ws, _=_)

    archive = ws.archive.build_download_archive(payload.path, payload.items)
    if archive is None:
        return {'success': False, 'message': 'Failed to create zip file'}
    return _zip_response(archive, f"files_{datetime.now().strftime('%Y-%m-%d_%H%M%S')}.zip")


@router.post('/delete-multiple')
def delete_multiple(
    payload: ItemsRequest,
    ws: Workspace = Depends(get_workspace),
    _=Depends(require_action('delete-multiple')),
):
    if not payload.items:
        raise HTTPException(status_code=400, detail='No items specified')
    return ws.ops.delete_multiple(payload.items, payload.path).as_dict()


@router.post('/paste')
def paste(
    payload: PasteRequest,
    ws: Workspace = Depends(get_workspace),
    current_user: User = Depends(get_current_user),
    config: FileManagerConfig = Depends(get_fm_config),
):
    if not payload.items:
        raise HTTPException(status_code=400, detail='No items to paste')

    perms = permissions_for(current_user, config)
    needed = 'move' if payload.operation == 'cut' else 'copy'
    if not perms.can(needed):
        raise HTTPException(status_code=403, detail='You do not have permission to perform this action.')

    if payload.operation == 'cut':
        result = ws.ops.move_multiple(payload.items, payload.sourcePath, payload.destPath)
    else:
        result = ws.ops.copy_multiple(payload.items, payload.sourcePath, payload.destPath)
    return result.as_dict()


@router.post('/chmod')
def chmod(payload: ChmodRequest, ws: Workspace = Depends(get_workspace), _=Depends(require_action('chmod'))):
    return ws.ops.change_permissions(payload.p, payload.name, payload.mode).as_dict()


@router.get('/view')
def view(
    p: str = Query(default=''),
    file: str = Query(...),
    ws: Workspace = Depends(get_workspace),
    _=Depends(require_action('view')),
):
    info = ws.ops.file_info(p, file)
    if info is None:
        raise HTTPException(status_code=404, detail='File not found')

    content = None
    if info['is_text'] and info['size'] <= MAX_PREVIEW_BYTES:
        content = ws.ops.read_file(p, file)
    info.pop('full_path')
    return {'success': True, 'file': info, 'content': content}


@router.get('/view-pdf')
def view_pdf(
    p: str = Query(default=''),
    file: str = Query(...),
    ws: Workspace = Depends(get_workspace),
    _=Depends(require_action('view-pdf')),
):
    info = ws.ops.file_info(p, file)
    if info is None:
        raise HTTPException(status_code=404, detail='File not found')
    if info['mime_type'] != 'application/pdf':
        raise HTTPException(status_code=400, detail='Not a PDF file')

    safe_name = sanitize_header_filename(info['name'])
    return FileResponse(
        info['full_path'],
        media_type='application/pdf',
        headers={
            'Content-Disposition': f'inline; filename="{safe_name}"',
            'Cache-Control': 'private, max-age=0, must-revalidate',
        },
    )


@router.post('/upload')
def upload(
    p: str = Query(default=''),
    files: list[UploadFile] = File(...),
    ws: Workspace = Depends(get_workspace),
    _=Depends(require_action('upload')),
):
    result = ws.ops.upload(p, [(f.filename or '', f.file) for f in files])
    for error in result.errors:
        log.info('Upload rejected: %s', error)
    return result.as_dict()
