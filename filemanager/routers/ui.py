"""Server rendered pages and the form endpoints behind them.

Every form post answers with a redirect back to ``/files`` and leaves a flash
message in the user's session store. Denied or forged requests are reported
the same way instead of with an error status.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.orm import Session

from ..config import FileManagerConfig
from ..db import get_db
from ..deps import Workspace, form_csrf_valid, get_page_user, get_workspace, permissions_for, session_store_for
from ..models import User
from ..services.path_guard import normalize_path
from ..services.results import OperationResult
from ..services.session_store import SessionStore

log = logging.getLogger(__name__)

router = APIRouter(tags=['ui'])
templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent.parent / 'templates'))

DENIED_MESSAGE = 'You do not have permission to perform this action.'


def files_url(p: str = '', page: str = '/files') -> str:
    clean = normalize_path(p)
    return f'{page}?{urlencode({"p": clean})}' if clean else page


def _redirect(p: str = '', page: str = '/files') -> RedirectResponse:
    return RedirectResponse(files_url(p, page), status_code=303)


def _gate(
    request: Request,
    user: Optional[User],
    db: Session,
    config: FileManagerConfig,
    action: str,
    csrf_token: str,
    p: str,
) -> Optional[RedirectResponse]:
    """Return a redirect when the form post must not run, else None."""
    if user is None:
        return RedirectResponse('/', status_code=303)
    store = session_store_for(user, db)
    if not form_csrf_valid(request, csrf_token):
        log.warning('Rejected %s from %s: bad CSRF token', action, user.username)
        store.flash('error', 'Invalid security token. Please reload the page.')
        return _redirect(p)
    if not permissions_for(user, config).can_action(action):
        store.flash('error', DENIED_MESSAGE)
        return _redirect(p)
    return None


def _finish(store: SessionStore, result: OperationResult, p: str) -> RedirectResponse:
    store.flash('success' if result.success else 'error', result.message)
    return _redirect(p)


@router.get('/files', response_class=HTMLResponse)
def files_page(
    request: Request,
    p: str = Query(default=''),
    q: str = Query(default=''),
    ws: Workspace = Depends(get_workspace),
    user: Optional[User] = Depends(get_page_user),
    db: Session = Depends(get_db),
):
    if user is None:
        return RedirectResponse('/', status_code=303)

    store = session_store_for(user, db)
    path = normalize_path(p)
    if ws.guard.resolve_dir(path) is None:
        store.flash('error', 'Directory not found')
        return _redirect()

    query = q.strip()
    listing = ws.catalog.search(query, path) if query else ws.catalog.list(path)
    context = {
        'user': user,
        'path': path,
        'query': query,
        'listing': listing,
        'breadcrumbs': ws.catalog.breadcrumbs(path),
        'statistics': ws.catalog.statistics(path),
        'permissions': permissions_for(user, ws.config).allowed_permissions(),
        'transfer': store.get_pending_transfer(),
        'flash': store.pop_flash(),
        'csrf_token': request.cookies.get('csrf_token', ''),
    }
    return templates.TemplateResponse(request, 'index.html', context)


@router.post('/files/new')
def new_folder(
    request: Request,
    p: str = Form(default=''),
    name: str = Form(default=''),
    csrf_token: str = Form(default=''),
    ws: Workspace = Depends(get_workspace),
    user: Optional[User] = Depends(get_page_user),
    db: Session = Depends(get_db),
):
    denied = _gate(request, user, db, ws.config, 'new', csrf_token, p)
    if denied is not None:
        return denied
    return _finish(session_store_for(user, db), ws.ops.create_directory(p, name.strip()), p)


@router.post('/files/delete')
def delete_item(
    request: Request,
    p: str = Form(default=''),
    name: str = Form(default=''),
    csrf_token: str = Form(default=''),
    ws: Workspace = Depends(get_workspace),
    user: Optional[User] = Depends(get_page_user),
    db: Session = Depends(get_db),
):
    denied = _gate(request, user, db, ws.config, 'delete', csrf_token, p)
    if denied is not None:
        return denied
    return _finish(session_store_for(user, db), ws.ops.delete(p, name), p)


@router.post('/files/rename')
def rename_item(
    request: Request,
    p: str = Form(default=''),
    old_name: str = Form(default=''),
    new_name: str = Form(default=''),
    csrf_token: str = Form(default=''),
    ws: Workspace = Depends(get_workspace),
    user: Optional[User] = Depends(get_page_user),
    db: Session = Depends(get_db),
):
    denied = _gate(request, user, db, ws.config, 'rename', csrf_token, p)
    if denied is not None:
        return denied
    return _finish(session_store_for(user, db), ws.ops.rename(p, old_name, new_name.strip()), p)


@router.post('/files/zip')
def zip_items(
    request: Request,
    p: str = Form(default=''),
    items: list[str] = Form(default=[]),
    archive_name: str = Form(default='archive'),
    csrf_token: str = Form(default=''),
    ws: Workspace = Depends(get_workspace),
    user: Optional[User] = Depends(get_page_user),
    db: Session = Depends(get_db),
):
    denied = _gate(request, user, db, ws.config, 'zip', csrf_token, p)
    if denied is not None:
        return denied
    store = session_store_for(user, db)
    if not items:
        store.flash('error', 'No items selected')
        return _redirect(p)

    created = ws.archive.create_archive(items, p, archive_name.strip() or 'archive')
    if created is None:
        return _finish(store, OperationResult.fail('Failed to create archive'), p)
    return _finish(store, OperationResult.ok(f'Created archive: {created}'), p)


@router.post('/files/extract')
def extract(
    request: Request,
    p: str = Form(default=''),
    name: str = Form(default=''),
    target_folder: str = Form(default=''),
    csrf_token: str = Form(default=''),
    ws: Workspace = Depends(get_workspace),
    user: Optional[User] = Depends(get_page_user),
    db: Session = Depends(get_db),
):
    denied = _gate(request, user, db, ws.config, 'extract', csrf_token, p)
    if denied is not None:
        return denied
    result = ws.archive.extract_archive(p, name, target_folder.strip() or None)
    return _finish(session_store_for(user, db), result, p)


@router.post('/files/upload')
def upload_files(
    request: Request,
    p: str = Form(default=''),
    files: list[UploadFile] = File(default=[]),
    csrf_token: str = Form(default=''),
    ws: Workspace = Depends(get_workspace),
    user: Optional[User] = Depends(get_page_user),
    db: Session = Depends(get_db),
):
    denied = _gate(request, user, db, ws.config, 'upload', csrf_token, p)
    if denied is not None:
        return denied
    result = ws.ops.upload(p, [(f.filename or '', f.file) for f in files])
    message = result.message
    if result.errors:
        message = f"{message}. {'; '.join(result.errors)}"
    store = session_store_for(user, db)
    store.flash('success' if result.success else 'error', message)
    return _redirect(p)


@router.post('/files/save')
def save_file(
    request: Request,
    p: str = Form(default=''),
    name: str = Form(default=''),
    content: str = Form(default=''),
    csrf_token: str = Form(default=''),
    ws: Workspace = Depends(get_workspace),
    user: Optional[User] = Depends(get_page_user),
    db: Session = Depends(get_db),
):
    denied = _gate(request, user, db, ws.config, 'save', csrf_token, p)
    if denied is not None:
        return denied
    return _finish(session_store_for(user, db), ws.ops.write_file(p, name, content), p)


def _start_transfer(
    operation: str,
    request: Request,
    p: str,
    name: str,
    csrf_token: str,
    ws: Workspace,
    user: Optional[User],
    db: Session,
) -> RedirectResponse:
    denied = _gate(request, user, db, ws.config, operation, csrf_token, p)
    if denied is not None:
        return denied
    store = session_store_for(user, db)
    if ws.guard.resolve_item(p, name, follow=False) is None:
        store.flash('error', 'Item not found')
        return _redirect(p)
    store.set_pending_transfer(operation, name, normalize_path(p))
    return _redirect(p, '/files/select-destination')


@router.post('/files/copy')
def copy_item(
    request: Request,
    p: str = Form(default=''),
    name: str = Form(default=''),
    csrf_token: str = Form(default=''),
    ws: Workspace = Depends(get_workspace),
    user: Optional[User] = Depends(get_page_user),
    db: Session = Depends(get_db),
):
    return _start_transfer('copy', request, p, name, csrf_token, ws, user, db)


@router.post('/files/move')
def move_item(
    request: Request,
    p: str = Form(default=''),
    name: str = Form(default=''),
    csrf_token: str = Form(default=''),
    ws: Workspace = Depends(get_workspace),
    user: Optional[User] = Depends(get_page_user),
    db: Session = Depends(get_db),
):
    return _start_transfer('move', request, p, name, csrf_token, ws, user, db)


@router.get('/files/select-destination', response_class=HTMLResponse)
def select_destination(
    request: Request,
    p: str = Query(default=''),
    ws: Workspace = Depends(get_workspace),
    user: Optional[User] = Depends(get_page_user),
    db: Session = Depends(get_db),
):
    if user is None:
        return RedirectResponse('/', status_code=303)

    store = session_store_for(user, db)
    if not permissions_for(user, ws.config).can_action('select-destination'):
        store.flash('error', DENIED_MESSAGE)
        return _redirect()
    transfer = store.get_pending_transfer()
    if transfer is None:
        store.flash('error', 'No pending copy or move operation')
        return _redirect()

    path = normalize_path(p)
    if ws.guard.resolve_dir(path) is None:
        path = ''
    context = {
        'user': user,
        'path': path,
        'transfer': transfer,
        'folders': ws.catalog.folder_tree(path),
        'breadcrumbs': ws.catalog.breadcrumbs(path),
        'flash': store.pop_flash(),
        'csrf_token': request.cookies.get('csrf_token', ''),
    }
    return templates.TemplateResponse(request, 'select_destination.html', context)


@router.post('/files/execute-copy-move')
def execute_copy_move(
    request: Request,
    dest: str = Form(default=''),
    csrf_token: str = Form(default=''),
    ws: Workspace = Depends(get_workspace),
    user: Optional[User] = Depends(get_page_user),
    db: Session = Depends(get_db),
):
    denied = _gate(request, user, db, ws.config, 'execute-copy-move', csrf_token, dest)
    if denied is not None:
        return denied

    store = session_store_for(user, db)
    transfer = store.get_pending_transfer()
    if transfer is None:
        store.flash('error', 'Copy or move operation expired. Please start again.')
        return _redirect(dest)

    if transfer.operation == 'move':
        result = ws.ops.move_item(transfer.full_source, dest)
    else:
        result = ws.ops.copy_item(transfer.full_source, dest)
    store.clear_pending_transfer()
    return _finish(store, result, dest)


@router.post('/files/cancel-transfer')
def cancel_transfer(
    request: Request,
    csrf_token: str = Form(default=''),
    user: Optional[User] = Depends(get_page_user),
    db: Session = Depends(get_db),
):
    if user is None:
        return RedirectResponse('/', status_code=303)
    store = session_store_for(user, db)
    transfer = store.get_pending_transfer()
    if form_csrf_valid(request, csrf_token):
        store.clear_pending_transfer()
    return _redirect(transfer.source_path if transfer else '')
