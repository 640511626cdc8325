import os
import threading
import time
from typing import Dict, List, Tuple

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile

from .auth import role_required
from .resources import ResourceType, Repository
from .schemas import (
    AttachmentLink,
    AvatarResult,
    BulkDeleteRequest,
    BulkDeleteResult,
    ErrorResponse,
    UploadResult,
    attachment_deleted_model,
)
from .storage import IncomingFile, save_avatar


# --- Basic in-memory rate limiter for uploads ---
_RATE_STATE: Dict[Tuple[str, int], int] = {}
_RATE_LOCK = threading.Lock()
_RATE_WINDOW = [None]  # window of the last prune


def rate_limit(key: str, limit: int = 30, window_sec: int = 60):
    window = int(time.time()) // window_sec
    with _RATE_LOCK:
        if _RATE_WINDOW[0] != window:
            # Counts from earlier windows are never read again
            for stale in [k for k in _RATE_STATE if k[1] != window]:
                del _RATE_STATE[stale]
            _RATE_WINDOW[0] = window
        count = _RATE_STATE.get((key, window), 0) + 1
        _RATE_STATE[(key, window)] = count
    if count > limit:
        raise HTTPException(status_code=429, detail="Rate limit exceeded")


def check_upload_request(request: Request):
    rate_limit(
        f"upload:{request.client.host if request.client else 'local'}",
        limit=int(os.getenv("UPLOAD_RATE_LIMIT", "30")),
    )
    max_mb = int(os.getenv("MAX_UPLOAD_MB", "25"))
    cl = request.headers.get("content-length")
    if cl and int(cl) > max_mb * 1024 * 1024:
        raise HTTPException(status_code=413, detail="Payload too large")


def _incoming(upload: UploadFile) -> IncomingFile:
    return IncomingFile(filename=upload.filename or "", content_type=upload.content_type, stream=upload.file)


_ERRORS = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
}


def build_resource_router(rt: ResourceType) -> APIRouter:
    """CRUD, bulk delete and (when supported) attachment routes for one type."""
    repo = Repository(rt)
    router = APIRouter(prefix=f"/api/{rt.name}", tags=[rt.tag], responses=_ERRORS)
    writer = role_required(rt.write_role)
    CreateModel, UpdateModel, OutModel = rt.create_model, rt.update_model, rt.out_model

    @router.get("", response_model=List[OutModel])
    def list_resources():
        return repo.list()

    @router.get("/{resource_id}", response_model=OutModel)
    def get_resource(resource_id: str):
        return repo.get(resource_id)

    @router.post("", response_model=OutModel, status_code=201, responses={409: {"model": ErrorResponse}})
    def create_resource(payload: CreateModel, _auth=Depends(writer)):
        return repo.create(payload)

    @router.put("/{resource_id}", response_model=OutModel)
    def update_resource(resource_id: str, payload: UpdateModel, _auth=Depends(writer)):
        return repo.update(resource_id, payload)

    @router.delete("", response_model=BulkDeleteResult, responses={409: {"model": ErrorResponse}})
    def bulk_delete_resources(payload: BulkDeleteRequest, _auth=Depends(writer)):
        deleted = repo.bulk_delete(payload.ids)
        return {"message": f"{len(deleted)} {rt.name} deleted", "deleted_ids": deleted}

    @router.delete("/{resource_id}", response_model=BulkDeleteResult, responses={409: {"model": ErrorResponse}})
    def delete_resource(resource_id: str, _auth=Depends(writer)):
        deleted = repo.delete(resource_id)
        return {"message": f"{rt.label} deleted", "deleted_ids": deleted}

    if rt.has_attachments:
        _add_attachment_routes(router, repo)
    return router


def _add_attachment_routes(router: APIRouter, repo: Repository) -> None:
    rt = repo.rt
    store = repo.attachments
    writer = role_required(rt.write_role)

    @router.post(
        "/{resource_id}/attachments",
        response_model=UploadResult,
        status_code=201,
        responses={413: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
    )
    def upload_attachments(
        resource_id: str,
        request: Request,
        attachments: List[UploadFile] = File(...),
        _auth=Depends(writer),
    ):
        check_upload_request(request)
        records = store.upload(resource_id, [_incoming(f) for f in attachments])
        return {"message": "Files uploaded", "attachments": records}

    @router.get("/{resource_id}/attachments", response_model=List[AttachmentLink])
    def list_attachments(resource_id: str, request: Request):
        return store.list_links(resource_id, str(request.base_url))

    @router.get("/{resource_id}/attachments/{file_id}")
    def download_attachment(resource_id: str, file_id: str):
        return store.serve(resource_id, file_id)

    @router.delete(
        "/{resource_id}/attachments/{file_id}",
        response_model=attachment_deleted_model(rt.out_model),
    )
    def delete_attachment(resource_id: str, file_id: str, _auth=Depends(writer)):
        return store.delete(resource_id, file_id)


def build_avatar_router(repo: Repository) -> APIRouter:
    router = APIRouter(prefix=f"/api/{repo.rt.name}", tags=[repo.rt.tag], responses=_ERRORS)

    @router.post("/{user_id}/avatar", response_model=AvatarResult)
    def upload_avatar(user_id: str, request: Request, avatar: UploadFile = File(...), _auth=Depends(role_required("editor"))):
        check_upload_request(request)
        return {"avatar_url": save_avatar(repo, user_id, _incoming(avatar))}

    return router
