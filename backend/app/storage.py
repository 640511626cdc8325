"""Attachment storage and delivery.

Bytes live in one flat directory (``UPLOAD_DIR``) shared by every resource
type; metadata lives in the ``attachments`` table keyed by resource and
parent id. Appends and removals are single-row statements, so concurrent
requests against one parent never overwrite each other's changes.
"""
import logging
import os
import re
import shutil
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterable, List, Optional, Sequence, Tuple

from fastapi.responses import FileResponse
from sqlalchemy import bindparam, text

from .db import get_engine, upload_dir
from .errors import IOFailure, NotFound, StorageDrift, ValidationFailed
from .logging_config import log_event

DEFAULT_EXTENSIONS = ".jpeg,.jpg,.png,.pdf,.doc,.docx,.xls,.xlsx,.csv,.txt"
AVATAR_DIR = "avatars"

_ATTACHMENT_COLUMNS = "id, storage_name, original_name, path, mime_type, size, created_at"


@dataclass
class IncomingFile:
    filename: str
    content_type: Optional[str]
    stream: BinaryIO


def allowed_extensions() -> set:
    raw = os.getenv("ALLOWED_UPLOAD_EXTENSIONS", DEFAULT_EXTENSIONS)
    return {e.strip().lower() for e in raw.split(",") if e.strip()}


def sanitize_filename(name: str) -> str:
    base = re.split(r"[\\/]", name or "")[-1]
    base = re.sub(r"\s+", "_", base.strip())
    base = re.sub(r"[^A-Za-z0-9_.-]", "_", base).lstrip(".")
    return base or "file"


def storage_name_for(original_name: str) -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}-{sanitize_filename(original_name)}"


def disposition_for(mime_type: Optional[str]) -> str:
    """PDFs and images render in the browser; everything else downloads.

    Decided from the MIME type declared at upload time only.
    """
    mime = mime_type or "application/octet-stream"
    if mime == "application/pdf" or mime.startswith("image/"):
        return "inline"
    return "attachment"


def resolve_path(relative: str) -> Optional[Path]:
    root = upload_dir()
    path = (root / relative).resolve()
    if not path.is_relative_to(root):
        return None
    return path


def _write_stream(stream: BinaryIO, dest: Path) -> int:
    with dest.open("wb") as out:
        shutil.copyfileobj(stream, out)
    return dest.stat().st_size


def _discard(paths: Iterable[Path]) -> None:
    for p in paths:
        try:
            p.unlink(missing_ok=True)
        except OSError as exc:
            log_event("attachment_cleanup_failed", logging.WARNING, path=str(p), error=str(exc))


def _store_file(incoming: IncomingFile, subdir: Optional[str] = None) -> Tuple[str, str, int]:
    """Write one upload under a fresh storage name; returns (name, relative path, size)."""
    root = upload_dir() / subdir if subdir else upload_dir()
    root.mkdir(parents=True, exist_ok=True)
    name = storage_name_for(incoming.filename)
    dest = root / name
    part = root / f".{name}.part"
    try:
        size = _write_stream(incoming.stream, part)
        os.replace(part, dest)
    except BaseException:
        _discard([part])
        raise
    relative = f"{subdir}/{name}" if subdir else name
    return name, relative, size


def load_attachments(conn, resource: str, parent_ids: Optional[Sequence[str]] = None) -> Dict[str, List[Dict[str, Any]]]:
    sql = f"SELECT parent_id, {_ATTACHMENT_COLUMNS} FROM attachments WHERE resource = :resource"
    params: Dict[str, Any] = {"resource": resource}
    stmt = text(sql + " ORDER BY seq")
    if parent_ids is not None:
        stmt = text(sql + " AND parent_id IN :ids ORDER BY seq").bindparams(bindparam("ids", expanding=True))
        params["ids"] = list(parent_ids)
        if not params["ids"]:
            return {}
    out: Dict[str, List[Dict[str, Any]]] = {}
    for row in conn.execute(stmt, params).mappings().all():
        d = dict(row)
        out.setdefault(d.pop("parent_id"), []).append(d)
    return out


def remove_files(paths: Iterable[str]) -> List[str]:
    """Remove stored files, ignoring ones already gone; returns paths left behind."""
    orphaned = []
    for rel in paths:
        path = resolve_path(rel)
        if path is None:
            continue
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            orphaned.append(rel)
            log_event("resource_files_orphaned", logging.WARNING, path=rel, error=str(exc))
    return orphaned


class AttachmentStore:
    """Attachment operations for the records of one repository."""

    def __init__(self, repo):
        self.repo = repo
        self.resource = repo.rt.name

    def _require_parent(self, conn, parent_id: str) -> None:
        if not self.repo.exists(parent_id, conn):
            raise self.repo.not_found(parent_id)

    def _touch_parent(self, conn, parent_id: str, now: str) -> bool:
        res = conn.execute(
            text(f"UPDATE {self.repo.rt.table.name} SET updated_at = :now WHERE id = :id"),
            {"now": now, "id": parent_id},
        )
        return res.rowcount > 0

    def _fetch(self, conn, parent_id: str, attachment_id: str) -> Dict[str, Any]:
        row = conn.execute(
            text(
                f"SELECT {_ATTACHMENT_COLUMNS} FROM attachments "
                "WHERE resource = :resource AND parent_id = :pid AND id = :aid"
            ),
            {"resource": self.resource, "pid": parent_id, "aid": attachment_id},
        ).mappings().first()
        if not row:
            raise NotFound("Attachment not found", parent_id=parent_id, attachment_id=attachment_id)
        return dict(row)

    def list(self, parent_id: str) -> List[Dict[str, Any]]:
        with get_engine().connect() as conn:
            self._require_parent(conn, parent_id)
            return load_attachments(conn, self.resource, [parent_id]).get(parent_id, [])

    def upload(self, parent_id: str, files: Sequence[IncomingFile]) -> List[Dict[str, Any]]:
        """Store all files and append their records, or store nothing.

        Any failure (disk, database, aborted request) removes every file
        written by this call before the error propagates.
        """
        if not files:
            raise ValidationFailed("No files uploaded", errors=[{"field": "attachments", "message": "at least one file is required"}])
        allowed = allowed_extensions()
        for f in files:
            if not f.filename:
                raise ValidationFailed("Uploaded file has no name", errors=[{"field": "attachments", "message": "missing filename"}])
            if Path(f.filename).suffix.lower() not in allowed:
                raise ValidationFailed(
                    f"File type not allowed: {f.filename}",
                    errors=[{"field": "attachments", "message": "allowed types: " + ", ".join(sorted(allowed))}],
                )
        with get_engine().connect() as conn:
            self._require_parent(conn, parent_id)

        written: List[Path] = []
        current = None
        try:
            records = []
            for f in files:
                current = f.filename
                name, relative, size = _store_file(f)
                written.append(upload_dir() / relative)
                records.append({
                    "id": uuid.uuid4().hex,
                    "resource": self.resource,
                    "parent_id": parent_id,
                    "storage_name": name,
                    "original_name": f.filename,
                    "path": relative,
                    "mime_type": f.content_type or "application/octet-stream",
                    "size": size,
                })
            now = datetime.utcnow().isoformat()
            with get_engine().begin() as conn:
                if not self._touch_parent(conn, parent_id, now):
                    raise self.repo.not_found(parent_id)
                for rec in records:
                    conn.execute(
                        text(
                            "INSERT INTO attachments (id, resource, parent_id, storage_name, original_name, path, mime_type, size, created_at) "
                            "VALUES (:id, :resource, :parent_id, :storage_name, :original_name, :path, :mime_type, :size, :created_at)"
                        ),
                        {**rec, "created_at": now},
                    )
                attachments = load_attachments(conn, self.resource, [parent_id]).get(parent_id, [])
        except BaseException as exc:
            _discard(written)
            log_event(
                "attachment_upload_rolled_back",
                logging.WARNING,
                resource=self.resource,
                parent_id=parent_id,
                files_discarded=len(written),
                failed_file=current,
                error=str(exc),
            )
            if isinstance(exc, OSError):
                raise IOFailure("Failed to store uploaded files", failed_file=current) from exc
            raise
        log_event(
            "attachment_uploaded",
            resource=self.resource,
            parent_id=parent_id,
            attachment_ids=[r["id"] for r in records],
        )
        return attachments

    def delete(self, parent_id: str, attachment_id: str) -> Dict[str, Any]:
        """Remove one attachment record, then its file.

        The record decides whether the attachment exists: a file that is
        already gone is reported as ``missing``, and a file that cannot be
        removed is reported as ``error`` with a warning; neither keeps the
        record alive.
        """
        with get_engine().begin() as conn:
            self._require_parent(conn, parent_id)
            row = self._fetch(conn, parent_id, attachment_id)
            res = conn.execute(
                text("DELETE FROM attachments WHERE resource = :resource AND parent_id = :pid AND id = :aid"),
                {"resource": self.resource, "pid": parent_id, "aid": attachment_id},
            )
            if res.rowcount == 0:
                raise NotFound("Attachment not found", parent_id=parent_id, attachment_id=attachment_id)
            self._touch_parent(conn, parent_id, datetime.utcnow().isoformat())

        file_status, warning = "removed", None
        path = resolve_path(row["path"])
        try:
            if path is None:
                raise FileNotFoundError(row["path"])
            path.unlink()
        except FileNotFoundError:
            file_status = "missing"
            log_event("attachment_file_missing", resource=self.resource, parent_id=parent_id, attachment_id=attachment_id, path=row["path"])
        except OSError as exc:
            file_status = "error"
            warning = f"Attachment removed but its file could not be deleted: {exc.strerror or exc}"
            log_event(
                "attachment_file_delete_failed",
                logging.WARNING,
                resource=self.resource,
                parent_id=parent_id,
                attachment_id=attachment_id,
                path=row["path"],
                error=str(exc),
            )
        log_event("attachment_deleted", resource=self.resource, parent_id=parent_id, attachment_id=attachment_id, file_status=file_status)
        return {
            "message": "Attachment deleted successfully",
            "attachment_id": attachment_id,
            "file_status": file_status,
            "warning": warning,
            "document": self.repo.get(parent_id),
        }

    # --- delivery ---
    def resolve(self, parent_id: str, attachment_id: str) -> Tuple[Dict[str, Any], Path]:
        with get_engine().connect() as conn:
            self._require_parent(conn, parent_id)
            row = self._fetch(conn, parent_id, attachment_id)
        path = resolve_path(row["path"])
        if path is None or not path.is_file():
            log_event(
                "storage_drift",
                logging.WARNING,
                resource=self.resource,
                parent_id=parent_id,
                attachment_id=attachment_id,
                path=row["path"],
            )
            raise StorageDrift(parent_id=parent_id, attachment_id=attachment_id)
        return row, path

    def serve(self, parent_id: str, attachment_id: str) -> FileResponse:
        row, path = self.resolve(parent_id, attachment_id)
        mime = row.get("mime_type") or "application/octet-stream"
        return FileResponse(
            str(path),
            media_type=mime,
            filename=row["original_name"],
            content_disposition_type=disposition_for(mime),
        )

    def list_links(self, parent_id: str, base_url: str) -> List[Dict[str, Any]]:
        base = f"{base_url.rstrip('/')}/api/{self.resource}/{parent_id}/attachments"
        return [
            {
                "id": a["id"],
                "name": a["original_name"],
                "mime_type": a["mime_type"],
                "size": a["size"],
                "download_url": f"{base}/{a['id']}",
            }
            for a in self.list(parent_id)
        ]


def save_avatar(repo, user_id: str, incoming: IncomingFile) -> str:
    """Store a user's avatar image and drop the one it replaces."""
    if not (incoming.content_type or "").startswith("image/"):
        raise ValidationFailed("Only image files are allowed", errors=[{"field": "avatar", "message": "expected an image"}])
    current = repo.get(user_id)
    name, relative, _ = _store_file(incoming, AVATAR_DIR)
    url = f"/uploads/{relative}"
    try:
        with get_engine().begin() as conn:
            res = conn.execute(
                text("UPDATE users SET avatar_url = :url, updated_at = :now WHERE id = :id"),
                {"url": url, "now": datetime.utcnow().isoformat(), "id": user_id},
            )
            if res.rowcount == 0:
                raise repo.not_found(user_id)
    except BaseException:
        _discard([upload_dir() / relative])
        raise
    old = current.avatar_url
    if old and old.startswith("/uploads/"):
        remove_files([old[len("/uploads/"):]])
    log_event("avatar_updated", user_id=user_id, avatar_url=url)
    return url
