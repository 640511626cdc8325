"""Resource types and the generic repository behind every CRUD route.

Each resource type is described once by a ``ResourceType``; a single
``Repository`` implementation serves all of them. Types with attachments
expose an ``AttachmentStore`` through ``Repository.attachments``.
"""
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Type

from pydantic import BaseModel
from sqlalchemy import Table, bindparam, text
from sqlalchemy.exc import IntegrityError

from . import schemas
from .db import (
    get_engine,
    audits_table,
    nonconformities_table,
    policies_table,
    guidelines_table,
    templates_table,
    certificates_table,
    advisories_table,
    users_table,
)
from .errors import Conflict, DeletionBlocked, NotFound, ValidationFailed
from .logging_config import log_event
from .storage import AttachmentStore, load_attachments, remove_files

SYSTEM_FIELDS = ("id", "created_at", "updated_at")


@dataclass(frozen=True)
class ResourceType:
    name: str  # URL segment, e.g. "policies"
    label: str  # singular display name, e.g. "Policy"
    tag: str
    table: Table
    natural_key: str
    create_model: Type[BaseModel]
    update_model: Type[BaseModel]
    out_model: Type[BaseModel]
    json_fields: Tuple[str, ...] = ()
    has_attachments: bool = True
    # Returns field errors for a full (merged) record
    check: Optional[Callable[[Dict[str, Any]], List[Dict[str, str]]]] = None
    # Every record of a batch must pass before any is deleted
    deletion_guard: Optional[Callable[[Dict[str, Any]], bool]] = None
    guard_message: str = ""
    write_role: str = "editor"
    non_nullable: Tuple[str, ...] = field(init=False)

    def __post_init__(self):
        cols = tuple(c.name for c in self.table.columns if not c.nullable and c.name not in SYSTEM_FIELDS)
        object.__setattr__(self, "non_nullable", cols)


def _certificate_dates(record: Dict[str, Any]) -> List[Dict[str, str]]:
    issue, valid = record.get("issue_date"), record.get("valid_through")
    # ISO dates compare correctly as strings
    if issue and valid and str(valid) <= str(issue):
        return [{"field": "valid_through", "message": "Valid Through date must be after the Issue Date."}]
    return []


def _audit_is_planned(row: Dict[str, Any]) -> bool:
    return (row.get("status") or "").strip().lower() == "planned"


RESOURCE_TYPES: Dict[str, ResourceType] = {
    rt.name: rt
    for rt in (
        ResourceType(
            name="audits",
            label="Audit",
            tag="Audits",
            table=audits_table,
            natural_key="audit_id",
            create_model=schemas.AuditCreate,
            update_model=schemas.AuditUpdate,
            out_model=schemas.Audit,
            deletion_guard=_audit_is_planned,
            guard_message="Audits with a status other than 'Planned' cannot be deleted",
        ),
        ResourceType(
            name="nonconformities",
            label="Non-conformity",
            tag="Nonconformities",
            table=nonconformities_table,
            natural_key="nc_id",
            create_model=schemas.NonConformityCreate,
            update_model=schemas.NonConformityUpdate,
            out_model=schemas.NonConformity,
        ),
        ResourceType(
            name="policies",
            label="Policy",
            tag="Policies",
            table=policies_table,
            natural_key="document_id",
            create_model=schemas.ControlledDocumentCreate,
            update_model=schemas.ControlledDocumentUpdate,
            out_model=schemas.ControlledDocument,
            json_fields=("applicable_standard",),
        ),
        ResourceType(
            name="guidelines",
            label="Guideline",
            tag="Guidelines",
            table=guidelines_table,
            natural_key="document_id",
            create_model=schemas.ControlledDocumentCreate,
            update_model=schemas.ControlledDocumentUpdate,
            out_model=schemas.ControlledDocument,
            json_fields=("applicable_standard",),
        ),
        ResourceType(
            name="templates",
            label="Template",
            tag="Templates",
            table=templates_table,
            natural_key="document_id",
            create_model=schemas.ControlledDocumentCreate,
            update_model=schemas.ControlledDocumentUpdate,
            out_model=schemas.ControlledDocument,
            json_fields=("applicable_standard",),
        ),
        ResourceType(
            name="certificates",
            label="Certificate",
            tag="Certificates",
            table=certificates_table,
            natural_key="document_id",
            create_model=schemas.CertificateCreate,
            update_model=schemas.CertificateUpdate,
            out_model=schemas.Certificate,
            check=_certificate_dates,
        ),
        ResourceType(
            name="advisories",
            label="Advisory",
            tag="Advisories",
            table=advisories_table,
            natural_key="document_id",
            create_model=schemas.AdvisoryCreate,
            update_model=schemas.AdvisoryUpdate,
            out_model=schemas.Advisory,
        ),
        ResourceType(
            name="users",
            label="User",
            tag="Users",
            table=users_table,
            natural_key="email",
            create_model=schemas.UserCreate,
            update_model=schemas.UserUpdate,
            out_model=schemas.User,
            has_attachments=False,
            write_role="admin",
        ),
    )
}


def _ids_param(name: str = "ids"):
    return bindparam(name, expanding=True)


def row_lock(conn) -> str:
    """Row-lock suffix for a SELECT; SQLite locks the whole database on write instead."""
    return "" if conn.dialect.name == "sqlite" else " FOR UPDATE"


class Repository:
    def __init__(self, rt: ResourceType):
        self.rt = rt

    @property
    def attachments(self) -> AttachmentStore:
        if not self.rt.has_attachments:
            raise TypeError(f"{self.rt.label} records do not carry attachments")
        return AttachmentStore(self)

    # --- row conversion ---
    def _encode(self, values: Dict[str, Any]) -> Dict[str, Any]:
        out = dict(values)
        for k in self.rt.json_fields:
            if k in out and out[k] is not None:
                out[k] = json.dumps(out[k])
        return out

    def _to_model(self, row, attachments: Sequence[Dict[str, Any]] = ()) -> BaseModel:
        d = dict(row)
        for k in self.rt.json_fields:
            raw = d.get(k)
            d[k] = json.loads(raw) if raw else []
        if self.rt.has_attachments:
            d["attachments"] = list(attachments)
        return self.rt.out_model(**d)

    def _check(self, record: Dict[str, Any]) -> None:
        if self.rt.check:
            errors = self.rt.check(record)
            if errors:
                raise ValidationFailed(errors[0]["message"], errors=errors)

    # --- reads ---
    def exists(self, resource_id: str, conn=None) -> bool:
        sql = text(f"SELECT 1 FROM {self.rt.table.name} WHERE id = :id")
        if conn is not None:
            return conn.execute(sql, {"id": resource_id}).first() is not None
        with get_engine().connect() as c:
            return c.execute(sql, {"id": resource_id}).first() is not None

    def not_found(self, resource_id: str) -> NotFound:
        return NotFound(f"{self.rt.label} not found", resource=self.rt.name, id=resource_id)

    def get(self, resource_id: str) -> BaseModel:
        with get_engine().connect() as conn:
            row = conn.execute(
                text(f"SELECT * FROM {self.rt.table.name} WHERE id = :id"), {"id": resource_id}
            ).mappings().first()
            if not row:
                raise self.not_found(resource_id)
            atts = load_attachments(conn, self.rt.name, [resource_id]) if self.rt.has_attachments else {}
        return self._to_model(row, atts.get(resource_id, []))

    def list(self) -> List[BaseModel]:
        # No pagination
        with get_engine().connect() as conn:
            rows = conn.execute(
                text(f"SELECT * FROM {self.rt.table.name} ORDER BY created_at, id")
            ).mappings().all()
            atts = load_attachments(conn, self.rt.name) if self.rt.has_attachments else {}
        return [self._to_model(r, atts.get(r["id"], [])) for r in rows]

    # --- writes ---
    def create(self, payload: BaseModel) -> BaseModel:
        data = payload.model_dump(mode="json")
        self._check(data)
        now = datetime.utcnow().isoformat()
        row = {"id": uuid.uuid4().hex, **self._encode(data), "created_at": now, "updated_at": now}
        cols = ", ".join(row.keys())
        params = ", ".join(f":{k}" for k in row.keys())
        key = self.rt.natural_key
        try:
            with get_engine().begin() as conn:
                conn.execute(text(f"INSERT INTO {self.rt.table.name} ({cols}) VALUES ({params})"), row)
        except IntegrityError:
            raise Conflict(
                f"{self.rt.label} with {key} '{data[key]}' already exists",
                field=key,
            )
        return self.get(row["id"])

    def update(self, resource_id: str, payload: BaseModel) -> BaseModel:
        changes = payload.model_dump(mode="json", exclude_unset=True)
        if not changes:
            raise ValidationFailed("No fields to update")
        key = self.rt.natural_key
        with get_engine().begin() as conn:
            current = conn.execute(
                text(f"SELECT * FROM {self.rt.table.name} WHERE id = :id{row_lock(conn)}"), {"id": resource_id}
            ).mappings().first()
            if not current:
                raise self.not_found(resource_id)
            if key in changes:
                if changes[key] != current[key]:
                    raise ValidationFailed(
                        f"{key} cannot be changed after creation",
                        errors=[{"field": key, "message": "field is immutable"}],
                    )
                changes.pop(key)
            nulls = [k for k, v in changes.items() if v is None and k in self.rt.non_nullable]
            if nulls:
                raise ValidationFailed(
                    f"{nulls[0]} cannot be empty",
                    errors=[{"field": k, "message": "field is required"} for k in nulls],
                )
            self._check({**dict(current), **changes})
            updates = self._encode(changes)
            updates["updated_at"] = datetime.utcnow().isoformat()
            set_clause = ", ".join(f"{k} = :{k}" for k in updates.keys())
            conn.execute(
                text(f"UPDATE {self.rt.table.name} SET {set_clause} WHERE id = :id"),
                {**updates, "id": resource_id},
            )
        return self.get(resource_id)

    def delete(self, resource_id: str) -> List[str]:
        deleted = self.bulk_delete([resource_id])
        if not deleted:
            raise self.not_found(resource_id)
        return deleted

    def bulk_delete(self, ids: Sequence[str]) -> List[str]:
        """Delete the given records and their attachments in one transaction.

        The selected rows are locked before the guard runs, so a concurrent
        update or upload either lands first and is seen here, or waits and
        then finds the record gone. When the type has a deletion guard, a
        single failure rejects the whole batch. Unknown IDs are ignored; the
        return value lists exactly the IDs this call removed.
        """
        wanted = list(dict.fromkeys(i.strip() for i in ids if isinstance(i, str) and i.strip()))
        if not wanted:
            raise ValidationFailed("No IDs provided", errors=[{"field": "ids", "message": "must be a non-empty list"}])
        table = self.rt.table.name
        paths: List[str] = []
        deleted: List[str] = []
        with get_engine().begin() as conn:
            rows = conn.execute(
                text(f"SELECT * FROM {table} WHERE id IN :ids{row_lock(conn)}").bindparams(_ids_param()),
                {"ids": wanted},
            ).mappings().all()
            if self.rt.deletion_guard:
                blocked = [r["id"] for r in rows if not self.rt.deletion_guard(dict(r))]
                if blocked:
                    log_event("deletion_blocked", logging.WARNING, resource=self.rt.name, ids=blocked)
                    raise DeletionBlocked(self.rt.guard_message, blocked_ids=blocked)
            found = {r["id"] for r in rows}
            for rid in (i for i in wanted if i in found):
                # Another delete may have won the row since it was read
                res = conn.execute(text(f"DELETE FROM {table} WHERE id = :id"), {"id": rid})
                if res.rowcount:
                    deleted.append(rid)
            if deleted and self.rt.has_attachments:
                params = {"ids": deleted, "resource": self.rt.name}
                paths = [
                    p for (p,) in conn.execute(
                        text(
                            "SELECT path FROM attachments WHERE resource = :resource AND parent_id IN :ids"
                        ).bindparams(_ids_param()),
                        params,
                    ).all()
                ]
                conn.execute(
                    text("DELETE FROM attachments WHERE resource = :resource AND parent_id IN :ids").bindparams(_ids_param()),
                    params,
                )
        orphaned = remove_files(paths)
        log_event(
            "resources_deleted",
            resource=self.rt.name,
            ids=deleted,
            files_removed=len(paths) - len(orphaned),
            files_orphaned=len(orphaned),
        )
        return deleted


def repository(name: str) -> Repository:
    return Repository(RESOURCE_TYPES[name])
