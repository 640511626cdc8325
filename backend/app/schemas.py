from datetime import date
from enum import Enum
from typing import List, Literal, Optional, Type

from pydantic import BaseModel, Field, create_model, field_validator


_CREATE = {"str_strip_whitespace": True}
_UPDATE = {"str_strip_whitespace": True, "extra": "forbid"}


class ErrorResponse(BaseModel):
    detail: str
    code: str


# --- Attachments ---
class Attachment(BaseModel):
    id: str
    storage_name: str
    original_name: str
    path: str
    mime_type: Optional[str] = None
    size: Optional[int] = None
    created_at: str


class AttachmentLink(BaseModel):
    id: str
    name: str
    mime_type: Optional[str] = None
    size: Optional[int] = None
    download_url: str


class UploadResult(BaseModel):
    message: str
    attachments: List[Attachment]


# --- Bulk delete ---
class BulkDeleteRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1)
    model_config = {"json_schema_extra": {"examples": [{"ids": ["5f0c4a...", "9a1e2b..."]}]}}

    @field_validator("ids")
    @classmethod
    def _non_blank(cls, ids: List[str]) -> List[str]:
        if any(not i.strip() for i in ids):
            raise ValueError("ids must be non-empty strings")
        return ids


class BulkDeleteResult(BaseModel):
    message: str
    deleted_ids: List[str]


# --- Audits ---
class AuditStatus(str, Enum):
    Planned = "Planned"
    Executed = "Executed"
    Completed = "Completed"


class AuditCreate(BaseModel):
    audit_id: str = Field(..., min_length=1, description="Audit reference, e.g. 'AUD-2025-01'")
    audit_type: Optional[str] = None
    standards: Optional[str] = None
    location: Optional[str] = None
    lead_auditor: Optional[str] = None
    planned_date: Optional[date] = None
    status: AuditStatus = AuditStatus.Planned
    actual_date: Optional[date] = None
    complete_date: Optional[date] = None
    model_config = {**_CREATE, "json_schema_extra": {"examples": [{
        "audit_id": "AUD-2025-01",
        "audit_type": "Internal",
        "standards": "ISO 27001",
        "location": "Pune",
        "lead_auditor": "QA",
        "planned_date": "2025-01-15",
    }]}}


class AuditUpdate(BaseModel):
    audit_id: Optional[str] = None
    audit_type: Optional[str] = None
    standards: Optional[str] = None
    location: Optional[str] = None
    lead_auditor: Optional[str] = None
    planned_date: Optional[date] = None
    status: Optional[AuditStatus] = None
    actual_date: Optional[date] = None
    complete_date: Optional[date] = None
    model_config = {**_UPDATE, "json_schema_extra": {"examples": [{"status": "Executed", "actual_date": "2025-01-20"}]}}


class Audit(BaseModel):
    id: str
    audit_id: str
    audit_type: Optional[str] = None
    standards: Optional[str] = None
    location: Optional[str] = None
    lead_auditor: Optional[str] = None
    planned_date: Optional[date] = None
    status: AuditStatus
    actual_date: Optional[date] = None
    complete_date: Optional[date] = None
    attachments: List[Attachment] = []
    created_at: str
    updated_at: str


# --- Nonconformities ---
class NCStatus(str, Enum):
    Open = "Open"
    InProgress = "InProgress"
    Closed = "Closed"


class NonConformityCreate(BaseModel):
    nc_id: str = Field(..., min_length=1)
    audit_ref: Optional[str] = Field(None, description="audit_id of the audit that raised it")
    description: str = Field(..., min_length=1)
    clause_no: Optional[str] = None
    nc_type: Optional[str] = None
    reporting_date: Optional[date] = None
    due_date: Optional[date] = None
    department: Optional[str] = None
    responsible_person: Optional[str] = None
    location: Optional[str] = None
    status: NCStatus = NCStatus.Open
    model_config = _CREATE


class NonConformityUpdate(BaseModel):
    nc_id: Optional[str] = None
    audit_ref: Optional[str] = None
    description: Optional[str] = None
    clause_no: Optional[str] = None
    nc_type: Optional[str] = None
    reporting_date: Optional[date] = None
    due_date: Optional[date] = None
    department: Optional[str] = None
    responsible_person: Optional[str] = None
    location: Optional[str] = None
    status: Optional[NCStatus] = None
    model_config = _UPDATE


class NonConformity(BaseModel):
    id: str
    nc_id: str
    audit_ref: Optional[str] = None
    description: str
    clause_no: Optional[str] = None
    nc_type: Optional[str] = None
    reporting_date: Optional[date] = None
    due_date: Optional[date] = None
    department: Optional[str] = None
    responsible_person: Optional[str] = None
    location: Optional[str] = None
    status: NCStatus
    attachments: List[Attachment] = []
    created_at: str
    updated_at: str


# --- Policies, guidelines, templates ---
class ControlledDocumentCreate(BaseModel):
    document_id: str = Field(..., min_length=1)
    document_name: str = Field(..., min_length=1)
    description: Optional[str] = None
    version_number: Optional[str] = None
    release_date: Optional[date] = None
    applicable_standard: List[str] = []
    model_config = {**_CREATE, "json_schema_extra": {"examples": [{
        "document_id": "POL-001",
        "document_name": "Information Security Policy",
        "version_number": "1.0",
        "release_date": "2025-01-01",
        "applicable_standard": ["ISO 27001"],
    }]}}


class ControlledDocumentUpdate(BaseModel):
    document_id: Optional[str] = None
    document_name: Optional[str] = None
    description: Optional[str] = None
    version_number: Optional[str] = None
    release_date: Optional[date] = None
    applicable_standard: Optional[List[str]] = None
    model_config = _UPDATE


class ControlledDocument(BaseModel):
    id: str
    document_id: str
    document_name: str
    description: Optional[str] = None
    version_number: Optional[str] = None
    release_date: Optional[date] = None
    applicable_standard: List[str] = []
    attachments: List[Attachment] = []
    created_at: str
    updated_at: str


# --- Certificates ---
class CertificateCreate(BaseModel):
    document_id: str = Field(..., min_length=1)
    document_name: str = Field(..., min_length=1)
    description: Optional[str] = None
    version_number: Optional[str] = None
    issue_date: date
    valid_through: date
    model_config = _CREATE


class CertificateUpdate(BaseModel):
    document_id: Optional[str] = None
    document_name: Optional[str] = None
    description: Optional[str] = None
    version_number: Optional[str] = None
    issue_date: Optional[date] = None
    valid_through: Optional[date] = None
    model_config = _UPDATE


class Certificate(BaseModel):
    id: str
    document_id: str
    document_name: str
    description: Optional[str] = None
    version_number: Optional[str] = None
    issue_date: date
    valid_through: date
    attachments: List[Attachment] = []
    created_at: str
    updated_at: str


# --- Advisories ---
class AdvisoryCreate(BaseModel):
    serial_number: str = Field(..., min_length=1)
    document_id: str = Field(..., min_length=1)
    document_name: str = Field(..., min_length=1)
    description: Optional[str] = None
    version_number: Optional[str] = None
    release_date: Optional[date] = None
    applicable_standard: Optional[str] = None
    model_config = _CREATE


class AdvisoryUpdate(BaseModel):
    serial_number: Optional[str] = None
    document_id: Optional[str] = None
    document_name: Optional[str] = None
    description: Optional[str] = None
    version_number: Optional[str] = None
    release_date: Optional[date] = None
    applicable_standard: Optional[str] = None
    model_config = _UPDATE


class Advisory(BaseModel):
    id: str
    serial_number: str
    document_id: str
    document_name: str
    description: Optional[str] = None
    version_number: Optional[str] = None
    release_date: Optional[date] = None
    applicable_standard: Optional[str] = None
    attachments: List[Attachment] = []
    created_at: str
    updated_at: str


# --- Users ---
class UserCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3, pattern=r"^[^@\s]+@[^@\s]+$")
    role: str = "User"
    model_config = _CREATE

    @field_validator("email")
    @classmethod
    def _lower(cls, v: str) -> str:
        return v.lower()


class UserUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    model_config = _UPDATE

    @field_validator("email")
    @classmethod
    def _lower(cls, v: Optional[str]) -> Optional[str]:
        return v.lower() if v else v


class User(BaseModel):
    id: str
    name: str
    email: str
    avatar_url: Optional[str] = None
    role: str
    created_at: str
    updated_at: str


class AvatarResult(BaseModel):
    avatar_url: str


# --- Session bootstrap ---
class SignInRequest(BaseModel):
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class SignInResponse(BaseModel):
    message: str
    token: str
    email: str
    role: str
    must_reset_password: bool = False


class ResetPasswordRequest(BaseModel):
    email: str = Field(..., min_length=1)
    old_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=1)
    confirm_new_password: str = Field(..., min_length=1)


class MessageResponse(BaseModel):
    message: str


def attachment_deleted_model(document_model: Type[BaseModel]) -> Type[BaseModel]:
    """Response of a delete-attachment call for one resource type."""
    return create_model(
        f"{document_model.__name__}AttachmentDeleted",
        message=(str, ...),
        attachment_id=(str, ...),
        file_status=(Literal["removed", "missing", "error"], ...),
        warning=(Optional[str], None),
        document=(document_model, ...),
    )
