import os
from pathlib import Path
from typing import Dict

from sqlalchemy import (
    create_engine,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    Index,
)
from sqlalchemy.engine import Engine


# --- Config ---
ROOT_DIR = Path(__file__).resolve().parents[2]


# Read config at call time to honor runtime changes (tests, hot reloads)
def database_url() -> str:
    return os.getenv("DATABASE_URL", f"sqlite:///{ROOT_DIR}/backend/app.db")


def upload_dir() -> Path:
    return Path(os.getenv("UPLOAD_DIR", ROOT_DIR / "backend" / "uploads")).resolve()


_ENGINES: Dict[str, Engine] = {}


def get_engine() -> Engine:
    url = database_url()
    engine = _ENGINES.get(url)
    if engine is None:
        engine = create_engine(url, future=True)
        _ENGINES[url] = engine
    return engine


metadata = MetaData()


def _timestamps():
    return [
        Column("created_at", String, nullable=False),
        Column("updated_at", String, nullable=False),
    ]


audits_table = Table(
    "audits",
    metadata,
    Column("id", String, primary_key=True),
    Column("audit_id", String, nullable=False, unique=True),
    Column("audit_type", String),
    Column("standards", String),
    Column("location", String),
    Column("lead_auditor", String),
    Column("planned_date", String),
    Column("status", String, nullable=False),
    Column("actual_date", String),
    Column("complete_date", String),
    *_timestamps(),
)

nonconformities_table = Table(
    "nonconformities",
    metadata,
    Column("id", String, primary_key=True),
    Column("nc_id", String, nullable=False, unique=True),
    Column("audit_ref", String),
    Column("description", String, nullable=False),
    Column("clause_no", String),
    Column("nc_type", String),
    Column("reporting_date", String),
    Column("due_date", String),
    Column("department", String),
    Column("responsible_person", String),
    Column("location", String),
    Column("status", String, nullable=False),
    *_timestamps(),
)


def _document_table(name: str) -> Table:
    # Policies, guidelines and templates share one shape
    return Table(
        name,
        metadata,
        Column("id", String, primary_key=True),
        Column("document_id", String, nullable=False, unique=True),
        Column("document_name", String, nullable=False),
        Column("description", String),
        Column("version_number", String),
        Column("release_date", String),
        Column("applicable_standard", String),  # JSON-encoded list
        *_timestamps(),
    )


policies_table = _document_table("policies")
guidelines_table = _document_table("guidelines")
templates_table = _document_table("templates")

certificates_table = Table(
    "certificates",
    metadata,
    Column("id", String, primary_key=True),
    Column("document_id", String, nullable=False, unique=True),
    Column("document_name", String, nullable=False),
    Column("description", String),
    Column("version_number", String),
    Column("issue_date", String, nullable=False),
    Column("valid_through", String, nullable=False),
    *_timestamps(),
)

advisories_table = Table(
    "advisories",
    metadata,
    Column("id", String, primary_key=True),
    Column("serial_number", String, nullable=False),
    Column("document_id", String, nullable=False, unique=True),
    Column("document_name", String, nullable=False),
    Column("description", String),
    Column("version_number", String),
    Column("release_date", String),
    Column("applicable_standard", String),
    *_timestamps(),
)

users_table = Table(
    "users",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("email", String, nullable=False, unique=True),
    Column("avatar_url", String),
    Column("role", String, nullable=False),
    *_timestamps(),
)

# Attachments of every resource type; seq fixes the list order per parent
attachments_table = Table(
    "attachments",
    metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("id", String, nullable=False),
    Column("resource", String, nullable=False),
    Column("parent_id", String, nullable=False),
    Column("storage_name", String, nullable=False),
    Column("original_name", String, nullable=False),
    Column("path", String, nullable=False),
    Column("mime_type", String),
    Column("size", Integer),
    Column("created_at", String, nullable=False),
    UniqueConstraint("resource", "parent_id", "id", name="uq_attachments_parent_id"),
    Index("ix_attachments_parent", "resource", "parent_id"),
)

credentials_table = Table(
    "credentials",
    metadata,
    Column("email", String, primary_key=True),
    Column("password_hash", String, nullable=False),
    Column("role", String, nullable=False),
    *_timestamps(),
)


def init_db():
    metadata.create_all(get_engine())
