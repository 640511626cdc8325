import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Ensure repo root is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))


@pytest.fixture
def app_env(tmp_path, monkeypatch):
    """Fresh SQLite DB and upload dir; no auth configured (dev-mode writes)."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'test.db'}")
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("UPLOAD_RATE_LIMIT", "10000")
    for name in (
        "API_TOKEN",
        "API_ROLE",
        "SESSION_SECRET",
        "SHARED_PASSWORD_HASH",
        "ALLOWED_EMAILS",
        "ALLOWED_EMAIL_DOMAIN",
        "ADMIN_EMAILS",
        "ALLOWED_UPLOAD_EXTENSIONS",
        "MAX_UPLOAD_MB",
    ):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


@pytest.fixture
def client(app_env):
    from backend.app.main import app  # import after env is set

    with TestClient(app) as c:
        yield c
