import pytest
from fastapi.testclient import TestClient

AUDIT = {"audit_id": "AUD-2025-01", "audit_type": "Internal", "standards": "ISO 27001", "planned_date": "2025-01-15"}


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    # Request ID should be present
    assert r.headers.get("x-request-id")

    # If provided, server should echo same ID
    r2 = client.get("/health", headers={"X-Request-ID": "fixed-id-123"})
    assert r2.headers.get("x-request-id") == "fixed-id-123"
    assert r2.headers.get("x-content-type-options") == "nosniff"


def test_metrics_include_route_labels(client):
    client.get("/health")
    mr = client.get("/metrics")
    assert mr.status_code == 200
    assert b"auditdesk_requests_total" in mr.content
    assert b"auditdesk_request_duration_seconds" in mr.content
    assert b'route="/health"' in mr.content


def test_dev_mode_allows_writes_without_token(client):
    r = client.post("/api/audits", json=AUDIT)
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["status"] == "Planned"
    assert body["attachments"] == []


def test_static_token_enforced(app_env, monkeypatch):
    monkeypatch.setenv("API_TOKEN", "tok")
    monkeypatch.setenv("API_ROLE", "editor")
    from backend.app.main import app

    with TestClient(app) as c:
        # Unauthenticated write should fail
        r = c.post("/api/audits", json=AUDIT)
        assert r.status_code == 401
        assert r.json()["code"] == "unauthorized"

        r = c.post("/api/audits", headers={"Authorization": "Bearer wrong"}, json=AUDIT)
        assert r.status_code == 403

        r2 = c.post("/api/audits", headers={"Authorization": "Bearer tok"}, json=AUDIT)
        assert r2.status_code == 201, r2.text

        # Reads stay open
        assert c.get("/api/audits").status_code == 200

        # Users need the admin role
        ru = c.post(
            "/api/users",
            headers={"Authorization": "Bearer tok"},
            json={"name": "Ada", "email": "ada@example.com"},
        )
        assert ru.status_code == 403
        assert "Insufficient" in ru.json()["detail"]


def test_viewer_token_rejected_for_writes(app_env, monkeypatch):
    monkeypatch.setenv("API_TOKEN", "tok")
    monkeypatch.setenv("API_ROLE", "viewer")
    from backend.app.main import app

    with TestClient(app) as c:
        r = c.post("/api/policies", headers={"Authorization": "Bearer tok"}, json={"document_id": "P-1", "document_name": "P"})
        assert r.status_code == 403


@pytest.mark.parametrize(
    "payload",
    [
        {"audit_type": "Internal"},  # missing audit_id
        {"audit_id": "AUD-1", "status": "BadStatus"},
        {"audit_id": "AUD-1", "planned_date": "not-a-date"},
    ],
)
def test_validation_errors_are_400(client, payload):
    r = client.post("/api/audits", json=payload)
    assert r.status_code == 400
    body = r.json()
    assert body["code"] == "validation_error"
    assert body["errors"]


def test_not_found_shape(client):
    r = client.get("/api/policies/does-not-exist")
    assert r.status_code == 404
    body = r.json()
    assert body["code"] == "not_found"
    assert body["detail"] == "Policy not found"


def test_unknown_route_has_error_code(client):
    r = client.get("/api/nothing-here")
    assert r.status_code == 404
    assert "code" in r.json()


def test_dashboard_summary(client):
    client.post("/api/audits", json=AUDIT)
    client.post(
        "/api/nonconformities",
        json={"nc_id": "NC-1", "description": "Old finding", "due_date": "2000-01-01"},
    )
    client.post(
        "/api/nonconformities",
        json={"nc_id": "NC-2", "description": "Closed finding", "due_date": "2000-01-01", "status": "Closed"},
    )
    r = client.get("/api/dashboard/summary")
    assert r.status_code == 200
    body = r.json()
    assert body["totals"]["audits"] == 1
    assert body["totals"]["nonconformities"] == 2
    assert "users" not in body["totals"]
    assert body["audits"]["by_status"] == {"Planned": 1}
    assert body["nonconformities"]["overdue"] == 1
    assert body["attachments"] == 0


def test_uploads_route_rejects_traversal(client, app_env):
    (app_env / "secret.txt").write_text("nope")
    r = client.get("/uploads/../secret.txt")
    assert r.status_code == 404


def test_log_lines_are_json_objects():
    import json
    import logging

    from backend.app.logging_config import JsonLineFormatter

    record = logging.LogRecord("auditdesk", logging.WARNING, __file__, 1, "storage_drift", None, None)
    record.fields = {"event": "storage_drift", "attachment_id": "a1"}
    line = json.loads(JsonLineFormatter().format(record))
    assert line["event"] == "storage_drift"
    assert line["attachment_id"] == "a1"
    assert line["level"] == "warning"
    assert line["ts"]
