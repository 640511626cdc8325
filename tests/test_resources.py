import pytest

DOCUMENT = {
    "document_id": "POL-001",
    "document_name": "Information Security Policy",
    "version_number": "1.0",
    "release_date": "2025-01-01",
    "applicable_standard": ["ISO 27001", "ISO 9001"],
}

CREATE_PAYLOADS = {
    "audits": {"audit_id": "AUD-1", "audit_type": "Internal", "lead_auditor": "QA"},
    "nonconformities": {"nc_id": "NC-1", "description": "Policy not documented", "due_date": "2025-02-28"},
    "policies": DOCUMENT,
    "guidelines": {**DOCUMENT, "document_id": "GL-001"},
    "templates": {**DOCUMENT, "document_id": "TPL-001"},
    "certificates": {
        "document_id": "CERT-1",
        "document_name": "ISO 27001 certificate",
        "issue_date": "2025-01-01",
        "valid_through": "2028-01-01",
    },
    "advisories": {
        "serial_number": "1",
        "document_id": "ADV-1",
        "document_name": "Patch advisory",
        "applicable_standard": "ISO 27001",
    },
    "users": {"name": "Ada Lovelace", "email": "Ada@Example.com"},
}

UPDATES = {
    "audits": ({"status": "Executed", "actual_date": "2025-01-20"}, "status", "Executed"),
    "nonconformities": ({"status": "Closed"}, "status", "Closed"),
    "policies": ({"version_number": "2.0"}, "version_number", "2.0"),
    "guidelines": ({"applicable_standard": ["ISO 14001"]}, "applicable_standard", ["ISO 14001"]),
    "templates": ({"description": "Letterhead"}, "description", "Letterhead"),
    "certificates": ({"valid_through": "2029-01-01"}, "valid_through", "2029-01-01"),
    "advisories": ({"document_name": "Patch advisory v2"}, "document_name", "Patch advisory v2"),
    "users": ({"role": "Manager"}, "role", "Manager"),
}

NATURAL_KEYS = {
    "audits": "audit_id",
    "nonconformities": "nc_id",
    "policies": "document_id",
    "guidelines": "document_id",
    "templates": "document_id",
    "certificates": "document_id",
    "advisories": "document_id",
    "users": "email",
}


def _bulk_delete(client, resource, ids):
    return client.request("DELETE", f"/api/{resource}", json={"ids": ids})


def _upload(client, resource, rid, *files):
    return client.post(
        f"/api/{resource}/{rid}/attachments",
        files=[("attachments", f) for f in files],
    )


@pytest.mark.parametrize("resource", sorted(CREATE_PAYLOADS))
def test_crud_roundtrip(client, resource):
    r = client.post(f"/api/{resource}", json=CREATE_PAYLOADS[resource])
    assert r.status_code == 201, r.text
    created = r.json()
    rid = created["id"]
    assert created["created_at"] and created["updated_at"]

    assert client.get(f"/api/{resource}/{rid}").json() == created
    assert [item["id"] for item in client.get(f"/api/{resource}").json()] == [rid]

    changes, field, expected = UPDATES[resource]
    ru = client.put(f"/api/{resource}/{rid}", json=changes)
    assert ru.status_code == 200, ru.text
    assert ru.json()[field] == expected
    assert client.get(f"/api/{resource}/{rid}").json()[field] == expected

    rd = client.delete(f"/api/{resource}/{rid}")
    if resource == "audits":
        # Executed audits are protected
        assert rd.status_code == 409
        return
    assert rd.status_code == 200, rd.text
    assert rd.json()["deleted_ids"] == [rid]
    assert client.get(f"/api/{resource}/{rid}").status_code == 404


def test_document_fields_persist(client):
    r = client.post("/api/policies", json=DOCUMENT)
    body = r.json()
    assert body["applicable_standard"] == ["ISO 27001", "ISO 9001"]
    assert body["release_date"] == "2025-01-01"
    assert body["attachments"] == []


def test_user_email_is_lowercased_and_unique(client):
    r = client.post("/api/users", json=CREATE_PAYLOADS["users"])
    assert r.status_code == 201
    assert r.json()["email"] == "ada@example.com"
    assert r.json()["role"] == "User"
    assert "attachments" not in r.json()

    dup = client.post("/api/users", json={"name": "Other", "email": "ADA@example.com"})
    assert dup.status_code == 409
    assert dup.json()["code"] == "conflict"


def test_users_have_no_attachment_routes(client):
    uid = client.post("/api/users", json=CREATE_PAYLOADS["users"]).json()["id"]
    r = _upload(client, "users", uid, ("a.txt", b"x", "text/plain"))
    assert r.status_code in (404, 405)


@pytest.mark.parametrize("resource", ["audits", "nonconformities", "policies", "certificates", "advisories"])
def test_duplicate_natural_key_conflicts(client, resource):
    assert client.post(f"/api/{resource}", json=CREATE_PAYLOADS[resource]).status_code == 201
    r = client.post(f"/api/{resource}", json=CREATE_PAYLOADS[resource])
    assert r.status_code == 409
    body = r.json()
    assert body["code"] == "conflict"
    assert body["field"] == NATURAL_KEYS[resource]


@pytest.mark.parametrize("resource", ["audits", "policies", "users"])
def test_natural_key_cannot_change(client, resource):
    rid = client.post(f"/api/{resource}", json=CREATE_PAYLOADS[resource]).json()["id"]
    key = NATURAL_KEYS[resource]
    r = client.put(f"/api/{resource}/{rid}", json={key: "changed@example.com"})
    assert r.status_code == 400
    assert r.json()["errors"][0]["field"] == key

    # Re-sending the current value is harmless
    current = client.get(f"/api/{resource}/{rid}").json()[key]
    r2 = client.put(f"/api/{resource}/{rid}", json={key: current, **UPDATES[resource][0]})
    assert r2.status_code == 200, r2.text


def test_update_rejects_attachments_and_empty_payload(client):
    rid = client.post("/api/policies", json=DOCUMENT).json()["id"]
    r = client.put(f"/api/policies/{rid}", json={"attachments": []})
    assert r.status_code == 400
    assert r.json()["code"] == "validation_error"

    r2 = client.put(f"/api/policies/{rid}", json={})
    assert r2.status_code == 400

    r3 = client.put(f"/api/policies/{rid}", json={"document_name": None})
    assert r3.status_code == 400
    assert client.get(f"/api/policies/{rid}").json()["document_name"] == DOCUMENT["document_name"]


def test_update_unknown_record(client):
    r = client.put("/api/policies/missing", json={"version_number": "2"})
    assert r.status_code == 404


def test_certificate_dates_validated(client):
    bad = {**CREATE_PAYLOADS["certificates"], "valid_through": "2025-01-01"}
    r = client.post("/api/certificates", json=bad)
    assert r.status_code == 400
    assert r.json()["errors"][0]["field"] == "valid_through"

    rid = client.post("/api/certificates", json=CREATE_PAYLOADS["certificates"]).json()["id"]
    # Checked against the stored issue date
    ru = client.put(f"/api/certificates/{rid}", json={"valid_through": "2024-12-31"})
    assert ru.status_code == 400
    assert client.get(f"/api/certificates/{rid}").json()["valid_through"] == "2028-01-01"


def test_nonconformity_requires_description(client):
    r = client.post("/api/nonconformities", json={"nc_id": "NC-9"})
    assert r.status_code == 400


def test_bulk_delete_returns_exact_ids(client):
    ids = [
        client.post("/api/policies", json={**DOCUMENT, "document_id": f"POL-{n}"}).json()["id"]
        for n in range(3)
    ]
    r = _bulk_delete(client, "policies", [ids[2], "unknown-id", ids[0], ids[2]])
    assert r.status_code == 200, r.text
    assert r.json()["deleted_ids"] == [ids[2], ids[0]]
    remaining = [p["id"] for p in client.get("/api/policies").json()]
    assert remaining == [ids[1]]


@pytest.mark.parametrize("body", [{"ids": []}, {"ids": ["  "]}, {}])
def test_bulk_delete_requires_ids(client, body):
    r = client.request("DELETE", "/api/policies", json=body)
    assert r.status_code == 400


def test_delete_unknown_record(client):
    r = client.delete("/api/advisories/nope")
    assert r.status_code == 404
    assert r.json()["code"] == "not_found"


def test_audit_guard_blocks_whole_batch(client):
    planned = client.post("/api/audits", json={"audit_id": "AUD-1"}).json()["id"]
    executed = client.post("/api/audits", json={"audit_id": "AUD-2", "status": "Executed"}).json()["id"]

    r = _bulk_delete(client, "audits", [planned, executed])
    assert r.status_code == 409
    body = r.json()
    assert body["code"] == "deletion_blocked"
    assert body["blocked_ids"] == [executed]
    # Nothing was deleted
    assert client.get(f"/api/audits/{planned}").status_code == 200
    assert client.get(f"/api/audits/{executed}").status_code == 200

    r2 = _bulk_delete(client, "audits", [planned])
    assert r2.status_code == 200
    assert r2.json()["deleted_ids"] == [planned]


def test_delete_removes_attachment_files(client, app_env):
    rid = client.post("/api/nonconformities", json=CREATE_PAYLOADS["nonconformities"]).json()["id"]
    up = _upload(client, "nonconformities", rid, ("evidence.txt", b"proof", "text/plain"))
    assert up.status_code == 201, up.text
    stored = app_env / "uploads" / up.json()["attachments"][0]["path"]
    assert stored.exists()

    r = _bulk_delete(client, "nonconformities", [rid])
    assert r.status_code == 200
    assert not stored.exists()
    summary = client.get("/api/dashboard/summary").json()
    assert summary["attachments"] == 0


def test_concurrent_bulk_deletes_report_each_id_once(client):
    from concurrent.futures import ThreadPoolExecutor

    ids = [
        client.post("/api/policies", json={**DOCUMENT, "document_id": f"POL-{n}"}).json()["id"]
        for n in range(5)
    ]

    with ThreadPoolExecutor(max_workers=4) as pool:
        responses = list(pool.map(lambda _: _bulk_delete(client, "policies", ids), range(4)))
    assert all(r.status_code == 200 for r in responses)
    reported = [i for r in responses for i in r.json()["deleted_ids"]]
    assert sorted(reported) == sorted(ids)
    assert client.get("/api/policies").json() == []


def test_row_lock_only_outside_sqlite():
    from types import SimpleNamespace

    from backend.app.resources import row_lock

    assert row_lock(SimpleNamespace(dialect=SimpleNamespace(name="sqlite"))) == ""
    assert row_lock(SimpleNamespace(dialect=SimpleNamespace(name="postgresql"))) == " FOR UPDATE"


def test_guard_sees_status_committed_before_delete(client):
    aid = client.post("/api/audits", json={"audit_id": "AUD-1"}).json()["id"]
    assert client.put(f"/api/audits/{aid}", json={"status": "Executed"}).status_code == 200
    r = _bulk_delete(client, "audits", [aid])
    assert r.status_code == 409
    assert r.json()["blocked_ids"] == [aid]
