import sys
from pathlib import Path
import base64
import importlib
from datetime import datetime, timedelta, timezone

import pytest
import requests
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from medvault import crypto  # noqa: E402
from medvault.blobs import HttpBlobStore  # noqa: E402
from medvault.errors import BlobNotFoundError, RegistryError  # noqa: E402
from medvault.registry import BurnRegistryClient  # noqa: E402

CYAN = "\033[96m"
GREEN = "\033[92m"
RESET = "\033[0m"

TEST_BASE = "http://testserver"


def heading(name: str, color: str = CYAN):
    print(f"\n{color}--- {name} ---{RESET}")


@pytest.fixture
def api(tmp_path, monkeypatch):
    # Point the vault API to an isolated test DB before import.
    monkeypatch.setenv("MEDVAULT_DB_URL", f"sqlite:///{tmp_path / 'medvault.db'}")
    monkeypatch.delenv("MEDVAULT_BURN_REGISTRY_URL", raising=False)
    from app import db as app_db, main as app_main, models as app_models

    # Reload in dependency order so the tables bind to the fresh engine.
    for module in (app_db, app_models, app_main):
        importlib.reload(module)
    with TestClient(app_main.app) as client:
        yield client


@pytest.fixture
def burn_api(tmp_path, monkeypatch):
    monkeypatch.setenv("MEDVAULT_BURN_DB_URL", f"sqlite:///{tmp_path / 'burned.db'}")
    from burn_registry import db as burn_db, main as burn_main, models as burn_models

    for module in (burn_db, burn_models, burn_main):
        importlib.reload(module)
    with TestClient(burn_main.app) as client:
        yield client


def _upload(client, data: bytes) -> str:
    res = client.post("/files", json={"data": base64.b64encode(data).decode()})
    assert res.status_code == 200
    return res.json()["cid"]


def _token_payload(cid: str, share_type: str = "one-time", **extra) -> dict:
    payload = {
        "cid": cid,
        "encryption_key": crypto.export_key(crypto.generate_key()),
        "iv": crypto.iv_to_list(crypto.generate_iv()),
        "file_name": "a.txt",
        "file_type": "text/plain",
        "share_type": share_type,
        "created_by": "0xA",
    }
    payload.update(extra)
    return payload


def test_file_upload_and_download(api):
    heading("test_file_upload_and_download", color=GREEN)
    cid = _upload(api, b"ciphertext bytes")
    assert cid.startswith("Qm")
    assert _upload(api, b"ciphertext bytes") == cid

    res = api.get(f"/files/{cid}")
    assert res.status_code == 200
    assert base64.b64decode(res.json()["data"]) == b"ciphertext bytes"

    assert api.get("/files/QmMissing").status_code == 404
    assert api.post("/files", json={"data": "***"}).status_code == 400


def test_one_time_token_over_http(api):
    heading("test_one_time_token_over_http", color=GREEN)
    cid = _upload(api, b"x")
    res = api.post("/tokens", json=_token_payload(cid))
    assert res.status_code == 200
    token = res.json()
    assert token["max_views"] == 1
    token_id = token["token_id"]

    check = api.get(f"/tokens/{token_id}/validate").json()
    assert check["valid"] is True
    assert check["token"]["encryption_key"] == token["encryption_key"]

    res = api.post(f"/tokens/{token_id}/view")
    assert res.status_code == 200
    assert res.json() == {"status": "viewed", "token_id": token_id, "view_count": 1, "is_active": False}

    check = api.get(f"/tokens/{token_id}/validate").json()
    assert check["valid"] is False
    assert check["code"] == "exhausted"
    assert check["token"] is None
    assert "one-time" in check["reason"]

    assert api.post(f"/tokens/{token_id}/view").status_code == 403
    assert api.post("/tokens/missing/view").status_code == 404
    assert api.get("/tokens/missing/validate").json()["code"] == "not_found"


def test_token_creation_rejects_bad_input(api):
    cid = _upload(api, b"x")
    bad_key = _token_payload(cid, encryption_key=base64.b64encode(b"short").decode())
    assert api.post("/tokens", json=bad_key).status_code == 400
    half_window = _token_payload(cid, "custom", valid_from="2024-01-01T00:00:00Z")
    assert api.post("/tokens", json=half_window).status_code == 400
    assert api.post("/tokens", json=_token_payload(cid, "weekly")).status_code == 422


def test_custom_window_over_http(api):
    cid = _upload(api, b"x")
    future = datetime.now(timezone.utc) + timedelta(days=1)
    payload = _token_payload(
        cid, "custom", valid_from=future.isoformat(), valid_until=(future + timedelta(days=1)).isoformat()
    )
    token_id = api.post("/tokens", json=payload).json()["token_id"]
    check = api.get(f"/tokens/{token_id}/validate").json()
    assert check["code"] == "not_yet_valid"
    assert api.post(f"/tokens/{token_id}/view").status_code == 403


def test_listings_revoke_and_cleanup(api):
    heading("test_listings_revoke_and_cleanup", color=CYAN)
    cid = _upload(api, b"x")
    for_b = api.post("/tokens", json=_token_payload(cid, "permanent", shared_with="0xB")).json()["token_id"]
    used = api.post("/tokens", json=_token_payload(cid)).json()["token_id"]
    api.post(f"/tokens/{used}/view")

    created = api.get("/tokens", params={"created_by": "0xA"}).json()
    assert {t["token_id"] for t in created} == {for_b, used}
    assert all("encryption_key" not in t and "iv" not in t for t in created)

    received = api.get("/tokens/shared-with/0xB").json()
    assert [t["token_id"] for t in received] == [for_b]

    assert api.post(f"/tokens/{for_b}/revoke").status_code == 200
    assert api.get(f"/tokens/{for_b}/validate").json()["code"] == "revoked"
    assert api.post("/tokens/missing/revoke").status_code == 404

    res = api.post("/tokens/cleanup")
    assert res.json() == {"status": "cleaned", "removed": [used]}


def test_acl_endpoints(api):
    heading("test_acl_endpoints", color=CYAN)
    res = api.post("/acl", json={"cid": "Qm123", "owner": "0xA"})
    assert res.status_code == 200
    assert res.json()["owner"] == "0xA"
    assert api.post("/acl", json={"cid": "Qm123", "owner": "0xZ"}).status_code == 400

    owner = api.get("/acl/Qm123/verify", params={"wallet": "0xA"}).json()
    assert owner == {"has_access": True, "reason": None, "access_type": "owner"}
    assert api.get("/acl/Qm123/verify", params={"wallet": "0xB"}).json()["has_access"] is False

    grant = {"wallet_address": "0xB", "access_type": "temporary", "granted_by": "0xA", "duration_hours": 1}
    res = api.post("/acl/Qm123/grant", json=grant)
    assert res.status_code == 200
    assert res.json()["access_list"][0]["wallet_address"] == "0xB"
    assert api.get("/acl/Qm123/verify", params={"wallet": "0xB"}).json()["access_type"] == "temporary"

    res = api.delete("/acl/Qm123/access/0xB")
    assert res.json()["access_list"] == []
    assert api.get("/acl/Qm123").json()["info"][1] == "Shared with: 0 people"

    assert api.get("/acl/QmNone").status_code == 404
    assert api.post("/acl/QmNone/grant", json=grant).status_code == 404
    assert api.delete("/acl/QmNone/access/0xB").status_code == 404


def test_http_blob_store_against_api(api):
    blobs = HttpBlobStore(TEST_BASE, session=api)
    encrypted = crypto.encrypt_file(b"report", crypto.FileMetadata(file_name="r.txt"))
    cid = blobs.put(encrypted.ciphertext)
    assert crypto.decrypt_file(blobs.get(cid), encrypted.key, encrypted.iv)[0] == b"report"
    with pytest.raises(BlobNotFoundError):
        blobs.get("QmMissing")


def test_burn_registry_is_idempotent(burn_api):
    heading("test_burn_registry_is_idempotent", color=GREEN)
    first = burn_api.post("/tokens/burn", json={"token_id": "t1", "burned_by": "0xA", "metadata": {"cid": "Qm1"}})
    assert first.status_code == 200
    assert first.json()["success"] is True
    second = burn_api.post("/tokens/burn", json={"token_id": "t1"})
    assert second.json()["burned_at"] == first.json()["burned_at"]

    check = burn_api.get("/tokens/check", params={"token_id": "t1"}).json()
    assert check["is_burned"] is True
    assert burn_api.get("/tokens/check", params={"token_id": "t2"}).json()["is_burned"] is False

    burned = burn_api.get("/tokens/burned").json()
    assert len(burned) == 1
    assert burned[0]["burned_by"] == "0xA"
    assert burned[0]["metadata"] == {"cid": "Qm1"}
    assert burn_api.get("/healthz").json() == {"status": "ok"}


def test_burn_registry_cleanup(burn_api):
    from burn_registry import db as burn_db, models as burn_models

    with burn_db.SessionLocal() as db:
        db.add(
            burn_models.BurnedToken(
                token_id="old",
                burned_at=datetime.now(timezone.utc) - timedelta(days=40),
                burned_by="anonymous",
            )
        )
        db.commit()
    burn_api.post("/tokens/burn", json={"token_id": "recent"})

    assert burn_api.post("/tokens/burned/cleanup", params={"days": 30}).json() == {"deleted": 1}
    assert burn_api.get("/tokens/check", params={"token_id": "old"}).json()["is_burned"] is False
    assert burn_api.get("/tokens/check", params={"token_id": "recent"}).json()["is_burned"] is True

def test_service_databases_follow_settings(api, burn_api, tmp_path):
    from app import db as app_db
    from burn_registry import db as burn_db

    assert app_db.DB_URL == f"sqlite:///{tmp_path / 'medvault.db'}"
    assert burn_db.DB_URL == f"sqlite:///{tmp_path / 'burned.db'}"
    # Startup created both schemas in their own files.
    assert (tmp_path / "medvault.db").exists()
    assert (tmp_path / "burned.db").exists()



class _LateSession:
    """Session whose first lookup misses, as if a parallel burn committed just after it."""

    def __init__(self, session):
        self._session = session
        self._missed = False

    def get(self, *args, **kwargs):
        if not self._missed:
            self._missed = True
            return None
        return self._session.get(*args, **kwargs)

    def __getattr__(self, name):
        return getattr(self._session, name)


def test_burn_registry_losing_a_burn_race_reports_the_winner(burn_api):
    heading("test_burn_registry_losing_a_burn_race_reports_the_winner", color=GREEN)
    from burn_registry import db as burn_db, main as burn_main

    first = burn_api.post("/tokens/burn", json={"token_id": "t1", "burned_by": "0xA"})
    assert first.status_code == 200

    def late_db():
        db = burn_db.SessionLocal()
        try:
            yield _LateSession(db)
        finally:
            db.close()

    burn_main.app.dependency_overrides[burn_main.get_db] = late_db
    try:
        second = burn_api.post("/tokens/burn", json={"token_id": "t1", "burned_by": "0xB"})
    finally:
        burn_main.app.dependency_overrides.clear()
    assert second.status_code == 200
    assert second.json()["burned_at"] == first.json()["burned_at"]
    burned = burn_api.get("/tokens/burned").json()
    assert [(row["token_id"], row["burned_by"]) for row in burned] == [("t1", "0xA")]


def test_burn_registry_client(burn_api):
    client = BurnRegistryClient(TEST_BASE, session=burn_api)
    assert client.is_burned("t9") is False
    client.burn("t9", burned_by="0xA", metadata={"cid": "Qm9"})
    assert client.is_burned("t9") is True


class _DownSession:
    def get(self, *args, **kwargs):
        raise requests.ConnectionError("connection refused")

    def post(self, *args, **kwargs):
        raise requests.ConnectionError("connection refused")


def test_burn_registry_client_errors(burn_api):
    down = BurnRegistryClient(TEST_BASE, session=_DownSession())
    with pytest.raises(RegistryError):
        down.is_burned("t1")
    with pytest.raises(RegistryError):
        down.burn("t1")
    wrong_path = BurnRegistryClient(f"{TEST_BASE}/nowhere", session=burn_api)
    with pytest.raises(RegistryError):
        wrong_path.is_burned("t1")


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-vv", "-s", "--capture=no"]))
