"""
Registry HTTP API: routes, identity header and error mapping.
"""

import pytest
from fastapi.testclient import TestClient

from assetgate.api.main import app, get_registry

OWNER = "0xowner"
ALICE = "0xalice"


def as_account(account):
    return {"X-Account-Id": account}


@pytest.fixture
def api(registry):
    app.dependency_overrides[get_registry] = lambda: registry
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def door_api(api):
    response = api.post("/assets", json={"asset_key": "door-1", "description": "Front door"},
                        headers=as_account(OWNER))
    assert response.status_code == 200
    return api


class TestHealth:
    def test_health(self, api):
        response = api.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["db_health"] is True
        assert data["asset_count"] == 0


class TestAssetRoutes:
    """Test asset creation and reads."""

    def test_create_and_get(self, door_api):
        data = door_api.get("/assets/door-1").json()
        assert data == {
            "key": "door-1",
            "owner": OWNER,
            "description": "Front door",
            "initialized": True,
            "authorization_count": 0
        }

    def test_duplicate_is_conflict(self, door_api):
        response = door_api.post("/assets", json={"asset_key": "door-1", "description": "again"},
                                 headers=as_account(ALICE))
        assert response.status_code == 409
        assert response.json()["error"] == "AlreadyExists"

    def test_empty_description_rejected(self, api):
        response = api.post("/assets", json={"asset_key": "door-1", "description": "  "},
                            headers=as_account(OWNER))
        assert response.status_code == 422

    def test_missing_identity_rejected(self, api):
        response = api.post("/assets", json={"asset_key": "door-1", "description": "d"})
        assert response.status_code == 400
        assert response.json()["error"] == "ValidationFailed"

    def test_unknown_asset_default_record(self, api):
        data = api.get("/assets/nope").json()
        assert data["initialized"] is False
        assert data["owner"] == ""

    def test_count_and_index(self, door_api):
        assert door_api.get("/assets/count").json() == {"count": 1}
        assert door_api.get("/assets/index/0").json() == {"asset_key": "door-1"}

    def test_index_out_of_range(self, door_api):
        response = door_api.get("/assets/index/5")
        assert response.status_code == 400
        assert response.json()["detail"] == "Index out of range"


class TestAuthorizationRoutes:
    """Test grant, revoke and enumeration routes."""

    def test_grant_and_enumerate(self, door_api):
        response = door_api.post("/assets/door-1/authorizations", json={"account": ALICE, "role": "admin"},
                                 headers=as_account(OWNER))
        assert response.status_code == 200

        assert door_api.get("/assets/door-1/authorizations/count").json() == {"count": 1}
        assert door_api.get("/assets/door-1/authorizations/index/0").json() == {"account": ALICE}
        entry = door_api.get(f"/assets/door-1/authorizations/{ALICE}").json()
        assert entry == {"account": ALICE, "role": "admin", "active": True, "expires_at": 0}

    def test_stranger_forbidden(self, door_api):
        response = door_api.post("/assets/door-1/authorizations", json={"account": ALICE, "role": "admin"},
                                 headers=as_account("0xmallory"))
        assert response.status_code == 403
        assert response.json() == {
            "detail": "Only the owner or admins can add authorizations.",
            "error": "NotOwnerOrAdmin"
        }

    def test_temporary_without_duration(self, door_api):
        response = door_api.post("/assets/door-1/authorizations", json={"account": ALICE, "role": "temporary"},
                                 headers=as_account(OWNER))
        assert response.status_code == 400
        assert response.json()["error"] == "TemporalPolicyError"

    def test_revoke(self, door_api):
        door_api.post("/assets/door-1/authorizations", json={"account": ALICE, "role": "admin"},
                      headers=as_account(OWNER))

        response = door_api.delete(f"/assets/door-1/authorizations/{ALICE}", headers=as_account(OWNER))
        assert response.status_code == 200
        assert door_api.get(f"/assets/door-1/can-access/{ALICE}").json()["granted"] is False

    def test_batch_routes(self, door_api):
        response = door_api.post("/assets/door-1/authorizations/batch",
                                 json={"accounts": ["0xa", "0xb"], "roles": ["temporary", "admin"],
                                       "durations": [60, 0]},
                                 headers=as_account(OWNER))
        assert response.status_code == 200
        assert door_api.get("/assets/door-1/authorizations/count").json() == {"count": 2}

        response = door_api.post("/assets/door-1/authorizations/batch-remove", json={"accounts": ["0xa"]},
                                 headers=as_account(OWNER))
        assert response.status_code == 200
        assert door_api.get("/assets/door-1/authorizations/count").json() == {"count": 1}

    def test_batch_mismatch(self, door_api):
        response = door_api.post("/assets/door-1/authorizations/batch",
                                 json={"accounts": ["0xa", "0xb"], "roles": ["admin"]},
                                 headers=as_account(OWNER))
        assert response.status_code == 400
        assert response.json() == {"detail": "Array length mismatch", "error": "BatchError"}


class TestOwnershipRoutes:
    def test_transfer(self, door_api):
        response = door_api.post("/assets/door-1/owner", json={"new_owner": ALICE}, headers=as_account(OWNER))
        assert response.status_code == 200
        assert door_api.get("/assets/door-1").json()["owner"] == ALICE

    def test_non_owner_forbidden(self, door_api):
        response = door_api.post("/assets/door-1/owner", json={"new_owner": ALICE}, headers=as_account(ALICE))
        assert response.status_code == 403
        assert response.json()["error"] == "NotOwner"

    def test_missing_asset(self, api):
        response = api.post("/assets/nope/owner", json={"new_owner": ALICE}, headers=as_account(OWNER))
        assert response.status_code == 404
        assert response.json()["error"] == "AssetNotFound"


class TestAccessRoutes:
    """Test access checks and audit reporting."""

    def test_get_access_uses_caller(self, door_api):
        data = door_api.post("/assets/door-1/access", headers=as_account(OWNER)).json()
        assert data == {"asset_key": "door-1", "account": OWNER, "granted": True}

        records = door_api.get("/logs", params={"events": ["access_attempt"]}).json()["records"]
        assert len(records) == 1

    def test_can_access(self, door_api):
        assert door_api.get(f"/assets/door-1/can-access/{OWNER}").json()["granted"] is True
        assert door_api.get(f"/assets/door-1/can-access/{ALICE}").json()["granted"] is False

    def test_batch_log(self, door_api):
        entries = [{"account": ALICE, "asset_key": "door-1", "timestamp": 5, "granted": False}]
        response = door_api.post("/access-logs/batch", json={"entries": entries}, headers=as_account("0xcache"))
        assert response.json() == {"recorded": 1}

    def test_batch_log_over_cap(self, door_api):
        entries = [{"account": ALICE, "asset_key": "door-1", "timestamp": i, "granted": True} for i in range(101)]
        response = door_api.post("/access-logs/batch", json={"entries": entries}, headers=as_account("0xcache"))
        assert response.status_code == 400
        assert response.json()["error"] == "BatchError"


class TestLogRoutes:
    """Test the log stream routes."""

    def test_logs_and_head(self, door_api):
        records = door_api.get("/logs").json()["records"]
        assert len(records) == 1
        assert records[0]["event"] == "asset_created"
        assert door_api.get("/logs/head").json() == {"head_seq": records[0]["seq"]}

    def test_logs_filtered(self, door_api):
        door_api.post("/assets/door-1/authorizations", json={"account": ALICE, "role": "admin"},
                      headers=as_account(OWNER))

        records = door_api.get("/logs", params={"asset_key": "door-1", "after_seq": 1,
                                                "events": ["authorization_added"]}).json()["records"]
        assert [r["account"] for r in records] == [ALICE]

    def test_unknown_event_rejected(self, door_api):
        response = door_api.get("/logs", params={"events": ["bogus"]})
        assert response.status_code == 400

    def test_verify(self, door_api):
        assert door_api.get("/logs/verify").json() == {"valid": True, "first_bad_seq": None}
