"""
Tests for the admin router, health endpoints and the assembled application.
"""

import asyncio

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from keyledger.core.errors import KeyLedgerError
from keyledger.core.errors.middleware import keyledger_error_handler
from keyledger.main import create_app
from keyledger.models.keys import KEYS, PENDING_KEYS, WHITELIST
from keyledger.routers import admin, health


@pytest.fixture
def app(services):
    app = FastAPI()
    app.add_exception_handler(KeyLedgerError, keyledger_error_handler)
    app.include_router(health.router, prefix="/api")
    app.include_router(admin.router, prefix="/api/admin")
    app.state.services = services
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


def _issue(client, headers, count=1, validity_days=None):
    response = client.post(
        "/api/admin/keys/issue",
        json={"count": count, "validity_days": validity_days, "issued_by": "staff"},
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()["keys"]


def _redeem(services, identity, label, key):
    return asyncio.run(services.keys.redeem_key(identity, label, key))


class TestAdminAuth:
    def test_missing_token(self, client):
        assert client.get("/api/admin/whitelist").status_code == 401

    def test_wrong_token(self, client):
        assert client.get("/api/admin/whitelist", headers={"X-Admin-Token": "nope"}).status_code == 401

    def test_disabled_without_configured_token(self, client, services, admin_headers):
        services.settings.admin_token = None
        assert client.get("/api/admin/whitelist", headers=admin_headers).status_code == 403

    def test_health_is_public(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestKeyEndpoints:
    def test_issue_and_list_pending(self, client, admin_headers, store):
        keys = _issue(client, admin_headers, count=3, validity_days=30)
        assert len(keys) == 3
        assert all(store.peek(PENDING_KEYS, k) is not None for k in keys)

        body = client.get("/api/admin/keys/pending", headers=admin_headers).json()
        assert body["count"] == 3
        assert {p["key"] for p in body["pending"]} == set(keys)
        assert all(p["validity_days"] == 30 for p in body["pending"])

    def test_issue_permanent_flag(self, client, admin_headers):
        response = client.post("/api/admin/keys/issue", json={"count": 1, "validity_days": 0}, headers=admin_headers)
        assert response.json()["permanent"] is True

    @pytest.mark.parametrize("count", [0, 101])
    def test_issue_count_out_of_range(self, client, admin_headers, count):
        response = client.post("/api/admin/keys/issue", json={"count": count}, headers=admin_headers)
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "KL-API-001"

    def test_reset_device_unknown_key(self, client, admin_headers):
        response = client.post("/api/admin/keys/VORAHUB-000000-000000-000000/reset-device", headers=admin_headers)
        assert response.status_code == 404

    def test_reset_device_bad_format(self, client, admin_headers):
        response = client.post("/api/admin/keys/garbage/reset-device", headers=admin_headers)
        assert response.status_code == 400


class TestUserEndpoints:
    def test_lookup_revoke(self, client, admin_headers, services, store):
        [key] = _issue(client, admin_headers)
        _redeem(services, "u1", "alice", key)

        body = client.get("/api/admin/users/u1/keys?alias_label=alice", headers=admin_headers).json()
        assert body == {"identity": "u1", "keys": [key], "count": 1}

        response = client.delete("/api/admin/users/u1/keys?alias_label=alice", headers=admin_headers)
        assert response.json()["revoked"] == 1
        assert store.peek(KEYS, key) is None

    def test_device_limit(self, client, admin_headers, services, store):
        [key] = _issue(client, admin_headers)
        _redeem(services, "u1", "alice", key)

        response = client.put(
            "/api/admin/users/u1/device-limit",
            json={"limit": 3, "alias_label": "alice"},
            headers=admin_headers,
        )
        assert response.json()["updated"] == 1
        assert store.peek(KEYS, key)["device_limit"] == 3

        bad = client.put("/api/admin/users/u1/device-limit", json={"limit": 0}, headers=admin_headers)
        assert bad.status_code == 422

    def test_force_fresh_lookup(self, client, admin_headers, services):
        client.get("/api/admin/users/u1/keys", headers=admin_headers)
        [key] = _issue(client, admin_headers)
        _redeem(services, "u1", None, key)

        body = client.get("/api/admin/users/u1/keys?force_fresh=true", headers=admin_headers).json()
        assert body["keys"] == [key]


class TestListEndpoints:
    def test_whitelist_flow(self, client, admin_headers, store):
        response = client.post(
            "/api/admin/whitelist",
            json={"identity": "u1", "alias_label": "alice", "actor": "staff"},
            headers=admin_headers,
        )
        assert response.status_code == 201
        key = response.json()["key"]
        assert store.peek(WHITELIST, "u1")["linked_key"] == key

        duplicate = client.post("/api/admin/whitelist", json={"identity": "u1"}, headers=admin_headers)
        assert duplicate.status_code == 409
        assert duplicate.json()["error"]["message"] == "User is already on the whitelist!"

        listing = client.get("/api/admin/whitelist", headers=admin_headers).json()
        assert listing["count"] == 1

        assert client.delete("/api/admin/whitelist/u1", headers=admin_headers).status_code == 200
        assert client.delete("/api/admin/whitelist/u1", headers=admin_headers).status_code == 404

    def test_denylist_flow(self, client, admin_headers, services, store):
        [key] = _issue(client, admin_headers)
        _redeem(services, "u1", "alice", key)

        response = client.post(
            "/api/admin/denylist",
            json={"identity": "u1", "alias_label": "alice", "actor": "staff"},
            headers=admin_headers,
        )
        assert response.status_code == 201
        assert response.json()["keys_deleted"] == 1
        assert store.peek(KEYS, key) is None

        listing = client.get("/api/admin/denylist", headers=admin_headers).json()
        assert [e["owner_identity"] for e in listing["denylist"]] == ["u1"]

        assert client.delete("/api/admin/denylist/u1", headers=admin_headers).status_code == 200
        assert client.get("/api/admin/denylist", headers=admin_headers).json()["count"] == 0


class TestApplication:
    def test_lifespan_wires_services(self, admin_headers):
        with TestClient(create_app()) as client:
            health_body = client.get("/api/health").json()
            assert health_body["sweeper_running"] is True

            deep = client.get("/api/health/deep")
            assert deep.status_code == 200
            assert deep.json()["store"]["backend"] == "memory"

            response = client.post("/api/admin/keys/issue", json={"count": 2}, headers=admin_headers)
            assert response.status_code == 201

            response = client.post("/api/interactions", json={"interaction_id": "keys_status", "identity": "u1"})
            assert response.status_code == 200
            assert response.headers["X-Request-ID"]
