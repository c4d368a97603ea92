"""
test_api.py — HTTP surface through FastAPI's TestClient.

Covers:
    • Session creation, restore, verification and sign-out
    • X-Session-ID authentication
    • Subscriptions and alert reporting
    • Feed, nearby, window and delivery endpoints
    • Error envelope: {"error": {code, message, status, details}}

Run with:
    pytest tests/test_api.py -v
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from vecisafe.app.container import build_services
from vecisafe.app.core.config import Settings
from vecisafe.app.main import create_app

PHONE = "+12125550142"
NYC = {"latitude": 40.7128, "longitude": -74.0060}
NYC_NEIGHBOUR = {"latitude": 40.7129, "longitude": -74.0061}
TIMES_SQUARE = {"latitude": 40.7589, "longitude": -73.9851}


@pytest.fixture
def services():
    config = Settings(
        SESSION_BACKEND="memory",
        SMS_PROVIDER="simulation",
        PUSH_PROVIDER="simulation",
        GEO_INDEX_BACKEND="grid",
        REQUIRE_VERIFIED=False,
        SECRET_KEY="api-test-secret",
    )
    return build_services(config)


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as c:
        yield c


def _new_session(client, device_id=None) -> str:
    resp = client.post("/api/v1/sessions", json={"device_id": device_id})
    assert resp.status_code == 201
    return resp.json()["session_id"]


def _auth(session_id: str) -> dict:
    return {"X-Session-ID": session_id}


def _error(resp) -> dict:
    return resp.json()["error"]


# ═══════════════════════════════════════════════════════════════════════════
# Root & health
# ═══════════════════════════════════════════════════════════════════════════

class TestHealth:

    def test_root(self, client):
        assert client.get("/").json()["service"] == "VeciSafe Core"

    def test_liveness(self, client):
        assert client.get("/health/live").json() == {"status": "alive"}

    def test_deep_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        names = {c["name"] for c in body["components"]}
        assert names == {"session_store", "geo_index", "alert_store", "fanout"}

    def test_request_id_header(self, client):
        resp = client.get("/", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
        assert "X-Process-Time" in resp.headers


# ═══════════════════════════════════════════════════════════════════════════
# Sessions
# ═══════════════════════════════════════════════════════════════════════════

class TestSessions:

    def test_create_and_get(self, client):
        sid = _new_session(client)
        body = client.get("/api/v1/sessions/me", headers=_auth(sid)).json()
        assert body["session_id"] == sid
        assert body["phase"] == "anonymous"

    def test_missing_header(self, client):
        resp = client.get("/api/v1/sessions/me")
        assert resp.status_code == 401
        assert _error(resp)["code"] == "UNAUTHENTICATED"

    def test_unknown_session(self, client):
        resp = client.get("/api/v1/sessions/me", headers=_auth("ses_nope"))
        assert resp.status_code == 401

    def test_device_restore_with_token(self, client):
        created = client.post("/api/v1/sessions", json={"device_id": "dev-1"}).json()
        assert created["device_token"]
        resp = client.get("/api/v1/sessions/device/dev-1", headers={"X-Device-Token": created["device_token"]})
        assert resp.status_code == 200
        assert resp.json()["session_id"] == created["session_id"]
        assert resp.json()["device_token"] is None

    def test_device_restore_without_token_rejected(self, client):
        owner = _new_session(client, "phone-1")
        for headers in ({}, {"X-Device-Token": "not-the-token"}):
            resp = client.get("/api/v1/sessions/device/phone-1", headers=headers)
            assert resp.status_code == 401
            assert owner not in resp.text

    def test_bound_device_not_rebound(self, client):
        owner = _new_session(client, "phone-1")
        resp = client.post("/api/v1/sessions", json={"device_id": "phone-1"})
        assert resp.status_code == 409
        assert _error(resp)["code"] == "DEVICE_ALREADY_REGISTERED"
        assert owner not in resp.text
        assert client.get("/api/v1/sessions/me", headers=_auth(owner)).status_code == 200

    def test_plain_session_has_no_device_token(self, client):
        body = client.post("/api/v1/sessions", json={}).json()
        assert body["device_token"] is None

    def test_verification_flow(self, client, services):
        sid = _new_session(client)
        resp = client.post("/api/v1/sessions/me/verification", json={"phone_number": PHONE}, headers=_auth(sid))
        assert resp.status_code == 202
        assert resp.json()["expires_in_seconds"] == 300

        code = services.sms_transport.last_code_for(PHONE)
        resp = client.post("/api/v1/sessions/me/verification/confirm", json={"code": code}, headers=_auth(sid))
        assert resp.status_code == 200
        assert resp.json()["phase"] == "verified"
        assert "phone_number_hash" not in resp.json()

    def test_bad_phone(self, client):
        sid = _new_session(client)
        resp = client.post("/api/v1/sessions/me/verification", json={"phone_number": "12"}, headers=_auth(sid))
        assert resp.status_code == 422
        err = _error(resp)
        assert err["code"] == "INVALID_PHONE_FORMAT"
        assert err["details"]["field"] == "phone_number"

    def test_wrong_code(self, client, services):
        sid = _new_session(client)
        client.post("/api/v1/sessions/me/verification", json={"phone_number": PHONE}, headers=_auth(sid))
        code = services.sms_transport.last_code_for(PHONE)
        wrong = "000000" if code != "000000" else "111111"
        resp = client.post("/api/v1/sessions/me/verification/confirm", json={"code": wrong}, headers=_auth(sid))
        assert resp.status_code == 422
        assert _error(resp)["code"] == "CODE_MISMATCH"
        assert _error(resp)["details"]["remaining_attempts"] == 4

    def test_confirm_without_request_conflicts(self, client):
        sid = _new_session(client)
        resp = client.post("/api/v1/sessions/me/verification/confirm", json={"code": "123456"}, headers=_auth(sid))
        assert resp.status_code == 409
        assert _error(resp)["code"] == "INVALID_SESSION_STATE"

    def test_sign_out(self, client):
        created = client.post("/api/v1/sessions", json={"device_id": "dev-2"}).json()
        sid = created["session_id"]
        resp = client.post("/api/v1/sessions/me/sign-out", headers=_auth(sid))
        fresh = resp.json()
        assert fresh["session_id"] != sid
        assert fresh["phase"] == "anonymous"
        assert client.get("/api/v1/sessions/me", headers=_auth(sid)).status_code == 401
        restored = client.get("/api/v1/sessions/device/dev-2", headers={"X-Device-Token": created["device_token"]})
        assert restored.json()["session_id"] == fresh["session_id"]


# ═══════════════════════════════════════════════════════════════════════════
# Subscriptions
# ═══════════════════════════════════════════════════════════════════════════

class TestSubscriptions:

    def test_put_and_delete(self, client, services):
        sid = _new_session(client)
        resp = client.put("/api/v1/subscriptions/me", json=NYC, headers=_auth(sid))
        assert resp.status_code == 200
        assert resp.json()["location"] == NYC
        assert sid in services.geo_index

        assert client.delete("/api/v1/subscriptions/me", headers=_auth(sid)).status_code == 204
        assert sid not in services.geo_index

    def test_invalid_location(self, client):
        sid = _new_session(client)
        resp = client.put("/api/v1/subscriptions/me", json={"latitude": 95, "longitude": 0}, headers=_auth(sid))
        assert resp.status_code == 422
        err = _error(resp)
        assert err["code"] == "INVALID_LOCATION"
        assert err["details"]["field"] == "latitude"


# ═══════════════════════════════════════════════════════════════════════════
# Alerts
# ═══════════════════════════════════════════════════════════════════════════

class TestAlerts:

    def _report(self, client, sid, location=NYC, **extra):
        return client.post(
            "/api/v1/alerts",
            json={"location": location, "classification": "suspicious", "details": "Loitering", **extra},
            headers=_auth(sid),
        )

    def test_report_fans_out_to_neighbour_only(self, client):
        near = _new_session(client)
        far = _new_session(client)
        reporter = _new_session(client)
        client.put("/api/v1/subscriptions/me", json=NYC_NEIGHBOUR, headers=_auth(near))
        client.put("/api/v1/subscriptions/me", json=TIMES_SQUARE, headers=_auth(far))

        resp = self._report(client, reporter)
        assert resp.status_code == 201
        body = resp.json()
        assert body["deliveries_scheduled"] == 1
        assert body["alert"]["classification"] == "suspicious"
        assert "reporter_session_id" not in body["alert"]

    def test_report_requires_session(self, client):
        resp = client.post("/api/v1/alerts", json={"location": NYC})
        assert resp.status_code == 401

    def test_report_without_location(self, client):
        sid = _new_session(client)
        resp = self._report(client, sid, location=None)
        assert resp.status_code == 422
        assert _error(resp)["code"] == "LOCATION_UNAVAILABLE"

    def test_report_invalid_latitude_leaves_feed_unchanged(self, client):
        sid = _new_session(client)
        first = self._report(client, sid).json()["alert"]["id"]
        resp = self._report(client, sid, location={"latitude": 95, "longitude": 0})
        assert resp.status_code == 422
        assert _error(resp)["code"] == "INVALID_LOCATION"

        feed = client.get("/api/v1/alerts", params={"limit": 1}).json()
        assert [a["id"] for a in feed["alerts"]] == [first]

    def test_feed_newest_first(self, client):
        sid = _new_session(client)
        ids = [self._report(client, sid).json()["alert"]["id"] for _ in range(3)]
        feed = client.get("/api/v1/alerts").json()
        assert [a["id"] for a in feed["alerts"]] == ids[::-1]

    def test_get_and_missing(self, client):
        sid = _new_session(client)
        alert_id = self._report(client, sid).json()["alert"]["id"]
        assert client.get(f"/api/v1/alerts/{alert_id}").json()["id"] == alert_id

        resp = client.get("/api/v1/alerts/ALR-missing")
        assert resp.status_code == 404
        assert _error(resp)["code"] == "NOT_FOUND"

    def test_nearby(self, client):
        sid = _new_session(client)
        near = self._report(client, sid, location=NYC_NEIGHBOUR).json()["alert"]["id"]
        self._report(client, sid, location=TIMES_SQUARE)

        body = client.post("/api/v1/alerts/nearby", json={"location": NYC, "radius_meters": 500}).json()
        assert [a["id"] for a in body["alerts"]] == [near]
        assert body["alerts"][0]["distance_m"] == 14.0
        assert body["alerts"][0]["distance_label"] == "13 m"

    def test_window_presets(self, client):
        sid = _new_session(client)
        self._report(client, sid)
        assert client.get("/api/v1/alerts/window/24h").json()["count"] == 1
        assert client.get("/api/v1/alerts/window/all").json()["count"] == 1
        assert client.get("/api/v1/alerts/window/1year").status_code == 422

    def test_range(self, client):
        sid = _new_session(client)
        self._report(client, sid)
        now = datetime.now(timezone.utc)
        params = {
            "since": (now - timedelta(minutes=5)).isoformat(),
            "until": (now + timedelta(minutes=5)).isoformat(),
        }
        assert client.get("/api/v1/alerts/range", params=params).json()["count"] == 1

        params["since"], params["until"] = params["until"], params["since"]
        resp = client.get("/api/v1/alerts/range", params=params)
        assert resp.status_code == 422
        assert _error(resp)["details"]["field"] == "since"

    def test_amend_reporter_only(self, client):
        reporter = _new_session(client)
        other = _new_session(client)
        alert_id = self._report(client, reporter).json()["alert"]["id"]

        resp = client.patch(f"/api/v1/alerts/{alert_id}", json={"details": "Left on foot"}, headers=_auth(reporter))
        assert resp.status_code == 200
        assert resp.json()["details"] == "Left on foot"
        assert resp.json()["amended_at"] is not None

        resp = client.patch(f"/api/v1/alerts/{alert_id}", json={"details": "x"}, headers=_auth(other))
        assert resp.status_code == 403
        assert _error(resp)["code"] == "FORBIDDEN"

    def test_deliveries_visible_to_reporter_only(self, client):
        near = _new_session(client)
        reporter = _new_session(client)
        client.put("/api/v1/subscriptions/me", json=NYC_NEIGHBOUR, headers=_auth(near))
        alert_id = self._report(client, reporter).json()["alert"]["id"]

        resp = client.get(f"/api/v1/alerts/{alert_id}/deliveries", headers=_auth(reporter))
        assert resp.status_code == 200
        assert resp.json()["count"] == 1
        assert "recipient_session_id" not in resp.json()["deliveries"][0]

        resp = client.get(f"/api/v1/alerts/{alert_id}/deliveries", headers=_auth(near))
        assert resp.status_code == 403

    def test_exhausted_empty(self, client):
        assert client.get("/api/v1/alerts/deliveries/exhausted").json() == {"count": 0, "deliveries": []}
