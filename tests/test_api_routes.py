"""HTTP-level tests for the auth routes and the response envelope."""

import pytest
from fastapi.testclient import TestClient

from tessera import app as app_module
from tessera.service.email import PASSWORD_RESET, RecordingEmailService
from tessera.service.identity import IdentityVerificationFailed, ThirdPartyIdentity
from tessera.service.runtime import get_runtime

EMAIL = "alice@example.com"
PASSWORD = "Secret123"


class FakeVerifier:
    def __init__(self, identities):
        self.identities = identities

    async def verify(self, proof_token):
        if proof_token not in self.identities:
            raise IdentityVerificationFailed("unknown proof token")
        return self.identities[proof_token]


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def outbox():
    recording = RecordingEmailService()
    get_runtime().auth.email = recording
    return recording


def _register(client, email=EMAIL, username="alice"):
    resp = client.post(
        "/v1/auth/register",
        json={"email": email, "password": PASSWORD, "username": username},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def _login(client, device="device-1", password=PASSWORD):
    return client.post(
        "/v1/auth/login",
        json={"email": EMAIL, "password": password, "device": {"identifier": device}},
    )


def _auth(access_token):
    return {"Authorization": f"Bearer {access_token}"}


class TestRegisterAndLogin:
    def test_register_returns_envelope(self, client):
        data = _register(client)
        assert data["email"] == EMAIL
        assert data["username"] == "alice"
        assert data["email_verified"] is False

    def test_duplicate_register_is_conflict(self, client):
        _register(client)
        resp = client.post(
            "/v1/auth/register",
            json={"email": EMAIL, "password": PASSWORD, "username": "alice2"},
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_login_returns_token_pair(self, client):
        _register(client)
        resp = _login(client)
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["token_type"] == "bearer"
        assert data["account"]["email"] == EMAIL
        assert data["session"]["id"]
        assert data["session"]["device_id"]
        assert "X-RateLimit-Limit" in resp.headers

    def test_bad_credentials_use_error_envelope(self, client):
        _register(client)
        resp = _login(client, password="Secret124")
        assert resp.status_code == 401
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert body["error"]["message"] == "invalid credentials"
        assert body["request_id"]

    def test_missing_device_is_validation_error(self, client):
        _register(client)
        resp = client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD})
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"]["code"] == "validation_error"
        assert PASSWORD not in resp.text

    def test_lockout_over_http(self, client):
        _register(client)
        for _ in range(5):
            assert _login(client, password="Secret124").status_code == 401
        resp = _login(client)
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "account unavailable"


class TestRefreshAndLogout:
    def test_refresh_rotates_and_replay_is_rejected(self, client):
        _register(client)
        pair = _login(client).json()["data"]
        resp = client.post("/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]})
        assert resp.status_code == 200
        assert resp.json()["data"]["refresh_token"] != pair["refresh_token"]

        replay = client.post("/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["message"] == "invalid token"

    def test_logout_ends_session(self, client):
        _register(client)
        pair = _login(client).json()["data"]
        assert client.post("/v1/auth/logout", headers=_auth(pair["access_token"])).status_code == 200
        resp = client.get("/v1/auth/sessions", headers=_auth(pair["access_token"]))
        assert resp.status_code == 401

    def test_logout_without_token(self, client):
        resp = client.post("/v1/auth/logout")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"


class TestSessions:
    def test_list_and_revoke_sessions(self, client):
        _register(client)
        current = _login(client, "device-1").json()["data"]
        other = _login(client, "device-2").json()["data"]

        resp = client.get("/v1/auth/sessions", headers=_auth(current["access_token"]))
        assert resp.status_code == 200
        items = resp.json()["data"]["items"]
        assert len(items) == 2
        flagged = {item["id"]: item["current"] for item in items}
        assert flagged[current["session"]["id"]] is True
        assert flagged[other["session"]["id"]] is False

        resp = client.delete(
            f"/v1/auth/sessions/{other['session']['id']}",
            headers=_auth(current["access_token"]),
        )
        assert resp.status_code == 200
        resp = client.get("/v1/auth/sessions", headers=_auth(other["access_token"]))
        assert resp.status_code == 401

    def test_revoke_unknown_session(self, client):
        _register(client)
        pair = _login(client).json()["data"]
        resp = client.delete("/v1/auth/sessions/nope", headers=_auth(pair["access_token"]))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"


class TestPasswordFlows:
    def test_reset_request_is_generic(self, client, outbox):
        _register(client)
        known = client.post("/v1/auth/password/reset/request", json={"email": EMAIL})
        unknown = client.post(
            "/v1/auth/password/reset/request", json={"email": "nobody@example.com"}
        )
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_reset_confirm_then_login(self, client, outbox):
        _register(client)
        client.post("/v1/auth/password/reset/request", json={"email": EMAIL})
        token = outbox.last(PASSWORD_RESET)["data"]["token"]
        resp = client.post(
            "/v1/auth/password/reset/confirm",
            json={"token": token, "new_password": "NewSecret456"},
        )
        assert resp.status_code == 200
        assert _login(client, password="NewSecret456").status_code == 200

    def test_change_password(self, client):
        _register(client)
        pair = _login(client).json()["data"]
        resp = client.post(
            "/v1/auth/password/change",
            json={"current_password": PASSWORD, "new_password": "NewSecret456"},
            headers=_auth(pair["access_token"]),
        )
        assert resp.status_code == 200
        # Caller's session survives the change
        resp = client.get("/v1/auth/sessions", headers=_auth(pair["access_token"]))
        assert resp.status_code == 200


class TestIdentityRoutes:
    @pytest.fixture(autouse=True)
    def google(self):
        verifier = FakeVerifier(
            {
                "g-gina": ThirdPartyIdentity("g-1", "gina@example.com", email_verified=True),
                "g-alice": ThirdPartyIdentity("g-2", EMAIL, email_verified=True),
            }
        )
        get_runtime().identity.register_verifier("google", verifier)
        return verifier

    def test_new_identity_returns_201(self, client):
        resp = client.post(
            "/v1/auth/identity/google",
            json={"proof_token": "g-gina", "device": {"identifier": "device-1"}},
        )
        assert resp.status_code == 201
        assert resp.json()["data"]["created"] is True

    def test_existing_identity_returns_200(self, client):
        body = {"proof_token": "g-gina", "device": {"identifier": "device-1"}}
        client.post("/v1/auth/identity/google", json=body)
        resp = client.post("/v1/auth/identity/google", json=body)
        assert resp.status_code == 200
        assert resp.json()["data"]["created"] is False

    def test_password_account_gets_stable_code(self, client):
        _register(client)
        resp = client.post(
            "/v1/auth/identity/google",
            json={"proof_token": "g-alice", "device": {"identifier": "device-1"}},
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "email_exists_password"

    def test_link_list_and_unlink(self, client):
        _register(client)
        pair = _login(client).json()["data"]
        headers = _auth(pair["access_token"])
        resp = client.post(
            "/v1/auth/identity/google/link",
            json={"proof_token": "g-alice", "password": PASSWORD},
            headers=headers,
        )
        assert resp.status_code == 200
        assert [p["provider"] for p in resp.json()["data"]["providers"]] == ["google"]

        listed = client.get("/v1/auth/identity", headers=headers).json()["data"]
        assert listed["has_password"] is True

        resp = client.delete("/v1/auth/identity/google", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["data"]["providers"] == []

    def test_unlink_last_method_is_refused(self, client):
        pair = client.post(
            "/v1/auth/identity/google",
            json={"proof_token": "g-gina", "device": {"identifier": "device-1"}},
        ).json()["data"]
        resp = client.delete("/v1/auth/identity/google", headers=_auth(pair["access_token"]))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"


class TestRateLimitAndHeaders:
    def test_login_rate_limit(self, client):
        get_runtime().settings.login_rate_limit_per_minute = 2
        _register(client)
        assert _login(client, password="Secret124").status_code == 401
        assert _login(client, password="Secret124").status_code == 401
        resp = _login(client)
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"

    def test_request_id_is_echoed(self, client):
        resp = client.get("/healthz", headers={"X-Request-ID": "abc-123"})
        assert resp.status_code == 200
        assert resp.headers["X-Request-ID"] == "abc-123"
        assert resp.json()["store"] == "MemoryStore"

    def test_api_responses_are_not_cached(self, client):
        _register(client)
        resp = _login(client)
        assert resp.headers["Cache-Control"] == "no-store"
