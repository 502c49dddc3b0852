"""HTTP boundary: error envelope, bearer dependency, and auth routes."""

import base64
import json
from typing import Optional

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient

from musicez.api.deps import get_optional_identity
from musicez.app import create_app
from musicez.config import Settings
from musicez.service.errors import SessionLimitExceeded
from musicez.service.runtime import Runtime
from musicez.storage.memory import MemoryTTLStore
from musicez.storage.models import Identity

SECRET = "route-test-secret-with-enough-length-1234"


@pytest.fixture
def runtime(clock):
    settings = Settings(
        jwt_secret=SECRET,
        use_memory_store=True,
        test_mode=True,
        session_cleanup_enabled=False,
        max_sessions_per_user=2,
    )
    return Runtime(settings, store=MemoryTTLStore(now=clock), now=clock)


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime))


def _login(client, runtime, identity):
    return client.portal.call(runtime.auth.login, identity)


class TestErrorEnvelope:
    def test_missing_bearer_is_401_envelope(self, client):
        response = client.get("/auth/me")

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "invalid_token"
        assert body["error"]["details"] == {"reason": "missing"}
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert "X-Request-ID" in response.headers

    def test_malformed_refresh_token_is_400(self, client):
        response = client.post("/auth/refresh", json={"refresh_token": "nope"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_refresh_token_format"

    def test_unknown_refresh_token_is_401(self, client):
        response = client.post(
            "/auth/refresh", json={"refresh_token": "6f1c2c8e-3b5a-4d2e-9f1a-0c2b3d4e5f60"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_refresh_token"

    def test_non_ascii_signature_is_401(self, client):
        def seg(data):
            return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")

        forged = f"{seg({'alg': 'HS256'})}.{seg({'sub': 'x'})}.sig\u00e9"

        response = client.get("/auth/me", headers={"Authorization": f"Bearer {forged}".encode()})

        assert response.status_code == 401
        assert response.json()["error"]["details"] == {"reason": "malformed"}

    def test_request_id_is_echoed(self, client):
        response = client.get("/auth/me", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"


class TestAuthRoutes:
    def test_me_and_sessions(self, client, runtime, identity):
        with client:
            pair = _login(client, runtime, identity)
            headers = {"Authorization": f"Bearer {pair.access_token}"}

            me = client.get("/auth/me", headers=headers)
            sessions = client.get("/auth/sessions", headers=headers)

        assert me.json()["data"]["user"]["id"] == identity.id
        listed = sessions.json()["data"]["sessions"]
        assert len(listed) == 1
        assert "session_id" not in listed[0]

    def test_refresh_route_returns_tokens(self, client, runtime, identity):
        with client:
            pair = _login(client, runtime, identity)

            response = client.post("/auth/refresh", json={"refresh_token": pair.refresh_token})
            replay = client.post("/auth/refresh", json={"refresh_token": pair.refresh_token})

        tokens = response.json()["data"]["tokens"]
        assert response.status_code == 200
        assert tokens["refresh_token"] != pair.refresh_token
        assert tokens["token_type"] == "bearer"
        assert replay.status_code == 401

    def test_session_limit_is_409(self, client, runtime, identity):
        with client:
            _login(client, runtime, identity)
            _login(client, runtime, identity)
            with pytest.raises(SessionLimitExceeded) as exc_info:
                _login(client, runtime, identity)

        assert exc_info.value.status_code == 409

    def test_logout_and_logout_all(self, client, runtime, identity):
        with client:
            first = _login(client, runtime, identity)
            second = _login(client, runtime, identity)

            logout = client.post("/auth/logout", json={"refresh_token": first.refresh_token})
            logout_all = client.post(
                "/auth/logout-all", headers={"Authorization": f"Bearer {second.access_token}"}
            )

        assert logout.json()["data"] == {"revoked": True}
        assert logout_all.json()["data"] == {"revoked": 1}


class TestOptionalIdentity:
    @pytest.fixture
    def client(self, runtime):
        app = create_app(runtime)

        @app.get("/catalog/featured")
        async def featured(identity: Optional[Identity] = Depends(get_optional_identity)):
            return {"user_id": identity.id if identity else None}

        return TestClient(app)

    def test_anonymous_request_passes(self, client):
        response = client.get("/catalog/featured")

        assert response.status_code == 200
        assert response.json() == {"user_id": None}

    @pytest.mark.parametrize(
        "authorization",
        [b"Bearer not-a-jwt", "Bearer a.b.sig\u00e9".encode(), b"Basic dXNlcjpwYXNz", b"Bearer "],
    )
    def test_rejected_token_is_anonymous(self, client, authorization):
        response = client.get("/catalog/featured", headers={"Authorization": authorization})

        assert response.status_code == 200
        assert response.json() == {"user_id": None}

    def test_valid_token_resolves_identity(self, client, runtime, identity):
        with client:
            pair = _login(client, runtime, identity)
            response = client.get(
                "/catalog/featured", headers={"Authorization": f"Bearer {pair.access_token}"}
            )

        assert response.json() == {"user_id": identity.id}
