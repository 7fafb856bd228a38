"""End-to-end HTTP tests for the authentication routes."""

import asyncio
import uuid

import pytest
from fastapi.testclient import TestClient

from authkeep import app as app_module
from authkeep.service.runtime import get_runtime

PASSWORD = "TestPassword123!"
NEW_PASSWORD = "NewPassword456@"


@pytest.fixture
def client():
    with TestClient(app_module.app) as test_client:
        yield test_client


def _register(client, email="alice@example.com", password=PASSWORD):
    return client.post(
        "/v1/auth/register",
        json={
            "email": email,
            "password": password,
            "first_name": "Alice",
            "last_name": "Liddell",
        },
    )


def _otp_for(email):
    return get_runtime().store.get_account_by_email(email).email_verification_code


def _login(client, email="alice@example.com", password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _tokens(response):
    return response.json()["data"]["tokens"]


def _auth(tokens):
    return {"Authorization": f"Bearer {tokens['access_token']}"}


class TestRegistration:
    def test_register_returns_account_without_tokens(self, client):
        response = _register(client, "Alice@Example.com")
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["verification_required"] is True
        assert data["account"]["email"] == "alice@example.com"
        assert data["account"]["is_email_verified"] is False
        assert "tokens" not in data
        assert "password_hash" not in data["account"]

    def test_duplicate_email_conflicts(self, client):
        _register(client)
        response = _register(client, "ALICE@example.com")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    @pytest.mark.parametrize(
        "field,value",
        [
            ("email", "not-an-email"),
            ("password", "short1!"),
            ("password", "alllowercase1!"),
            ("first_name", "A"),
            ("last_name", "Liddell42"),
        ],
    )
    def test_invalid_input_rejected(self, client, field, value):
        payload = {
            "email": "alice@example.com",
            "password": PASSWORD,
            "first_name": "Alice",
            "last_name": "Liddell",
            field: value,
        }
        response = client.post("/v1/auth/register", json=payload)
        assert response.status_code == 422
        assert get_runtime().store.get_account_by_email("alice@example.com") is None


class TestSessionLifecycle:
    def test_login_and_profile(self, client):
        _register(client)
        response = _login(client)
        assert response.status_code == 200
        tokens = _tokens(response)
        assert tokens["token_type"] == "bearer"

        profile = client.get("/v1/auth/profile", headers=_auth(tokens))
        assert profile.status_code == 200
        assert profile.json()["data"]["full_name"] == "Alice Liddell"
        assert profile.json()["data"]["last_login"] is not None

    def test_wrong_password_is_generic(self, client):
        _register(client)
        wrong = _login(client, password="WrongPassword1!")
        unknown = _login(client, email="nobody@example.com")
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"]["message"] == unknown.json()["error"]["message"]

    def test_refresh_rotation_rejects_reuse(self, client):
        _register(client)
        original = _tokens(_login(client))

        rotated = client.post(
            "/v1/auth/refresh-token", json={"refresh_token": original["refresh_token"]}
        )
        assert rotated.status_code == 200
        new_tokens = _tokens(rotated)
        assert new_tokens["refresh_token"] != original["refresh_token"]

        replay = client.post(
            "/v1/auth/refresh-token", json={"refresh_token": original["refresh_token"]}
        )
        assert replay.status_code == 401

    def test_access_token_cannot_refresh(self, client):
        _register(client)
        tokens = _tokens(_login(client))
        response = client.post(
            "/v1/auth/refresh-token", json={"refresh_token": tokens["access_token"]}
        )
        assert response.status_code == 401

    def test_logout_revokes_refresh_token(self, client):
        _register(client)
        tokens = _tokens(_login(client))

        response = client.post(
            "/v1/auth/logout",
            json={"refresh_token": tokens["refresh_token"]},
            headers=_auth(tokens),
        )
        assert response.status_code == 200
        replay = client.post(
            "/v1/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]}
        )
        assert replay.status_code == 401

    def test_logout_all_reports_count(self, client):
        _register(client)
        first = _tokens(_login(client))
        _login(client)

        response = client.post("/v1/auth/logout-all", headers=_auth(first))
        assert response.status_code == 200
        assert response.json()["data"]["count"] == 2

    def test_protected_route_requires_token(self, client):
        response = client.get("/v1/auth/profile")
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"


class TestVerification:
    def test_otp_verification_signs_in_once(self, client):
        _register(client)
        code = _otp_for("alice@example.com")

        response = client.post(
            "/v1/auth/verify-email-otp", json={"email": "alice@example.com", "code": code}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["account"]["is_email_verified"] is True
        assert data["tokens"]["access_token"]

        again = client.post(
            "/v1/auth/verify-email-otp", json={"email": "alice@example.com", "code": code}
        )
        assert again.status_code == 401

    def test_malformed_otp_is_validation_error(self, client):
        response = client.post(
            "/v1/auth/verify-email-otp", json={"email": "alice@example.com", "code": "12ab56"}
        )
        assert response.status_code == 422

    def test_link_verification(self, client):
        _register(client)
        token = get_runtime().store.get_account_by_email(
            "alice@example.com"
        ).email_verification_token

        first = client.post("/v1/auth/verify-email", json={"token": token})
        second = client.post("/v1/auth/verify-email", json={"token": token})
        assert first.status_code == 200
        assert second.status_code == 200
        assert first.json()["data"]["account"]["id"] == second.json()["data"]["account"]["id"]

    def test_resend_supersedes_previous_link(self, client):
        _register(client)
        store = get_runtime().store
        old_token = store.get_account_by_email("alice@example.com").email_verification_token

        response = client.post(
            "/v1/auth/resend-verification", json={"email": "alice@example.com"}
        )
        assert response.status_code == 200
        new_token = store.get_account_by_email("alice@example.com").email_verification_token
        assert new_token != old_token

        assert client.post("/v1/auth/verify-email", json={"token": old_token}).status_code == 401
        assert client.post("/v1/auth/verify-email", json={"token": new_token}).status_code == 200

    def test_resend_for_unknown_email(self, client):
        response = client.post(
            "/v1/auth/resend-verification", json={"email": "ghost@example.com"}
        )
        assert response.status_code == 404


class TestPasswordFlows:
    def test_change_password_revokes_sessions(self, client):
        _register(client)
        tokens = _tokens(_login(client))

        response = client.post(
            "/v1/auth/change-password",
            json={"current_password": PASSWORD, "new_password": NEW_PASSWORD},
            headers=_auth(tokens),
        )
        assert response.status_code == 200

        replay = client.post(
            "/v1/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]}
        )
        assert replay.status_code == 401
        assert _login(client).status_code == 401
        assert _login(client, password=NEW_PASSWORD).status_code == 200

    def test_change_password_rejects_same_password(self, client):
        _register(client)
        tokens = _tokens(_login(client))
        response = client.post(
            "/v1/auth/change-password",
            json={"current_password": PASSWORD, "new_password": PASSWORD},
            headers=_auth(tokens),
        )
        assert response.status_code == 422

    def test_forgot_and_reset_password(self, client):
        _register(client)
        tokens = _tokens(_login(client))

        forgot = client.post("/v1/auth/forgot-password", json={"email": "alice@example.com"})
        assert forgot.status_code == 200
        reset_token = get_runtime().store.get_account_by_email(
            "alice@example.com"
        ).password_reset_token

        reset = client.post(
            "/v1/auth/reset-password",
            json={"token": reset_token, "new_password": NEW_PASSWORD},
        )
        assert reset.status_code == 200
        assert _login(client, password=NEW_PASSWORD).status_code == 200
        replay = client.post(
            "/v1/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]}
        )
        assert replay.status_code == 401

        # Reset tokens are single use
        again = client.post(
            "/v1/auth/reset-password",
            json={"token": reset_token, "new_password": "AnotherPass789!"},
        )
        assert again.status_code == 401

    def test_forgot_password_unknown_email(self, client):
        response = client.post("/v1/auth/forgot-password", json={"email": "ghost@example.com"})
        assert response.status_code == 404


class TestProfileAndAccounts:
    def test_update_profile(self, client):
        _register(client)
        tokens = _tokens(_login(client))

        response = client.put(
            "/v1/auth/profile",
            json={"first_name": "  Mary   Ann ", "profile_image": "https://img.example.com/me.png"},
            headers=_auth(tokens),
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["first_name"] == "Mary Ann"
        assert data["profile_image"] == "https://img.example.com/me.png"

    def test_bad_profile_image_rejected(self, client):
        _register(client)
        tokens = _tokens(_login(client))
        response = client.put(
            "/v1/auth/profile",
            json={"profile_image": "javascript:alert(1)"},
            headers=_auth(tokens),
        )
        assert response.status_code == 422

    def test_account_lookup_is_owner_only(self, client):
        alice_id = _register(client).json()["data"]["account"]["id"]
        bob_id = _register(client, "bob@example.com").json()["data"]["account"]["id"]
        tokens = _tokens(_login(client))

        assert client.get(f"/v1/accounts/{alice_id}", headers=_auth(tokens)).status_code == 200
        assert client.get(f"/v1/accounts/{bob_id}", headers=_auth(tokens)).status_code == 403

    def test_delete_account(self, client):
        _register(client)
        tokens = _tokens(_login(client))

        refused = client.post(
            "/v1/auth/delete-account",
            json={"current_password": "WrongPassword1!"},
            headers=_auth(tokens),
        )
        assert refused.status_code == 401

        response = client.post(
            "/v1/auth/delete-account",
            json={"current_password": PASSWORD},
            headers=_auth(tokens),
        )
        assert response.status_code == 200
        assert client.get("/v1/auth/profile", headers=_auth(tokens)).status_code == 401
        assert _login(client).status_code == 401


class TestAdminRoutes:
    def _admin_tokens(self, client):
        admin_id = _register(client, "root@example.com").json()["data"]["account"]["id"]
        asyncio.run(get_runtime().auth.set_role(admin_id, "admin"))
        return _tokens(_login(client, "root@example.com"))

    def test_admin_routes_refuse_regular_accounts(self, client):
        bob_id = _register(client, "bob@example.com").json()["data"]["account"]["id"]
        tokens = _tokens(_login(client, "bob@example.com"))

        assert client.get("/v1/admin/accounts", headers=_auth(tokens)).status_code == 403
        response = client.post(
            f"/v1/admin/accounts/{bob_id}/role", json={"role": "admin"}, headers=_auth(tokens)
        )
        assert response.status_code == 403
        assert get_runtime().store.get_account(bob_id).role == "user"

    def test_admin_lists_accounts(self, client):
        _register(client, "bob@example.com")
        tokens = self._admin_tokens(client)

        response = client.get("/v1/admin/accounts", headers=_auth(tokens))
        assert response.status_code == 200
        emails = {item["email"] for item in response.json()["data"]["items"]}
        assert emails == {"bob@example.com", "root@example.com"}

    def test_admin_sets_role(self, client):
        bob_id = _register(client, "bob@example.com").json()["data"]["account"]["id"]
        tokens = self._admin_tokens(client)

        response = client.post(
            f"/v1/admin/accounts/{bob_id}/role", json={"role": "admin"}, headers=_auth(tokens)
        )
        assert response.status_code == 200
        assert response.json()["data"]["role"] == "admin"

        invalid = client.post(
            f"/v1/admin/accounts/{bob_id}/role", json={"role": "root"}, headers=_auth(tokens)
        )
        assert invalid.status_code == 422

    def test_unknown_account_role_change(self, client):
        tokens = self._admin_tokens(client)
        response = client.post(
            "/v1/admin/accounts/missing/role", json={"role": "admin"}, headers=_auth(tokens)
        )
        assert response.status_code == 404


class TestOAuthRoutes:
    def test_start_unconfigured_provider(self, client):
        response = client.get("/v1/auth/oauth/github/start")
        assert response.status_code == 400

    def test_callback_with_unknown_state(self, client):
        response = client.get(
            "/v1/auth/oauth/github/callback", params={"code": "abc", "state": "nope"}
        )
        assert response.status_code == 401


class TestRateLimitsAndHeaders:
    def test_login_rate_limit(self, client):
        _register(client)
        limit = get_runtime().settings.login_rate_limit_per_minute
        for _ in range(limit):
            response = _login(client, password="WrongPassword1!")
            assert response.status_code == 401

        blocked = _login(client)
        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "rate_limited"
        assert int(blocked.headers["Retry-After"]) >= 1

    def test_rate_limit_headers(self, client):
        response = _register(client)
        assert response.headers["X-RateLimit-Limit"] == str(
            get_runtime().settings.register_rate_limit_per_minute
        )
        assert "X-RateLimit-Remaining" in response.headers

    def test_request_id_echoed(self, client):
        request_id = str(uuid.uuid4())
        response = client.get("/healthz", headers={"X-Request-ID": request_id})
        assert response.headers["X-Request-ID"] == request_id

    def test_security_headers(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]

    def test_health(self, client):
        body = client.get("/healthz").json()
        assert body["status"] == "healthy"
        assert body["checks"]["redis"] == {"status": "not_configured"}
        assert body["checks"]["filesystem"]["status"] == "healthy"
