"""Integration tests for the HTTP authentication flow.

Covers:
- Sign-up with verification link
- Account verification and session minting
- Sign-in for verified users only
- Forgot / update password
- Session gate on protected routes
- Error envelope on every failure
"""

import pytest
from fastapi.testclient import TestClient

from usergate import app as app_module
from usergate.service.runtime import get_runtime


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def test_user_email():
    return "testuser@example.com"


@pytest.fixture
def test_user_password():
    return "TestPassword123!"


def _signup(client, email, password, **extra):
    body = {
        "name": "Test User",
        "email": email,
        "password": password,
        "password_confirmation": password,
    }
    body.update(extra)
    return client.post("/v1/auth/signup", json=body)


def _last_link_token(topic):
    messages = get_runtime().cache.messages(topic)
    assert messages, f"no message published on {topic}"
    return messages[-1]["message"].rsplit("token=", 1)[1]


@pytest.fixture
def verified_user(client, test_user_email, test_user_password):
    assert _signup(client, test_user_email, test_user_password).status_code == 201
    token = _last_link_token("user_verification")
    response = client.get("/v1/auth/verify-account", params={"token": token})
    assert response.status_code == 200
    return response.json()["data"]


class TestSignupFlow:
    """Tests for user registration."""

    def test_signup_creates_unverified_user(self, client, test_user_email, test_user_password):
        response = _signup(client, test_user_email, test_user_password)

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "ok"
        assert data["data"]["email"] == test_user_email
        assert data["data"]["is_verified"] is False
        assert data["data"]["role"] == "Customer"
        assert "password_hash" not in data["data"]

    def test_signup_password_mismatch(self, client, test_user_email, test_user_password):
        response = _signup(
            client,
            test_user_email,
            test_user_password,
            password_confirmation="DifferentPassword1!",
        )

        assert response.status_code == 422
        assert response.json()["error"]["message"] == "Password not match"
        assert get_runtime().store.get_user_by_email(test_user_email) is None

    def test_signup_rejects_duplicate_email(self, client, test_user_email, test_user_password):
        _signup(client, test_user_email, test_user_password)

        response = _signup(client, test_user_email.upper(), test_user_password)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_signup_validates_email_format(self, client, test_user_password):
        response = _signup(client, "invalid-email", test_user_password)

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"

    def test_signup_validates_password_length(self, client, test_user_email):
        response = _signup(client, test_user_email, "short")

        assert response.status_code == 422


class TestVerifyAccount:
    def test_verify_returns_session_token(self, client, verified_user):
        assert verified_user["user"]["is_verified"] is True
        assert verified_user["access_token"]
        assert verified_user["expires_in"] == 23 * 3600

    def test_verify_token_replay_is_rejected(self, client, test_user_email, test_user_password):
        _signup(client, test_user_email, test_user_password)
        token = _last_link_token("user_verification")
        assert client.get("/v1/auth/verify-account", params={"token": token}).status_code == 200

        response = client.get("/v1/auth/verify-account", params={"token": token})

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Token expired or Invalid"

    def test_verify_missing_token(self, client):
        response = client.get("/v1/auth/verify-account")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "missing or invalid token"

    def test_verify_unknown_token(self, client):
        response = client.get("/v1/auth/verify-account", params={"token": "nope"})

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestSignInFlow:
    def test_unverified_sign_in_is_not_found(self, client, test_user_email, test_user_password):
        _signup(client, test_user_email, test_user_password)

        response = client.post(
            "/v1/auth/signin",
            json={"email": test_user_email, "password": test_user_password},
        )

        assert response.status_code == 404
        assert response.json()["error"]["message"] == "User not found"

    def test_sign_in_after_verification(
        self, client, verified_user, test_user_email, test_user_password
    ):
        response = client.post(
            "/v1/auth/signin",
            json={"email": test_user_email, "password": test_user_password},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token_type"] == "bearer"
        assert data["user"]["email"] == test_user_email

    def test_sign_in_wrong_password(self, client, verified_user, test_user_email):
        response = client.post(
            "/v1/auth/signin",
            json={"email": test_user_email, "password": "WrongPassword1!"},
        )

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "password is incorrect"


class TestPasswordReset:
    def test_reset_flow(self, client, verified_user, test_user_email):
        response = client.post("/v1/auth/forgot-password", json={"email": test_user_email})
        assert response.status_code == 200
        token = _last_link_token("reset_password")

        response = client.post(
            "/v1/auth/update-password",
            params={"token": token},
            json={
                "password_new": "BrandNewPassword1!",
                "password_confirmation": "BrandNewPassword1!",
            },
        )
        assert response.status_code == 200
        assert response.json()["data"]["message"] == "Password updated successfully"

        response = client.post(
            "/v1/auth/signin",
            json={"email": test_user_email, "password": "BrandNewPassword1!"},
        )
        assert response.status_code == 200

    def test_forgot_password_unknown_email(self, client):
        response = client.post(
            "/v1/auth/forgot-password", json={"email": "nobody@example.com"}
        )

        assert response.status_code == 404

    def test_update_password_confirmation_mismatch(self, client, verified_user, test_user_email):
        client.post("/v1/auth/forgot-password", json={"email": test_user_email})
        token = _last_link_token("reset_password")

        response = client.post(
            "/v1/auth/update-password",
            params={"token": token},
            json={
                "password_new": "BrandNewPassword1!",
                "password_confirmation": "SomethingElse1!",
            },
        )

        assert response.status_code == 422
        assert (
            response.json()["error"]["message"]
            == "new password and confirm password does not match"
        )

    def test_update_password_with_verification_token(
        self, client, test_user_email, test_user_password
    ):
        _signup(client, test_user_email, test_user_password)
        token = _last_link_token("user_verification")

        response = client.post(
            "/v1/auth/update-password",
            params={"token": token},
            json={
                "password_new": "BrandNewPassword1!",
                "password_confirmation": "BrandNewPassword1!",
            },
        )

        assert response.status_code == 401

    def test_update_password_missing_token(self, client):
        response = client.post(
            "/v1/auth/update-password",
            json={
                "password_new": "BrandNewPassword1!",
                "password_confirmation": "BrandNewPassword1!",
            },
        )

        assert response.status_code == 401


class TestSessionGate:
    def test_admin_check_with_session(self, client, verified_user):
        response = client.get(
            "/v1/admin/check",
            headers={"Authorization": f"Bearer {verified_user['access_token']}"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["message"] == "OK"

    def test_admin_check_without_header(self, client):
        response = client.get("/v1/admin/check")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Missing or Invalid Token"

    def test_admin_check_with_unknown_token(self, client):
        response = client.get(
            "/v1/admin/check", headers={"Authorization": "Bearer not-a-session"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_reset_token_is_not_a_bearer_credential(self, client, verified_user, test_user_email):
        client.post("/v1/auth/forgot-password", json={"email": test_user_email})
        token = _last_link_token("reset_password")

        response = client.get(
            "/v1/admin/check", headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 401


class TestAppPlumbing:
    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    def test_error_envelope_uses_request_id(self, client):
        response = client.get(
            "/v1/admin/check", headers={"X-Request-ID": "req-456"}
        )

        assert response.json()["request_id"] == "req-456"

    def test_healthz_reports_memory_backends(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "MemoryStore"
        assert body["checks"]["cache"]["type"] == "MemoryCache"

    def test_security_headers(self, client):
        response = client.get("/healthz")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]
