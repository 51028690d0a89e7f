"""
HTTP tests of the identity API (FastAPI TestClient, in-memory store).

End-to-end flows for registration, lockout, password reset, enumeration
resistance and the agent approval gate, plus the response envelope.
"""
import re
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from conftest import PASSWORD, make_settings
from realty_identity.dependencies import build_container
from realty_identity.main import create_app

API = "/api/v1"
USER = {
    "name": "Anjali Menon",
    "email": "a@x.io",
    "phone": "+911234567890",
    "password": PASSWORD,
    "role": "user",
}
AGENT = {
    "name": "Ravi Kumar",
    "email": "agent@x.io",
    "phone": "+919812345678",
    "password": PASSWORD,
    "role": "agent",
    "agent_profile": {
        "license_number": "LIC-1",
        "agency_name": "Coastal Homes",
        "experience_years": 7,
        "commission_rate": "2.50",
    },
}
ADMIN_EMAIL = "root@x.io"
ADMIN_PASSWORD = "Adm1n!pass"


def register(client, body=USER):
    return client.post(f"{API}/auth/register", json=body)


def login(client, email="a@x.io", password=PASSWORD):
    return client.post(f"{API}/auth/login", json={"email": email, "password": password})


def bearer(response) -> dict:
    return {"Authorization": f"Bearer {response.json()['data']['tokens']['access']}"}


def admin_headers(client, container) -> dict:
    client.portal.call(
        container.registration.ensure_admin, "Root", ADMIN_EMAIL, "+910000000001", ADMIN_PASSWORD
    )
    return bearer(login(client, ADMIN_EMAIL, ADMIN_PASSWORD))


# ═══════════════════════════════════════════════════════════════════════════
# END-TO-END FLOWS
# ═══════════════════════════════════════════════════════════════════════════


class TestRegistrationFlow:
    def test_register_verify_and_login(self, client, notifier):
        created = register(client)
        assert created.status_code == 201
        body = created.json()
        assert body["success"] is True
        assert body["data"]["user"]["status"] == "pending_verification"
        assert body["data"]["nextSteps"] == ["verify_email", "verify_phone"]
        assert "password_hash" not in body["data"]["user"]

        verified_email = client.post(
            f"{API}/auth/verify-email", json={"token": notifier.last_email_token("a@x.io")}
        )
        assert verified_email.status_code == 200
        verified_phone = client.post(
            f"{API}/auth/verify-phone",
            json={"phone": "+911234567890", "code": notifier.last_sms_code("+911234567890")},
        )
        assert verified_phone.status_code == 200

        logged_in = login(client)
        assert logged_in.status_code == 200
        user = logged_in.json()["data"]["user"]
        assert user["email_verified"] is True
        assert user["phone_verified"] is True
        assert user["status"] == "active"
        assert logged_in.json()["data"]["tokens"]["token_type"] == "Bearer"
        assert "refresh_jti" not in logged_in.json()["data"]["tokens"]

    def test_single_character_name_is_rejected(self, client):
        response = register(client, {**USER, "name": "A"})

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "IDENTITY_VALIDATION_ERROR"
        assert body["details"]["errors"][0]["field"] == "name"

    def test_duplicate_email(self, client):
        assert register(client).status_code == 201

        second = register(client, {**USER, "phone": "+911111111111"})

        assert second.status_code == 409
        assert second.json()["error"] == "IDENTITY_CONFLICT"
        assert second.json()["details"]["field"] == "email"

    def test_check_email(self, client):
        register(client)

        taken = client.post(f"{API}/auth/check-email", json={"email": "A@X.io"})
        free = client.post(f"{API}/auth/check-email", json={"email": "b@x.io"})

        assert taken.json()["data"]["available"] is False
        assert free.json()["data"]["available"] is True

    def test_spent_verification_token(self, client, notifier):
        register(client)
        token = notifier.last_email_token("a@x.io")
        client.post(f"{API}/auth/verify-email", json={"token": token})

        again = client.post(f"{API}/auth/verify-email", json={"token": token})

        assert again.status_code == 400
        assert again.json()["error"] == "IDENTITY_TOKEN_INVALID"

    def test_resend_after_verification_conflicts(self, client, notifier):
        register(client)
        client.post(f"{API}/auth/verify-email", json={"token": notifier.last_email_token("a@x.io")})

        response = client.post(f"{API}/auth/resend-email-verification", json={"email": "a@x.io"})

        assert response.status_code == 409
        assert response.json()["error"] == "IDENTITY_ALREADY_VERIFIED"


class TestLockoutFlow:
    def test_sixth_attempt_is_locked(self, client):
        register(client)

        statuses = [login(client, password="wrong").status_code for _ in range(6)]

        assert statuses == [401, 401, 401, 401, 401, 423]

        correct = login(client)
        assert correct.status_code == 423
        locked_until = datetime.fromisoformat(correct.json()["details"]["locked_until"])
        expected = datetime.now(timezone.utc) + timedelta(minutes=30)
        assert abs((locked_until - expected).total_seconds()) < 60

    def test_generic_failure_body(self, client):
        register(client)

        unknown = login(client, email="nobody@x.io")
        wrong = login(client, password="wrong")

        assert unknown.json() == wrong.json()
        assert unknown.headers["WWW-Authenticate"] == "Bearer"


class TestSessionFlow:
    def test_password_reset_revokes_sessions(self, client, container, notifier):
        register(client)
        headers = bearer(login(client))
        assert client.get(f"{API}/auth/me", headers=headers).status_code == 200

        requested = client.post(f"{API}/auth/forgot-password", json={"email": "a@x.io"})
        assert requested.status_code == 200
        client.portal.call(container.reset.wait_for_pending)
        reset = client.post(
            f"{API}/auth/reset-password",
            json={
                "token": notifier.last_email_token("a@x.io", path="reset-password"),
                "password": "NewPass1!",
                "confirmPassword": "NewPass1!",
            },
        )
        assert reset.status_code == 200

        me = client.get(f"{API}/auth/me", headers=headers)
        assert me.status_code == 401
        assert me.json()["error"] == "IDENTITY_TOKEN_REVOKED"
        assert login(client, password="NewPass1!").status_code == 200

    def test_forgot_password_does_not_reveal_accounts(self, client, container):
        register(client)

        known = client.post(f"{API}/auth/forgot-password", json={"email": "a@x.io"})
        unknown = client.post(f"{API}/auth/forgot-password", json={"email": "nobody@x.io"})
        client.portal.call(container.reset.wait_for_pending)

        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()

    def test_refresh_and_change_password(self, client):
        register(client)
        session = login(client).json()["data"]["tokens"]

        refreshed = client.post(f"{API}/auth/refresh", json={"refreshToken": session["refresh"]})
        assert refreshed.status_code == 200
        headers = {"Authorization": f"Bearer {refreshed.json()['data']['tokens']['access']}"}

        changed = client.post(
            f"{API}/auth/change-password",
            json={"currentPassword": PASSWORD, "newPassword": "Changed9$"},
            headers=headers,
        )
        assert changed.status_code == 200
        assert client.get(f"{API}/auth/me", headers=headers).status_code == 401
        stale = client.post(f"{API}/auth/refresh", json={"refreshToken": session["refresh"]})
        assert stale.status_code == 401

    def test_access_token_cannot_refresh(self, client):
        register(client)
        tokens = login(client).json()["data"]["tokens"]

        response = client.post(f"{API}/auth/refresh", json={"refreshToken": tokens["access"]})

        assert response.status_code == 401

    @pytest.mark.parametrize(
        "header",
        [None, "Token abc", "Bearer ", "Bearer not-a-jwt"],
    )
    def test_me_requires_valid_bearer(self, client, header):
        headers = {"Authorization": header} if header is not None else {}

        response = client.get(f"{API}/auth/me", headers=headers)

        assert response.status_code == 401
        assert response.json()["success"] is False

    def test_logout(self, client):
        register(client)
        headers = bearer(login(client))

        response = client.post(f"{API}/auth/logout", headers=headers)

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Logged out successfully"}


class TestAgentApprovalGate:
    def test_agent_blocked_until_approved(self, client, container, notifier):
        created = register(client, AGENT)
        assert created.status_code == 201
        assert created.json()["data"]["user"]["status"] == "pending_approval"
        assert created.json()["data"]["nextSteps"][-1] == "await_approval"

        session = login(client, email="agent@x.io")
        assert session.status_code == 200
        assert "await_approval" in session.json()["data"]["advisories"]
        agent_headers = bearer(session)
        denied = client.get(f"{API}/agents/me", headers=agent_headers)
        assert denied.status_code == 403
        assert denied.json()["error"] == "IDENTITY_AUTHZ_ERROR"

        admin = admin_headers(client, container)
        pending = client.get(f"{API}/admin/approvals", headers=admin).json()["data"]["approvals"]
        assert len(pending) == 1
        decided = client.post(
            f"{API}/admin/approvals/{pending[0]['id']}/decision",
            json={"decision": "approve", "notes": "License checked"},
            headers=admin,
        )
        assert decided.status_code == 200
        assert decided.json()["message"] == "Approval approved"

        allowed = client.get(f"{API}/agents/me", headers=agent_headers)
        assert allowed.status_code == 200
        assert allowed.json()["data"]["agent"]["approval_status"] == "approved"

        twice = client.post(
            f"{API}/admin/approvals/{pending[0]['id']}/decision",
            json={"decision": "reject"},
            headers=admin,
        )
        assert twice.status_code == 409

    def test_admin_created_agent_reaches_agent_routes_once_verified(self, client, container, notifier):
        admin = admin_headers(client, container)
        created = client.post(
            f"{API}/admin/agents",
            json={
                "name": "Meera Pillai",
                "email": "meera@x.io",
                "phone": "+919845001122",
                "agent_profile": {
                    "license_number": "KL-RERA-0042",
                    "agency_name": "Backwater Realty",
                    "experience_years": 12,
                },
            },
            headers=admin,
        )
        assert created.status_code == 201
        assert created.json()["data"]["user"]["approval_status"] == "approved"
        assert "password" not in str(created.json()["data"]).lower()

        client.post(f"{API}/auth/verify-email", json={"token": notifier.last_email_token("meera@x.io")})
        client.post(
            f"{API}/auth/verify-phone",
            json={"phone": "+919845001122", "code": notifier.last_sms_code("+919845001122")},
        )
        body = next(m["body"] for m in notifier.emails if m["to"] == "meera@x.io")
        temp_password = re.search(r"Temporary password: (\S+)", body).group(1)
        session = login(client, "meera@x.io", temp_password)

        assert session.status_code == 200
        assert session.json()["data"]["user"]["status"] == "active"
        assert client.get(f"{API}/agents/me", headers=bearer(session)).status_code == 200

    def test_admin_resends_and_resets_verification(self, client, container, notifier, audit):
        user_id = register(client).json()["data"]["user"]["id"]
        admin = admin_headers(client, container)

        resent = client.post(f"{API}/admin/identities/{user_id}/send-verification-sms", headers=admin)
        assert resent.status_code == 200
        assert resent.json()["data"]["notification"]["sent"] is True
        client.post(
            f"{API}/auth/verify-phone",
            json={"phone": "+911234567890", "code": notifier.last_sms_code("+911234567890")},
        )
        again = client.post(f"{API}/admin/identities/{user_id}/send-verification-sms", headers=admin)
        assert again.status_code == 409

        reset = client.post(
            f"{API}/admin/identities/{user_id}/reset-verification",
            json={"reset_email": False, "reset_phone": True},
            headers=admin,
        )
        assert reset.status_code == 200
        assert reset.json()["data"]["user"]["phone_verified"] is False
        nothing = client.post(
            f"{API}/admin/identities/{user_id}/reset-verification",
            json={"reset_email": False, "reset_phone": False},
            headers=admin,
        )
        assert nothing.status_code == 400
        assert client.post(f"{API}/admin/identities/999/reset-verification", headers=admin).status_code == 404
        assert audit.of_type("admin_reset_verification")

    def test_user_cannot_reach_admin_or_agent_routes(self, client):
        register(client)
        headers = bearer(login(client))

        assert client.get(f"{API}/admin/approvals", headers=headers).status_code == 403
        assert client.get(f"{API}/agents/me", headers=headers).status_code == 403

    def test_admin_suspends_and_deletes(self, client, container, audit):
        user_id = register(client).json()["data"]["user"]["id"]
        user_headers = bearer(login(client))
        admin = admin_headers(client, container)

        suspended = client.post(f"{API}/admin/identities/{user_id}/suspend", headers=admin)
        assert suspended.json()["data"]["user"]["status"] == "suspended"
        assert client.get(f"{API}/auth/me", headers=user_headers).status_code == 401

        reinstated = client.post(f"{API}/admin/identities/{user_id}/reinstate", headers=admin)
        assert reinstated.status_code == 200

        deleted = client.delete(f"{API}/admin/identities/{user_id}", headers=admin)
        assert deleted.status_code == 200
        assert client.get(f"{API}/admin/identities/{user_id}", headers=admin).json()["data"]["user"]["status"] == "deleted"
        assert register(client).status_code == 201
        assert audit.of_type("user_suspend") and audit.of_type("user_delete")


# ═══════════════════════════════════════════════════════════════════════════
# ENVELOPE, RATE LIMITS, HEALTH
# ═══════════════════════════════════════════════════════════════════════════


class TestRateLimiting:
    @pytest.fixture
    def limited_client(self, notifier, audit):
        container = build_container(make_settings(rate_limit_enabled=True), notifier=notifier, audit=audit)
        with TestClient(create_app(container.settings, container)) as test_client:
            yield test_client

    def test_verify_class_allows_three_per_window(self, limited_client, audit):
        register(limited_client)

        statuses = [
            limited_client.post(
                f"{API}/auth/resend-phone-verification", json={"phone": "+911234567890"}
            ).status_code
            for _ in range(4)
        ]

        assert statuses == [200, 200, 200, 429]
        last = limited_client.post(
            f"{API}/auth/resend-phone-verification", json={"phone": "+911234567890"}
        )
        assert last.headers["Retry-After"] == "300"
        assert last.json()["retryAfter"] == "5 minutes"
        assert last.json()["error"] == "IDENTITY_RATE_LIMITED"
        assert audit.of_type("request_failed")[-1].details["status"] == 429

    def test_forwarded_header_from_untrusted_peer_is_ignored(self, limited_client):
        for _ in range(10):
            limited_client.post(f"{API}/auth/check-email", json={"email": "a@x.io"})

        spoofed = [
            limited_client.post(
                f"{API}/auth/check-email",
                json={"email": "a@x.io"},
                headers={"X-Forwarded-For": f"10.0.0.{i}"},
            ).status_code
            for i in range(3)
        ]

        assert spoofed == [429, 429, 429]

    def test_rotating_forwarded_header_cannot_guess_phone_code(self, limited_client, notifier):
        register(limited_client)
        code = notifier.last_sms_code("+911234567890")

        statuses = [
            limited_client.post(
                f"{API}/auth/verify-phone",
                json={"phone": "+911234567890", "code": f"{(int(code) + i) % 10 ** 6:06d}"},
                headers={"X-Forwarded-For": f"10.0.0.{i}"},
            ).status_code
            for i in range(1, 13)
        ]

        assert statuses == [400] * 9 + [429] * 3

    @pytest.fixture
    def proxied_client(self, notifier, audit):
        settings = make_settings(rate_limit_enabled=True, trusted_proxies=["testclient"])
        container = build_container(settings, notifier=notifier, audit=audit)
        with TestClient(create_app(container.settings, container)) as test_client:
            yield test_client

    def test_trusted_proxy_forwards_client_ip(self, proxied_client, audit):
        first = {"X-Forwarded-For": "203.0.113.7"}
        for _ in range(10):
            proxied_client.post(f"{API}/auth/check-email", json={"email": "a@x.io"}, headers=first)

        blocked = proxied_client.post(f"{API}/auth/check-email", json={"email": "a@x.io"}, headers=first)
        other = proxied_client.post(
            f"{API}/auth/check-email",
            json={"email": "a@x.io"},
            headers={"X-Forwarded-For": "203.0.113.8"},
        )

        assert blocked.status_code == 429
        assert other.status_code == 200
        assert audit.of_type("request_failed")[-1].ip == "203.0.113.7"

    def test_phone_code_attempts_limited_per_phone_across_ips(self, proxied_client, notifier):
        register(proxied_client)
        code = notifier.last_sms_code("+911234567890")

        wrong = [
            proxied_client.post(
                f"{API}/auth/verify-phone",
                json={"phone": "+911234567890", "code": f"{(int(code) + i) % 10 ** 6:06d}"},
                headers={"X-Forwarded-For": f"10.0.0.{i}"},
            ).status_code
            for i in range(1, 11)
        ]
        correct = proxied_client.post(
            f"{API}/auth/verify-phone",
            json={"phone": "+911234567890", "code": code},
            headers={"X-Forwarded-For": "10.0.1.1"},
        )

        assert wrong == [400] * 10
        assert correct.status_code == 429

    def test_login_attempts_limited_per_email_across_ips(self, proxied_client):
        register(proxied_client)

        statuses = [
            proxied_client.post(
                f"{API}/auth/login",
                json={"email": "a@x.io", "password": "Wrong1!xx"},
                headers={"X-Forwarded-For": f"10.0.0.{i}"},
            ).status_code
            for i in range(11)
        ]

        assert statuses == [401] * 5 + [423] * 5 + [429]


class TestServiceEndpoints:
    def test_health_in_memory_mode(self, client):
        response = client.get(f"{API}/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "store": "memory", "service": "identity"}

    def test_root_lists_api(self, client):
        assert client.get("/").json()["api"]["v1"]["login"] == "/api/v1/auth/login"
