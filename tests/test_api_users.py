"""
tests/test_api_users.py -- Integration tests for users, invitations and
manager password routes.

Coverage:
  - Role gates: admin-only routes answer 401 anonymous, 403 for managers
  - Invitation lifecycle over HTTP: create -> email link -> validate ->
    accept -> validate again fails; the new account can log in
  - Duplicate and existing-email invitations answer 409
  - Resend rotates the emailed token; the old link stops working
  - Mail failure after the invitation was stored answers 502 email_failed
  - PATCH /users/{id}: deactivation, self-deactivation and last-admin guards
  - Manager password change: wrong code leaves the password alone,
    right code commits it

Fixtures used (from conftest.py):
  - api_client: ApiEnv with a FakeMailer and seeded principals
"""

from __future__ import annotations

import re

import pytest

from auth.models import SOURCE_USERS
from conftest import ApiEnv, make_manager, session_token


def _invite(env: ApiEnv, email: str, first: str = "John", last: str = "Smith", role: str = "manager"):
    env.as_admin()
    return env.client.post(
        "/api/v1/invites",
        json={"email": email, "first_name": first, "last_name": last, "role": role},
    )


class TestRoleGates:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", "/api/v1/users"),
            ("patch", "/api/v1/users/1"),
            ("post", "/api/v1/invites"),
            ("get", "/api/v1/invites"),
            ("post", "/api/v1/invites/1/resend"),
            ("post", "/api/v1/managers/password/request"),
        ],
    )
    def test_anonymous_and_manager(self, api_client: ApiEnv, method: str, path: str) -> None:
        api_client.anonymous()
        resp = getattr(api_client.client, method)(path)
        assert resp.status_code == 401, f"{method.upper()} {path} anonymous: {resp.status_code}"
        api_client.as_manager()
        resp = getattr(api_client.client, method)(path)
        assert resp.status_code in (400, 403), f"{method.upper()} {path} as manager: {resp.status_code}"
        if resp.status_code == 403:
            assert resp.json()["error"]["code"] == "forbidden"

    def test_manager_gets_403_on_list(self, api_client: ApiEnv) -> None:
        api_client.as_manager()
        resp = api_client.client.get("/api/v1/users")
        assert resp.status_code == 403


class TestInvitationLifecycle:
    def test_end_to_end(self, api_client: ApiEnv) -> None:
        resp = _invite(api_client, "a@x.com")
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert re.fullmatch(r"johnsmith\d{3}", data["username"])
        assert data["email_sent"] is True
        to, _subject, body = api_client.mailer.messages[-1]
        assert to == "a@x.com"
        assert "/#/accept-invite?token=" in body
        token = api_client.mailer.last_invite_token()
        assert token not in resp.text, "The raw token must only travel in the email"

        api_client.anonymous()
        resp = api_client.client.get("/api/v1/invites/validate", params={"token": token})
        assert resp.status_code == 200, resp.text
        info = resp.json()
        assert (info["email"], info["first_name"], info["last_name"], info["role"]) == ("a@x.com", "John", "Smith", "manager")

        resp = api_client.client.post(
            "/api/v1/invites/accept",
            json={"token": token, "password": "longenough1", "confirm_password": "longenough1"},
        )
        assert resp.status_code == 201, resp.text
        username = resp.json()["username"]
        assert username == data["username"]

        resp = api_client.client.get("/api/v1/invites/validate", params={"token": token})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_or_expired"

        api_client.anonymous()
        resp = api_client.client.post("/api/v1/auth/login", json={"username": username, "password": "longenough1"})
        assert resp.status_code == 200
        assert resp.json()["role"] == "manager"

    def test_existing_email_conflict(self, api_client: ApiEnv) -> None:
        resp = _invite(api_client, "manager@example.com")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "already_exists"

    def test_admin_email_conflict(self, api_client: ApiEnv) -> None:
        resp = _invite(api_client, "admin@example.com")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "already_exists"

    def test_duplicate_pending(self, api_client: ApiEnv) -> None:
        assert _invite(api_client, "dup@x.com").status_code == 201
        resp = _invite(api_client, "DUP@x.com")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "duplicate_pending"

    def test_invalid_role(self, api_client: ApiEnv) -> None:
        resp = _invite(api_client, "r@x.com", role="superuser")
        assert resp.status_code == 400

    def test_accept_password_mismatch(self, api_client: ApiEnv) -> None:
        _invite(api_client, "mm@x.com", first="Mary", last="Major")
        token = api_client.mailer.last_invite_token()
        api_client.anonymous()
        resp = api_client.client.post(
            "/api/v1/invites/accept",
            json={"token": token, "password": "longenough1", "confirm_password": "different1"},
        )
        assert resp.status_code == 400
        # The invitation is untouched and still validates.
        assert api_client.client.get("/api/v1/invites/validate", params={"token": token}).status_code == 200

    def test_accept_short_password(self, api_client: ApiEnv) -> None:
        _invite(api_client, "sp@x.com", first="Sam", last="Park")
        token = api_client.mailer.last_invite_token()
        api_client.anonymous()
        resp = api_client.client.post("/api/v1/invites/accept", json={"token": token, "password": "short"})
        assert resp.status_code == 400

    def test_resend_rotates_token(self, api_client: ApiEnv) -> None:
        resp = _invite(api_client, "rs@x.com", first="Rita", last="Sand")
        invite_id = resp.json()["invite_id"]
        old_token = api_client.mailer.last_invite_token()

        resp = api_client.client.post(f"/api/v1/invites/{invite_id}/resend")
        assert resp.status_code == 200, resp.text
        new_token = api_client.mailer.last_invite_token()
        assert new_token != old_token

        api_client.anonymous()
        assert api_client.client.get("/api/v1/invites/validate", params={"token": old_token}).status_code == 400
        assert api_client.client.get("/api/v1/invites/validate", params={"token": new_token}).status_code == 200

    def test_resend_unknown(self, api_client: ApiEnv) -> None:
        api_client.as_admin()
        resp = api_client.client.post("/api/v1/invites/99999/resend")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "not_found_or_used"

    def test_mail_failure_is_502_and_invite_kept(self, api_client: ApiEnv) -> None:
        api_client.mailer.fail = True
        try:
            resp = _invite(api_client, "mf@x.com", first="Mail", last="Fail")
        finally:
            api_client.mailer.fail = False
        assert resp.status_code == 502
        assert resp.json()["error"]["code"] == "email_failed"

        listing = api_client.client.get("/api/v1/invites").json()
        assert any(inv["email"] == "mf@x.com" and inv["status"] == "active" for inv in listing)

    def test_list_invites_has_status_and_no_hash(self, api_client: ApiEnv) -> None:
        api_client.as_admin()
        resp = api_client.client.get("/api/v1/invites")
        assert resp.status_code == 200
        listing = resp.json()
        assert listing, "Earlier tests created invitations"
        assert {inv["status"] for inv in listing} <= {"active", "expired", "used"}
        assert all("token_hash" not in inv for inv in listing)
        assert any(inv["email"] == "a@x.com" and inv["status"] == "used" for inv in listing)


class TestUserAdministration:
    def test_list_users_without_hashes(self, api_client: ApiEnv) -> None:
        api_client.as_admin()
        resp = api_client.client.get("/api/v1/users")
        assert resp.status_code == 200
        users = resp.json()
        assert any(u["username"] == "managerone" for u in users)
        assert all("password_hash" not in u for u in users)

    def test_deactivate_and_reactivate(self, api_client: ApiEnv) -> None:
        user = make_manager(api_client.credentials, "toggled", "toggled@example.com", "toggledpass1")
        api_client.as_admin()
        resp = api_client.client.patch(f"/api/v1/users/{user.id}", json={"is_active": False})
        assert resp.status_code == 200, resp.text
        assert resp.json()["is_active"] is False

        api_client.anonymous()
        login = api_client.client.post("/api/v1/auth/login", json={"username": "toggled", "password": "toggledpass1"})
        assert login.status_code == 401

        api_client.as_admin()
        resp = api_client.client.patch(f"/api/v1/users/{user.id}", json={"is_active": True})
        assert resp.json()["is_active"] is True

    def test_is_active_must_be_boolean(self, api_client: ApiEnv) -> None:
        api_client.as_admin()
        resp = api_client.client.patch(f"/api/v1/users/{api_client.manager_id}", json={"is_active": "no"})
        assert resp.status_code == 400

    def test_unknown_user(self, api_client: ApiEnv) -> None:
        api_client.as_admin()
        resp = api_client.client.patch("/api/v1/users/99999", json={"is_active": False})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_cannot_deactivate_self(self, api_client: ApiEnv) -> None:
        boss = make_manager(api_client.credentials, "bossuser", "boss@example.com", "bosspass11", role="admin")
        api_client.login_as(session_token("bossuser", "admin", SOURCE_USERS, boss.id, "boss@example.com"))
        resp = api_client.client.patch(f"/api/v1/users/{boss.id}", json={"is_active": False})
        assert resp.status_code == 403
        assert api_client.credentials.get_user_by_id(boss.id).is_active is True

    def test_last_admin_guard(self, api_client: ApiEnv, monkeypatch) -> None:
        boss = api_client.credentials.get_user_by_username("bossuser")
        monkeypatch.setattr(api_client.credentials, "count_active_admins", lambda: 1)
        api_client.as_admin()
        resp = api_client.client.patch(f"/api/v1/users/{boss.id}", json={"is_active": False})
        assert resp.status_code == 403
        assert "last active admin" in resp.json()["error"]["message"]


class TestManagerPassword:
    URL_REQUEST = "/api/v1/managers/password/request"
    URL_CONFIRM = "/api/v1/managers/password/confirm"

    def test_wrong_then_right_code(self, api_client: ApiEnv) -> None:
        before = api_client.credentials.get_user_by_email("manager@example.com").password_hash
        api_client.as_admin()
        resp = api_client.client.post(
            self.URL_REQUEST,
            json={"manager_email": "manager@example.com", "new_password": "freshpass12", "confirm_password": "freshpass12"},
        )
        assert resp.status_code == 200, resp.text
        to, _, _ = api_client.mailer.messages[-1]
        assert to == "admin@example.com", "The code goes to the requesting admin, not the manager"
        code = api_client.mailer.last_code()

        wrong = "100000" if code != "100000" else "100001"
        resp = api_client.client.post(self.URL_CONFIRM, json={"manager_email": "manager@example.com", "code": wrong})
        assert resp.status_code == 400
        assert api_client.credentials.get_user_by_email("manager@example.com").password_hash == before

        resp = api_client.client.post(self.URL_CONFIRM, json={"manager_email": "manager@example.com", "code": code})
        assert resp.status_code == 200, resp.text
        api_client.anonymous()
        login = api_client.client.post("/api/v1/auth/login", json={"username": "managerone", "password": "freshpass12"})
        assert login.status_code == 200

    def test_unknown_manager(self, api_client: ApiEnv) -> None:
        api_client.as_admin()
        resp = api_client.client.post(
            self.URL_REQUEST,
            json={"manager_email": "ghost@example.com", "new_password": "freshpass12"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "not_found_or_used"
