"""
tests/test_api_auth.py -- Integration tests for the /api/v1/auth endpoints.

Covers:
  - login sets both httpOnly cookies (refresh cookie scoped to /api/v1/auth)
  - credential codes on /me: MISSING, MALFORMED, valid cookie, valid Bearer header
  - refresh rotates the cookie; a replayed refresh cookie is 401 and clears cookies
  - logout / logout-all revoke sessions
  - send-verification, register, reset-password and change-password flows
  - error envelope for lockout (423), cooldown (429), delivery failure (502)
  - 422 password policy without echoing the password
  - admin user management guards

All tests in this module share one database, so each test uses its own emails.
"""

from __future__ import annotations

import pytest

from auth.tokens import REFRESH_COOKIE

AUTH = "/api/v1/auth"


def _login(client, email: str, password: str = "Secreto123"):
    return client.post(f"{AUTH}/login", json={"email": email, "password": password})


def _bearer(client, email: str, password: str = "Secreto123") -> dict:
    """Log in and return an Authorization header; leaves the cookie jar empty."""
    resp = _login(client, email, password)
    assert resp.status_code == 200, resp.text
    client.cookies.clear()
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


def _error_code(resp) -> str:
    return resp.json()["error"]["code"]


class TestLogin:
    def test_login_sets_cookies(self, api_client) -> None:
        """Login sets both httpOnly cookies on their paths and keeps the refresh secret out of the body."""
        client, service, _ = api_client
        service.create_user("login1@tienda.pe", "Secreto123", "vendedor")

        resp = _login(client, "LOGIN1@tienda.pe")
        assert resp.status_code == 200
        body = resp.json()
        assert body["token_type"] == "bearer"
        assert body["expires_in"] == 900
        assert body["user"]["email"] == "login1@tienda.pe"
        assert "refresh_token" not in body
        assert resp.headers["cache-control"] == "no-store"

        set_cookies = [c.lower() for c in resp.headers.get_list("set-cookie")]
        access = next(c for c in set_cookies if c.startswith("access_token="))
        refresh = next(c for c in set_cookies if c.startswith("refresh_token="))
        assert "httponly" in access and "path=/" in access
        assert "httponly" in refresh and "path=/api/v1/auth" in refresh
        assert "samesite=strict" in refresh

    @pytest.mark.parametrize("email", ["login2@tienda.pe", "nadie@tienda.pe"])
    def test_bad_credentials_are_generic(self, api_client, email) -> None:
        """Unknown email and wrong password return the same 401 body."""
        client, service, _ = api_client
        if service.get_user_by_email("login2@tienda.pe") is None:
            service.create_user("login2@tienda.pe", "Secreto123", "vendedor")
        resp = _login(client, email, "Incorrecta1")
        assert resp.status_code == 401
        assert _error_code(resp) == "INVALID_CREDENTIALS"

    def test_lockout_returns_423_with_remaining_seconds(self, api_client) -> None:
        """The fifth failure locks the account; the next login is 423 with remaining seconds."""
        client, service, _ = api_client
        service.create_user("login3@tienda.pe", "Secreto123", "vendedor")
        for _ in range(5):
            assert _login(client, "login3@tienda.pe", "Incorrecta1").status_code == 401

        resp = _login(client, "login3@tienda.pe")
        assert resp.status_code == 423
        error = resp.json()["error"]
        assert error["code"] == "ACCOUNT_LOCKED"
        assert 1790 < error["detail"]["remaining_seconds"] <= 1800

    def test_invalid_email_is_422(self, api_client) -> None:
        """A malformed email is rejected by validation before the service runs."""
        client, _, _ = api_client
        resp = _login(client, "no-es-un-correo")
        assert resp.status_code == 422
        assert _error_code(resp) == "validation_error"


class TestCredentialCodes:
    def test_me_without_credential(self, api_client) -> None:
        """GET /me with no cookie and no header is CREDENTIAL_MISSING."""
        client, _, _ = api_client
        resp = client.get(f"{AUTH}/me")
        assert resp.status_code == 401
        assert _error_code(resp) == "CREDENTIAL_MISSING"

    def test_me_with_malformed_bearer(self, api_client) -> None:
        """A Bearer value that is not a JWT is CREDENTIAL_MALFORMED."""
        client, _, _ = api_client
        resp = client.get(f"{AUTH}/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401
        assert _error_code(resp) == "CREDENTIAL_MALFORMED"

    def test_me_with_forged_token(self, api_client) -> None:
        """A token shaped like a JWT that does not verify is CREDENTIAL_INVALID."""
        client, _, _ = api_client
        resp = client.get(f"{AUTH}/me", headers={"Authorization": "Bearer aaa.bbb.ccc"})
        assert resp.status_code == 401
        assert _error_code(resp) == "CREDENTIAL_INVALID"

    def test_me_with_cookie_and_with_header(self, api_client) -> None:
        """GET /me accepts the access cookie and the Bearer header."""
        client, service, _ = api_client
        service.create_user("me1@tienda.pe", "Secreto123", "auditor", full_name="Luis Paz")

        assert _login(client, "me1@tienda.pe").status_code == 200
        by_cookie = client.get(f"{AUTH}/me")
        assert by_cookie.status_code == 200
        assert by_cookie.json()["email"] == "me1@tienda.pe"
        assert by_cookie.json()["is_admin"] is False
        assert by_cookie.json()["full_name"] == "Luis Paz"

        headers = _bearer(client, "me1@tienda.pe")
        assert client.get(f"{AUTH}/me", headers=headers).json()["role"] == "auditor"

    def test_deactivated_user_token_is_invalid(self, api_client) -> None:
        """A valid token for a deactivated account is CREDENTIAL_INVALID."""
        client, service, _ = api_client
        user = service.create_user("me2@tienda.pe", "Secreto123", "vendedor")
        headers = _bearer(client, "me2@tienda.pe")
        service.update_user(user.id, is_active=False)
        resp = client.get(f"{AUTH}/me", headers=headers)
        assert resp.status_code == 401
        assert _error_code(resp) == "CREDENTIAL_INVALID"


class TestRefreshAndLogout:
    def test_refresh_rotates_cookie(self, api_client) -> None:
        """Refresh replaces the refresh cookie; replaying the old one is 401 and clears cookies."""
        client, service, _ = api_client
        service.create_user("refresh1@tienda.pe", "Secreto123", "vendedor")
        _login(client, "refresh1@tienda.pe")
        old_secret = client.cookies.get(REFRESH_COOKIE)

        resp = client.post(f"{AUTH}/refresh")
        assert resp.status_code == 200
        assert resp.json()["user"]["email"] == "refresh1@tienda.pe"
        new_secret = client.cookies.get(REFRESH_COOKIE)
        assert new_secret and new_secret != old_secret

        # Replay the spent secret
        client.cookies.clear()
        replay = client.post(f"{AUTH}/refresh", headers={"Cookie": f"{REFRESH_COOKIE}={old_secret}"})
        assert replay.status_code == 401
        assert _error_code(replay) == "REFRESH_INVALID"
        cleared = " ".join(replay.headers.get_list("set-cookie")).lower()
        assert "refresh_token=" in cleared and "max-age=0" in cleared

    def test_refresh_without_cookie(self, api_client) -> None:
        """POST /refresh without the refresh cookie is 401."""
        client, _, _ = api_client
        resp = client.post(f"{AUTH}/refresh")
        assert resp.status_code == 401
        assert _error_code(resp) == "REFRESH_INVALID"

    def test_logout_revokes_session(self, api_client) -> None:
        """Logout revokes the session so its refresh cookie no longer renews."""
        client, service, _ = api_client
        service.create_user("logout1@tienda.pe", "Secreto123", "vendedor")
        _login(client, "logout1@tienda.pe")
        secret = client.cookies.get(REFRESH_COOKIE)

        resp = client.post(f"{AUTH}/logout")
        assert resp.status_code == 200
        assert client.cookies.get(REFRESH_COOKIE) is None

        replay = client.post(f"{AUTH}/refresh", headers={"Cookie": f"{REFRESH_COOKIE}={secret}"})
        assert replay.status_code == 401

    def test_logout_without_cookie_is_ok(self, api_client) -> None:
        """Logout with no cookie still succeeds."""
        client, _, _ = api_client
        assert client.post(f"{AUTH}/logout").status_code == 200

    def test_sessions_and_logout_all(self, api_client) -> None:
        """GET /sessions flags the current one; logout-all closes every session."""
        client, service, _ = api_client
        service.create_user("logout2@tienda.pe", "Secreto123", "vendedor")
        _login(client, "logout2@tienda.pe")
        first_secret = client.cookies.get(REFRESH_COOKIE)
        client.cookies.clear()
        _login(client, "logout2@tienda.pe")

        sessions = client.get(f"{AUTH}/sessions").json()
        assert len(sessions) == 2
        assert [s["current"] for s in sessions] == [True, False]

        assert client.post(f"{AUTH}/logout-all").status_code == 200
        replay = client.post(f"{AUTH}/refresh", headers={"Cookie": f"{REFRESH_COOKIE}={first_secret}"})
        assert replay.status_code == 401


class TestPasscodeFlows:
    def test_register_flow(self, api_client) -> None:
        """send-verification then register creates the account; a second register is 409."""
        client, service, notifier = api_client
        resp = client.post(f"{AUTH}/send-verification", json={"email": "Reg1@Tienda.pe", "type": "register"})
        assert resp.status_code == 200
        code = notifier.last_code("reg1@tienda.pe")

        resp = client.post(
            f"{AUTH}/register",
            json={"email": "reg1@tienda.pe", "password": "Secreto123", "passcode": code, "full_name": "Eva Ríos"},
        )
        assert resp.status_code == 201
        assert resp.json()["user"]["role"] == "vendedor"
        assert client.get(f"{AUTH}/me").json()["email"] == "reg1@tienda.pe"

        again = client.post(f"{AUTH}/send-verification", json={"email": "reg1@tienda.pe", "type": "register"})
        assert again.status_code == 409
        assert _error_code(again) == "USER_ALREADY_EXISTS"

    def test_cooldown_is_429(self, api_client) -> None:
        """A second send inside the cooldown is 429 with a Retry-After header."""
        client, _, _ = api_client
        body = {"email": "reg2@tienda.pe", "type": "register"}
        assert client.post(f"{AUTH}/send-verification", json=body).status_code == 200
        resp = client.post(f"{AUTH}/send-verification", json=body)
        assert resp.status_code == 429
        assert _error_code(resp) == "RATE_LIMITED"
        assert int(resp.headers["retry-after"]) > 0
        assert resp.json()["error"]["detail"]["retry_after"] > 0

    def test_delivery_failure_is_502(self, api_client) -> None:
        """A notifier failure surfaces as 502 CODE_DELIVERY_FAILED."""
        client, _, notifier = api_client
        notifier.ok = False
        resp = client.post(f"{AUTH}/send-verification", json={"email": "reg3@tienda.pe", "type": "register"})
        assert resp.status_code == 502
        assert _error_code(resp) == "CODE_DELIVERY_FAILED"

    def test_reset_unknown_email_is_404(self, api_client) -> None:
        """Requesting a reset code for an unknown email is 404."""
        client, _, _ = api_client
        resp = client.post(f"{AUTH}/send-verification", json={"email": "fantasma@tienda.pe", "type": "reset"})
        assert resp.status_code == 404
        assert _error_code(resp) == "USER_NOT_FOUND"

    def test_weak_password_is_422_without_echo(self, api_client) -> None:
        """A weak password is 422 and the password never appears in the response."""
        client, _, _ = api_client
        resp = client.post(
            f"{AUTH}/register",
            json={"email": "reg4@tienda.pe", "password": "debilita", "passcode": "123456"},
        )
        assert resp.status_code == 422
        assert _error_code(resp) == "validation_error"
        assert "debilita" not in resp.text

    def test_passcode_format_is_422(self, api_client) -> None:
        """A passcode that is not six digits is rejected by validation."""
        client, _, _ = api_client
        resp = client.post(
            f"{AUTH}/reset-password",
            json={"email": "reg4@tienda.pe", "password": "Secreto123", "passcode": "12ab"},
        )
        assert resp.status_code == 422

    def test_reset_password_flow(self, api_client) -> None:
        """Reset with a valid code changes the password and revokes existing sessions."""
        client, service, notifier = api_client
        service.create_user("reset1@tienda.pe", "Secreto123", "vendedor")
        _login(client, "reset1@tienda.pe")
        old_secret = client.cookies.get(REFRESH_COOKIE)

        client.post(f"{AUTH}/send-verification", json={"email": "reset1@tienda.pe", "type": "reset"})
        code = notifier.last_code("reset1@tienda.pe")
        resp = client.post(
            f"{AUTH}/reset-password",
            json={"email": "reset1@tienda.pe", "passcode": code, "password": "NuevaClave9"},
        )
        assert resp.status_code == 200
        assert resp.json()["failed_steps"] == []
        assert client.cookies.get(REFRESH_COOKIE) is None

        replay = client.post(f"{AUTH}/refresh", headers={"Cookie": f"{REFRESH_COOKIE}={old_secret}"})
        assert replay.status_code == 401
        assert _login(client, "reset1@tienda.pe").status_code == 401
        assert _login(client, "reset1@tienda.pe", "NuevaClave9").status_code == 200

    def test_reset_wrong_code(self, api_client) -> None:
        """A wrong reset code is CODE_MISMATCH and the password is unchanged."""
        client, service, notifier = api_client
        service.create_user("reset2@tienda.pe", "Secreto123", "vendedor")
        client.post(f"{AUTH}/send-verification", json={"email": "reset2@tienda.pe", "type": "reset"})
        code = notifier.last_code("reset2@tienda.pe")
        wrong = "000000" if code != "000000" else "111111"
        resp = client.post(
            f"{AUTH}/reset-password",
            json={"email": "reset2@tienda.pe", "passcode": wrong, "password": "NuevaClave9"},
        )
        assert resp.status_code == 401
        assert _error_code(resp) == "CODE_MISMATCH"


class TestChangePassword:
    def test_change_password(self, api_client) -> None:
        """change-password checks the current password, refuses reuse and accepts a new one."""
        client, service, _ = api_client
        service.create_user("change1@tienda.pe", "Secreto123", "vendedor")
        headers = _bearer(client, "change1@tienda.pe")

        wrong = client.post(
            f"{AUTH}/change-password",
            json={"current_password": "Incorrecta1", "new_password": "NuevaClave9"},
            headers=headers,
        )
        assert wrong.status_code == 401

        reused = client.post(
            f"{AUTH}/change-password",
            json={"current_password": "Secreto123", "new_password": "Secreto123"},
            headers=headers,
        )
        assert reused.status_code == 400
        assert _error_code(reused) == "PASSWORD_REUSED"

        ok = client.post(
            f"{AUTH}/change-password",
            json={"current_password": "Secreto123", "new_password": "NuevaClave9"},
            headers=headers,
        )
        assert ok.status_code == 200
        assert _login(client, "change1@tienda.pe", "NuevaClave9").status_code == 200

    def test_requires_authentication(self, api_client) -> None:
        """change-password without a credential is CREDENTIAL_MISSING."""
        client, _, _ = api_client
        resp = client.post(
            f"{AUTH}/change-password",
            json={"current_password": "Secreto123", "new_password": "NuevaClave9"},
        )
        assert resp.status_code == 401
        assert _error_code(resp) == "CREDENTIAL_MISSING"


class TestProviders:
    def test_no_providers_configured(self, api_client) -> None:
        """With no OAuth credentials configured the provider list is empty."""
        client, _, _ = api_client
        assert client.get(f"{AUTH}/providers").json() == []

    def test_unknown_provider_redirects_to_failure(self, api_client) -> None:
        """An unknown provider redirects to /login?error=oauth_failed."""
        client, _, _ = api_client
        resp = client.get(f"{AUTH}/oauth/myspace/login", follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/login?error=oauth_failed"


class TestAdmin:
    def test_non_admin_is_forbidden(self, api_client) -> None:
        """Admin routes are 403 for other roles."""
        client, service, _ = api_client
        service.create_user("vend1@tienda.pe", "Secreto123", "vendedor")
        resp = client.get(f"{AUTH}/users", headers=_bearer(client, "vend1@tienda.pe"))
        assert resp.status_code == 403
        assert _error_code(resp) == "FORBIDDEN"

    def test_admin_lists_and_deactivates(self, api_client) -> None:
        """Deactivating a user revokes every one of their sessions."""
        client, service, _ = api_client
        service.create_user("admin1@tienda.pe", "Secreto123", "administrador")
        target = service.create_user("vend2@tienda.pe", "Secreto123", "vendedor")
        _login(client, "vend2@tienda.pe")
        target_secret = client.cookies.get(REFRESH_COOKIE)
        client.cookies.clear()

        headers = _bearer(client, "admin1@tienda.pe")
        emails = [u["email"] for u in client.get(f"{AUTH}/users", headers=headers).json()]
        assert "vend2@tienda.pe" in emails

        resp = client.patch(f"{AUTH}/users/{target.id}", json={"is_active": False}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["is_active"] is False

        replay = client.post(f"{AUTH}/refresh", headers={"Cookie": f"{REFRESH_COOKIE}={target_secret}"})
        assert replay.status_code == 401

    def test_self_deactivation_blocked(self, api_client) -> None:
        """An admin cannot deactivate their own account."""
        client, service, _ = api_client
        service.create_user("admin2@tienda.pe", "Secreto123", "administrador")
        me = service.create_user("admin3@tienda.pe", "Secreto123", "administrador")
        headers = _bearer(client, "admin3@tienda.pe")
        resp = client.patch(f"{AUTH}/users/{me.id}", json={"is_active": False}, headers=headers)
        assert resp.status_code == 400
        assert _error_code(resp) == "self_deactivation"

    def test_last_admin_cannot_be_demoted(self, api_client) -> None:
        """The last active admin cannot lose the admin role."""
        client, service, _ = api_client
        me = service.create_user("admin4@tienda.pe", "Secreto123", "administrador")
        for user in service.list_users():
            if user.role == "administrador" and user.id != me.id and user.is_active:
                service.update_user(user.id, is_active=False)

        headers = _bearer(client, "admin4@tienda.pe")
        resp = client.patch(f"{AUTH}/users/{me.id}", json={"role": "vendedor"}, headers=headers)
        assert resp.status_code == 400
        assert _error_code(resp) == "last_admin"

    def test_patch_unknown_user_and_empty_patch(self, api_client) -> None:
        """PATCH is 404 for an unknown user and 400 for an empty body."""
        client, service, _ = api_client
        service.create_user("admin5@tienda.pe", "Secreto123", "administrador")
        headers = _bearer(client, "admin5@tienda.pe")
        assert client.patch(f"{AUTH}/users/99999", json={"role": "auditor"}, headers=headers).status_code == 404

        target = service.create_user("vend3@tienda.pe", "Secreto123", "vendedor")
        empty = client.patch(f"{AUTH}/users/{target.id}", json={}, headers=headers)
        assert empty.status_code == 400
        assert _error_code(empty) == "no_changes"

    def test_unlock(self, api_client) -> None:
        """An admin unlock clears the lockout so the user can log in again."""
        client, service, _ = api_client
        service.create_user("admin6@tienda.pe", "Secreto123", "administrador")
        target = service.create_user("vend4@tienda.pe", "Secreto123", "vendedor")
        for _ in range(5):
            _login(client, "vend4@tienda.pe", "Incorrecta1")
        assert _login(client, "vend4@tienda.pe").status_code == 423

        headers = _bearer(client, "admin6@tienda.pe")
        resp = client.post(f"{AUTH}/users/{target.id}/unlock", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["lockout_until"] is None
        assert client.post(f"{AUTH}/users/99999/unlock", headers=headers).status_code == 404

        # Last: the vendedor cookie this sets would take priority over the admin Bearer header
        assert _login(client, "vend4@tienda.pe").status_code == 200
