"""Tests for auth/dependencies.py -- cookie session and role gates.

Exercised through a throwaway FastAPI app so the dependencies run exactly as
they do in the real routers. Errors are rendered by a local AuthError handler.
"""

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from auth.dependencies import ensure_role, require_admin_or_manager, require_admin_role, require_auth, try_get_claims
from auth.errors import AuthError, Forbidden
from auth.models import SOURCE_ADMINS, SOURCE_USERS, Claims
from auth.tokens import AUTH_COOKIE
from conftest import session_token


def _build_app() -> FastAPI:
    app = FastAPI()

    @app.exception_handler(AuthError)
    async def _auth_error(request: Request, exc: AuthError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"code": exc.code, "message": exc.message})

    @app.get("/any")
    def any_session(claims: Claims = Depends(require_auth)):
        return {"username": claims.username, "role": claims.role}

    @app.get("/soft")
    def soft(request: Request):
        claims = try_get_claims(request)
        return {"username": claims.username if claims else None}

    @app.get("/admin")
    def admin_only(claims: Claims = Depends(require_admin_role)):
        return {"ok": True}

    @app.get("/dashboard")
    def dashboard(claims: Claims = Depends(require_admin_or_manager)):
        return {"ok": True}

    return app


@pytest.fixture(scope="module")
def client():
    with TestClient(_build_app()) as c:
        yield c


def _get(client: TestClient, path: str, token: str | None = None):
    client.cookies.clear()
    if token:
        client.cookies.set(AUTH_COOKIE, token)
    return client.get(path)


ADMIN = session_token("root", "admin", SOURCE_ADMINS, 1, "root@example.com")
MANAGER = session_token("janedoe", "Manager", SOURCE_USERS, 2, "jane@example.com")
VIEWER = session_token("viewer", "viewer", SOURCE_USERS, 3, "v@example.com")


class TestRequireAuth:
    def test_no_cookie(self, client) -> None:
        resp = _get(client, "/any")
        assert resp.status_code == 401
        assert resp.json()["code"] == "unauthenticated"

    def test_garbage_cookie(self, client) -> None:
        assert _get(client, "/any", "not-a-jwt").status_code == 401

    def test_valid_cookie(self, client) -> None:
        resp = _get(client, "/any", MANAGER)
        assert resp.status_code == 200
        assert resp.json() == {"username": "janedoe", "role": "manager"}

    def test_bearer_header_not_accepted(self, client) -> None:
        """Sessions travel in the cookie only."""
        client.cookies.clear()
        resp = client.get("/any", headers={"Authorization": f"Bearer {ADMIN}"})
        assert resp.status_code == 401

    def test_soft_variant_never_raises(self, client) -> None:
        assert _get(client, "/soft").json() == {"username": None}
        assert _get(client, "/soft", "junk").json() == {"username": None}
        assert _get(client, "/soft", ADMIN).json() == {"username": "root"}


class TestRoleGates:
    @pytest.mark.parametrize(
        "path,token,expected",
        [
            ("/admin", ADMIN, 200),
            ("/admin", MANAGER, 403),
            ("/admin", VIEWER, 403),
            ("/admin", None, 401),
            ("/dashboard", ADMIN, 200),
            ("/dashboard", MANAGER, 200),
            ("/dashboard", VIEWER, 403),
            ("/dashboard", None, 401),
        ],
    )
    def test_matrix(self, client, path, token, expected) -> None:
        resp = _get(client, path, token)
        assert resp.status_code == expected, f"{path} with {token and 'token'}: {resp.text}"

    def test_forbidden_names_required_role(self, client) -> None:
        body = _get(client, "/admin", MANAGER).json()
        assert body["code"] == "forbidden"
        assert "admin role required" in body["message"]


class TestEnsureRole:
    def test_case_insensitive(self) -> None:
        claims = Claims(username="x", role="ADMIN", source=SOURCE_ADMINS)
        assert ensure_role(claims, {"admin"}) is claims

    def test_default_label(self) -> None:
        with pytest.raises(Forbidden) as exc:
            ensure_role(Claims(username="x", role="viewer", source=SOURCE_USERS), {"manager", "admin"})
        assert "admin or manager" in exc.value.message
