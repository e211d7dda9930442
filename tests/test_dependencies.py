"""
tests/test_dependencies.py -- Integration tests for the require_permission guard.

A minimal consumer FastAPI app mounts require_permission on two routes and
is exercised through TestClient, so the real header/cookie parsing and the
real AuthService.middleware() run end to end.

Coverage:
  - No token or no X-User-Id -> 401
  - Token accepted from the Authorization header or the access_token cookie
  - Role-table denial (method not granted) -> 403 with the service message
  - X-Project-Id header overrides app.state.project_id

The store uses a named shared-cache in-memory SQLite database: TestClient
runs sync dependencies in a worker thread, and a plain ":memory:" URL would
give that thread an empty database.
"""

from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from auth.dependencies import require_permission
from auth.service import AuthService
from auth.store import IdentityStore
from core.models import PersonInfo, Project, User

_ROLES = [{"group": "readers", "permissions": [{"resource": "/users/*", "methods": ["GET"]}]}]


@pytest.fixture
def guarded(settings) -> Generator[tuple[TestClient, str, str, str], None, None]:
    """Yield (client, access_token, user_id, project_id) for a verified 'readers' user."""
    store = IdentityStore(f"sqlite:///file:guard_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    service = AuthService(store, settings=settings)
    project_id = store.create_project(Project(name="Portal", site="https://portal.example.com", secret="s3cret"))
    person_id = store.create_person(
        PersonInfo(tax_id="11144477735", name="Maria da Silva", username="mariasilva_0", birth_date="1990-05-17")
    )
    user_id = store.create_user(User(email="a@x.com", type="person", person_id=person_id), "pw123456")
    service.authorize_project(user_id, project_id, verified=True, acl="readers")
    token = service.login("a@x.com", "pw123456", project_id).data["token"]

    app = FastAPI()
    app.state.auth_service = service
    app.state.project_id = project_id
    app.state.role_table = _ROLES

    @app.get("/users/{uid}")
    def read_user(uid: str, caller: str = Depends(require_permission)) -> dict:
        return {"uid": uid, "caller": caller}

    @app.delete("/users/{uid}")
    def delete_user(uid: str, caller: str = Depends(require_permission)) -> dict:
        return {"deleted": uid}

    with TestClient(app) as client:
        yield client, token, user_id, project_id
    store.close()


class TestRequirePermission:
    def test_missing_token_is_401(self, guarded) -> None:
        client, _token, user_id, _project_id = guarded
        resp = client.get("/users/42", headers={"X-User-Id": user_id})
        assert resp.status_code == 401
        assert resp.json()["detail"]["code"] == "unauthorized"

    def test_missing_user_id_is_401(self, guarded) -> None:
        client, token, _user_id, _project_id = guarded
        resp = client.get("/users/42", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    def test_bearer_token_allowed(self, guarded) -> None:
        client, token, user_id, _project_id = guarded
        resp = client.get("/users/42", headers={"Authorization": f"Bearer {token}", "X-User-Id": user_id})
        assert resp.status_code == 200
        assert resp.json() == {"uid": "42", "caller": user_id}

    def test_cookie_token_allowed(self, guarded) -> None:
        client, token, user_id, _project_id = guarded
        client.cookies.set("access_token", token)
        resp = client.get("/users/42", headers={"X-User-Id": user_id})
        assert resp.status_code == 200

    def test_method_not_granted_is_403(self, guarded) -> None:
        client, token, user_id, _project_id = guarded
        resp = client.delete("/users/42", headers={"Authorization": f"Bearer {token}", "X-User-Id": user_id})
        assert resp.status_code == 403
        assert resp.json()["detail"] == {
            "code": "forbidden",
            "message": "User is not authorized to access this endpoint",
        }

    def test_wrong_user_is_403(self, guarded) -> None:
        client, token, _user_id, _project_id = guarded
        resp = client.get("/users/42", headers={"Authorization": f"Bearer {token}", "X-User-Id": "intruder"})
        assert resp.status_code == 403

    def test_project_header_overrides_app_default(self, guarded) -> None:
        client, token, user_id, _project_id = guarded
        resp = client.get(
            "/users/42",
            headers={"Authorization": f"Bearer {token}", "X-User-Id": user_id, "X-Project-Id": "other"},
        )
        assert resp.status_code == 403
        assert resp.json()["detail"]["message"] == "Access token was not issued for this project"
