"""
auth/dependencies.py -- FastAPI Depends() helper that guards a consumer's routes.

The identity provider ships no HTTP API of its own. Client projects that are
FastAPI apps mount this dependency on their routers so every request goes
through AuthService.middleware():

    app.state.auth_service = AuthService(IdentityStore(db_url))
    app.state.project_id = "<project id>"
    app.state.role_table = [...]          # optional; stored ACLs otherwise

    @router.get("/users/{user_id}", dependencies=[Depends(require_permission)])

Credentials are read in priority order:
  1. Authorization: Bearer <token> header.
  2. "access_token" cookie.
The user id comes from the X-User-Id header. The project id comes from the
X-Project-Id header, falling back to app.state.project_id.

Layer rule: may import from fastapi because this module is part of the
FastAPI dependency injection system. Imports nothing from a consumer app.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.service import AuthService


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return request.cookies.get("access_token")


def require_permission(request: Request) -> str:
    """Allow the request only if the caller's ACL permits this path and method.

    Returns the authenticated user id. Raises HTTP 401 when credentials are
    missing, HTTP 403 when the identity provider denies the request.
    """
    token = _bearer_token(request)
    user_id = request.headers.get("X-User-Id", "")
    project_id = request.headers.get("X-Project-Id") or getattr(request.app.state, "project_id", "")
    if not token or not user_id:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )

    service: AuthService = request.app.state.auth_service
    result = service.middleware(
        token,
        user_id,
        project_id,
        request.url.path,
        request.method,
        role_table=getattr(request.app.state, "role_table", None),
    )
    if result.code != 200:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": result.message},
        )
    return user_id
