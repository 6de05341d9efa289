"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two places an access credential can come from, checked in priority order:
  1. "access_token" cookie -- set by login/refresh/register.
  2. Authorization: Bearer <token> header -- API clients and scripts.

The refresh credential is never accepted here; it is only read by the
/auth/refresh and /auth/logout handlers from its path-scoped cookie.

get_current_user() raises AuthError carrying the exact verification code
(CREDENTIAL_MISSING / MALFORMED / EXPIRED / INVALID). The client uses that
code to decide between silent renewal and a login redirect, so the codes must
not be collapsed into one generic 401 here.

require_admin() wraps get_current_user() and raises FORBIDDEN for non-admins.

Layer rule: no imports from api/ or client/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import AuthError, ErrorCode
from auth.models import User
from auth.tokens import ACCESS_COOKIE, REFRESH_COOKIE


def extract_access_credential(request: Request) -> str | None:
    """Return the raw access credential from the cookie or Bearer header."""
    token = request.cookies.get(ACCESS_COOKIE)
    if token:
        return token
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header
    return None


def extract_refresh_credential(request: Request) -> str | None:
    return request.cookies.get(REFRESH_COOKIE) or None


def get_current_user(request: Request) -> User:
    """Require a valid access credential. Raises AuthError otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    service = request.app.state.auth
    result = service.issuer.verify(extract_access_credential(request))
    if not result.valid:
        raise AuthError(result.code)

    user = service.get_user(result.claims.user_id)
    if user is None or not user.is_active:
        # Signed for an account that no longer exists or was disabled
        raise AuthError(ErrorCode.CREDENTIAL_INVALID)
    return user


def require_admin(request: Request) -> User:
    """Require the admin role. Raises AuthError(FORBIDDEN) for other roles.

    Use as a FastAPI dependency:
        @router.post("/admin-only")
        async def route(user: User = Depends(require_admin)): ...
    """
    user = get_current_user(request)
    if not request.app.state.auth.issuer.is_admin_role(user.role):
        raise AuthError(ErrorCode.FORBIDDEN)
    return user
