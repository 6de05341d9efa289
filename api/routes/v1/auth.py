"""
api/routes/v1/auth.py -- Authentication, session and user management REST endpoints.

Routes:
  POST  /api/v1/auth/login                    -- password login; sets both cookies
  POST  /api/v1/auth/refresh                  -- rotate the refresh cookie; sets both cookies
  POST  /api/v1/auth/logout                   -- revoke this session; clears cookies
  POST  /api/v1/auth/logout-all               -- revoke every session of the user (requires auth)
  GET   /api/v1/auth/me                       -- current user info (requires auth)
  GET   /api/v1/auth/sessions                 -- active sessions (requires auth)
  POST  /api/v1/auth/send-verification        -- email a register/reset passcode
  POST  /api/v1/auth/register                 -- passcode-verified sign-up; sets cookies
  POST  /api/v1/auth/reset-password           -- passcode-verified reset; clears cookies
  POST  /api/v1/auth/change-password          -- authenticated change; clears cookies
  GET   /api/v1/auth/providers                -- list enabled OAuth providers (public)
  GET   /api/v1/auth/oauth/{provider}/login   -- redirect to the provider
  GET   /api/v1/auth/oauth/{provider}/callback -- provider callback; sets cookies
  GET   /api/v1/auth/users                    -- list users (admin only)
  PATCH /api/v1/auth/users/{id}               -- update role/is_active (admin only)
  POST  /api/v1/auth/users/{id}/unlock        -- clear a lockout (admin only)

Security:
  [H2] login, send-verification, register and reset-password are rate-limited
       per IP on top of the per-account lockout and the per-email passcode
       cooldown.
  [C1] AuthService.login() provides timing equalization -- use it, never inline.
  [M4] PATCH /users/{id} blocks self-deactivation and last-admin-deactivation.
  [M5] Cache-Control: no-store on every response that carries a credential.
  Refresh cookie: read only by /refresh and /logout. Its path is
       /api/v1/auth so no other handler ever receives it.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.errors import auth_error_response
from api.limiter import limiter, login_limit, passcode_limit
from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    OAuthProviderInfo,
    PasswordChangeResponse,
    RegisterRequest,
    ResetPasswordRequest,
    SendVerificationRequest,
    SessionResponse,
    StepOutcomeResponse,
    UserPatch,
    UserResponse,
)
from auth.dependencies import extract_refresh_credential, get_current_user, require_admin
from auth.errors import AuthError
from auth.models import PasswordChangeResult, TokenPair, User
from auth.oauth import get_enabled_providers, get_oauth_user_info
from auth.service import AuthService
from auth.tokens import clear_auth_cookies, set_auth_cookies
from core.config import get_settings

logger = logging.getLogger("minimarket.api.auth")

# Auth policy:
# - POST  /auth/login, /auth/refresh, /auth/logout:           public (refresh/logout read the refresh cookie)
# - POST  /auth/send-verification, /register, /reset-password: public, passcode-gated
# - GET   /auth/providers, /auth/oauth/*:                       public
# - POST  /auth/logout-all, /auth/change-password:              requires auth (get_current_user)
# - GET   /auth/me, /auth/sessions:                             requires auth (get_current_user)
# - GET   /auth/users, PATCH /auth/users/{id}, POST .../unlock: requires admin (require_admin)
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _pair_response(user: User, pair: TokenPair, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=LoginResponse(
            access_token=pair.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=pair.expires_in,
            user=UserResponse.from_user(user),
        ).model_dump(),
    )
    set_auth_cookies(resp, pair)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _password_changed_response(result: PasswordChangeResult) -> JSONResponse:
    resp = JSONResponse(
        content=PasswordChangeResponse(
            message="Password updated. All sessions have been closed.",
            failed_steps=[StepOutcomeResponse(step=s.step, ok=s.ok, error=s.error) for s in result.failed_steps],
        ).model_dump()
    )
    clear_auth_cookies(resp)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Login / refresh / logout
# ---------------------------------------------------------------------------


@limiter.limit(login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set both credential cookies.

    Unknown email, wrong password and disabled account share one generic
    INVALID_CREDENTIALS error so account existence is not revealed.
    """
    user, pair = _service(request).login(
        body.email,
        body.password,
        ip=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return _pair_response(user, pair)


@router.post("/auth/refresh", response_model=LoginResponse)
def refresh(request: Request) -> JSONResponse:
    """Exchange the refresh cookie for a new pair. Always rotates.

    On REFRESH_INVALID both cookies are cleared so the browser stops
    presenting a dead credential.
    """
    service = _service(request)
    try:
        pair = service.refresh(extract_refresh_credential(request))
    except AuthError as exc:
        resp = auth_error_response(exc)
        clear_auth_cookies(resp)
        return resp
    user = service.get_user(pair.user_id)
    return _pair_response(user, pair)


@router.post("/auth/logout", response_model=MessageResponse)
async def logout(request: Request) -> JSONResponse:
    """Revoke the presented refresh credential and its session; clear cookies."""
    _service(request).logout(extract_refresh_credential(request))
    resp = JSONResponse(content={"message": "Logged out."})
    clear_auth_cookies(resp)
    return resp


@router.post("/auth/logout-all", response_model=MessageResponse)
async def logout_all(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Revoke every session of the current user, this one included."""
    outcomes = _service(request).logout_all(current_user.id)
    failed = [o for o in outcomes if not o.ok]
    if failed:
        logger.warning("logout-all for user %s left %d record(s) unrevoked", current_user.id, len(failed))
    resp = JSONResponse(content={"message": "All sessions closed."})
    clear_auth_cookies(resp)
    return resp


# ---------------------------------------------------------------------------
# Authenticated identity
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(request: Request, current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse(
        user_id=current_user.id,
        email=current_user.email,
        role=current_user.role,
        is_admin=_service(request).issuer.is_admin_role(current_user.role),
        full_name=current_user.full_name,
        oauth_provider=current_user.oauth_provider,
    )


@router.get("/auth/sessions", response_model=list[SessionResponse])
async def list_sessions(request: Request, current_user: User = Depends(get_current_user)) -> list[SessionResponse]:
    """List the current user's active sessions, flagging the one making this request."""
    service = _service(request)
    current = service.sessions.session_id_for(extract_refresh_credential(request))
    return [SessionResponse.from_record(s, current) for s in service.list_sessions(current_user.id)]


# ---------------------------------------------------------------------------
# Passcode-gated flows
# ---------------------------------------------------------------------------


@limiter.limit(passcode_limit)  # [H2]
@router.post("/auth/send-verification", response_model=MessageResponse)
def send_verification(request: Request, body: SendVerificationRequest) -> MessageResponse:
    """Email a one-time code for registration or password reset."""
    _service(request).send_verification(body.email, body.type.value, ip=_client_ip(request))
    return MessageResponse(message="Verification code sent.")


@limiter.limit(passcode_limit)  # [H2]
@router.post("/auth/register", response_model=LoginResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account for a verified email and log it in."""
    user, pair = _service(request).register(
        body.email,
        body.password,
        body.passcode,
        full_name=body.full_name,
        ip=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return _pair_response(user, pair, status_code=201)


@limiter.limit(passcode_limit)  # [H2]
@router.post("/auth/reset-password", response_model=PasswordChangeResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    """Set a new password with a reset passcode. Every session is revoked; no new one is issued."""
    result = _service(request).reset_password(body.email, body.passcode, body.password, ip=_client_ip(request))
    return _password_changed_response(result)


@router.post("/auth/change-password", response_model=PasswordChangeResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Change the password of the logged-in user. Every session is revoked."""
    result = _service(request).change_password(
        current_user, body.current_password, body.new_password, ip=_client_ip(request)
    )
    return _password_changed_response(result)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty if no OAuth env vars are set."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]


@router.get("/auth/oauth/{provider}/login")
async def oauth_login(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page."""
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        return RedirectResponse(get_settings().oauth_failure_redirect, status_code=302)

    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Handle the provider callback and open a local session.

    Flow:
      1. Exchange authorization code for token (authlib checks state via session).
      2. Extract (email, subject_id) -- raises ValueError if unverified [H1].
      3. AuthService.exchange_external_identity() links or creates the user.
      4. Set both cookies, redirect to the configured success page.
    """
    cfg = get_settings()
    failure = RedirectResponse(cfg.oauth_failure_redirect, status_code=302)

    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        return failure

    client = request.app.state.oauth.create_client(provider)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return failure

    try:
        email, subject = await get_oauth_user_info(client, provider, token)
    except ValueError:
        logger.warning("OAuth login rejected: unverified or missing email from %r", provider)
        return failure

    try:
        _user, pair = _service(request).exchange_external_identity(
            provider,
            email,
            subject,
            ip=_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )
    except AuthError as exc:
        logger.warning("OAuth login via %r refused: %s", provider, exc.code.value)
        return failure

    resp = RedirectResponse(cfg.oauth_success_redirect, status_code=302)
    set_auth_cookies(resp, pair)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.get("/auth/users", response_model=list[UserResponse])
async def list_users(request: Request, current_user: User = Depends(require_admin)) -> list[UserResponse]:
    """List all user accounts. Admin only."""
    return [UserResponse.from_user(u) for u in _service(request).list_users()]


@router.patch("/auth/users/{user_id}", response_model=UserResponse)
async def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    current_user: User = Depends(require_admin),
) -> UserResponse:
    """Update a user's role, name or active status. Admin only.

    Deactivating an account also revokes all of its sessions.

    [M4] Prevents:
      - Self-deactivation (admin accidentally locking themselves out).
      - Deactivating or demoting the last active admin.
    """
    service = _service(request)
    admin_role = get_settings().admin_role

    target = service.get_user(user_id)
    if target is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )

    updates: dict = {}
    if body.full_name is not None:
        updates["full_name"] = body.full_name

    losing_admin = target.role == admin_role and target.is_active and (
        body.is_active is False or (body.role is not None and body.role.value != admin_role)
    )
    if losing_admin and service.count_active_admins() <= 1:
        # [M4] Block removing the last admin
        raise HTTPException(
            status_code=400,
            detail={"code": "last_admin", "message": "Cannot deactivate or demote the last active admin account."},
        )

    if body.role is not None:
        updates["role"] = body.role.value
    if body.is_active is not None:
        # [M4] Block self-deactivation
        if not body.is_active and target.id == current_user.id:
            raise HTTPException(
                status_code=400,
                detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
            )
        updates["is_active"] = body.is_active

    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    updated = service.update_user(user_id, **updates)
    if updated is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "User not found after write."},
        )
    return UserResponse.from_user(updated)


@router.post("/auth/users/{user_id}/unlock", response_model=UserResponse)
async def unlock_user(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_admin),
) -> UserResponse:
    """Clear failed attempts and any active lockout. Admin only."""
    service = _service(request)
    if not service.unlock(user_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return UserResponse.from_user(service.get_user(user_id))
