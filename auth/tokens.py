"""
auth/tokens.py -- Access token issue/verify and auth cookie helpers.

Security design decisions:
  JWT: python-jose with HS256, signed with SECRET_KEY. The claim set is fixed:
       sub, email, role, is_admin, iat, exp. verify() decodes into the typed
       AccessClaims model and rejects tokens missing any claim, instead of
       handing untyped dicts to route code.

  Result codes: verify() never raises. It returns a TokenVerification whose
       code tells the caller what to do next:
         CREDENTIAL_MISSING   -- nothing presented; go to login
         CREDENTIAL_MALFORMED -- not three non-empty dot-separated segments
         CREDENTIAL_EXPIRED   -- good signature, past exp; renewal allowed
         CREDENTIAL_INVALID   -- anything else; full re-authentication
       EXPIRED is kept apart from INVALID so a tampered token can never push
       the client into the silent-renewal path.

  Cookies: both credentials are httpOnly cookies. The access cookie is sent
       to every path; the refresh cookie is scoped to /api/v1/auth so general
       request handlers never see it.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from auth.errors import ErrorCode
from auth.models import TokenPair
from core.config import Settings, get_settings

logger = logging.getLogger("minimarket.auth.tokens")

_ALGORITHM = "HS256"

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_PATH = "/api/v1/auth"


class AccessClaims(BaseModel):
    """Decoded access token payload. All fields are required."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    sub: str
    email: str
    role: str
    is_admin: bool
    iat: int
    exp: int

    @field_validator("sub")
    @classmethod
    def _numeric_subject(cls, value: str) -> str:
        if not value.isdigit():
            raise ValueError("sub must be a numeric user id")
        return value

    @property
    def user_id(self) -> int:
        return int(self.sub)


@dataclass(frozen=True)
class TokenVerification:
    valid: bool
    code: ErrorCode | None
    claims: AccessClaims | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    """Creates and statelessly verifies signed access tokens.

    clock exists so tests can issue tokens "in the past"; verification always
    uses the real current time (python-jose checks exp itself).
    """

    def __init__(self, settings: Settings | None = None, clock: Callable[[], datetime] = _utcnow) -> None:
        self._settings = settings or get_settings()
        self._clock = clock

    @property
    def default_ttl(self) -> int:
        return self._settings.access_token_expire_seconds

    def is_admin_role(self, role: str) -> bool:
        return role == self._settings.admin_role

    def issue(self, subject: int | str, email: str, role: str, is_admin: bool, ttl: int | None = None) -> str:
        """Encode a signed access token. No side effects."""
        duration = ttl if ttl is not None else self.default_ttl
        if duration <= 0:
            raise ValueError("ttl must be positive")
        issued_at = self._clock()
        payload = {
            "sub": str(subject),
            "email": email,
            "role": role,
            "is_admin": bool(is_admin),
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + timedelta(seconds=duration)).timestamp()),
        }
        return jwt.encode(payload, self._settings.secret_key, algorithm=_ALGORITHM)

    def verify(self, credential: str | None) -> TokenVerification:
        if credential is None or not credential.strip():
            return TokenVerification(False, ErrorCode.CREDENTIAL_MISSING)

        token = credential.strip()
        if token == "Bearer" or token.startswith("Bearer "):
            token = token[6:].strip()
            if not token:
                return TokenVerification(False, ErrorCode.CREDENTIAL_MISSING)

        parts = token.split(".")
        if len(parts) != 3 or any(not p.strip() for p in parts):
            return TokenVerification(False, ErrorCode.CREDENTIAL_MALFORMED)

        try:
            payload = jwt.decode(token, self._settings.secret_key, algorithms=[_ALGORITHM])
        except ExpiredSignatureError:
            return TokenVerification(False, ErrorCode.CREDENTIAL_EXPIRED)
        except JWTError as exc:
            logger.debug("Access token rejected: %s", exc.__class__.__name__)
            return TokenVerification(False, ErrorCode.CREDENTIAL_INVALID)

        try:
            claims = AccessClaims.model_validate(payload)
        except ValidationError:
            return TokenVerification(False, ErrorCode.CREDENTIAL_INVALID)
        return TokenVerification(True, None, claims)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookies(response, pair: TokenPair, settings: Settings | None = None) -> None:
    """Write both credentials as httpOnly cookies on a Starlette response.

    samesite="lax" blocks cross-site POSTs from carrying the cookies.
    Both cookies live as long as the refresh credential. The access cookie
    must outlive its JWT, otherwise the browser drops it at expiry and the
    server sees CREDENTIAL_MISSING instead of the renewable CREDENTIAL_EXPIRED.
    """
    cfg = settings or get_settings()
    response.set_cookie(
        ACCESS_COOKIE,
        value=pair.access_token,
        httponly=True,
        samesite="lax",
        secure=cfg.secure_cookies,
        max_age=cfg.refresh_token_expire_seconds,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        value=pair.refresh_token,
        httponly=True,
        samesite="strict",
        secure=cfg.secure_cookies,
        max_age=cfg.refresh_token_expire_seconds,
        path=REFRESH_COOKIE_PATH,
    )


def clear_auth_cookies(response) -> None:
    response.delete_cookie(ACCESS_COOKIE, path="/")
    response.delete_cookie(REFRESH_COOKIE, path=REFRESH_COOKIE_PATH)
