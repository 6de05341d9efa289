"""
auth/errors.py -- Error kinds raised by the auth layer.

Expected business failures (lockout, reuse, rate limit, bad code, bad
credential) are raised as AuthError and turned into a structured JSON error
by the API layer. Nothing in an AuthError carries stack or store detail --
only the code, a user-safe message, and a few whitelisted extras such as
remaining_seconds.

Unexpected failures (store unavailable, driver errors) are NOT wrapped here.
They propagate to the generic handler in api/main.py, which logs them and
returns a generic 500.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    # Access credential verification
    CREDENTIAL_MISSING = "CREDENTIAL_MISSING"
    CREDENTIAL_MALFORMED = "CREDENTIAL_MALFORMED"
    CREDENTIAL_EXPIRED = "CREDENTIAL_EXPIRED"  # the only renewable kind
    CREDENTIAL_INVALID = "CREDENTIAL_INVALID"

    # Refresh / login
    REFRESH_INVALID = "REFRESH_INVALID"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"

    # Account security
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    PASSWORD_REUSED = "PASSWORD_REUSED"

    # Passcodes
    CODE_INVALID = "CODE_INVALID"
    CODE_MISMATCH = "CODE_MISMATCH"
    CODE_DELIVERY_FAILED = "CODE_DELIVERY_FAILED"
    RATE_LIMITED = "RATE_LIMITED"

    # Identity
    USER_ALREADY_EXISTS = "USER_ALREADY_EXISTS"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"


# HTTP status per code. Anything missing maps to 400.
STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.CREDENTIAL_MISSING: 401,
    ErrorCode.CREDENTIAL_MALFORMED: 401,
    ErrorCode.CREDENTIAL_EXPIRED: 401,
    ErrorCode.CREDENTIAL_INVALID: 401,
    ErrorCode.REFRESH_INVALID: 401,
    ErrorCode.INVALID_CREDENTIALS: 401,
    ErrorCode.ACCOUNT_LOCKED: 423,
    ErrorCode.PASSWORD_REUSED: 400,
    ErrorCode.CODE_INVALID: 401,
    ErrorCode.CODE_MISMATCH: 401,
    ErrorCode.CODE_DELIVERY_FAILED: 502,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.USER_ALREADY_EXISTS: 409,
    ErrorCode.USER_NOT_FOUND: 404,
    ErrorCode.FORBIDDEN: 403,
}

_DEFAULT_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.CREDENTIAL_MISSING: "Authentication required.",
    ErrorCode.CREDENTIAL_MALFORMED: "Malformed access token.",
    ErrorCode.CREDENTIAL_EXPIRED: "Access token expired.",
    ErrorCode.CREDENTIAL_INVALID: "Invalid access token.",
    ErrorCode.REFRESH_INVALID: "Refresh token is expired or invalid.",
    ErrorCode.INVALID_CREDENTIALS: "Invalid email or password.",
    ErrorCode.ACCOUNT_LOCKED: "Account temporarily locked.",
    ErrorCode.PASSWORD_REUSED: "Cannot reuse a recent password.",
    ErrorCode.CODE_INVALID: "Invalid verification code.",
    ErrorCode.CODE_MISMATCH: "Invalid verification code.",
    ErrorCode.CODE_DELIVERY_FAILED: "Failed to send the verification code. Please try again later.",
    ErrorCode.RATE_LIMITED: "Please wait before requesting another code.",
    ErrorCode.USER_ALREADY_EXISTS: "This email address is already registered.",
    ErrorCode.USER_NOT_FOUND: "This user is not registered.",
    ErrorCode.FORBIDDEN: "Admin access required.",
}


class AuthError(Exception):
    """An expected, user-facing auth failure.

    extra holds small JSON-safe values the client may act on, e.g.
    remaining_seconds for ACCOUNT_LOCKED or retry_after for RATE_LIMITED.
    """

    def __init__(self, code: ErrorCode, message: str | None = None, **extra) -> None:
        self.code = code
        self.message = message or _DEFAULT_MESSAGES.get(code, code.value)
        self.extra = extra
        super().__init__(f"{code.value}: {self.message}")

    @property
    def status_code(self) -> int:
        return STATUS_BY_CODE.get(self.code, 400)
