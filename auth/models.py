"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container). Services own the behaviour; these
classes only own shape plus a from_row() mapper from the generic record
store's dict rows. Timestamps are stored as ISO-8601 strings and surfaced here
as timezone-aware datetimes so comparisons never mix naive and aware values.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


def parse_ts(value: str | datetime | None) -> datetime | None:
    """Parse a stored ISO timestamp into an aware UTC datetime (None passes through)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class User:
    """An account in the back-office.

    hashed_password is None for OAuth-only users. failed_attempts and
    lockout_until are owned by the AccountSecurityPolicy.
    """

    email: str
    role: str  # "vendedor", "almacenero", "administrador", "auditor"
    id: int | None = None
    hashed_password: str | None = None
    full_name: str | None = None
    is_active: bool = True
    oauth_provider: str | None = None
    oauth_subject: str | None = None
    failed_attempts: int = 0
    lockout_until: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_login: datetime | None = None

    @classmethod
    def from_row(cls, row: dict) -> "User":
        return cls(
            id=row["id"],
            email=row["email"],
            role=row["role"],
            hashed_password=row.get("hashed_password"),
            full_name=row.get("full_name"),
            is_active=bool(row.get("is_active", True)),
            oauth_provider=row.get("oauth_provider"),
            oauth_subject=row.get("oauth_subject"),
            failed_attempts=row.get("failed_attempts") or 0,
            lockout_until=parse_ts(row.get("lockout_until")),
            created_at=parse_ts(row.get("created_at")),
            updated_at=parse_ts(row.get("updated_at")),
            last_login=parse_ts(row.get("last_login")),
        )


@dataclass
class SessionRecord:
    """One logical client connection (one browser, one device)."""

    user_id: int
    id: int | None = None
    ip: str | None = None
    user_agent: str | None = None
    revoked: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict) -> "SessionRecord":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            ip=row.get("ip"),
            user_agent=row.get("user_agent"),
            revoked=bool(row.get("revoked")),
            created_at=parse_ts(row.get("created_at")),
            updated_at=parse_ts(row.get("updated_at")),
        )


@dataclass
class RefreshRecord:
    """A single-use refresh credential. Only token_hash is persisted, never the secret.

    State machine: ACTIVE -> REDEEMED (a successor is created) | REVOKED.
    Both end states are revoked=True; there is no way back to ACTIVE.
    """

    user_id: int
    session_id: int
    token_hash: str
    expires_at: datetime
    id: int | None = None
    revoked: bool = False
    created_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    @classmethod
    def from_row(cls, row: dict) -> "RefreshRecord":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            session_id=row["session_id"],
            token_hash=row["token_hash"],
            expires_at=parse_ts(row["expires_at"]),
            revoked=bool(row.get("revoked")),
            created_at=parse_ts(row.get("created_at")),
        )


@dataclass
class PasscodeRecord:
    """A one-time code proving control of an email address."""

    pass_object: str
    code_hash: str
    type: str  # "register" | "reset"
    valid_until: datetime
    id: int | None = None
    revoked: bool = False
    failed_attempts: int = 0
    created_at: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and self.valid_until > now

    @classmethod
    def from_row(cls, row: dict) -> "PasscodeRecord":
        return cls(
            id=row["id"],
            pass_object=row["pass_object"],
            code_hash=row["code_hash"],
            type=row["type"],
            valid_until=parse_ts(row["valid_until"]),
            revoked=bool(row.get("revoked")),
            failed_attempts=row.get("failed_attempts") or 0,
            created_at=parse_ts(row.get("created_at")),
        )


@dataclass
class TokenPair:
    """What login/refresh/register hand back to the transport layer.

    refresh_token is the plaintext secret. It exists only in this object and
    in the client's cookie; the store keeps its HMAC.
    """

    access_token: str
    refresh_token: str
    expires_in: int
    user_id: int
    session_id: int


@dataclass
class StepOutcome:
    """Result of one best-effort step (revoke a session, write an audit row...)."""

    step: str
    ok: bool
    error: str | None = None


@dataclass
class PasswordChangeResult:
    user_id: int
    steps: list[StepOutcome] = field(default_factory=list)

    @property
    def failed_steps(self) -> list[StepOutcome]:
        return [s for s in self.steps if not s.ok]
