"""
auth/sessions.py -- Refresh credential store and rotation engine.

Security design decisions:
  Storage: only HMAC-SHA256(SECRET_KEY, secret) is persisted. The plaintext
       secret leaves this module exactly once, inside the TokenPair handed to
       the transport layer.

  Rotation: every redemption revokes the presented record and issues a
       successor for the same (user_id, session_id). A secret is therefore
       usable once; a replayed secret finds no non-revoked row.

  Double-submit: the revoke is a compare-and-set UPDATE
       (revoked: false -> true) committed in its own transaction. Two
       concurrent redemptions of one secret race on that UPDATE; the database
       serializes them and the loser gets REFRESH_INVALID.

  Fail closed: the claim commits before the successor is written. If writing
       the successor fails the session cannot be renewed and the user logs in
       again. The alternative order (successor first) could hand out two live
       credentials for one redemption.

  Uniform rejection: missing, expired, already-used, revoked-session and
       inactive-user cases all surface as REFRESH_INVALID so the endpoint
       reveals nothing about which check failed.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.errors import AuthError, ErrorCode
from auth.hashing import generate_token_secret, hash_token
from auth.models import RefreshRecord, SessionRecord, StepOutcome, TokenPair, User, to_ts
from auth.store import RecordStore
from auth.tokens import TokenIssuer
from core.config import Settings, get_settings

logger = logging.getLogger("minimarket.auth.sessions")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RefreshTokenService:
    """Issues, redeems and revokes refresh credentials and their sessions."""

    def __init__(
        self,
        store: RecordStore,
        issuer: TokenIssuer,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._issuer = issuer
        self._settings = settings or get_settings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def _hash(self, secret: str) -> str:
        return hash_token(secret, self._settings.secret_key)

    def issue(self, user_id: int, session_id: int, store: RecordStore | None = None) -> tuple[str, RefreshRecord]:
        """Create a refresh record and return (plaintext secret, record)."""
        target = store or self._store
        now = self._clock()
        secret = generate_token_secret()
        row = target.create(
            "refresh_tokens",
            {
                "user_id": user_id,
                "session_id": session_id,
                "token_hash": self._hash(secret),
                "expires_at": to_ts(now + timedelta(seconds=self._settings.refresh_token_expire_seconds)),
                "revoked": False,
                "created_at": to_ts(now),
            },
        )
        return secret, RefreshRecord.from_row(row)

    def _access_token(self, user: User) -> str:
        return self._issuer.issue(user.id, user.email, user.role, self._issuer.is_admin_role(user.role))

    def start_session(self, user: User, ip: str | None = None, user_agent: str | None = None) -> TokenPair:
        """Open a new session for user and return its first credential pair."""
        now = to_ts(self._clock())
        with self._store.transaction() as tx:
            session = tx.create(
                "sessions",
                {
                    "user_id": user.id,
                    "ip": ip,
                    "user_agent": (user_agent or "")[:512] or None,
                    "revoked": False,
                    "created_at": now,
                    "updated_at": now,
                },
            )
            secret, _ = self.issue(user.id, session["id"], store=tx)

        logger.info("Session %s started for user %s", session["id"], user.id)
        return TokenPair(
            access_token=self._access_token(user),
            refresh_token=secret,
            expires_in=self._issuer.default_ttl,
            user_id=user.id,
            session_id=session["id"],
        )

    # ------------------------------------------------------------------
    # Redeem
    # ------------------------------------------------------------------

    def redeem(self, secret: str | None) -> TokenPair:
        """Exchange a refresh secret for a new pair. Always rotates.

        Raises AuthError(REFRESH_INVALID) for every rejected secret.
        """
        if not secret:
            raise AuthError(ErrorCode.REFRESH_INVALID)

        row = self._store.find_one("refresh_tokens", {"token_hash": self._hash(secret), "revoked": False})
        if row is None:
            raise AuthError(ErrorCode.REFRESH_INVALID)

        record = RefreshRecord.from_row(row)
        now = self._clock()
        if record.is_expired(now):
            raise AuthError(ErrorCode.REFRESH_INVALID)

        session_row = self._store.get("sessions", record.session_id)
        if session_row is None or session_row["revoked"]:
            raise AuthError(ErrorCode.REFRESH_INVALID)

        user_row = self._store.get("users", record.user_id)
        if user_row is None or not user_row["is_active"]:
            raise AuthError(ErrorCode.REFRESH_INVALID)
        user = User.from_row(user_row)

        # Claim: only one concurrent redemption can flip revoked false -> true.
        claimed = self._store.update("refresh_tokens", record.id, {"revoked": True}, expect={"revoked": False})
        if claimed is None:
            logger.warning("Refresh record %s redeemed concurrently; rejecting duplicate", record.id)
            raise AuthError(ErrorCode.REFRESH_INVALID)

        try:
            with self._store.transaction() as tx:
                new_secret, _ = self.issue(record.user_id, record.session_id, store=tx)
                tx.update("sessions", record.session_id, {"updated_at": to_ts(now)})
        except Exception:
            logger.exception(
                "Could not store successor for refresh record %s; session %s must log in again",
                record.id,
                record.session_id,
            )
            raise

        return TokenPair(
            access_token=self._access_token(user),
            refresh_token=new_secret,
            expires_in=self._issuer.default_ttl,
            user_id=user.id,
            session_id=record.session_id,
        )

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    def revoke(self, secret: str | None) -> bool:
        """Revoke the presented refresh record and its session.

        Unknown or already-revoked secrets are a no-op. Returns True if a
        session was closed.
        """
        if not secret:
            return False
        row = self._store.find_one("refresh_tokens", {"token_hash": self._hash(secret)})
        if row is None:
            return False
        with self._store.transaction() as tx:
            tx.update("refresh_tokens", row["id"], {"revoked": True})
            closed = tx.update("sessions", row["session_id"], {"revoked": True, "updated_at": to_ts(self._clock())}, expect={"revoked": False})
        if closed is not None:
            logger.info("Session %s closed by logout", row["session_id"])
        return closed is not None

    def revoke_all(self, user_id: int) -> list[StepOutcome]:
        """Revoke every live refresh record and session of user_id.

        Each record is revoked independently; a failure is logged and
        recorded in the returned outcomes, and the remaining records are
        still processed.
        """
        outcomes: list[StepOutcome] = []
        stamp = to_ts(self._clock())

        try:
            live_tokens = self._store.find("refresh_tokens", {"user_id": user_id, "revoked": False})
        except Exception as exc:
            logger.exception("Could not list refresh records for user %s", user_id)
            return [StepOutcome("revoke_refresh_tokens", False, exc.__class__.__name__)]

        for row in live_tokens:
            step = f"revoke_refresh_token:{row['id']}"
            try:
                self._store.update("refresh_tokens", row["id"], {"revoked": True})
                outcomes.append(StepOutcome(step, True))
            except Exception as exc:
                logger.exception("Failed to revoke refresh record %s", row["id"])
                outcomes.append(StepOutcome(step, False, exc.__class__.__name__))

        try:
            live_sessions = self._store.find("sessions", {"user_id": user_id, "revoked": False})
        except Exception as exc:
            logger.exception("Could not list sessions for user %s", user_id)
            outcomes.append(StepOutcome("revoke_sessions", False, exc.__class__.__name__))
            return outcomes

        for row in live_sessions:
            step = f"revoke_session:{row['id']}"
            try:
                self._store.update("sessions", row["id"], {"revoked": True, "updated_at": stamp})
                outcomes.append(StepOutcome(step, True))
            except Exception as exc:
                logger.exception("Failed to revoke session %s", row["id"])
                outcomes.append(StepOutcome(step, False, exc.__class__.__name__))

        logger.info(
            "Revoked %d refresh record(s) and %d session(s) for user %s",
            len(live_tokens),
            len(live_sessions),
            user_id,
        )
        return outcomes

    # ------------------------------------------------------------------
    # Queries / maintenance
    # ------------------------------------------------------------------

    def session_id_for(self, secret: str | None) -> int | None:
        """Return the session a refresh secret belongs to, or None."""
        if not secret:
            return None
        row = self._store.find_one("refresh_tokens", {"token_hash": self._hash(secret)})
        return row["session_id"] if row else None

    def list_sessions(self, user_id: int) -> list[SessionRecord]:
        rows = self._store.find("sessions", {"user_id": user_id, "revoked": False}, order_by="id", descending=True)
        return [SessionRecord.from_row(r) for r in rows]

    def purge_expired(self) -> int:
        """Delete refresh records that are expired or revoked. Returns the count."""
        now = self._clock()
        removed = 0
        for row in self._store.find("refresh_tokens"):
            record = RefreshRecord.from_row(row)
            if record.revoked or record.is_expired(now):
                if self._store.delete("refresh_tokens", record.id):
                    removed += 1
        return removed
