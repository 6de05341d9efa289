"""
auth/policy.py -- Account security policy: lockout, password history, password change cascade.

Security design decisions:
  Lockout: max_failed_attempts consecutive failures set lockout_until to
       now + lockout_seconds and reset the counter. While locked, login,
       reset and change-password are refused with ACCOUNT_LOCKED even when the
       presented secret is correct. The only detail revealed is
       remaining_seconds.

  History: the last password_history_limit hashes (current password
       included) are kept per user; a new password matching any of them is
       PASSWORD_REUSED. Older rows are evicted on every push.

  Cascade: a password change first revokes every refresh credential and
       session, then commits the new hash. Revocation and the trailing
       audit/notification steps are best-effort and reported as StepOutcomes;
       the password update itself always raises on failure.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.audit import AuditLog
from auth.errors import AuthError, ErrorCode
from auth.hashing import hash_password, verify_password
from auth.models import PasscodeRecord, PasswordChangeResult, StepOutcome, User, to_ts
from auth.notify import Notifier
from auth.sessions import RefreshTokenService
from auth.store import RecordStore
from core.config import Settings, get_settings

logger = logging.getLogger("minimarket.auth.policy")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountSecurityPolicy:
    def __init__(
        self,
        store: RecordStore,
        sessions: RefreshTokenService,
        notifier: Notifier,
        audit: AuditLog,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._notifier = notifier
        self._audit = audit
        self._settings = settings or get_settings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    def check_lockout(self, user: User) -> None:
        """Raise ACCOUNT_LOCKED while user.lockout_until is in the future."""
        if user.lockout_until is None:
            return
        remaining = (user.lockout_until - self._clock()).total_seconds()
        if remaining > 0:
            raise AuthError(
                ErrorCode.ACCOUNT_LOCKED,
                f"Account temporarily locked. Try again in {math.ceil(remaining)} seconds.",
                remaining_seconds=math.ceil(remaining),
            )

    def record_failure(self, user: User) -> User:
        """Count one failed attempt; lock the account when the threshold is hit."""
        row = self._store.get("users", user.id)
        attempts = ((row or {}).get("failed_attempts") or 0) + 1
        now = self._clock()
        if attempts >= self._settings.max_failed_attempts:
            until = now + timedelta(seconds=self._settings.lockout_seconds)
            fields = {"failed_attempts": 0, "lockout_until": to_ts(until)}
            logger.warning("User %s locked until %s after %d failed attempts", user.id, until.isoformat(), attempts)
            self._audit.record("ACCOUNT_LOCKED", table_name="users", record_id=user.id, user_id=user.id)
        else:
            fields = {"failed_attempts": attempts}
        updated = self._store.update("users", user.id, fields)
        return User.from_row(updated) if updated else user

    def record_success(self, user: User) -> None:
        if user.failed_attempts or user.lockout_until is not None:
            self._store.update("users", user.id, {"failed_attempts": 0, "lockout_until": None})

    def unlock(self, user_id: int) -> bool:
        """Administrative unlock. Returns False when the user does not exist."""
        updated = self._store.update(
            "users",
            user_id,
            {"failed_attempts": 0, "lockout_until": None, "updated_at": to_ts(self._clock())},
        )
        return updated is not None

    # ------------------------------------------------------------------
    # Password history
    # ------------------------------------------------------------------

    def ensure_not_reused(self, user_id: int, new_password: str) -> None:
        limit = self._settings.password_history_limit
        history = self._store.find(
            "password_history", {"user_id": user_id}, order_by="id", descending=True, limit=limit
        )
        for entry in history:
            if verify_password(new_password, entry["password_hash"]):
                raise AuthError(
                    ErrorCode.PASSWORD_REUSED,
                    f"Cannot reuse one of the last {limit} passwords.",
                )

    def push_history(self, user_id: int, password_hash: str, store: RecordStore | None = None) -> None:
        """Record password_hash and evict entries beyond the configured limit."""
        target = store or self._store
        target.create(
            "password_history",
            {"user_id": user_id, "password_hash": password_hash, "created_at": to_ts(self._clock())},
        )
        stale = target.find(
            "password_history",
            {"user_id": user_id},
            order_by="id",
            descending=True,
            offset=self._settings.password_history_limit,
        )
        for row in stale:
            target.delete("password_history", row["id"])

    # ------------------------------------------------------------------
    # Password change cascade
    # ------------------------------------------------------------------

    def change_password(
        self,
        user: User,
        new_password: str,
        passcode: PasscodeRecord | None = None,
        ip: str | None = None,
    ) -> PasswordChangeResult:
        """Set a new password for user and revoke everything issued under the old one.

        Order:
          1. lockout and reuse checks (raise)
          2. revoke all refresh credentials and sessions (collected)
          3. password hash, history, counters, passcode in one transaction (raises)
          4. audit entry and notification (collected)
        """
        self.check_lockout(user)
        self.ensure_not_reused(user.id, new_password)
        new_hash = hash_password(new_password)

        result = PasswordChangeResult(user_id=user.id)
        result.steps.extend(self._sessions.revoke_all(user.id))

        now = to_ts(self._clock())
        with self._store.transaction() as tx:
            tx.update(
                "users",
                user.id,
                {"hashed_password": new_hash, "failed_attempts": 0, "lockout_until": None, "updated_at": now},
            )
            self.push_history(user.id, new_hash, store=tx)
            if passcode is not None:
                tx.update("user_passcodes", passcode.id, {"revoked": True})
        result.steps.append(StepOutcome("update_password", True))
        logger.info("Password changed for user %s", user.id)

        result.steps.append(
            self._audit.record(
                "PASSWORD_CHANGED",
                table_name="users",
                record_id=user.id,
                user_id=user.id,
                meta={"by": "passcode" if passcode is not None else "password", "passcode_id": passcode.id if passcode else None},
                ip=ip,
            )
        )

        try:
            sent = self._notifier.send_password_changed(user.email)
            error = None if sent else "delivery_failed"
        except Exception as exc:
            logger.exception("Password-change notice for user %s failed", user.id)
            sent, error = False, exc.__class__.__name__
        result.steps.append(StepOutcome("notify_password_changed", sent, error))

        if result.failed_steps:
            logger.warning(
                "Password change for user %s completed with failed steps: %s",
                user.id,
                ", ".join(s.step for s in result.failed_steps),
            )
        return result
