"""
auth/passcodes.py -- One-time verification codes for registration and recovery.

Security design decisions:
  Storage: codes are bcrypt-hashed like passwords. A 6-digit code has about
       20 bits of entropy, so a fast hash would be brute-forced from a dump.

  One code per (email, type): sending a new code revokes every active one,
       so only the newest code can ever verify.

  Cooldown: a second send inside passcode_send_cooldown_seconds is refused
       with RATE_LIMITED and a retry_after hint. This limits mail-bombing a
       victim's inbox independently of the per-IP slowapi limit.
       A code whose delivery failed is revoked and does not count.

  Attempts: each mismatch increments failed_attempts on the record. Reaching
       max_failed_attempts revokes it, bounding guesses against a single code.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.audit import AuditLog
from auth.errors import AuthError, ErrorCode
from auth.hashing import generate_passcode, hash_passcode, verify_passcode
from auth.models import PasscodeRecord, to_ts
from auth.notify import Notifier
from auth.store import RecordStore
from core.config import Settings, get_settings

logger = logging.getLogger("minimarket.auth.passcodes")

PASSCODE_TYPES = ("register", "reset")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PasscodeService:
    def __init__(
        self,
        store: RecordStore,
        notifier: Notifier,
        audit: AuditLog,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._audit = audit
        self._settings = settings or get_settings()
        self._clock = clock

    @staticmethod
    def _check_type(kind: str) -> None:
        if kind not in PASSCODE_TYPES:
            raise ValueError(f"Unknown passcode type: {kind!r}")

    def _records(self, pass_object: str, kind: str) -> list[PasscodeRecord]:
        rows = self._store.find(
            "user_passcodes",
            {"pass_object": pass_object, "type": kind},
            order_by="id",
            descending=True,
        )
        return [PasscodeRecord.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    def send(self, pass_object: str, kind: str, ip: str | None = None) -> PasscodeRecord:
        """Generate, store and deliver a fresh code for (pass_object, kind).

        Raises:
            AuthError(USER_ALREADY_EXISTS) -- register for a known email
            AuthError(USER_NOT_FOUND)      -- reset for an unknown email
            AuthError(RATE_LIMITED)        -- inside the send cooldown
            AuthError(CODE_DELIVERY_FAILED) -- the notifier reported failure
        """
        self._check_type(kind)
        exists = self._store.find_one("users", {"email": pass_object}) is not None
        if kind == "register" and exists:
            raise AuthError(ErrorCode.USER_ALREADY_EXISTS)
        if kind == "reset" and not exists:
            raise AuthError(ErrorCode.USER_NOT_FOUND)

        now = self._clock()
        active = [r for r in self._records(pass_object, kind) if r.is_active(now)]
        if active and active[0].created_at is not None:
            elapsed = (now - active[0].created_at).total_seconds()
            cooldown = self._settings.passcode_send_cooldown_seconds
            if elapsed < cooldown:
                raise AuthError(ErrorCode.RATE_LIMITED, retry_after=max(1, math.ceil(cooldown - elapsed)))

        code = generate_passcode(self._settings.passcode_length)
        with self._store.transaction() as tx:
            for record in active:
                tx.update("user_passcodes", record.id, {"revoked": True})
            row = tx.create(
                "user_passcodes",
                {
                    "pass_object": pass_object,
                    "code_hash": hash_passcode(code),
                    "type": kind,
                    "valid_until": to_ts(now + timedelta(seconds=self._settings.passcode_expire_seconds)),
                    "revoked": False,
                    "failed_attempts": 0,
                    "created_at": to_ts(now),
                },
            )
        record = PasscodeRecord.from_row(row)

        if not self._notifier.send_code(pass_object, code):
            logger.error("Delivery failed for %s passcode %s", kind, record.id)
            # An undelivered code must not hold the cooldown
            self._store.update("user_passcodes", record.id, {"revoked": True})
            raise AuthError(ErrorCode.CODE_DELIVERY_FAILED)

        self._audit.record(
            "SEND_VERIFICATION_CODE",
            table_name="user_passcodes",
            record_id=record.id,
            meta={"type": kind},
            ip=ip,
        )
        return record

    # ------------------------------------------------------------------
    # Verify / consume
    # ------------------------------------------------------------------

    def verify(self, pass_object: str, kind: str, code: str) -> PasscodeRecord:
        """Return the newest record for the pair if code matches it.

        The record is NOT consumed here; callers revoke it once the action it
        authorizes has completed (see consume()).
        """
        self._check_type(kind)
        records = self._records(pass_object, kind)
        now = self._clock()
        if not records or not records[0].is_active(now):
            raise AuthError(ErrorCode.CODE_INVALID)

        record = records[0]
        if verify_passcode(code, record.code_hash):
            return record

        attempts = record.failed_attempts + 1
        fields: dict = {"failed_attempts": attempts}
        if attempts >= self._settings.max_failed_attempts:
            fields["revoked"] = True
            logger.warning("Passcode %s revoked after %d mismatches", record.id, attempts)
        self._store.update("user_passcodes", record.id, fields)
        raise AuthError(ErrorCode.CODE_MISMATCH)

    def consume(self, record: PasscodeRecord, store: RecordStore | None = None) -> None:
        (store or self._store).update("user_passcodes", record.id, {"revoked": True})
