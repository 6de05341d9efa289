"""
auth/audit.py -- Append-only audit trail for security-relevant events.

Audit writes are best-effort on every path that uses them: a failure is
logged and reported to the caller as a failed StepOutcome, but never turns a
successful login, send or password change into an error response.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from auth.models import StepOutcome
from auth.store import RecordStore

logger = logging.getLogger("minimarket.auth.audit")


class AuditLog:
    def __init__(self, store: RecordStore, clock=None) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def record(
        self,
        action: str,
        *,
        table_name: str,
        record_id: int | None = None,
        user_id: int | None = None,
        meta: dict | None = None,
        ip: str | None = None,
    ) -> StepOutcome:
        """Write one audit row. Returns the outcome instead of raising."""
        try:
            self._store.create(
                "audit_log",
                {
                    "action": action,
                    "table_name": table_name,
                    "record_id": record_id,
                    "user_id": user_id,
                    "meta": json.dumps(meta) if meta else None,
                    "ip": ip,
                    "created_at": self._clock().isoformat(),
                },
            )
        except Exception as exc:
            logger.exception("Audit write failed for action %s", action)
            return StepOutcome(f"audit:{action}", False, exc.__class__.__name__)
        return StepOutcome(f"audit:{action}", True)

    def recent(self, user_id: int | None = None, limit: int = 50) -> list[dict]:
        filters = {"user_id": user_id} if user_id is not None else None
        return self._store.find("audit_log", filters, order_by="id", descending=True, limit=limit)
