"""
auth/store.py -- SQLAlchemy Core record store for auth entities.

Pattern: Table Data Gateway. RecordStore exposes the generic collaborator
contract the auth services consume:

    find(table, filters, order_by=, descending=, limit=, offset=) -> list[dict]
    get(table, id) -> dict | None
    create(table, fields) -> dict
    update(table, id, fields, expect=) -> dict | None
    delete(table, id) -> bool
    transaction() -> context manager yielding a store bound to one connection

Services never write SQL. Filters are equality-only; ordering, limit and
offset are the only query shaping offered.

Compare-and-set: update(..., expect={"revoked": False}) adds the expected
values to the WHERE clause and returns None when no row matched. Refresh
rotation relies on this -- two concurrent redemptions of one secret both run
the same UPDATE, the database serializes them, and only one sees rowcount 1.

Security:
  All queries use bound parameters. Table and column names come from the
  static schema below and are validated before use; unknown names raise
  ValueError rather than being interpolated.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),  # NULL for OAuth-only users
    Column("role", String(30), nullable=False),
    Column("full_name", String(255)),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("oauth_provider", String(30)),
    Column("oauth_subject", Text),
    Column("failed_attempts", Integer, nullable=False, default=0),
    Column("lockout_until", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
    Column("last_login", String(32)),
)

sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("ip", String(64)),
    Column("user_agent", Text),
    Column("revoked", Boolean, nullable=False, default=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
)

refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("session_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("expires_at", String(32), nullable=False),
    Column("revoked", Boolean, nullable=False, default=False),
    Column("created_at", String(32), nullable=False),
)

user_passcodes = Table(
    "user_passcodes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("pass_object", String(255), nullable=False, index=True),
    Column("code_hash", Text, nullable=False),
    Column("type", String(16), nullable=False),
    Column("valid_until", String(32), nullable=False),
    Column("revoked", Boolean, nullable=False, default=False),
    Column("failed_attempts", Integer, nullable=False, default=0),
    Column("created_at", String(32), nullable=False),
)

password_history = Table(
    "password_history",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("password_hash", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
)

audit_log = Table(
    "audit_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer),
    Column("table_name", String(64), nullable=False),
    Column("record_id", Integer),
    Column("action", String(64), nullable=False),
    Column("meta", Text),  # JSON blob
    Column("ip", String(64)),
    Column("created_at", String(32), nullable=False),
)

_TABLES: dict[str, Table] = {t.name: t for t in _metadata.sorted_tables}


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and a busy timeout on every new connection.

    WAL lets readers proceed during writes. The busy timeout makes a writer
    wait for a competing writer's lock instead of failing immediately, which
    is what serializes concurrent refresh redemptions.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class RecordStore:
    """Generic table store over a SQLAlchemy engine.

    Usage:
        store = RecordStore("sqlite:///:memory:")
        row = store.create("users", {"email": "a@b.pe", "role": "vendedor"})
        store.update("users", row["id"], {"is_active": False})
        with store.transaction() as tx:
            tx.update(...)
            tx.create(...)
        store.close()
    """

    def __init__(self, db_url: str | None = None, *, _engine: Engine | None = None, _conn: Connection | None = None):
        if _engine is not None:
            # Bound view created by transaction(); shares the parent's engine.
            self.engine = _engine
            self._conn = _conn
            return

        url = db_url or get_settings().database_url
        connect_args: dict = {}
        engine_kwargs: dict = {}
        if url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            if url in ("sqlite://", "sqlite:///:memory:"):
                # A private in-memory DB only exists on one connection.
                engine_kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, connect_args=connect_args, **engine_kwargs)
        if url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        self._conn = None
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    @contextmanager
    def _connection(self) -> Iterator[Connection]:
        if self._conn is not None:
            yield self._conn
            return
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator["RecordStore"]:
        """Run several mutations on one connection; commit together or roll back together.

        Nested calls on an already-bound store reuse the outer transaction.
        """
        if self._conn is not None:
            yield self
            return
        with self.engine.begin() as conn:
            yield RecordStore(_engine=self.engine, _conn=conn)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _table(name: str) -> Table:
        try:
            return _TABLES[name]
        except KeyError:
            raise ValueError(f"Unknown table: {name!r}") from None

    @staticmethod
    def _check_columns(table: Table, names) -> None:
        unknown = set(names) - set(table.c.keys())
        if unknown:
            raise ValueError(f"Unknown columns for {table.name}: {sorted(unknown)!r}")

    def _where(self, table: Table, filters: dict[str, Any] | None):
        filters = filters or {}
        self._check_columns(table, filters)
        return [table.c[k] == v for k, v in filters.items()]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict]:
        """Return rows matching every equality filter, as plain dicts."""
        t = self._table(table)
        stmt = select(t).where(*self._where(t, filters))
        if order_by is not None:
            self._check_columns(t, [order_by])
            col = t.c[order_by]
            stmt = stmt.order_by(col.desc() if descending else col.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset is not None:
            if limit is None:
                # SQLite requires LIMIT when OFFSET is present
                stmt = stmt.limit(-1)
            stmt = stmt.offset(offset)
        with self._connection() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [dict(r) for r in rows]

    def find_one(self, table: str, filters: dict[str, Any] | None = None, **kwargs) -> dict | None:
        rows = self.find(table, filters, limit=1, **kwargs)
        return rows[0] if rows else None

    def get(self, table: str, record_id: int) -> dict | None:
        return self.find_one(table, {"id": record_id})

    def count(self, table: str, filters: dict[str, Any] | None = None) -> int:
        t = self._table(table)
        stmt = select(func.count()).select_from(t).where(*self._where(t, filters))
        with self._connection() as conn:
            return conn.execute(stmt).scalar() or 0

    # ------------------------------------------------------------------
    # Mutations (single row)
    # ------------------------------------------------------------------

    def create(self, table: str, fields: dict[str, Any]) -> dict:
        """Insert one row and return it as stored.

        created_at defaults to the current UTC time unless the caller supplies
        it (services pass their own clock so tests can control time).
        Raises sqlalchemy.exc.IntegrityError on unique-constraint violations.
        """
        t = self._table(table)
        values = dict(fields)
        self._check_columns(t, values)
        if "created_at" in t.c and not values.get("created_at"):
            values["created_at"] = _now_iso()
        with self._connection() as conn:
            result = conn.execute(t.insert().values(**values))
            new_id = result.inserted_primary_key[0]
            row = conn.execute(select(t).where(t.c.id == new_id)).mappings().one()
        return dict(row)

    def update(
        self,
        table: str,
        record_id: int,
        fields: dict[str, Any],
        *,
        expect: dict[str, Any] | None = None,
    ) -> dict | None:
        """Update one row by id and return it, or None if nothing matched.

        expect adds equality guards to the WHERE clause (compare-and-set).
        """
        t = self._table(table)
        self._check_columns(t, fields)
        conditions = [t.c.id == record_id, *self._where(t, expect)]
        with self._connection() as conn:
            result = conn.execute(t.update().where(*conditions).values(**fields))
            if result.rowcount == 0:
                return None
            row = conn.execute(select(t).where(t.c.id == record_id)).mappings().one()
        return dict(row)

    def delete(self, table: str, record_id: int) -> bool:
        t = self._table(table)
        with self._connection() as conn:
            result = conn.execute(t.delete().where(t.c.id == record_id))
        return result.rowcount > 0

    def ping(self) -> bool:
        """Return True when the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        if self._conn is None:
            self.engine.dispose()
