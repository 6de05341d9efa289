"""
auth/service.py -- Auth service facade used by the HTTP layer and the CLI.

Pattern: Facade. Route handlers call one method per use case; the facade
coordinates the token issuer, rotation engine, passcode engine, account
security policy, audit log and notifier. Every expected failure surfaces as
AuthError; everything else propagates.

Security design decisions:
  [C1] Timing equalization on login. An unknown email still runs one bcrypt
       verification (against DUMMY_HASH) so response time does not reveal
       whether an account exists.

  Generic login failure: unknown email, wrong password, inactive account and
       OAuth-only account all raise INVALID_CREDENTIALS. Only a wrong password
       on an existing account counts toward lockout.

  Passcode-gated actions: register and reset verify the newest code for the
       email and consume it in the same transaction as the action it
       authorizes.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from auth.audit import AuditLog
from auth.errors import AuthError, ErrorCode
from auth.hashing import DUMMY_HASH, hash_password, verify_password
from auth.models import PasscodeRecord, PasswordChangeResult, SessionRecord, StepOutcome, TokenPair, User, to_ts
from auth.notify import Notifier, build_notifier
from auth.passcodes import PasscodeService
from auth.policy import AccountSecurityPolicy
from auth.sessions import RefreshTokenService
from auth.store import RecordStore
from auth.tokens import TokenIssuer
from core.config import Settings, get_settings

logger = logging.getLogger("minimarket.auth.service")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    def __init__(
        self,
        store: RecordStore,
        issuer: TokenIssuer,
        sessions: RefreshTokenService,
        passcodes: PasscodeService,
        policy: AccountSecurityPolicy,
        audit: AuditLog,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.sessions = sessions
        self.passcodes = passcodes
        self.policy = policy
        self.audit = audit
        self._settings = settings or get_settings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_user(self, user_id: int) -> User | None:
        row = self.store.get("users", user_id)
        return User.from_row(row) if row else None

    def get_user_by_email(self, email: str) -> User | None:
        row = self.store.find_one("users", {"email": email})
        return User.from_row(row) if row else None

    def list_users(self) -> list[User]:
        return [User.from_row(r) for r in self.store.find("users", order_by="id")]

    def count_active_admins(self) -> int:
        return self.store.count("users", {"role": self._settings.admin_role, "is_active": True})

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    def login(
        self, email: str, password: str, ip: str | None = None, user_agent: str | None = None
    ) -> tuple[User, TokenPair]:
        user = self.get_user_by_email(email)
        if user is None:
            verify_password(password, DUMMY_HASH)  # [C1]
            raise AuthError(ErrorCode.INVALID_CREDENTIALS)

        self.policy.check_lockout(user)

        if user.hashed_password is None:
            # OAuth-only account; burn the same bcrypt time as a real check
            verify_password(password, DUMMY_HASH)
            raise AuthError(ErrorCode.INVALID_CREDENTIALS)

        if not verify_password(password, user.hashed_password):
            self.policy.record_failure(user)
            self.audit.record("LOGIN_FAILED", table_name="users", record_id=user.id, user_id=user.id, ip=ip)
            raise AuthError(ErrorCode.INVALID_CREDENTIALS)

        if not user.is_active:
            raise AuthError(ErrorCode.INVALID_CREDENTIALS)

        self.policy.record_success(user)
        self.store.update("users", user.id, {"last_login": to_ts(self._clock())})
        pair = self.sessions.start_session(user, ip=ip, user_agent=user_agent)
        self.audit.record("LOGIN", table_name="sessions", record_id=pair.session_id, user_id=user.id, ip=ip)
        logger.info("User %s logged in", user.id)
        return user, pair

    def refresh(self, secret: str | None) -> TokenPair:
        return self.sessions.redeem(secret)

    def logout(self, refresh_secret: str | None) -> bool:
        return self.sessions.revoke(refresh_secret)

    def logout_all(self, user_id: int) -> list[StepOutcome]:
        outcomes = self.sessions.revoke_all(user_id)
        self.audit.record("LOGOUT_ALL", table_name="sessions", user_id=user_id)
        return outcomes

    def list_sessions(self, user_id: int) -> list[SessionRecord]:
        return self.sessions.list_sessions(user_id)

    # ------------------------------------------------------------------
    # Passcode-gated flows
    # ------------------------------------------------------------------

    def send_verification(self, email: str, kind: str, ip: str | None = None) -> None:
        self.passcodes.send(email, kind, ip=ip)

    def register(
        self,
        email: str,
        password: str,
        code: str,
        full_name: str | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> tuple[User, TokenPair]:
        """Create an account for a verified email and open its first session."""
        if self.get_user_by_email(email) is not None:
            raise AuthError(ErrorCode.USER_ALREADY_EXISTS)

        passcode = self.passcodes.verify(email, "register", code)
        hashed = hash_password(password)
        now = to_ts(self._clock())
        try:
            with self.store.transaction() as tx:
                row = tx.create(
                    "users",
                    {
                        "email": email,
                        "hashed_password": hashed,
                        "role": self._settings.default_role,
                        "full_name": full_name,
                        "is_active": True,
                        "failed_attempts": 0,
                        "created_at": now,
                        "updated_at": now,
                    },
                )
                self.policy.push_history(row["id"], hashed, store=tx)
                self.passcodes.consume(passcode, store=tx)
        except IntegrityError as exc:
            raise AuthError(ErrorCode.USER_ALREADY_EXISTS) from exc

        user = User.from_row(row)
        self.audit.record("REGISTER", table_name="users", record_id=user.id, user_id=user.id, ip=ip)
        logger.info("User %s registered", user.id)
        return user, self.sessions.start_session(user, ip=ip, user_agent=user_agent)

    def reset_password(self, email: str, code: str, new_password: str, ip: str | None = None) -> PasswordChangeResult:
        """Set a new password after passcode verification. Issues no session."""
        user = self.get_user_by_email(email)
        if user is None:
            raise AuthError(ErrorCode.USER_NOT_FOUND)

        self.policy.check_lockout(user)
        try:
            passcode = self.passcodes.verify(email, "reset", code)
        except AuthError:
            self.policy.record_failure(user)
            self.audit.record("RESET_PASSWORD_FAILED", table_name="user_passcodes", user_id=user.id, ip=ip)
            raise

        return self.policy.change_password(user, new_password, passcode=passcode, ip=ip)

    def change_password(
        self, user: User, current_password: str, new_password: str, ip: str | None = None
    ) -> PasswordChangeResult:
        """Authenticated password change. The current password must match."""
        fresh = self.get_user(user.id) or user
        self.policy.check_lockout(fresh)
        if not verify_password(current_password, fresh.hashed_password):
            self.policy.record_failure(fresh)
            raise AuthError(ErrorCode.INVALID_CREDENTIALS, "Current password is incorrect.")
        return self.policy.change_password(fresh, new_password, ip=ip)

    # ------------------------------------------------------------------
    # External identity (OAuth)
    # ------------------------------------------------------------------

    def exchange_external_identity(
        self,
        provider: str,
        email: str,
        subject: str,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> tuple[User, TokenPair]:
        """Turn a verified provider assertion into a local session.

        Lookup order: (provider, subject) first, then email. An existing
        account found by email is linked on first use; an unknown email gets
        a new OAuth-only account with the default role.
        """
        row = self.store.find_one("users", {"oauth_provider": provider, "oauth_subject": subject})
        if row is None:
            row = self.store.find_one("users", {"email": email})
            if row is not None and row["oauth_subject"] is None:
                row = self.store.update(
                    "users",
                    row["id"],
                    {"oauth_provider": provider, "oauth_subject": subject, "updated_at": to_ts(self._clock())},
                )
                logger.info("Linked %s identity to user %s", provider, row["id"])
            elif row is not None:
                # Email already bound to a different external identity
                raise AuthError(ErrorCode.INVALID_CREDENTIALS)
            else:
                now = to_ts(self._clock())
                row = self.store.create(
                    "users",
                    {
                        "email": email,
                        "hashed_password": None,
                        "role": self._settings.default_role,
                        "is_active": True,
                        "oauth_provider": provider,
                        "oauth_subject": subject,
                        "failed_attempts": 0,
                        "created_at": now,
                        "updated_at": now,
                    },
                )
                self.audit.record("REGISTER_OAUTH", table_name="users", record_id=row["id"], user_id=row["id"], ip=ip)

        user = User.from_row(row)
        if not user.is_active:
            raise AuthError(ErrorCode.INVALID_CREDENTIALS)
        self.policy.check_lockout(user)

        self.store.update("users", user.id, {"last_login": to_ts(self._clock())})
        pair = self.sessions.start_session(user, ip=ip, user_agent=user_agent)
        self.audit.record(
            "LOGIN_OAUTH", table_name="sessions", record_id=pair.session_id, user_id=user.id, meta={"provider": provider}, ip=ip
        )
        return user, pair

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def create_user(
        self, email: str, password: str | None, role: str, full_name: str | None = None
    ) -> User:
        """Create an account directly (admin CLI). Raises USER_ALREADY_EXISTS on duplicates."""
        hashed = hash_password(password) if password else None
        now = to_ts(self._clock())
        try:
            with self.store.transaction() as tx:
                row = tx.create(
                    "users",
                    {
                        "email": email,
                        "hashed_password": hashed,
                        "role": role,
                        "full_name": full_name,
                        "is_active": True,
                        "failed_attempts": 0,
                        "created_at": now,
                        "updated_at": now,
                    },
                )
                if hashed:
                    self.policy.push_history(row["id"], hashed, store=tx)
        except IntegrityError as exc:
            raise AuthError(ErrorCode.USER_ALREADY_EXISTS) from exc
        return User.from_row(row)

    def update_user(self, user_id: int, **fields) -> User | None:
        fields["updated_at"] = to_ts(self._clock())
        row = self.store.update("users", user_id, fields)
        if row is None:
            return None
        if fields.get("is_active") is False:
            self.sessions.revoke_all(user_id)
        return User.from_row(row)

    def unlock(self, user_id: int) -> bool:
        unlocked = self.policy.unlock(user_id)
        if unlocked:
            self.audit.record("ACCOUNT_UNLOCKED", table_name="users", record_id=user_id, user_id=user_id)
        return unlocked

    def purge_expired(self) -> dict[str, int]:
        """Delete spent refresh records and dead passcodes."""
        now = self._clock()
        removed_codes = 0
        for row in self.store.find("user_passcodes"):
            record = PasscodeRecord.from_row(row)
            if not record.is_active(now) and self.store.delete("user_passcodes", record.id):
                removed_codes += 1
        return {"refresh_tokens": self.sessions.purge_expired(), "user_passcodes": removed_codes}


def build_auth_service(
    store: RecordStore,
    settings: Settings | None = None,
    notifier: Notifier | None = None,
    clock: Callable[[], datetime] = _utcnow,
) -> AuthService:
    """Wire every auth component around one store."""
    cfg = settings or get_settings()
    notifier = notifier or build_notifier(cfg)
    audit = AuditLog(store, clock=clock)
    issuer = TokenIssuer(cfg, clock=clock)
    sessions = RefreshTokenService(store, issuer, cfg, clock=clock)
    passcodes = PasscodeService(store, notifier, audit, cfg, clock=clock)
    policy = AccountSecurityPolicy(store, sessions, notifier, audit, cfg, clock=clock)
    return AuthService(store, issuer, sessions, passcodes, policy, audit, cfg, clock=clock)
