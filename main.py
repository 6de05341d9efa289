#!/usr/bin/env python3
"""
Minimarket auth -- administrative command line.

Usage:
  python main.py create-user admin@tienda.pe --role administrador
  python main.py unlock 12
  python main.py revoke-sessions 12
  python main.py purge-expired

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the auth database (default: SQLite next to the repo)
  SECRET_KEY    Required unless DEBUG=true; keys the refresh-token hashes
"""

import argparse
import getpass
import logging
import sys
from typing import Optional

from api.models import _validate_password_strength
from auth.errors import AuthError
from auth.service import AuthService, build_auth_service
from auth.store import RecordStore

_ROLES = ["vendedor", "almacenero", "administrador", "auditor"]


def _read_password(given: Optional[str]) -> str:
    """Return --password if given, otherwise prompt twice without echo.

    Raises ValueError when the password fails the same strength rules as the API.
    """
    if given:
        return _validate_password_strength(given)
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        raise SystemExit("  [!] Passwords do not match.")
    return _validate_password_strength(first)


def _create_user(service: AuthService, args: argparse.Namespace) -> int:
    try:
        password = None if args.oauth_only else _read_password(args.password)
    except ValueError as exc:
        print(f"  [!] {exc}")
        return 1
    try:
        user = service.create_user(args.email.strip().lower(), password, args.role, full_name=args.name)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    print(f"  Created user {user.id} ({user.email}, role={user.role}).")
    return 0


def _unlock(service: AuthService, args: argparse.Namespace) -> int:
    if not service.unlock(args.user_id):
        print(f"  [!] User {args.user_id} not found.")
        return 1
    print(f"  User {args.user_id} unlocked.")
    return 0


def _revoke_sessions(service: AuthService, args: argparse.Namespace) -> int:
    outcomes = service.logout_all(args.user_id)
    failed = [o for o in outcomes if not o.ok]
    print(f"  Revoked {len(outcomes) - len(failed)} record(s) for user {args.user_id}.")
    for outcome in failed:
        print(f"  [!] {outcome.step} failed: {outcome.error}")
    return 1 if failed else 0


def _purge_expired(service: AuthService, args: argparse.Namespace) -> int:
    removed = service.purge_expired()
    print(
        f"  Removed {removed['refresh_tokens']} refresh record(s) "
        f"and {removed['user_passcodes']} passcode(s)."
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="minimarket-auth",
        description="Administrative tasks for the Minimarket auth database.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user admin@tienda.pe --role administrador --name "Ana Torres"
  python main.py create-user caja@tienda.pe --password 'Caja2024x'
  python main.py unlock 12
  python main.py revoke-sessions 12
  DATABASE_URL=sqlite:////var/lib/minimarket/auth.db python main.py purge-expired
        """,
    )
    parser.add_argument("--database-url", metavar="URL", help="Override DATABASE_URL for this run")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-user", help="Create an account directly (no passcode)")
    create.add_argument("email")
    create.add_argument("--role", choices=_ROLES, default="vendedor", help="Role (default: vendedor)")
    create.add_argument("--name", default=None, help="Full name")
    create.add_argument("--password", default=None, help="Password (prompted when omitted)")
    create.add_argument("--oauth-only", action="store_true", help="Create without a password (OAuth login only)")
    create.set_defaults(handler=_create_user)

    unlock = sub.add_parser("unlock", help="Clear failed attempts and lockout for a user")
    unlock.add_argument("user_id", type=int)
    unlock.set_defaults(handler=_unlock)

    revoke = sub.add_parser("revoke-sessions", help="Revoke every session and refresh credential of a user")
    revoke.add_argument("user_id", type=int)
    revoke.set_defaults(handler=_revoke_sessions)

    purge = sub.add_parser("purge-expired", help="Delete expired or revoked refresh records and passcodes")
    purge.set_defaults(handler=_purge_expired)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    args = build_parser().parse_args(argv)

    store = RecordStore(args.database_url)
    try:
        return args.handler(build_auth_service(store), args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
