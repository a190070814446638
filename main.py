#!/usr/bin/env python3
"""
CCM portal -- operator command line.

Seeds and maintains the credential store without going through the HTTP API.
Administrators in the admins table can only be created here.

Usage:
  python main.py create-admin admin --email admin@example.com
  python main.py create-user --first-name Jane --last-name Doe --email jane@example.com --role manager
  python main.py set-password admins admin
  python main.py set-password users janedoe123
  python main.py hash-password
  python main.py purge-expired

Passwords are prompted for (no echo) unless --password is given.

Environment variables:
  AUTH_DB_URL   SQLAlchemy URL of the credential store (default: SQLite next to auth/store.py).
  BCRYPT_ROUNDS Cost factor for new digests (default 12, minimum 10).
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.errors import AuthError
from auth.invites import InvitationEngine
from auth.models import DASHBOARD_ROLES, SOURCE_ADMINS, SOURCE_USERS, AdminPrincipal, ManagedPrincipal
from auth.otp import OtpEngine
from auth.passwords import hash_password
from auth.store import CredentialStore
from core.config import get_settings


def _fail(message: str) -> None:
    print(f"  [!] {message}", file=sys.stderr)
    raise SystemExit(1)


def _read_password(given: Optional[str]) -> str:
    """Return the --password value, or prompt twice and require a match."""
    min_length = get_settings().min_password_length
    if given:
        password = given
    else:
        password = getpass.getpass("Password: ")
        if password != getpass.getpass("Confirm password: "):
            _fail("Passwords do not match.")
    if len(password) < min_length:
        _fail(f"Password must be at least {min_length} characters.")
    return password


def _open_store(db_url: Optional[str]) -> CredentialStore:
    url = db_url or get_settings().auth_db_url
    return CredentialStore(url) if url else CredentialStore()


def cmd_create_admin(args: argparse.Namespace) -> None:
    store = _open_store(args.db)
    try:
        admin = AdminPrincipal(
            username=args.username,
            password=hash_password(_read_password(args.password)),
            email=args.email,
        )
        try:
            admin_id = store.create_admin(admin)
        except IntegrityError:
            _fail(f"Admin '{args.username}' already exists.")
        print(f"  Created admin '{args.username}' (id {admin_id}).")
    finally:
        store.close()


def cmd_create_user(args: argparse.Namespace) -> None:
    store = _open_store(args.db)
    try:
        username = args.username or InvitationEngine(store).generate_unique_username(args.first_name, args.last_name)
        user = ManagedPrincipal(
            first_name=args.first_name,
            last_name=args.last_name,
            username=username,
            email=args.email.strip().lower(),
            role=args.role,
            password_hash=hash_password(_read_password(args.password)),
        )
        try:
            user_id = store.create_user(user)
        except IntegrityError:
            _fail("A user with that email or username already exists.")
        print(f"  Created {args.role} '{username}' (id {user_id}).")
    finally:
        store.close()


def cmd_set_password(args: argparse.Namespace) -> None:
    store = _open_store(args.db)
    try:
        digest = hash_password(_read_password(args.password))
        if not store.set_password(args.source, args.username, digest):
            _fail(f"No {args.source} principal named '{args.username}'.")
        print(f"  Password updated for '{args.username}' ({args.source}).")
    finally:
        store.close()


def cmd_hash_password(args: argparse.Namespace) -> None:
    print(hash_password(_read_password(args.password)))


def cmd_purge_expired(args: argparse.Namespace) -> None:
    store = _open_store(args.db)
    try:
        removed = OtpEngine(store).purge_expired()
        print(f"  Removed {removed} expired verification code(s).")
    finally:
        store.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ccm-portal",
        description="Operator commands for the CCM portal credential store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--db", metavar="URL", help="Credential store URL (overrides AUTH_DB_URL)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-admin", help="Add a row to the admins table")
    p.add_argument("username")
    p.add_argument("--email", default=None)
    p.add_argument("--password", default=None, help="Skip the prompt (visible in shell history)")
    p.set_defaults(func=cmd_create_admin)

    p = sub.add_parser("create-user", help="Add an active admin or manager to the users table")
    p.add_argument("--first-name", required=True)
    p.add_argument("--last-name", required=True)
    p.add_argument("--email", required=True)
    p.add_argument("--role", choices=sorted(DASHBOARD_ROLES), default="manager")
    p.add_argument("--username", default=None, help="Default: generated from the names")
    p.add_argument("--password", default=None)
    p.set_defaults(func=cmd_create_user)

    p = sub.add_parser("set-password", help="Replace a stored password with a fresh digest")
    p.add_argument("source", choices=[SOURCE_ADMINS, SOURCE_USERS])
    p.add_argument("username")
    p.add_argument("--password", default=None)
    p.set_defaults(func=cmd_set_password)

    p = sub.add_parser("hash-password", help="Print a bcrypt digest for a password")
    p.add_argument("--password", default=None)
    p.set_defaults(func=cmd_hash_password)

    p = sub.add_parser("purge-expired", help="Delete expired verification codes")
    p.set_defaults(func=cmd_purge_expired)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        args.func(args)
    except AuthError as e:
        _fail(e.message)


if __name__ == "__main__":
    main()
