#!/usr/bin/env python3
"""
TaskGuard -- account administration from the command line.

Operates directly on the account database (DATABASE_URL), for the cases the
HTTP API cannot cover: creating the first admin, and recovering an account
when no admin can sign in.

Usage:
  python main.py create-admin --name "Ana Admin" --email ana@example.com
  python main.py create-admin --email ana@example.com --promote
  python main.py unlock ana@example.com
  python main.py force-password-change ana@example.com

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the account database (default: ./taskguard.db)
  SECRET_KEY    Required unless DEBUG=true. Must match the API server's key,
                otherwise the MFA secret printed here cannot be verified.
"""

import argparse
import getpass
import sys
from typing import Optional

from auth.errors import AuthError
from auth.models import Role
from auth.passwords import force_password_change
from auth.registration import register
from auth.store import AccountStore
from core.config import get_settings


def _read_password() -> str:
    password = getpass.getpass("Password (12-128 chars, upper, lower, digit, one of @$!%*?&): ")
    confirm = getpass.getpass("Confirm password: ")
    if password != confirm:
        raise SystemExit("  [!] Passwords do not match.")
    return password


def _create_admin(store: AccountStore, args: argparse.Namespace) -> int:
    existing = store.get_by_email(args.email)
    if existing is not None:
        if not args.promote:
            print(f"  [!] {args.email} is already registered. Re-run with --promote to make it an admin.")
            return 1
        store.update_account(existing.id, role=Role.ADMIN, is_active=True)
        print(f"  {existing.email} is now an active ADMIN (id {existing.id}).")
        return 0

    if not args.name:
        print("  [!] --name is required when creating a new account.")
        return 1
    password = args.password or _read_password()
    registration = register(store, args.name, args.email, password, role=Role.ADMIN)

    print(f"\n  Admin account created: {registration.account.email} (id {registration.account.id})")
    print("\n  Multi-factor authentication must be activated before the first sign-in.")
    print("  Add this secret to an authenticator app (shown once):\n")
    print(f"    Secret:           {registration.mfa.secret}")
    print(f"    Provisioning URI: {registration.mfa.provisioning_uri}")
    print("\n  Backup codes (each works once, store them offline):\n")
    for code in registration.mfa.backup_codes:
        print(f"    {code}")
    print("\n  Then sign in via POST /api/v1/auth/login; the response carries a setup")
    print("  token for POST /api/v1/auth/mfa/verify.\n")
    return 0


def _unlock(store: AccountStore, args: argparse.Namespace) -> int:
    account = store.get_by_email(args.email)
    if account is None:
        print(f"  [!] No account for {args.email}.")
        return 1
    store.reset_failed_logins(account.id)
    print(f"  Lockout cleared for {account.email}.")
    return 0


def _force_password_change(store: AccountStore, args: argparse.Namespace) -> int:
    account = store.get_by_email(args.email)
    if account is None:
        print(f"  [!] No account for {args.email}.")
        return 1
    force_password_change(store, account.id)
    print(f"  {account.email} must change their password at next sign-in.")
    return 0


_COMMANDS = {
    "create-admin": _create_admin,
    "unlock": _unlock,
    "force-password-change": _force_password_change,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="taskguard",
        description="TaskGuard account administration.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin --name "Ana Admin" --email ana@example.com
  python main.py create-admin --email existing@example.com --promote
  python main.py unlock ana@example.com
  DATABASE_URL=sqlite:////srv/taskguard.db python main.py force-password-change bob@example.com
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-admin", help="Create an ADMIN account (or promote an existing one)")
    create.add_argument("--email", required=True, help="Email address of the admin")
    create.add_argument("--name", help="Display name (required for a new account)")
    create.add_argument(
        "--password",
        help="Password for a new account. Prompted for when omitted (preferred: keeps it out of shell history)",
    )
    create.add_argument(
        "--promote",
        action="store_true",
        help="If the email is already registered, make that account an active ADMIN",
    )

    unlock = sub.add_parser("unlock", help="Clear the failed-login lockout of an account")
    unlock.add_argument("email")

    force = sub.add_parser("force-password-change", help="Require a password change at next sign-in")
    force.add_argument("email")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    store = AccountStore(get_settings().database_url)
    try:
        return _COMMANDS[args.command](store, args)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
