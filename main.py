#!/usr/bin/env python3
"""
accountd -- operator CLI for the account database.

The HTTP API can only create role=User accounts. This CLI is how the first
Admin comes to exist, and how an operator hands a reset code to a user when
no delivery channel is configured.

Usage:
  python main.py create-admin admin@example.com            # prompts for password
  python main.py create-admin admin@example.com --password 'Abcdef1!'
  python main.py promote someone@example.com
  python main.py promote someone@example.com --role User
  python main.py issue-otp someone@example.com

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the account database (default sqlite:///accountd.db)
  ADMIN_EMAIL    Email exempt from the password-strength rule at registration
"""

from __future__ import annotations

import argparse
import getpass
import logging
import sys

from account.engine import AuthenticationEngine
from account.errors import AccountError, UserAlreadyExists
from account.models import Role
from account.password_reset import PasswordResetEngine
from account.store import AccountDatabase
from core.config import get_settings
from core.logging_config import configure_logging

logger = logging.getLogger("accountd.cli")


def _create_admin(auth: AuthenticationEngine, email: str, password: str | None) -> None:
    if password is None:
        password = getpass.getpass(f"Password for {email}: ")
    try:
        auth.register(email, password)
        print(f"  Created {email}.")
    except UserAlreadyExists:
        print(f"  {email} already exists; promoting.")
    user = auth.promote(email, Role.ADMIN)
    print(f"  {user.email} (id {user.id}) is now {user.role.value}.")


def _promote(auth: AuthenticationEngine, email: str, role: Role) -> None:
    user = auth.promote(email, role)
    print(f"  {user.email} (id {user.id}) is now {user.role.value}.")


def _issue_otp(reset: PasswordResetEngine, email: str) -> None:
    txn = reset.request_otp(email)
    print(f"  OTP for {email}: {txn.otp} (expires {txn.expires_at.isoformat()})")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="accountd",
        description="Operator commands for the accountd user database.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_admin = sub.add_parser("create-admin", help="Register an account (if needed) and make it Admin")
    p_admin.add_argument("email")
    p_admin.add_argument("--password", default=None, help="Omit to be prompted")

    p_promote = sub.add_parser("promote", help="Change an existing account's role")
    p_promote.add_argument("email")
    p_promote.add_argument("--role", choices=[r.value for r in Role], default=Role.ADMIN.value)

    p_otp = sub.add_parser("issue-otp", help="Open a password-reset transaction and print its OTP")
    p_otp.add_argument("email")

    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.log_level)
    db = AccountDatabase(settings.database_url)
    config = settings.account_config()

    try:
        if args.command == "create-admin":
            _create_admin(AuthenticationEngine(db, config), args.email, args.password)
        elif args.command == "promote":
            _promote(AuthenticationEngine(db, config), args.email, Role(args.role))
        elif args.command == "issue-otp":
            _issue_otp(PasswordResetEngine(db, config), args.email)
    except AccountError as exc:
        print(f"  [!] {exc.message}", file=sys.stderr)
        for field_error in getattr(exc, "validation_errors", []):
            for message in field_error.errors:
                print(f"      {field_error.property}: {message}", file=sys.stderr)
        return 1
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
