#!/usr/bin/env python3
"""
authcore admin CLI -- account provisioning and housekeeping.

Registration is not part of the auth core; operators create accounts here.

Usage:
  python main.py create-account --email a@x.com --name "Ada" --role admin
  python main.py set-role --email a@x.com --role head
  python main.py deactivate --email a@x.com
  python main.py activate --email a@x.com
  python main.py revoke-sessions --email a@x.com
  python main.py purge

Passwords are read with getpass (or from stdin with --password-stdin), never
from argv, so they do not end up in shell history or process listings.

Environment variables:
  SECRET_KEY     Required unless DEBUG=true. Must match the API server's key,
                 otherwise token fingerprints will not line up.
  DATABASE_URL   SQLAlchemy URL of the credential store.
"""

import argparse
import getpass
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from auth.errors import DuplicateAccount
from auth.models import Account, RevocationReason, Role
from auth.passwords import MAX_PASSWORD_BYTES, hash_password, password_fits
from auth.store import SqlCredentialStore
from core.config import get_settings

logger = logging.getLogger("authcore.cli")

_MIN_PASSWORD = 8


def _read_password(from_stdin: bool) -> Optional[str]:
    if from_stdin:
        password = sys.stdin.readline().rstrip("\n")
    else:
        password = getpass.getpass("Password: ")
        if password != getpass.getpass("Confirm password: "):
            print("  [!] Passwords do not match.")
            return None
    if len(password) < _MIN_PASSWORD:
        print(f"  [!] Password must be at least {_MIN_PASSWORD} characters.")
        return None
    if not password_fits(password):
        print(f"  [!] Password must be at most {MAX_PASSWORD_BYTES} bytes.")
        return None
    return password


def _require_account(store: SqlCredentialStore, email: str) -> Optional[Account]:
    account = store.find_account_by_email(email)
    if account is None:
        print(f"  [!] No account with email '{email}'.")
    return account


def cmd_create_account(store: SqlCredentialStore, args: argparse.Namespace) -> int:
    password = _read_password(args.password_stdin)
    if password is None:
        return 1
    try:
        account = store.insert_account(
            Account(email=args.email, name=args.name, password_hash=hash_password(password), role=Role(args.role))
        )
    except DuplicateAccount:
        print(f"  [!] An account with email '{args.email}' already exists.")
        return 1
    print(f"  Created {account.role.value} account {account.email} (id={account.id})")
    return 0


def cmd_set_role(store: SqlCredentialStore, args: argparse.Namespace) -> int:
    account = _require_account(store, args.email)
    if account is None:
        return 1
    store.update_account(account.id, role=Role(args.role))
    print(f"  {account.email}: role {account.role.value} -> {args.role}")
    return 0


def cmd_set_active(store: SqlCredentialStore, args: argparse.Namespace, active: bool) -> int:
    account = _require_account(store, args.email)
    if account is None:
        return 1
    store.update_account(account.id, is_active=active)
    if not active:
        # A deactivated account keeps no live sessions.
        store.revoke_refresh_tokens_for_account(account.id, RevocationReason.explicit, datetime.now(timezone.utc))
    print(f"  {account.email}: {'activated' if active else 'deactivated'}")
    return 0


def cmd_revoke_sessions(store: SqlCredentialStore, args: argparse.Namespace) -> int:
    account = _require_account(store, args.email)
    if account is None:
        return 1
    revoked = store.revoke_refresh_tokens_for_account(
        account.id, RevocationReason.explicit, datetime.now(timezone.utc)
    )
    print(f"  {account.email}: revoked {revoked} session(s)")
    return 0


def cmd_purge(store: SqlCredentialStore, args: argparse.Namespace) -> int:
    removed = store.purge_expired_tokens(datetime.now(timezone.utc))
    print(f"  Purged {removed} expired token(s)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="authcore", description="authcore account administration")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-account", help="Create a new account")
    create.add_argument("--email", required=True)
    create.add_argument("--name", required=True)
    create.add_argument("--role", choices=[r.value for r in Role], default=Role.user.value)
    create.add_argument("--password-stdin", action="store_true", help="Read the password from stdin")

    set_role = sub.add_parser("set-role", help="Change an account's role")
    set_role.add_argument("--email", required=True)
    set_role.add_argument("--role", choices=[r.value for r in Role], required=True)

    for name, help_text in (
        ("activate", "Re-enable an account"),
        ("deactivate", "Disable an account and revoke its sessions"),
        ("revoke-sessions", "Revoke every refresh token of an account"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--email", required=True)

    sub.add_parser("purge", help="Delete expired refresh and reset tokens")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    args = build_parser().parse_args(argv)
    store = SqlCredentialStore(get_settings().database_url)
    try:
        if args.command == "create-account":
            return cmd_create_account(store, args)
        if args.command == "set-role":
            return cmd_set_role(store, args)
        if args.command in ("activate", "deactivate"):
            return cmd_set_active(store, args, active=args.command == "activate")
        if args.command == "revoke-sessions":
            return cmd_revoke_sessions(store, args)
        return cmd_purge(store, args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
