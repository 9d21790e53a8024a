#!/usr/bin/env python3
"""Manage user accounts from the command line.

Usage:
  python scripts/manage_users.py list
  python scripts/manage_users.py create --email camper@example.com [--username camper]
  python scripts/manage_users.py reset-password --email camper@example.com
  python scripts/manage_users.py delete --email camper@example.com --yes

Passwords are prompted for when --password is not given.
"""

from __future__ import annotations

import argparse
import getpass
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.campsite import create_app  # noqa: E402
from app.campsite.db import session_scope  # noqa: E402
from app.campsite.errors import CampsiteError  # noqa: E402
from app.campsite.identity import delete_user, list_users, register, reset_password  # noqa: E402


def _password(args: argparse.Namespace) -> str:
    return args.password if args.password is not None else getpass.getpass("Password: ")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Campsite user management")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List all users")

    create = sub.add_parser("create", help="Create a user")
    create.add_argument("--email", required=True)
    create.add_argument("--username")
    create.add_argument("--password")

    reset = sub.add_parser("reset-password", help="Set a new password and end the user's sessions")
    reset.add_argument("--email", required=True)
    reset.add_argument("--password")

    remove = sub.add_parser("delete", help="Delete a user; their listings and reviews lose their owner")
    remove.add_argument("--email", required=True)
    remove.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    app = create_app()

    try:
        with session_scope(app) as s:
            if args.command == "list":
                users = list_users(s)
                if not users:
                    print("No users found.")
                for u in users:
                    print(f"{u.id}\t{u.email}\t{u.username or '-'}\t{u.created_at:%Y-%m-%d}")
            elif args.command == "create":
                user = register(s, args.email, _password(args), username=args.username)
                print(f"Created user {user.email} (username: {user.username or '-'})")
            elif args.command == "reset-password":
                user = reset_password(s, args.email, _password(args))
                print(f"Password reset for {user.email}")
            elif args.command == "delete":
                if not args.yes:
                    answer = input(f"Delete user {args.email}? (yes/no): ").strip().lower()
                    if answer not in ("y", "yes"):
                        print("Cancelled.")
                        return 1
                user = delete_user(s, args.email)
                print(f"Deleted user {user.email}")
    except CampsiteError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
