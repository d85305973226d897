#!/usr/bin/env python3
"""
ProjectPulse Auth -- administrative command line.

Usage:
  python main.py create-admin admin --email admin@example.com --name "Site Admin"
  python main.py set-password alice
  python main.py purge-sessions

Passwords are prompted for when --password is not given. The command uses
the same environment (DATABASE_URL, SECRET_KEY, ...) as the API server.
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.models import Role, User, UserStatus
from auth.passwords import hash_password
from auth.service import AuthService
from core.config import get_settings

_MIN_PASSWORD_LENGTH = 6


def _read_password(given: Optional[str]) -> Optional[str]:
    """Return the given password, or prompt twice for one. None if they differ or are too short."""
    password = given
    if password is None:
        password = getpass.getpass("  Password: ")
        if getpass.getpass("  Repeat password: ") != password:
            print("  [!] Passwords do not match.")
            return None
    if len(password) < _MIN_PASSWORD_LENGTH:
        print(f"  [!] Password must be at least {_MIN_PASSWORD_LENGTH} characters.")
        return None
    return password


def _create_admin(service: AuthService, args: argparse.Namespace) -> int:
    password = _read_password(args.password)
    if password is None:
        return 1
    admin = User(
        username=args.username.strip(),
        email=args.email,
        name=args.name or args.username.strip(),
        password=hash_password(password),
        role=Role.ADMINISTRATOR,
        status=UserStatus.ACTIVE,
        preferred_language=args.language,
    )
    try:
        user_id = service.users.create_user(admin)
    except IntegrityError:
        print(f"  [!] A user named '{admin.username}' already exists.")
        return 1
    print(f"  Administrator '{admin.username}' created (id={user_id}).")
    return 0


def _set_password(service: AuthService, args: argparse.Namespace) -> int:
    user = service.users.get_by_username(args.username)
    if user is None:
        print(f"  [!] No user named '{args.username}'.")
        return 1
    password = _read_password(args.password)
    if password is None:
        return 1
    removed = service.change_password(user.id, password)
    print(f"  Password updated for '{user.username}'; {removed} session(s) signed out.")
    return 0


def _purge_sessions(service: AuthService, args: argparse.Namespace) -> int:
    removed = service.sessions.purge_expired()
    print(f"  {removed} expired session(s) removed.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="projectpulse-auth",
        description="Administrative commands for ProjectPulse Auth.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin admin --email admin@example.com
  python main.py set-password alice --password 'n3w-secret'
  DATABASE_URL=sqlite:///./pmo.db python main.py purge-sessions
        """,
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = commands.add_parser("create-admin", help="Create a local Administrator account")
    create.add_argument("username", help="Login name (unique, case-insensitive)")
    create.add_argument("--email", required=True, help="Email address")
    create.add_argument("--name", default=None, help="Display name (default: the username)")
    create.add_argument("--language", default="en", help="Preferred UI language (default: en)")
    create.add_argument("--password", default=None, help="Password (prompted for when omitted)")
    create.set_defaults(handler=_create_admin)

    reset = commands.add_parser("set-password", help="Set a local password and sign the user out everywhere")
    reset.add_argument("username", help="Existing login name")
    reset.add_argument("--password", default=None, help="New password (prompted for when omitted)")
    reset.set_defaults(handler=_set_password)

    purge = commands.add_parser("purge-sessions", help="Delete expired sessions")
    purge.set_defaults(handler=_purge_sessions)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    service = AuthService.from_settings(get_settings())
    try:
        return args.handler(service, args)
    finally:
        service.close()


if __name__ == "__main__":
    sys.exit(main())
