#!/usr/bin/env python3
"""
authguard -- operator CLI.

Usage:
  python main.py create-user --username root --role superadmin
  python main.py create-user --username alice --role user --password 'correct horse'
  python main.py revoke-sessions --username alice
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8080 --reload

Environment variables:
  SECRET_KEY    Signing key for access tokens and refresh-token fingerprints
                (required unless DEBUG=true). Must be at least 32 characters.
  DATABASE_URL  SQLAlchemy URL shared by the user and session stores.
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from auth.credentials import hash_password
from auth.models import User
from auth.permissions import Role
from auth.services import build_services
from core.config import get_settings

_BCRYPT_MAX_BYTES = 72


def _read_password(given: str | None) -> str | None:
    """Return the password from --password or an interactive prompt (entered twice)."""
    if given is not None:
        return given
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def create_user(username: str, role: str, password: str | None) -> int:
    """Create a local account. Returns the process exit code."""
    password = _read_password(password)
    if password is None:
        return 1
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        return 1
    if len(password.encode("utf-8")) > _BCRYPT_MAX_BYTES:
        print(f"  [!] Password must be at most {_BCRYPT_MAX_BYTES} bytes when UTF-8 encoded.")
        return 1

    services = build_services(get_settings())
    try:
        user_id = services.users.create_user(
            User(username=username, role=Role(role), hashed_password=hash_password(password))
        )
    except IntegrityError:
        print(f"  [!] A user named '{username}' already exists.")
        return 1
    finally:
        services.close()
    print(f"Created {role} '{username}' (id {user_id}).")
    return 0


def revoke_sessions(username: str) -> int:
    """Log a user out of every device. Returns the process exit code."""
    services = build_services(get_settings())
    try:
        user = services.users.get_by_username(username)
        if user is None:
            print(f"  [!] No user named '{username}'.")
            return 1
        revoked = services.tokens.logout_all(user.id)
    finally:
        services.close()
    print(f"Revoked {revoked} session(s) for '{username}'.")
    return 0


def serve(host: str, port: int, reload: bool) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=host, port=port, reload=reload)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="authguard",
        description="authguard -- session tokens, login rate limiting and permission guards.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_create = sub.add_parser("create-user", help="Create a local user account.")
    p_create.add_argument("--username", required=True)
    p_create.add_argument(
        "--role",
        choices=[r.value for r in Role],
        default=Role.USER.value,
        help="Baseline role (default: user).",
    )
    p_create.add_argument(
        "--password",
        default=None,
        help="Password. Prompted for interactively when omitted (preferred: keeps it out of shell history).",
    )

    p_revoke = sub.add_parser("revoke-sessions", help="Revoke every session of a user (logout-all).")
    p_revoke.add_argument("--username", required=True)

    p_serve = sub.add_parser("serve", help="Run the API with uvicorn.")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--reload", action="store_true", help="Auto-reload on code changes (development).")

    args = parser.parse_args(argv)

    if args.command == "create-user":
        return create_user(args.username, args.role, args.password)
    if args.command == "revoke-sessions":
        return revoke_sessions(args.username)
    return serve(args.host, args.port, args.reload)


if __name__ == "__main__":
    sys.exit(main())
