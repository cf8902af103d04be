#!/usr/bin/env python3
"""
AuthFlow -- operator command line.

Usage:
  python main.py init-db
  python main.py check-db
  python main.py list-users
  python main.py list-users --json
  python main.py decode-token eyJhbGciOi...

Configuration comes from the same environment variables / .env file as the
API (see core/config.py): DATABASE_URL or DB_HOST/DB_PORT/DB_NAME/DB_USER/
DB_PASSWORD, SECRET_KEY, DEBUG.
"""

import argparse
import json
import sys
from datetime import datetime, timezone
from typing import Optional

from auth.store import UserStore
from auth.tokens import decode_unverified, verify_access_token
from core.config import get_settings
from db.connection import ConnectionManager
from db.errors import DatabaseError


def _connect() -> ConnectionManager:
    return ConnectionManager.from_settings(get_settings())


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create the users table (idempotent) and report how many rows it holds."""
    db = _connect()
    try:
        store = UserStore(db)
        count = store.count_users()
    except DatabaseError as e:
        print(f"  [!] Database initialization failed: {e}")
        return 1
    finally:
        db.dispose()
    print(f"  Users table ready with {count} record(s).")
    return 0


def cmd_check_db(args: argparse.Namespace) -> int:
    """Exit 0 if the database answers SELECT 1, 1 otherwise."""
    db = _connect()
    try:
        ok = db.check()
    finally:
        db.dispose()
    if not ok:
        print("  [!] Database connection failed.")
        return 1
    print("  Database connected successfully.")
    return 0


def cmd_list_users(args: argparse.Namespace) -> int:
    db = _connect()
    try:
        users = UserStore(db).list_users()
    except DatabaseError as e:
        print(f"  [!] Could not list users: {e}")
        return 1
    finally:
        db.dispose()

    if args.json:
        print(
            json.dumps(
                [
                    {
                        "id": u.id,
                        "name": u.name,
                        "email": u.email,
                        "created_at": u.created_at.isoformat() if u.created_at else None,
                    }
                    for u in users
                ],
                indent=2,
            )
        )
        return 0

    if not users:
        print("  No users.")
        return 0
    for u in users:
        created = u.created_at.strftime("%Y-%m-%d %H:%M") if u.created_at else "-"
        print(f"  {u.id:>6}  {u.email:<40} {u.name:<30} {created}")
    return 0


def _format_ts(value: Optional[int]) -> str:
    if not isinstance(value, int):
        return "-"
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


def cmd_decode_token(args: argparse.Namespace) -> int:
    """Print a token's claims. The signature check result is shown but never required."""
    claims = decode_unverified(args.token)
    if claims is None:
        print("  [!] Not a decodable JWT.")
        return 1
    print(json.dumps(claims, indent=2, default=str))
    print(f"  issued:   {_format_ts(claims.get('iat'))}")
    print(f"  expires:  {_format_ts(claims.get('exp'))}")
    status = "valid" if verify_access_token(args.token) is not None else "INVALID (do not trust these claims)"
    print(f"  signature/expiry/issuer: {status}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="authflow",
        description="AuthFlow operator commands.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create the users table if it does not exist.")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("check-db", help="Verify the database is reachable.")
    p.set_defaults(func=cmd_check_db)

    p = sub.add_parser("list-users", help="List registered users, newest first.")
    p.add_argument("--json", action="store_true", help="Output JSON instead of a table.")
    p.set_defaults(func=cmd_list_users)

    p = sub.add_parser("decode-token", help="Show the claims inside an access token.")
    p.add_argument("token", help="Encoded JWT.")
    p.set_defaults(func=cmd_decode_token)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
