#!/usr/bin/env python3
"""
VAPT Portal -- management commands.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8000 --reload
  python main.py create-superadmin --email admin@example.com --name "Ada Admin"
  python main.py sync-profiles
  python main.py sync-profiles --fix

Environment variables:
  SECRET_KEY      JWT signing key (required unless DEBUG=true)
  AUTH_DB_URL     SQLAlchemy URL for accounts (default: SQLite next to auth/store.py)
  PORTAL_DB_URL   SQLAlchemy URL for portal data (default: SQLite next to portal/store.py)
"""

import argparse
import getpass
import logging
import sys

from sqlalchemy.exc import IntegrityError

from api.models import PASSWORD_MAX_BYTES, PASSWORD_MIN
from auth.models import APPROVED, SUPER_ADMIN, User
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings

logger = logging.getLogger("vaptportal.cli")


def _user_store() -> UserStore:
    settings = get_settings()
    return UserStore(settings.auth_db_url) if settings.auth_db_url else UserStore()


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def cmd_create_superadmin(args: argparse.Namespace) -> int:
    """Create an approved Super-admin without going through /setup.

    Useful for recovering a locked-out install. The password is read from the
    terminal, never from argv, so it does not land in shell history.
    """
    password = getpass.getpass("Password: ")
    if len(password) < PASSWORD_MIN:
        print(f"  [!] Password must be at least {PASSWORD_MIN} characters.")
        return 1
    if len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
        print(f"  [!] Password must be at most {PASSWORD_MAX_BYTES} bytes.")
        return 1
    if getpass.getpass("Confirm password: ") != password:
        print("  [!] Passwords do not match.")
        return 1

    store = _user_store()
    try:
        user_id = store.create_user(
            User(
                email=args.email,
                full_name=args.name,
                role=SUPER_ADMIN,
                status=APPROVED,
                hashed_password=hash_password(password),
            )
        )
    except IntegrityError:
        print(f"  [!] An account for {args.email} already exists.")
        return 1
    finally:
        store.close()
    logger.info("Super-admin %d created from the command line", user_id)
    print(f"  Super-admin created (id {user_id}).")
    return 0


def cmd_sync_profiles(args: argparse.Namespace) -> int:
    """Report approved access requests with no account; --fix creates them."""
    store = _user_store()
    try:
        orphaned = store.find_orphaned_approvals()
        if not orphaned:
            print("  No orphaned approvals.")
            return 0
        print(f"  {len(orphaned)} approved request(s) without an account:")
        for req in orphaned:
            print(f"    #{req.id}  {req.email}  (organization {req.organization_id})")
        if not args.fix:
            print("\n  Run with --fix to create the missing accounts.")
            return 0

        failed = 0
        for req in orphaned:
            try:
                user_id = store.create_user_for_request(req)
            except IntegrityError:
                failed += 1
                print(f"  [!] {req.email}: account already exists")
                continue
            print(f"  Created account {user_id} for {req.email}")
        return 1 if failed else 0
    finally:
        store.close()


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    parser = argparse.ArgumentParser(
        prog="vapt-portal",
        description="VAPT portal server and maintenance commands.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve --reload
  python main.py create-superadmin --email admin@example.com --name "Ada Admin"
  python main.py sync-profiles --fix
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the API server with uvicorn")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    serve.add_argument("--reload", action="store_true", help="Restart on code changes (development only)")
    serve.set_defaults(func=cmd_serve)

    create = sub.add_parser("create-superadmin", help="Create an approved Super-admin account")
    create.add_argument("--email", required=True, help="Login email for the new account")
    create.add_argument("--name", default=None, help="Full name")
    create.set_defaults(func=cmd_create_superadmin)

    sync = sub.add_parser("sync-profiles", help="Find approved access requests with no account")
    sync.add_argument("--fix", action="store_true", help="Create the missing accounts")
    sync.set_defaults(func=cmd_sync_profiles)

    args = parser.parse_args()
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
