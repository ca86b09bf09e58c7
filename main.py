#!/usr/bin/env python3
"""
AdminGate -- operator command line.

Usage:
  python main.py seed                     create default permissions and system roles
  python main.py seed --with-accounts     ... plus the three default admin accounts
  python main.py seed --reset             wipe users, roles and permissions first
  python main.py purge                    drop expired revocations and old audit records
  python main.py serve --port 8000        run the API with uvicorn

Configuration comes from the environment / .env (see core/config.py).
DATABASE_URL selects the database; SECRET_KEY is required unless DEBUG=true.
"""

import argparse
import logging
import sys
from typing import Optional

from audit.store import AuditStore
from auth.revocation import RevocationLedger
from auth.seed import DEFAULT_ACCOUNTS, seed
from auth.store import UserStore
from core.config import get_settings

logger = logging.getLogger("admingate.cli")


def _cmd_seed(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = UserStore(settings.database_url)
    try:
        created = seed(
            store,
            with_accounts=args.with_accounts,
            reset=args.reset,
            bcrypt_rounds=settings.bcrypt_rounds,
        )
    finally:
        store.close()

    print(f"  Permissions created: {created['permissions']}")
    print(f"  Roles created:       {created['roles']}")
    if args.with_accounts:
        print(f"  Accounts created:    {created['accounts']}")
        print("\n  Default accounts (change these passwords):")
        for _name, email, password, role in DEFAULT_ACCOUNTS:
            print(f"    {role:<12} {email} / {password}")
    return 0


def _cmd_purge(args: argparse.Namespace) -> int:
    settings = get_settings()
    user_store = UserStore(settings.database_url)
    audit_store = AuditStore(settings.database_url)
    try:
        revoked = RevocationLedger(user_store).purge_expired()
        audited = audit_store.purge_older_than(settings.audit_retention_days)
    finally:
        user_store.close()
        audit_store.close()
    print(f"  Revocation entries removed: {revoked}")
    print(f"  Audit records removed:      {audited} (older than {settings.audit_retention_days} days)")
    return 0


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    logger.info("Starting AdminGate API on %s:%d", args.host, args.port)
    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="admingate",
        description="Authorization and audit core for admin panels.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  DEBUG=true python main.py seed --with-accounts
  python main.py purge
  python main.py serve --host 0.0.0.0 --port 8000
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    seed_parser = sub.add_parser("seed", help="Create default permissions, roles and (optionally) accounts")
    seed_parser.add_argument("--reset", action="store_true", help="Delete all users, roles and permissions first")
    seed_parser.add_argument(
        "--with-accounts",
        action="store_true",
        help="Also create the default super admin, admin and moderator accounts",
    )
    seed_parser.set_defaults(func=_cmd_seed)

    purge_parser = sub.add_parser("purge", help="Remove expired revocation entries and old audit records")
    purge_parser.set_defaults(func=_cmd_purge)

    serve_parser = sub.add_parser("serve", help="Run the API server")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true", help="Reload on code changes (development)")
    serve_parser.set_defaults(func=_cmd_serve)

    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 1

    logging.basicConfig(level=logging.INFO, format="%(levelname)-5s %(name)s %(message)s")
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
