#!/usr/bin/env python3
"""
Portfolio Auth -- operator command line.

Usage:
  python main.py seed-admin --email admin@example.com --password 'S3cret!'
  python main.py seed-admin --email admin@example.com --password 'S3cret!' --name "Site Owner"
  python main.py totp-code --secret JBSWY3DPEHPK3PXP
  python main.py totp-code --secret JBSWY3DPEHPK3PXP --at 1700000000
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8080 --reload

Environment variables:
  SECRET_KEY    Required unless DEBUG=true. At least 32 characters.
  DATABASE_URL  SQLAlchemy URL (default: SQLite file beside the package).
  See core/config.py for the full list.
"""

import argparse
import sys
from datetime import datetime, timezone
from typing import Optional

from auth.service import AuthOrchestrator
from auth.store import SqlAuthStore
from auth.totp import TwoFactorEngine
from core.config import get_settings


def _seed_admin(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = SqlAuthStore(settings.database_url)
    try:
        result = AuthOrchestrator(settings, store).seed_admin(args.email, args.password, args.name)
    finally:
        store.close()
    if not result.ok:
        print(f"  [!] {result.error.message}", file=sys.stderr)
        return 1
    account = result.data
    print(f"  Admin account ready: {account.email} (id {account.id}, role {account.role})")
    return 0


def _totp_code(args: argparse.Namespace) -> int:
    engine = TwoFactorEngine()
    for_time: Optional[datetime] = None
    if args.at is not None:
        for_time = datetime.fromtimestamp(args.at, tz=timezone.utc)
    try:
        code = engine.generate_totp(args.secret.replace(" ", "").upper(), for_time)
    except (ValueError, TypeError) as exc:
        print(f"  [!] '{args.secret}' is not a valid Base32 secret: {exc}", file=sys.stderr)
        return 1
    print(code)
    return 0


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="portfolio-auth",
        description="Account and two-factor authentication service for the portfolio site.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    seed = commands.add_parser("seed-admin", help="Create an Admin account if it does not exist")
    seed.add_argument("--email", required=True, help="Admin email address")
    seed.add_argument("--password", required=True, help="Admin password")
    seed.add_argument("--name", default="Administrator", help="Display name (default: Administrator)")
    seed.set_defaults(handler=_seed_admin)

    totp = commands.add_parser("totp-code", help="Print the TOTP code for a Base32 secret")
    totp.add_argument("--secret", required=True, help="Base32 secret as shown during 2FA setup")
    totp.add_argument("--at", type=int, default=None, metavar="UNIX", help="Unix time to compute the code for")
    totp.set_defaults(handler=_totp_code)

    serve = commands.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development)")
    serve.set_defaults(handler=_serve)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "handler", None):
        parser.print_help()
        return 0
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
