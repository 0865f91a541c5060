#!/usr/bin/env python3
"""
Store Accounts -- administration CLI for the app store login service.

Usage:
  python main.py disable 42
  python main.py enable 42
  python main.py revoke-sessions 42
  python main.py sessions 42
  python main.py serve --host 0.0.0.0 --port 8000

Environment variables (see core/config.py):
  DATABASE_URL   Accounts database. Defaults to a SQLite file in the repo root.
  SECRET_KEY     Keys the session-key hashes. Must match the running server,
                 or revoke/sessions will not find the sessions it issued.
  AUTH_MODE      sso or local.
"""

import argparse
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from core.config import get_settings


def _service():
    # Imported here so "main.py --help" works without a valid SECRET_KEY.
    from auth.service import build_account_service

    return build_account_service(get_settings())


def _fmt_ts(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def cmd_disable(account_id: int) -> int:
    service = _service()
    try:
        if not service.disable_account(account_id):
            print(f"  [!] No account with id {account_id}.")
            return 1
        print(f"  Account {account_id} disabled; all sessions revoked.")
        return 0
    finally:
        service.close()


def cmd_enable(account_id: int) -> int:
    service = _service()
    try:
        if not service.enable_account(account_id):
            print(f"  [!] No account with id {account_id}.")
            return 1
        print(f"  Account {account_id} enabled.")
        return 0
    finally:
        service.close()


def cmd_revoke_sessions(account_id: int) -> int:
    service = _service()
    try:
        revoked = service.revoke_sessions(account_id)
        print(f"  Revoked {revoked} session(s) of account {account_id}.")
        return 0
    finally:
        service.close()


def cmd_sessions(account_id: int) -> int:
    service = _service()
    try:
        live = service.sessions.list_sessions(account_id)
        if not live:
            print(f"  Account {account_id} has no live sessions.")
            return 0
        print(f"  Account {account_id}: {len(live)} live session(s), most recent first")
        for s in live:
            kind = "sso" if s.access_token else "local"
            print(f"    created {_fmt_ts(s.created_at)}  last seen {_fmt_ts(s.last_seen_at)}  {kind}")
        return 0
    finally:
        service.close()


def cmd_serve(host: str, port: int, reload: bool) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=host, port=port, reload=reload)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="store-accounts",
        description="Administer store accounts and sessions, or run the API server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py disable 42            # disable account 42 and end its sessions
  python main.py revoke-sessions 42    # log account 42 out everywhere
  python main.py serve --port 8000
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    for name, help_text in (
        ("disable", "Disable an account and revoke all of its sessions"),
        ("enable", "Re-enable a disabled account"),
        ("revoke-sessions", "Delete every session of an account"),
        ("sessions", "List an account's live sessions"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("account_id", type=int, metavar="ACCOUNT-ID")

    serve = sub.add_parser("serve", help="Run the API server with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development only)")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 2

    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")

    if args.command == "serve":
        return cmd_serve(args.host, args.port, args.reload)
    if args.command == "disable":
        return cmd_disable(args.account_id)
    if args.command == "enable":
        return cmd_enable(args.account_id)
    if args.command == "revoke-sessions":
        return cmd_revoke_sessions(args.account_id)
    return cmd_sessions(args.account_id)


if __name__ == "__main__":
    sys.exit(main())
