#!/usr/bin/env python3
"""
authkeep -- Operator commands for the authentication service.

Usage:
  python main.py init-db
  python main.py sweep
  python main.py sweep --json
  python main.py health
  python main.py events --kind login_failed --limit 20
  python main.py --database-url sqlite:///other.db init-db

Configuration comes from the environment and .env (see core/config.py),
exactly as for the API server.
"""

import argparse
import json
import logging
import sys
from dataclasses import asdict
from typing import Optional

from auth.models import SecurityEventKind
from auth.session import SessionService, build_session_service
from core.config import get_settings
from core.errors import DataError


def _cmd_init_db(sessions: SessionService, args: argparse.Namespace) -> int:
    sessions.store.create_schema()
    print(f"Schema ready on {sessions.data.engine.url.render_as_string(hide_password=True)}")
    return 0


def _cmd_sweep(sessions: SessionService, args: argparse.Namespace) -> int:
    report = sessions.sweep()
    if args.json:
        print(json.dumps(asdict(report)))
    else:
        print(f"Removed {report.tokens_removed} refresh token(s) and {report.events_removed} security event(s).")
    return 0


def _cmd_health(sessions: SessionService, args: argparse.Namespace) -> int:
    reachable = sessions.data.ping()
    stats = sessions.data.health()
    stats["reachable"] = reachable
    print(json.dumps(stats, indent=2, default=str))
    return 0 if reachable else 1


def _cmd_events(sessions: SessionService, args: argparse.Namespace) -> int:
    events = sessions.store.list_events(account_id=args.account, kind=args.kind, limit=args.limit)
    for event in events:
        print(
            f"{event.created_at.isoformat()}  {event.kind.value:<22} "
            f"account={event.account_id or '-'} ip={event.ip_address or '-'} {json.dumps(event.detail, default=str)}"
        )
    if not events:
        print("No matching security events.")
    return 0


_COMMANDS = {
    "init-db": _cmd_init_db,
    "sweep": _cmd_sweep,
    "health": _cmd_health,
    "events": _cmd_events,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="authkeep",
        description="Operator commands for the authkeep authentication service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py init-db
  python main.py sweep --json
  python main.py events --kind account_locked
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        help="Override DATABASE_URL for this command",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND", required=True)

    sub.add_parser("init-db", help="Create tables and indexes (idempotent)")

    sweep = sub.add_parser("sweep", help="Purge stale refresh tokens and old security events now")
    sweep.add_argument("--json", action="store_true", help="Print the sweep report as JSON")

    sub.add_parser("health", help="Ping the database and print data-access counters")

    events = sub.add_parser("events", help="List recent security events, newest first")
    events.add_argument("--account", metavar="ID", help="Only events for this account id")
    events.add_argument(
        "--kind",
        choices=[k.value for k in SecurityEventKind],
        metavar="KIND",
        help="Only events of this kind",
    )
    events.add_argument("--limit", type=int, default=50, help="Maximum number of events (default: 50)")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    settings = get_settings()
    if args.database_url:
        settings = settings.model_copy(update={"database_url": args.database_url})

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    sessions = build_session_service(settings)
    try:
        if args.command != "init-db":
            sessions.store.create_schema()
        return _COMMANDS[args.command](sessions, args)
    except DataError as exc:
        print(f"  [!] {exc.message}", file=sys.stderr)
        return 1
    finally:
        sessions.data.close()


if __name__ == "__main__":
    sys.exit(main())
