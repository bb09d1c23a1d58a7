#!/usr/bin/env python3
"""Inspect and manage sessions and identifier sequences from the command line.

Usage:
    python scripts/session_admin.py list --principal emp-42
    python scripts/session_admin.py history --principal emp-42 --limit 10
    python scripts/session_admin.py events --principal emp-42
    python scripts/session_admin.py terminate --session-id sess_1735120000000_k3j9x0a1b
    python scripts/session_admin.py terminate --principal emp-42
    python scripts/session_admin.py sweep
    python scripts/session_admin.py next-id invoice_id --branch BR-001

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
    JWT_SECRET: signing secret (generated under SHARED_FS_ROOT if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _print_sessions(sessions) -> None:
    if not sessions:
        print("No sessions found")
        return
    for info in sessions:
        state = "active" if info.is_active and not info.blacklisted else "revoked"
        print(
            f"{info.session_id}  {state:<7}  created={info.created_at.isoformat()}  "
            f"last_activity={info.last_activity_at.isoformat()}  "
            f"device={info.device_info or '-'}  ip={info.ip_address or '-'}"
        )


async def run_command(args: argparse.Namespace) -> int:
    # Import here to avoid loading config before env vars are set
    from branchcore.logging import request_context
    from branchcore.service.runtime import get_runtime

    with request_context(command=args.command):
        return await _dispatch(get_runtime(), args)


async def _dispatch(runtime, args: argparse.Namespace) -> int:
    sessions = runtime.sessions

    if args.command == "list":
        _print_sessions(await sessions.list_active_sessions(args.principal))
    elif args.command == "history":
        _print_sessions(await sessions.session_history(args.principal, args.limit))
    elif args.command == "events":
        events = await sessions.security_events(args.principal, args.limit)
        if not events:
            print("No security events found")
        for event in events:
            print(
                f"{event.created_at.isoformat()}  {event.type}  {event.severity}  "
                f"session={event.session_id or '-'}  {event.details}"
            )
    elif args.command == "terminate":
        if args.session_id:
            count = await sessions.terminate_session(args.session_id)
        else:
            count = await sessions.terminate_all_sessions(args.principal)
        print(f"Revoked {count} session token(s)")
    elif args.command == "sweep":
        count = await sessions.expire_stale_sessions()
        print(f"Marked {count} expired token(s) inactive")
        purged = await sessions.purge_security_events()
        print(f"Purged {purged} security event(s) past retention")
    elif args.command == "next-id":
        print(runtime.allocator.preview(args.format, args.branch))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Session and identifier administration for branchcore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("list", "List active sessions of a principal"),
        ("history", "List every session of a principal, newest first"),
        ("events", "List security events of a principal"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--principal", required=True)
        if name != "list":
            cmd.add_argument("--limit", type=int, default=50)

    terminate = sub.add_parser("terminate", help="Revoke one session or all sessions of a principal")
    target = terminate.add_mutually_exclusive_group(required=True)
    target.add_argument("--session-id")
    target.add_argument("--principal")

    sub.add_parser("sweep", help="Mark expired tokens inactive and purge old security events")

    next_id = sub.add_parser("next-id", help="Preview the next identifier without reserving it")
    next_id.add_argument("format", choices=["invoice_number", "invoice_id", "task_id"])
    next_id.add_argument("--branch", help="Branch code (invoice_id, task_id)")
    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.command == "next-id" and args.format != "invoice_number" and not args.branch:
        print("Error: --branch is required for this identifier format")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        sys.exit(asyncio.run(run_command(args)))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
