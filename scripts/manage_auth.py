#!/usr/bin/env python3
"""Operator actions against live authentication state.

Usage:
    # Clear a brute-force lock for a login name:
    python scripts/manage_auth.py unlock alice --tenant 000000

    # Show lockout state for a login name:
    python scripts/manage_auth.py lock-status alice

    # Invalidate every token issued to a principal (e.g. after a password reset):
    python scripts/manage_auth.py invalidate-tokens 42 --reason password_reset

    # Force-logout a single session, or all sessions of a principal:
    python scripts/manage_auth.py logout --session 3f0c...
    python scripts/manage_auth.py logout --principal 42 --keep 3f0c...

Environment Variables:
    REDIS_URL: Redis holding sessions, lockouts and revocation state
    DATABASE_URL: PostgreSQL connection string for the identity tables
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run_command(args: argparse.Namespace) -> dict:
    # Import here to avoid loading config before env vars are set
    from tenantguard.service.runtime import get_runtime

    runtime = get_runtime()
    auth = runtime.auth
    try:
        if args.command == "unlock":
            await auth.unlock_account(args.user_name, tenant_id=args.tenant)
            return {"status": "unlocked", "user_name": args.user_name}

        if args.command == "lock-status":
            status = await auth.guard.status(auth._identity_key(args.user_name, args.tenant))
            return {
                "status": "locked" if status.locked else "normal",
                "failed_attempts": status.failed_attempts,
                "remaining_lock_seconds": status.remaining_lock_seconds,
            }

        if args.command == "invalidate-tokens":
            version = await auth.invalidate_tokens(args.principal_id, args.reason)
            return {"status": "invalidated", "principal_id": args.principal_id, "version": version}

        if args.command == "logout":
            if args.session:
                removed = await auth.logout(args.session, deny=True)
                return {"status": "logged_out", "session_removed": removed}
            count = await auth.logout_others(args.principal, keep_session_id=args.keep)
            return {"status": "logged_out", "sessions": count}
    finally:
        await runtime.close()

    raise ValueError(f"unknown command: {args.command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage lockouts, tokens and sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    unlock = sub.add_parser("unlock", help="Clear the lock and failure count for a login name")
    unlock.add_argument("user_name")
    unlock.add_argument("--tenant", default=None, help="Tenant id the login name belongs to")

    status = sub.add_parser("lock-status", help="Show lockout state for a login name")
    status.add_argument("user_name")
    status.add_argument("--tenant", default=None)

    invalidate = sub.add_parser(
        "invalidate-tokens", help="Bump a principal's token version"
    )
    invalidate.add_argument("principal_id", type=int)
    invalidate.add_argument("--reason", default="operator_request")

    logout = sub.add_parser("logout", help="Force-logout sessions")
    target = logout.add_mutually_exclusive_group(required=True)
    target.add_argument("--session", help="Session id to log out")
    target.add_argument("--principal", type=int, help="Log out every session of this principal")
    logout.add_argument("--keep", default=None, help="Session id to keep with --principal")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        result = asyncio.run(run_command(args))
    except Exception as e:
        print(f"Error: {e}")
        return 1
    for key, value in result.items():
        print(f"  {key}: {value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
