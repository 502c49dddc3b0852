#!/usr/bin/env python3
"""Run one session cleanup pass, or revoke every session of a user.

Usage:
    # Expired + idle sweep using SESSION_INACTIVE_THRESHOLD (default 30d):
    REDIS_URL=redis://localhost:6379/0 JWT_SECRET=... python scripts/sweep_sessions.py

    # Custom idle threshold:
    python scripts/sweep_sessions.py --inactive 7d

    # Force-logout a user everywhere:
    python scripts/sweep_sessions.py --revoke-user USER_ID

Environment Variables:
    REDIS_URL: Session store (required unless USE_MEMORY_STORE=true)
    JWT_SECRET: Required to build the runtime
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def sweep(inactive: Optional[str], revoke_user: Optional[str], dry_run: bool) -> dict:
    # Import here to avoid loading config before env vars are parsed
    from musicez.config import parse_duration
    from musicez.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if revoke_user:
            if dry_run:
                sessions = await runtime.sessions.get_user_sessions(revoke_user)
                return {"status": "dry_run", "sessions": len(sessions)}
            revoked = await runtime.sessions.revoke_all_user_sessions(revoke_user)
            return {"status": "revoked", "sessions": revoked}

        threshold = parse_duration(inactive or runtime.session_config.inactive_threshold)
        if dry_run:
            keys = await runtime.store.keys("session:*")
            return {"status": "dry_run", "sessions": len(keys)}
        expired = await runtime.sweeper.cleanup_expired_sessions()
        idle = await runtime.sweeper.cleanup_inactive_sessions(threshold)
        return {"status": "swept", "expired": expired, "inactive": idle}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Sweep MusicEZ sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--inactive",
        default=None,
        help="Idle threshold such as 7d or 12h (defaults to SESSION_INACTIVE_THRESHOLD)",
    )
    parser.add_argument("--revoke-user", default=None, help="Revoke all sessions of this user id")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    try:
        result = asyncio.run(sweep(args.inactive, args.revoke_user, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "swept":
        print(f"Removed {result['expired']} expired and {result['inactive']} inactive sessions")
    elif result["status"] == "revoked":
        print(f"Revoked {result['sessions']} sessions for {args.revoke_user}")
    else:
        print(f"[DRY RUN] {result['sessions']} sessions in scope")


if __name__ == "__main__":
    main()
