#!/usr/bin/env python3
"""Remove stale sessions from the session registry once and exit.

Usage:
    # Use SESSION_MAX_AGE_MINUTES from the environment (default two weeks):
    python scripts/sweep_sessions.py

    # Or override the cutoff:
    python scripts/sweep_sessions.py --max-age-minutes 1440

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE: sweep the JSON-backed memory store under SHARED_FS_ROOT instead
    REDIS_URL: sweep the Redis session hash when sessions live in Redis
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import timedelta
from typing import Optional


async def sweep(max_age_minutes: Optional[int] = None) -> int:
    # Import here so env vars are read at call time
    from playground.service.runtime import get_runtime

    runtime = get_runtime()
    max_age = (
        timedelta(minutes=max_age_minutes) if max_age_minutes else runtime.session_max_age
    )
    try:
        return await runtime.sessions.sweep_expired(max_age)
    finally:
        if runtime.cache is not None:
            await runtime.cache.close()


def main():
    parser = argparse.ArgumentParser(
        description="Sweep stale sessions from the registry",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--max-age-minutes",
        type=int,
        default=None,
        help="Remove sessions created longer ago than this (default: SESSION_MAX_AGE_MINUTES)",
    )
    args = parser.parse_args()

    if args.max_age_minutes is not None and args.max_age_minutes <= 0:
        print("Error: --max-age-minutes must be positive")
        sys.exit(1)

    try:
        removed = asyncio.run(sweep(args.max_age_minutes))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Removed {removed} stale session(s)")


if __name__ == "__main__":
    main()
