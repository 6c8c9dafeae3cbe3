#!/usr/bin/env python3
"""CLI script to install or verify row level security policies.

Usage:
    uv run python scripts/apply_rls.py           # create tables, install policies
    uv run python scripts/apply_rls.py --check   # report policy status, exit 1 if any is missing

Connects directly to the database using DATABASE_URL from environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.scope
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def apply() -> int:
    import src.scope.models  # noqa: F401
    from src.scope.core.database import Base, get_engine
    from src.scope.core.rls import apply_rls_policies

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        tables = await apply_rls_policies(conn, Base.metadata)
    await engine.dispose()

    for name in tables:
        print(f"  RLS applied: {name}")
    print(f"Policies installed on {len(tables)} table(s)")
    return 0


async def check() -> int:
    import src.scope.models  # noqa: F401
    from src.scope.core.database import Base, get_engine
    from src.scope.core.rls import check_rls_policies, policies_healthy

    engine = get_engine()
    async with engine.connect() as conn:
        report = await check_rls_policies(conn, Base.metadata)
    await engine.dispose()

    for name, flags in report.items():
        status = "ok" if all(flags.values()) else "MISSING"
        print(
            f"  {name}: {status} "
            f"(enabled={flags['enabled']}, forced={flags['forced']}, policy={flags['policy']})"
        )
    return 0 if policies_healthy(report) else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Install or verify row level security policies")
    parser.add_argument("--check", action="store_true", help="Only report policy status")
    args = parser.parse_args()

    sys.exit(asyncio.run(check() if args.check else apply()))


if __name__ == "__main__":
    main()
