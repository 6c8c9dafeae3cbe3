#!/usr/bin/env python3
"""CLI script to bootstrap a user account.

Usage:
    uv run python scripts/create_user.py --email admin@example.com --password changeme1 \
        --first-name Ada --last-name Admin --superuser

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


async def create(email: str, password: str, first_name: str, last_name: str, superuser: bool) -> None:
    from src.scope.core.database import close_db, get_session_factory, init_db
    from src.scope.services.auth import AuthService
    from src.scope.services.token_store import TokenStore
    from src.scope.services.users import UserRepository

    await init_db()
    session_factory = get_session_factory()
    auth = AuthService(UserRepository(session_factory), TokenStore(session_factory))
    user = await auth.register(email, password, first_name, last_name, is_superuser=superuser)

    print("User created:")
    print(f"  ID:        {user.id}")
    print(f"  Email:     {user.email}")
    print(f"  Superuser: {user.is_superuser}")
    await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Create a user account")
    parser.add_argument("--email", required=True, help="Login email")
    parser.add_argument("--password", required=True, help="Plaintext password (min 8 chars)")
    parser.add_argument("--first-name", required=True)
    parser.add_argument("--last-name", required=True)
    parser.add_argument("--superuser", action="store_true", help="Grant global administrator rights")
    args = parser.parse_args()

    if len(args.password) < 8:
        parser.error("--password must be at least 8 characters")

    asyncio.run(create(args.email, args.password, args.first_name, args.last_name, args.superuser))


if __name__ == "__main__":
    main()
