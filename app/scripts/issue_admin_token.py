# app/scripts/issue_admin_token.py
"""
Create the tables if needed and print an admin bearer token.

Usage:
    python -m app.scripts.issue_admin_token [subject] [--minutes N]
"""
import argparse
import asyncio
from datetime import timedelta

from app.core.security import create_access_token
from app.db.session import close_database_connections, initialize_database


async def issue_admin_token(subject: str, minutes: int) -> str:
    """Ensure the schema exists and return a signed admin token."""
    await initialize_database(create_tables=True)
    await close_database_connections()
    return create_access_token(
        {"sub": subject, "role": "admin"},
        expires_delta=timedelta(minutes=minutes)
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Issue a FleetSync admin token")
    parser.add_argument("subject", nargs="?", default="admin", help="Token subject")
    parser.add_argument("--minutes", type=int, default=60, help="Token lifetime")
    args = parser.parse_args()

    token = asyncio.run(issue_admin_token(args.subject, args.minutes))
    print(f"Admin token for {args.subject} (valid {args.minutes} minutes):")
    print(token)


if __name__ == "__main__":
    main()
