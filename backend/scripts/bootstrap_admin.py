"""
Idempotent ADMIN bootstrap script.
Uses BOOTSTRAP_ADMIN_EMAIL and BOOTSTRAP_ADMIN_PASSWORD from env.
If a user already exists with that email, promotes it to an active Admin. Otherwise creates one.
Never outputs plaintext passwords.

Usage (from backend/):
  python -m scripts.bootstrap_admin
"""
import asyncio
import sys
from pathlib import Path

# Ensure backend root is on path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dotenv import load_dotenv
load_dotenv(Path(__file__).resolve().parent.parent / ".env")


async def main():
    from database import database
    from services.admin_bootstrap import run_bootstrap_admin

    await database.connect()
    try:
        result = await run_bootstrap_admin()
        print(f"Bootstrap: {result['action']} - {result['message']}")
        if result.get("user_id"):
            print(f"  user_id: {result['user_id']}")
    finally:
        await database.close()


if __name__ == "__main__":
    asyncio.run(main())
