#!/usr/bin/env python3
"""
Create every table the sync services use (competitions, teams, matches,
competition_participants, predictions). Existing tables are left untouched.

From repo root: python3 backend/create_schema.py
Requires LS_DATABASE_URL (or DATABASE_URL) in the environment, or .env in backend/.
"""
import asyncio
import os
import sys

# Backend dir on path so "shared" resolves (run from repo root or backend/)
_backend_dir = os.path.dirname(os.path.abspath(__file__))
if _backend_dir not in sys.path:
    sys.path.insert(0, _backend_dir)
os.chdir(_backend_dir)

from shared.config import get_settings
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger, setup_logging

logger = get_logger("create_schema")


async def main() -> int:
    settings = get_settings()
    setup_logging("create_schema")
    db = DatabaseManager(settings)
    await db.connect()
    try:
        await db.create_schema()
        logger.info("schema_created", url=settings.database_url_safe_log)
        return 0
    except Exception as exc:
        logger.error("schema_create_failed", error=str(exc), exc_info=True)
        return 1
    finally:
        await db.disconnect()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
