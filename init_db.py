#!/usr/bin/env python3
"""
Create the clinicbook tables directly (local SQLite / dev databases).
Production databases are migrated with Alembic instead.
"""

import asyncio
import sys
from pathlib import Path

import sqlalchemy as sa

# Add the project root to the path
sys.path.insert(0, str(Path(__file__).parent))

from clinicbook.core.config import settings
from clinicbook.db.base import init_db
from clinicbook.db.session import AsyncSessionLocal


async def init_database():
    print(f"Initializing database at {settings.async_db_uri}")
    await init_db()

    async with AsyncSessionLocal() as session:
        result = await session.execute(sa.text("SELECT count(*) FROM appointments"))
        print(f"appointments table ready ({result.scalar()} rows)")


if __name__ == "__main__":
    asyncio.run(init_database())
