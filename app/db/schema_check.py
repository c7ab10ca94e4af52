import asyncio
from typing import List

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine

import app.core.models  # noqa: F401  registers the models on Base.metadata
from app.db.session import Base, engine


REQUIRED_TABLES: List[str] = [
    "reimbursement_requests",
    "request_attachments",
    "request_status_history",
]


async def ensure_tables(db_engine: AsyncEngine) -> List[str]:
    """Create any missing reimbursement tables. Returns the names that had to be created."""
    async with db_engine.begin() as conn:
        existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        # create_all skips tables that already exist
        await conn.run_sync(Base.metadata.create_all)
    return missing


async def main() -> None:
    missing = await ensure_tables(engine)
    if missing:
        print("Created missing tables: " + ", ".join(missing))
    else:
        print("All reimbursement tables already exist in the database.")


if __name__ == "__main__":
    asyncio.run(main())
