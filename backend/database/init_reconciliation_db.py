"""
VendOps Reconciliation - Database Initialization

Creates the reconciliation tables from the ORM metadata.
payment_transactions belongs to the payments module; it is only created
here when missing (local development and test databases).

Usage: python -m database.init_reconciliation_db [create|drop|check]
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import List

from sqlalchemy import inspect
from dotenv import load_dotenv

# Load environment variables
ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')

from database.connection import Base, dispose_db, get_engine
import database.reconciliation_models  # noqa: F401  (registers tables on Base)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

RECONCILIATION_TABLES = [
    "reconciliation_runs",
    "reconciliation_mismatches",
    "hw_import_batches",
    "hw_imported_sales",
    "payment_transactions",
]


def _table_names(sync_conn) -> List[str]:
    return sorted(inspect(sync_conn).get_table_names())


async def create_tables() -> List[str]:
    """Create all reconciliation tables that do not exist yet"""
    logger.info("Creating reconciliation database tables...")

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        existing = await conn.run_sync(_table_names)

    tables = [t for t in existing if t in RECONCILIATION_TABLES]
    logger.info(f"Reconciliation tables present: {tables}")
    return tables


async def drop_tables():
    """Drop the engine-owned reconciliation tables (use with caution!)"""
    logger.info("Dropping reconciliation database tables...")

    owned = [
        Base.metadata.tables[name]
        for name in RECONCILIATION_TABLES
        if name != "payment_transactions"
    ]
    async with get_engine().begin() as conn:
        await conn.run_sync(lambda sync_conn: Base.metadata.drop_all(sync_conn, tables=owned))
    logger.info("Reconciliation tables dropped")


async def check_tables() -> List[str]:
    """Check which tables exist"""
    async with get_engine().begin() as conn:
        return await conn.run_sync(_table_names)


async def main():
    """Main initialization function"""
    command = sys.argv[1] if len(sys.argv) > 1 else "create"

    try:
        if command == "drop":
            await drop_tables()
        elif command == "check":
            tables = await check_tables()
            missing = [t for t in RECONCILIATION_TABLES if t not in tables]
            print(f"Existing tables: {tables}")
            print(f"Missing reconciliation tables: {missing}")
        elif command == "create":
            tables = await create_tables()
            print(f"Created tables: {tables}")
        else:
            print(f"Unknown command: {command}")
            print("Usage: python -m database.init_reconciliation_db [create|drop|check]")
    finally:
        await dispose_db()


if __name__ == "__main__":
    asyncio.run(main())
