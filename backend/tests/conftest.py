"""
Shared fixtures for the reconciliation test suite.

Provides:
- In-memory SQLite database (aiosqlite, isolated per test)
- Session factory and repository bound to that database
- Settings with a known internal API key
- Factories for HW sales and payment transactions
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config import Settings
from database.connection import Base
from database.reconciliation_models import (
    HwImportBatchDB,
    HwImportedSaleDB,
    HwImportSource,
    PaymentProvider,
    PaymentTransactionDB,
    PaymentTransactionStatus,
)
from reconciliation.repository import SqlReconciliationRepository

TEST_API_KEY = "test-internal-key"
ORG_ID = "11111111-1111-4111-8111-111111111111"
OTHER_ORG_ID = "22222222-2222-4222-8222-222222222222"
USER_ID = "33333333-3333-4333-8333-333333333333"


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


# ==================== DATABASE ====================

@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database with every table created."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def repository(db):
    return SqlReconciliationRepository(db)


@pytest.fixture
def settings():
    return Settings(
        ENVIRONMENT="test",
        DATABASE_URL="sqlite+aiosqlite://",
        INTERNAL_API_KEY=TEST_API_KEY,
        RECON_EXECUTION_TIMEOUT_SECONDS=5,
    )


# ==================== FACTORIES ====================

def make_batch(organization_id: str = ORG_ID) -> HwImportBatchDB:
    return HwImportBatchDB(
        id=str(uuid.uuid4()),
        organization_id=organization_id,
        import_source=HwImportSource.API,
        total_rows=0,
        imported_count=0,
        skipped_count=0,
        errors=[],
        created_at=utc(2024, 1, 1),
    )


def make_sale(batch: HwImportBatchDB, sale_date: datetime, amount, machine_code: str = "M-001",
              order_number=None, **kwargs) -> HwImportedSaleDB:
    return HwImportedSaleDB(
        id=kwargs.pop("id", str(uuid.uuid4())),
        organization_id=kwargs.pop("organization_id", batch.organization_id),
        import_batch_id=batch.id,
        sale_date=sale_date,
        machine_code=machine_code,
        amount=Decimal(str(amount)),
        currency="UZS",
        order_number=order_number,
        quantity=1,
        import_source=HwImportSource.API,
        raw_data={},
        **kwargs
    )


def make_payment(processed_at: datetime, amount, provider: PaymentProvider = PaymentProvider.PAYME,
                 machine_code: str = "M-001", order_id=None,
                 status: PaymentTransactionStatus = PaymentTransactionStatus.COMPLETED,
                 organization_id: str = ORG_ID, **kwargs) -> PaymentTransactionDB:
    return PaymentTransactionDB(
        id=kwargs.pop("id", str(uuid.uuid4())),
        organization_id=organization_id,
        provider=provider,
        provider_tx_id=f"tx-{uuid.uuid4().hex[:8]}",
        amount=Decimal(str(amount)),
        currency="UZS",
        status=status,
        order_id=order_id,
        machine_code=machine_code,
        processed_at=processed_at,
        created_at=kwargs.pop("created_at", processed_at),
        **kwargs
    )
