"""
Reconciliation Repository

Org-scoped data store used by the reconciliation engine:
- runs, mismatches, import batches and the hardware sale pool (read/write)
- payment transactions (read only)

State transitions that must be exclusive are single conditional UPDATE
statements whose rowcount tells the caller whether it won:
- claim_run: pending -> processing
- soft_delete_run: anything but processing, not already deleted
- resolve_mismatch: only while is_resolved = false
"""

import logging
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database.reconciliation_models import (
    HwImportBatchDB,
    HwImportedSaleDB,
    MismatchType,
    PaymentProvider,
    PaymentTransactionDB,
    PaymentTransactionStatus,
    ReconciliationMismatchDB,
    ReconciliationRunDB,
    ReconciliationStatus,
)

logger = logging.getLogger(__name__)


class ReconciliationRepository(ABC):
    """Every store operation the reconciliation engine needs."""

    # ---------- transaction control ----------

    @abstractmethod
    async def commit(self): ...

    @abstractmethod
    async def rollback(self): ...

    # ---------- runs ----------

    @abstractmethod
    async def add_run(self, run: ReconciliationRunDB) -> ReconciliationRunDB: ...

    @abstractmethod
    async def get_run(
        self, run_id: str, organization_id: Optional[str] = None, include_deleted: bool = False
    ) -> Optional[ReconciliationRunDB]: ...

    @abstractmethod
    async def list_runs(
        self,
        organization_id: str,
        status: Optional[ReconciliationStatus] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        offset: int = 0,
        limit: int = 20
    ) -> Tuple[List[ReconciliationRunDB], int]: ...

    @abstractmethod
    async def claim_run(self, run_id: str, started_at: datetime) -> bool: ...

    @abstractmethod
    async def complete_run(
        self, run_id: str, summary: Dict[str, Any], completed_at: datetime, processing_time_ms: int
    ) -> bool: ...

    @abstractmethod
    async def fail_run(
        self, run_id: str, error_message: str, completed_at: datetime, processing_time_ms: Optional[int]
    ) -> bool: ...

    @abstractmethod
    async def soft_delete_run(
        self, run_id: str, deleted_at: datetime, organization_id: Optional[str] = None
    ) -> bool: ...

    # ---------- source records ----------

    @abstractmethod
    async def fetch_hw_sales(
        self, organization_id: str, start: datetime, end: datetime, machine_ids: Sequence[str]
    ) -> List[HwImportedSaleDB]: ...

    @abstractmethod
    async def fetch_payment_transactions(
        self,
        organization_id: str,
        start: datetime,
        end: datetime,
        providers: Sequence[str],
        machine_ids: Sequence[str]
    ) -> List[PaymentTransactionDB]: ...

    @abstractmethod
    async def mark_sales_reconciled(self, sale_ids: Sequence[str], run_id: str) -> int: ...

    # ---------- mismatches ----------

    @abstractmethod
    async def add_mismatches(self, mismatches: List[ReconciliationMismatchDB]): ...

    @abstractmethod
    async def get_mismatch(
        self, mismatch_id: str, organization_id: Optional[str] = None
    ) -> Optional[ReconciliationMismatchDB]: ...

    @abstractmethod
    async def list_mismatches(
        self,
        run_id: str,
        mismatch_type: Optional[MismatchType] = None,
        is_resolved: Optional[bool] = None,
        offset: int = 0,
        limit: int = 20
    ) -> Tuple[List[ReconciliationMismatchDB], int]: ...

    @abstractmethod
    async def count_mismatches(self, run_id: str) -> List[Tuple[str, bool, int]]: ...

    @abstractmethod
    async def resolve_mismatch(
        self,
        mismatch_id: str,
        resolution_notes: str,
        resolved_at: datetime,
        resolved_by_user_id: Optional[str],
        organization_id: Optional[str] = None
    ) -> bool: ...

    # ---------- imports ----------

    @abstractmethod
    async def add_import_batch(
        self, batch: HwImportBatchDB, sales: List[HwImportedSaleDB]
    ) -> HwImportBatchDB: ...

    @abstractmethod
    async def list_import_batches(
        self, organization_id: str, offset: int = 0, limit: int = 20
    ) -> Tuple[List[HwImportBatchDB], int]: ...


class SqlReconciliationRepository(ReconciliationRepository):
    """SQLAlchemy implementation bound to one AsyncSession."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def commit(self):
        await self.db.commit()

    async def rollback(self):
        await self.db.rollback()

    async def _count(self, stmt) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(stmt.order_by(None).subquery())
        )
        return int(result.scalar_one())

    # ==================== RUNS ====================

    async def add_run(self, run: ReconciliationRunDB) -> ReconciliationRunDB:
        self.db.add(run)
        await self.db.flush()
        return run

    async def get_run(
        self, run_id: str, organization_id: Optional[str] = None, include_deleted: bool = False
    ) -> Optional[ReconciliationRunDB]:
        stmt = select(ReconciliationRunDB).where(ReconciliationRunDB.id == run_id)
        if organization_id:
            stmt = stmt.where(ReconciliationRunDB.organization_id == organization_id)
        if not include_deleted:
            stmt = stmt.where(ReconciliationRunDB.deleted_at.is_(None))
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def list_runs(
        self,
        organization_id: str,
        status: Optional[ReconciliationStatus] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        offset: int = 0,
        limit: int = 20
    ) -> Tuple[List[ReconciliationRunDB], int]:
        stmt = select(ReconciliationRunDB).where(
            ReconciliationRunDB.organization_id == organization_id,
            ReconciliationRunDB.deleted_at.is_(None)
        )
        if status:
            stmt = stmt.where(ReconciliationRunDB.status == status)
        if date_from:
            stmt = stmt.where(ReconciliationRunDB.date_from >= date_from)
        if date_to:
            stmt = stmt.where(ReconciliationRunDB.date_to <= date_to)

        total = await self._count(stmt)
        result = await self.db.execute(
            stmt.order_by(ReconciliationRunDB.created_at.desc(), ReconciliationRunDB.id)
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def claim_run(self, run_id: str, started_at: datetime) -> bool:
        stmt = (
            update(ReconciliationRunDB)
            .where(
                ReconciliationRunDB.id == run_id,
                ReconciliationRunDB.status == ReconciliationStatus.PENDING,
                ReconciliationRunDB.deleted_at.is_(None)
            )
            .values(
                status=ReconciliationStatus.PROCESSING,
                started_at=started_at,
                updated_at=started_at
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def complete_run(
        self, run_id: str, summary: Dict[str, Any], completed_at: datetime, processing_time_ms: int
    ) -> bool:
        stmt = (
            update(ReconciliationRunDB)
            .where(
                ReconciliationRunDB.id == run_id,
                ReconciliationRunDB.status == ReconciliationStatus.PROCESSING
            )
            .values(
                status=ReconciliationStatus.COMPLETED,
                summary=summary,
                error_message=None,
                completed_at=completed_at,
                processing_time_ms=processing_time_ms,
                updated_at=completed_at
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def fail_run(
        self, run_id: str, error_message: str, completed_at: datetime, processing_time_ms: Optional[int]
    ) -> bool:
        stmt = (
            update(ReconciliationRunDB)
            .where(
                ReconciliationRunDB.id == run_id,
                ReconciliationRunDB.status == ReconciliationStatus.PROCESSING
            )
            .values(
                status=ReconciliationStatus.FAILED,
                summary=None,
                error_message=error_message,
                completed_at=completed_at,
                processing_time_ms=processing_time_ms,
                updated_at=completed_at
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def soft_delete_run(
        self, run_id: str, deleted_at: datetime, organization_id: Optional[str] = None
    ) -> bool:
        conditions = [
            ReconciliationRunDB.id == run_id,
            ReconciliationRunDB.status != ReconciliationStatus.PROCESSING,
            ReconciliationRunDB.deleted_at.is_(None)
        ]
        if organization_id:
            conditions.append(ReconciliationRunDB.organization_id == organization_id)

        stmt = (
            update(ReconciliationRunDB)
            .where(*conditions)
            .values(deleted_at=deleted_at, updated_at=deleted_at)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    # ==================== SOURCE RECORDS ====================

    async def fetch_hw_sales(
        self, organization_id: str, start: datetime, end: datetime, machine_ids: Sequence[str]
    ) -> List[HwImportedSaleDB]:
        stmt = select(HwImportedSaleDB).where(
            HwImportedSaleDB.organization_id == organization_id,
            HwImportedSaleDB.sale_date >= start,
            HwImportedSaleDB.sale_date < end
        )
        if machine_ids:
            stmt = stmt.where(or_(
                HwImportedSaleDB.machine_code.in_(machine_ids),
                HwImportedSaleDB.machine_id.in_(machine_ids)
            ))
        result = await self.db.execute(stmt.order_by(HwImportedSaleDB.sale_date, HwImportedSaleDB.id))
        return list(result.scalars().all())

    async def fetch_payment_transactions(
        self,
        organization_id: str,
        start: datetime,
        end: datetime,
        providers: Sequence[str],
        machine_ids: Sequence[str]
    ) -> List[PaymentTransactionDB]:
        if not providers:
            return []

        occurred_at = func.coalesce(PaymentTransactionDB.processed_at, PaymentTransactionDB.created_at)
        stmt = select(PaymentTransactionDB).where(
            PaymentTransactionDB.organization_id == organization_id,
            PaymentTransactionDB.status == PaymentTransactionStatus.COMPLETED,
            PaymentTransactionDB.provider.in_([PaymentProvider(p) for p in providers]),
            and_(occurred_at >= start, occurred_at < end)
        )
        if machine_ids:
            stmt = stmt.where(or_(
                PaymentTransactionDB.machine_code.in_(machine_ids),
                PaymentTransactionDB.machine_id.in_(machine_ids)
            ))
        result = await self.db.execute(stmt.order_by(occurred_at, PaymentTransactionDB.id))
        return list(result.scalars().all())

    async def mark_sales_reconciled(self, sale_ids: Sequence[str], run_id: str) -> int:
        if not sale_ids:
            return 0
        stmt = (
            update(HwImportedSaleDB)
            .where(HwImportedSaleDB.id.in_(list(sale_ids)))
            .values(is_reconciled=True, reconciliation_run_id=run_id)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount

    # ==================== MISMATCHES ====================

    async def add_mismatches(self, mismatches: List[ReconciliationMismatchDB]):
        if mismatches:
            self.db.add_all(mismatches)
            await self.db.flush()

    async def get_mismatch(
        self, mismatch_id: str, organization_id: Optional[str] = None
    ) -> Optional[ReconciliationMismatchDB]:
        stmt = select(ReconciliationMismatchDB).where(ReconciliationMismatchDB.id == mismatch_id)
        if organization_id:
            stmt = stmt.where(ReconciliationMismatchDB.organization_id == organization_id)
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def list_mismatches(
        self,
        run_id: str,
        mismatch_type: Optional[MismatchType] = None,
        is_resolved: Optional[bool] = None,
        offset: int = 0,
        limit: int = 20
    ) -> Tuple[List[ReconciliationMismatchDB], int]:
        stmt = select(ReconciliationMismatchDB).where(ReconciliationMismatchDB.run_id == run_id)
        if mismatch_type:
            stmt = stmt.where(ReconciliationMismatchDB.mismatch_type == mismatch_type)
        if is_resolved is not None:
            stmt = stmt.where(ReconciliationMismatchDB.is_resolved == is_resolved)

        total = await self._count(stmt)
        result = await self.db.execute(
            stmt.order_by(ReconciliationMismatchDB.order_time, ReconciliationMismatchDB.id)
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def count_mismatches(self, run_id: str) -> List[Tuple[str, bool, int]]:
        stmt = (
            select(
                ReconciliationMismatchDB.mismatch_type,
                ReconciliationMismatchDB.is_resolved,
                func.count()
            )
            .where(ReconciliationMismatchDB.run_id == run_id)
            .group_by(ReconciliationMismatchDB.mismatch_type, ReconciliationMismatchDB.is_resolved)
        )
        result = await self.db.execute(stmt)
        return [
            (row[0].value if hasattr(row[0], "value") else row[0], bool(row[1]), int(row[2]))
            for row in result.all()
        ]

    async def resolve_mismatch(
        self,
        mismatch_id: str,
        resolution_notes: str,
        resolved_at: datetime,
        resolved_by_user_id: Optional[str],
        organization_id: Optional[str] = None
    ) -> bool:
        conditions = [
            ReconciliationMismatchDB.id == mismatch_id,
            ReconciliationMismatchDB.is_resolved.is_(False)
        ]
        if organization_id:
            conditions.append(ReconciliationMismatchDB.organization_id == organization_id)

        stmt = (
            update(ReconciliationMismatchDB)
            .where(*conditions)
            .values(
                is_resolved=True,
                resolution_notes=resolution_notes,
                resolved_at=resolved_at,
                resolved_by_user_id=resolved_by_user_id,
                updated_at=resolved_at
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    # ==================== IMPORTS ====================

    async def add_import_batch(
        self, batch: HwImportBatchDB, sales: List[HwImportedSaleDB]
    ) -> HwImportBatchDB:
        self.db.add(batch)
        await self.db.flush()
        for sale in sales:
            sale.import_batch_id = batch.id
        if sales:
            self.db.add_all(sales)
            await self.db.flush()
        return batch

    async def list_import_batches(
        self, organization_id: str, offset: int = 0, limit: int = 20
    ) -> Tuple[List[HwImportBatchDB], int]:
        stmt = select(HwImportBatchDB).where(HwImportBatchDB.organization_id == organization_id)
        total = await self._count(stmt)
        result = await self.db.execute(
            stmt.order_by(HwImportBatchDB.created_at.desc(), HwImportBatchDB.id)
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all()), total
