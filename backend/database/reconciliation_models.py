"""
VendOps Reconciliation - Database Models

Tables:
- reconciliation_runs: One reconciliation execution over a date range and source set
- reconciliation_mismatches: Discrepancies found by a run, with resolution workflow
- hw_import_batches: One record per hardware sales import call
- hw_imported_sales: Append-only pool of vending-machine sale records
- payment_transactions: Payment provider records (owned by the payments module, read-only here)
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    Column, String, Text, Boolean, Date, DateTime, Integer,
    ForeignKey, Index, Enum as SQLEnum, JSON, Numeric
)
from sqlalchemy.orm import relationship

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (some drivers drop tzinfo on read)"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _enum_column(enum_cls, length: int = 30) -> SQLEnum:
    # Stored as the lowercase value, portable across backends
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


# ==================== ENUMS ====================

class ReconciliationStatus(str, PyEnum):
    """Run lifecycle: pending -> processing -> completed | failed"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class MismatchType(str, PyEnum):
    """Discrepancy classes reported by a run"""
    PAYMENT_NOT_FOUND = "payment_not_found"  # HW sale without a payment
    ORDER_NOT_FOUND = "order_not_found"      # Payment without a HW sale
    AMOUNT_MISMATCH = "amount_mismatch"      # Paired, amounts outside tolerance


class HwImportSource(str, PyEnum):
    """Where an imported batch of HW sales came from"""
    EXCEL = "excel"
    CSV = "csv"
    API = "api"


class PaymentProvider(str, PyEnum):
    PAYME = "payme"
    CLICK = "click"
    UZUM = "uzum"
    TELEGRAM_STARS = "telegram_stars"
    CASH = "cash"
    WALLET = "wallet"


class PaymentTransactionStatus(str, PyEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# ==================== DATABASE MODELS ====================

class ReconciliationRunDB(Base):
    """
    One reconciliation execution.

    summary is only set once status is completed; error_message only
    when status is failed. deleted_at marks a soft delete.
    """
    __tablename__ = "reconciliation_runs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    organization_id = Column(String(36), nullable=False, index=True)

    status = Column(
        _enum_column(ReconciliationStatus, 20),
        nullable=False,
        default=ReconciliationStatus.PENDING,
        index=True
    )

    # Inclusive date range
    date_from = Column(Date, nullable=False)
    date_to = Column(Date, nullable=False)

    sources = Column(JSON, nullable=False, default=list)
    machine_ids = Column(JSON, nullable=False, default=list)

    # Tolerances
    time_tolerance = Column(Integer, nullable=False, default=300)  # seconds
    amount_tolerance = Column(Numeric(7, 4), nullable=False, default=0.01)  # fraction

    # Execution
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    summary = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)

    run_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_by_user_id = Column(String(36), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    mismatches = relationship("ReconciliationMismatchDB", back_populates="run")

    __table_args__ = (
        Index('ix_recon_runs_org_status', 'organization_id', 'status'),
        Index('ix_recon_runs_org_created', 'organization_id', 'created_at'),
    )


class ReconciliationMismatchDB(Base):
    """
    A discrepancy found by a run.

    Once is_resolved is true the resolution fields never change again.
    """
    __tablename__ = "reconciliation_mismatches"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    run_id = Column(String(36), ForeignKey("reconciliation_runs.id"), nullable=False, index=True)
    organization_id = Column(String(36), nullable=False, index=True)

    order_number = Column(String(100), nullable=True)
    machine_code = Column(String(50), nullable=True)
    order_time = Column(DateTime(timezone=True), nullable=True)
    amount = Column(Numeric(15, 2), nullable=True)
    payment_method = Column(String(50), nullable=True)

    mismatch_type = Column(_enum_column(MismatchType), nullable=False, index=True)
    match_score = Column(Numeric(5, 4), nullable=True)  # amount_mismatch only
    discrepancy_amount = Column(Numeric(15, 2), nullable=True)

    # {"hw": {...} | null, "payment": {...} | null}
    sources_data = Column(JSON, nullable=False, default=dict)
    description = Column(Text, nullable=True)

    # Resolution
    is_resolved = Column(Boolean, nullable=False, default=False, index=True)
    resolution_notes = Column(Text, nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by_user_id = Column(String(36), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    run = relationship("ReconciliationRunDB", back_populates="mismatches")

    __table_args__ = (
        Index('ix_recon_mismatches_run_type', 'run_id', 'mismatch_type'),
        Index('ix_recon_mismatches_run_resolved', 'run_id', 'is_resolved'),
    )


class HwImportBatchDB(Base):
    """
    One hardware sales import call. Immutable after creation.
    """
    __tablename__ = "hw_import_batches"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    organization_id = Column(String(36), nullable=False, index=True)

    import_source = Column(_enum_column(HwImportSource, 10), nullable=False)
    import_filename = Column(String(255), nullable=True)

    total_rows = Column(Integer, nullable=False, default=0)
    imported_count = Column(Integer, nullable=False, default=0)
    skipped_count = Column(Integer, nullable=False, default=0)
    # [{"row": 3, "field": "amount", "message": "...", "orderNumber": "..."}]
    errors = Column(JSON, nullable=False, default=list)

    imported_by_user_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)

    sales = relationship("HwImportedSaleDB", back_populates="batch")


class HwImportedSaleDB(Base):
    """
    A vending-machine reported sale.

    Sale facts are immutable once imported; only the reconciliation
    markers (is_reconciled, reconciliation_run_id) are written later.
    """
    __tablename__ = "hw_imported_sales"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    organization_id = Column(String(36), nullable=False, index=True)
    import_batch_id = Column(String(36), ForeignKey("hw_import_batches.id"), nullable=False, index=True)

    sale_date = Column(DateTime(timezone=True), nullable=False, index=True)
    machine_code = Column(String(50), nullable=False, index=True)
    machine_id = Column(String(36), nullable=True)

    amount = Column(Numeric(15, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="UZS")
    payment_method = Column(String(50), nullable=True)
    order_number = Column(String(100), nullable=True)

    product_name = Column(String(200), nullable=True)
    product_code = Column(String(50), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)

    import_source = Column(_enum_column(HwImportSource, 10), nullable=False)
    import_filename = Column(String(255), nullable=True)
    import_row_number = Column(Integer, nullable=True)

    is_reconciled = Column(Boolean, nullable=False, default=False, index=True)
    reconciliation_run_id = Column(String(36), nullable=True)

    raw_data = Column(JSON, nullable=False, default=dict)
    imported_by_user_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    batch = relationship("HwImportBatchDB", back_populates="sales")

    __table_args__ = (
        Index('ix_hw_sales_org_date', 'organization_id', 'sale_date'),
        Index('ix_hw_sales_org_machine_date', 'organization_id', 'machine_code', 'sale_date'),
    )


class PaymentTransactionDB(Base):
    """
    Payment provider transaction.

    Written by the payments module; the reconciliation engine only reads it.
    """
    __tablename__ = "payment_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    organization_id = Column(String(36), nullable=False, index=True)

    provider = Column(_enum_column(PaymentProvider, 20), nullable=False)
    provider_tx_id = Column(String(255), nullable=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(10), nullable=False, default="UZS")
    status = Column(
        _enum_column(PaymentTransactionStatus, 20),
        nullable=False,
        default=PaymentTransactionStatus.PENDING
    )

    order_id = Column(String(255), nullable=True)
    machine_id = Column(String(36), nullable=True)
    machine_code = Column(String(50), nullable=True)

    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        Index('ix_payment_tx_org_status', 'organization_id', 'status'),
        Index('ix_payment_tx_org_provider_created', 'organization_id', 'provider', 'created_at'),
    )
