"""
Source Loader

Fetches both sides of a run from the org-scoped store and normalizes them
into one canonical record shape so the matcher never sees provider-specific
fields.

Normalization rules:
- timestamps become whole epoch seconds (naive datetimes are UTC)
- amounts become integers in the currency's smallest unit (Decimal, half-up)
- the run's inclusive date range becomes the half-open UTC window
  [date_from 00:00, date_to + 1 day 00:00)
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple

from reconciliation.source_registry import ReconciliationSource, SourceRegistry, source_registry

logger = logging.getLogger(__name__)

SIDE_HW = "hw"
SIDE_PAYMENT = "payment"


# ==================== MONEY / TIME HELPERS ====================

def to_minor_units(amount: Any, minor_digits: int = 2) -> int:
    """Convert a currency amount to an integer count of its smallest unit."""
    if amount is None:
        raise ValueError("amount is required")
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    scaled = (value * (Decimal(10) ** minor_digits)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(scaled)


def from_minor_units(amount_minor: int, minor_digits: int = 2) -> Decimal:
    """Inverse of to_minor_units, quantized to the currency's precision."""
    quantum = Decimal(1).scaleb(-minor_digits)
    return (Decimal(amount_minor) / (Decimal(10) ** minor_digits)).quantize(quantum)


def format_amount(amount_minor: int, minor_digits: int = 2) -> str:
    """Human form used in descriptions: 100000.00 -> '100000', 150.50 -> '150.50'."""
    value = from_minor_units(amount_minor, minor_digits)
    if value == value.to_integral_value():
        return str(int(value))
    return f"{value:f}"


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_epoch_seconds(dt: datetime) -> int:
    return int(ensure_utc(dt).timestamp())


def from_epoch_seconds(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def run_window(date_from: date, date_to: date) -> Tuple[datetime, datetime]:
    """Half-open UTC window covering the inclusive date range."""
    start = datetime.combine(date_from, time.min, tzinfo=timezone.utc)
    end = datetime.combine(date_to + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return start, end


# ==================== CANONICAL RECORD ====================

@dataclass(frozen=True)
class NormalizedRecord:
    """
    One sale or payment in the canonical shape consumed by the matcher.
    """
    record_id: str
    side: str  # "hw" | "payment"
    machine_code: str
    timestamp: int  # epoch seconds, UTC
    amount_minor: int
    order_number: Optional[str] = None
    provider: Optional[str] = None
    payment_method: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return ensure_utc(dt).isoformat() if dt else None


def normalize_hw_sale(sale, minor_digits: int = 2) -> NormalizedRecord:
    """Normalize a hw_imported_sales row."""
    return NormalizedRecord(
        record_id=str(sale.id),
        side=SIDE_HW,
        machine_code=_clean(sale.machine_code) or "",
        timestamp=to_epoch_seconds(sale.sale_date),
        amount_minor=to_minor_units(sale.amount, minor_digits),
        order_number=_clean(sale.order_number),
        provider=None,
        payment_method=_clean(sale.payment_method),
        raw={
            "id": str(sale.id),
            "saleDate": _iso(sale.sale_date),
            "machineCode": sale.machine_code,
            "machineId": sale.machine_id,
            "amount": str(sale.amount),
            "currency": sale.currency,
            "paymentMethod": sale.payment_method,
            "orderNumber": sale.order_number,
            "productName": sale.product_name,
            "productCode": sale.product_code,
            "quantity": sale.quantity,
            "importBatchId": sale.import_batch_id,
        },
    )


def normalize_payment(tx, minor_digits: int = 2) -> NormalizedRecord:
    """
    Normalize a payment_transactions row.

    The transaction time is processed_at, falling back to created_at for
    providers that do not report a processing time.
    """
    provider = tx.provider.value if hasattr(tx.provider, "value") else tx.provider
    status = tx.status.value if hasattr(tx.status, "value") else tx.status
    occurred_at = tx.processed_at or tx.created_at

    return NormalizedRecord(
        record_id=str(tx.id),
        side=SIDE_PAYMENT,
        machine_code=_clean(tx.machine_code) or _clean(tx.machine_id) or "",
        timestamp=to_epoch_seconds(occurred_at),
        amount_minor=to_minor_units(tx.amount, minor_digits),
        order_number=_clean(tx.order_id),
        provider=provider,
        payment_method=provider,
        raw={
            "id": str(tx.id),
            "provider": provider,
            "providerTxId": tx.provider_tx_id,
            "amount": str(tx.amount),
            "currency": tx.currency,
            "status": status,
            "orderId": tx.order_id,
            "machineCode": tx.machine_code,
            "machineId": tx.machine_id,
            "processedAt": _iso(occurred_at),
        },
    )


# ==================== LOADER ====================

class SourceLoader:
    """
    Pure fetch + normalize step for a run.

    Returns empty lists (not an error) when a side yields nothing.
    """

    def __init__(self, repository, minor_digits: int = 2, registry: SourceRegistry = source_registry):
        self.repository = repository
        self.minor_digits = minor_digits
        self.registry = registry

    async def load(self, run) -> Tuple[List[NormalizedRecord], List[NormalizedRecord]]:
        sources = [ReconciliationSource(s) for s in (run.sources or [])]
        machine_ids = [m for m in (run.machine_ids or []) if m]
        start, end = run_window(run.date_from, run.date_to)

        hw_records: List[NormalizedRecord] = []
        if self.registry.includes_hardware(sources):
            sales = await self.repository.fetch_hw_sales(
                run.organization_id, start, end, machine_ids
            )
            hw_records = [normalize_hw_sale(s, self.minor_digits) for s in sales]

        payment_records: List[NormalizedRecord] = []
        providers = self.registry.payment_providers(sources)
        if providers:
            transactions = await self.repository.fetch_payment_transactions(
                run.organization_id, start, end, providers, machine_ids
            )
            payment_records = [normalize_payment(t, self.minor_digits) for t in transactions]

        logger.info(
            f"Loaded {len(hw_records)} HW sales and {len(payment_records)} payments "
            f"for run {run.id} ({start.date()} .. {run.date_to})"
        )
        return hw_records, payment_records
