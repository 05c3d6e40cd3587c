"""
HW Sales Import Service

Bulk-loads externally supplied vending-machine sale rows into the
hardware sale pool:
- Per-row validation (HwSaleRow)
- Partial success: invalid rows are skipped and reported, valid rows stored
- One immutable hw_import_batches record per call
- Audit logging
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from dateutil import parser as date_parser
from openpyxl.utils.datetime import from_excel
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from config import Settings, get_settings
from database.reconciliation_models import HwImportBatchDB, HwImportedSaleDB, HwImportSource, utc_now
from reconciliation.errors import InvalidArgument
from reconciliation.repository import ReconciliationRepository
from reconciliation.services.reconciliation_service import (
    ReconciliationAuditEvent,
    log_reconciliation_event,
)

logger = logging.getLogger(__name__)

# Limits of hw_imported_sales.amount (Numeric(15, 2)) and .quantity (Integer)
MAX_SALE_AMOUNT = Decimal("9999999999999.99")
MAX_SALE_QUANTITY = 2_147_483_647


# ==================== ROW SCHEMA ====================

class HwSaleRow(BaseModel):
    """
    One hardware sale row as submitted by the API or parsed from a file.
    """
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    sale_date: datetime = Field(..., alias="saleDate", description="Sale timestamp; naive values are UTC")
    machine_code: str = Field(..., alias="machineCode", min_length=1, max_length=50)
    amount: Decimal = Field(..., ge=0, le=MAX_SALE_AMOUNT)
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod", max_length=50)
    order_number: Optional[str] = Field(default=None, alias="orderNumber", max_length=100)
    product_name: Optional[str] = Field(default=None, alias="productName", max_length=200)
    product_code: Optional[str] = Field(default=None, alias="productCode", max_length=50)
    quantity: int = Field(default=1, ge=1, le=MAX_SALE_QUANTITY)
    machine_id: Optional[str] = Field(default=None, alias="machineId", max_length=36)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)

    @field_validator('sale_date', mode='before')
    @classmethod
    def parse_sale_date(cls, v):
        if v is None or v == "":
            raise ValueError('saleDate is required')
        if isinstance(v, datetime):
            return v
        if isinstance(v, date):
            return datetime.combine(v, time.min)
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            # Spreadsheet serial date; serials below 1 are a bare time of day
            try:
                converted = from_excel(v)
            except (OverflowError, ValueError, TypeError):
                raise ValueError(f'Unrecognised date: {v!r}')
            if not isinstance(converted, datetime):
                raise ValueError(f'Unrecognised date: {v!r}')
            return converted
        if isinstance(v, str):
            text = v.strip()
            # ISO first: dayfirst would swap month and day in 2024-01-05
            try:
                return date_parser.isoparse(text)
            except ValueError:
                pass
            try:
                return date_parser.parse(text, dayfirst=True)
            except (ValueError, OverflowError):
                raise ValueError(f'Unrecognised date: {v!r}')
        raise ValueError('saleDate must be a date string or datetime')

    @field_validator('sale_date')
    @classmethod
    def normalize_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        try:
            return v.astimezone(timezone.utc)
        except OverflowError:
            raise ValueError(f'Unrecognised date: {v.isoformat()}')

    @field_validator('machine_code', 'order_number', 'product_code', 'machine_id', mode='before')
    @classmethod
    def coerce_code(cls, v):
        # Spreadsheet cells holding codes often arrive as numbers
        if isinstance(v, float) and v.is_integer():
            return str(int(v))
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator('payment_method', 'order_number', 'product_name', 'product_code', 'machine_id', 'currency', mode='before')
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator('amount', mode='before')
    @classmethod
    def clean_amount(cls, v):
        if v is None or v == "":
            raise ValueError('amount is required')
        if isinstance(v, bool):
            raise ValueError('amount must be a number')
        if isinstance(v, float):
            return Decimal(str(v))
        if isinstance(v, str):
            cleaned = v.replace("\u00a0", "").replace(" ", "")
            if "," in cleaned and "." not in cleaned:
                cleaned = cleaned.replace(",", ".")
            else:
                cleaned = cleaned.replace(",", "")
            return cleaned
        return v

    @field_validator('quantity', mode='before')
    @classmethod
    def default_quantity(cls, v):
        if v is None or v == "":
            return 1
        return v

    @field_validator('currency')
    @classmethod
    def upper_currency(cls, v):
        return v.upper() if v else v


@dataclass
class ImportResult:
    """Result of one importSales call."""
    import_batch_id: str
    import_source: str
    total_rows: int
    imported_count: int
    skipped_count: int
    errors: List[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "importBatchId": self.import_batch_id,
            "importSource": self.import_source,
            "totalRows": self.total_rows,
            "importedCount": self.imported_count,
            "skippedCount": self.skipped_count,
            "errors": self.errors
        }


def _json_safe(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


def _row_error(row_number: int, row: Any, error: ValidationError) -> Dict[str, Any]:
    first = error.errors()[0] if error.errors() else {}
    loc = first.get("loc") or ()
    order_number = row.get("orderNumber", row.get("order_number")) if isinstance(row, dict) else None
    return {
        "row": row_number,
        "field": str(loc[0]) if loc else None,
        "message": first.get("msg", str(error)),
        "orderNumber": str(order_number) if order_number not in (None, "") else None
    }


class SalesImportService:
    """
    Service for importing hardware sales into the comparison pool.

    Import only appends to the pool, so it is safe to run concurrently
    with run execution.
    """

    def __init__(self, repository: ReconciliationRepository, settings: Optional[Settings] = None):
        self.repository = repository
        self.settings = settings or get_settings()

    async def import_sales(
        self,
        organization_id: str,
        rows: Optional[List[Any]],
        import_source: Optional[str],
        import_filename: Optional[str] = None,
        imported_by_user_id: Optional[str] = None
    ) -> ImportResult:
        """
        Validate rows independently and store the valid ones.

        Args:
            organization_id: Owning organization
            rows: Raw sale rows (camelCase keys)
            import_source: excel | csv | api
            import_filename: Original file name, if any
            imported_by_user_id: Acting user

        Returns:
            ImportResult where imported_count + skipped_count == len(rows)

        Raises:
            InvalidArgument: empty rows, too many rows, unknown source
        """
        if not rows:
            raise InvalidArgument("sales must contain at least one row", "sales")
        if len(rows) > self.settings.RECON_IMPORT_MAX_ROWS:
            raise InvalidArgument(
                f"sales must not exceed {self.settings.RECON_IMPORT_MAX_ROWS} rows", "sales"
            )
        try:
            source = HwImportSource(str(import_source).strip().lower()) if import_source else None
        except ValueError:
            source = None
        if source is None:
            raise InvalidArgument(
                f"Invalid importSource. Valid values: {[s.value for s in HwImportSource]}",
                "importSource"
            )

        quantum = Decimal(1).scaleb(-self.settings.RECON_CURRENCY_MINOR_DIGITS)
        filename = import_filename.strip()[:255] if import_filename and import_filename.strip() else None

        sales: List[HwImportedSaleDB] = []
        errors: List[Dict[str, Any]] = []

        for index, row in enumerate(rows):
            row_number = index + 1
            if not isinstance(row, dict):
                errors.append({
                    "row": row_number,
                    "field": None,
                    "message": "Row must be an object",
                    "orderNumber": None
                })
                continue

            try:
                sale = HwSaleRow.model_validate(row)
            except ValidationError as e:
                errors.append(_row_error(row_number, row, e))
                continue

            amount = sale.amount.quantize(quantum, rounding=ROUND_HALF_UP)
            if amount > MAX_SALE_AMOUNT:
                errors.append({
                    "row": row_number,
                    "field": "amount",
                    "message": f"amount must be at most {MAX_SALE_AMOUNT}",
                    "orderNumber": sale.order_number
                })
                continue

            sales.append(HwImportedSaleDB(
                organization_id=organization_id,
                sale_date=sale.sale_date,
                machine_code=sale.machine_code,
                machine_id=sale.machine_id,
                amount=amount,
                currency=sale.currency or self.settings.RECON_CURRENCY,
                payment_method=sale.payment_method,
                order_number=sale.order_number,
                product_name=sale.product_name,
                product_code=sale.product_code,
                quantity=sale.quantity,
                import_source=source,
                import_filename=filename,
                import_row_number=row_number,
                is_reconciled=False,
                raw_data=_json_safe(row),
                imported_by_user_id=imported_by_user_id
            ))

        batch = HwImportBatchDB(
            organization_id=organization_id,
            import_source=source,
            import_filename=filename,
            total_rows=len(rows),
            imported_count=len(sales),
            skipped_count=len(errors),
            errors=errors,
            imported_by_user_id=imported_by_user_id,
            created_at=utc_now()
        )

        try:
            await self.repository.add_import_batch(batch, sales)
            await self.repository.commit()
        except Exception as e:
            logger.error(f"Failed to store import batch: {e}")
            await self.repository.rollback()
            raise

        if errors:
            logger.warning(f"Import batch {batch.id}: skipped {len(errors)} of {len(rows)} rows")

        log_reconciliation_event(
            ReconciliationAuditEvent.SALES_IMPORTED,
            organization_id,
            {
                "import_batch_id": batch.id,
                "import_source": source.value,
                "import_filename": filename,
                "total": len(rows),
                "imported": len(sales),
                "skipped": len(errors)
            },
            actor=imported_by_user_id or "system"
        )

        return ImportResult(
            import_batch_id=batch.id,
            import_source=source.value,
            total_rows=len(rows),
            imported_count=len(sales),
            skipped_count=len(errors),
            errors=errors
        )
