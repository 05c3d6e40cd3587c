"""
Reconciliation API schemas.

Request models accept camelCase bodies; response helpers turn ORM rows
into camelCase dicts.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from database.reconciliation_models import (
    HwImportBatchDB,
    ReconciliationMismatchDB,
    ReconciliationRunDB,
    as_utc,
)


# ==================== Request Models ====================

class CreateRunRequest(BaseModel):
    """Request to create a reconciliation run."""
    model_config = ConfigDict(populate_by_name=True)

    date_from: Optional[date] = Field(default=None, alias="dateFrom", description="First day (inclusive)")
    date_to: Optional[date] = Field(default=None, alias="dateTo", description="Last day (inclusive)")
    sources: List[str] = Field(default_factory=list, description="Source tags: hw, payme, click, uzum")
    machine_ids: Optional[List[str]] = Field(default=None, alias="machineIds", description="Restrict to machines")
    time_tolerance: Optional[int] = Field(default=None, alias="timeTolerance", description="Seconds")
    amount_tolerance: Optional[float] = Field(default=None, alias="amountTolerance", description="Fraction of amount")
    metadata: Optional[Dict[str, Any]] = Field(default=None)


class ResolveMismatchRequest(BaseModel):
    """Request to resolve a mismatch."""
    model_config = ConfigDict(populate_by_name=True)

    resolution_notes: Optional[str] = Field(default=None, alias="resolutionNotes")


class ImportSalesRequest(BaseModel):
    """Request to import hardware sales."""
    model_config = ConfigDict(populate_by_name=True)

    sales: List[Any] = Field(default_factory=list)
    import_source: Optional[str] = Field(default=None, alias="importSource", description="excel, csv or api")
    import_filename: Optional[str] = Field(default=None, alias="importFilename")


# ==================== Response Helpers ====================

def _iso(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, date) and not hasattr(value, "hour"):
        return value.isoformat()
    return as_utc(value).isoformat()


def _number(value) -> Optional[float]:
    if value is None:
        return None
    return float(value) if isinstance(value, Decimal) else value


def _enum_value(value):
    return value.value if hasattr(value, "value") else value


def run_to_dict(run: ReconciliationRunDB) -> Dict[str, Any]:
    return {
        "id": run.id,
        "organizationId": run.organization_id,
        "status": _enum_value(run.status),
        "dateFrom": _iso(run.date_from),
        "dateTo": _iso(run.date_to),
        "sources": list(run.sources or []),
        "machineIds": list(run.machine_ids or []),
        "timeTolerance": run.time_tolerance,
        "amountTolerance": _number(run.amount_tolerance),
        "startedAt": _iso(run.started_at),
        "completedAt": _iso(run.completed_at),
        "processingTimeMs": run.processing_time_ms,
        "summary": run.summary,
        "errorMessage": run.error_message,
        "metadata": run.run_metadata or {},
        "createdByUserId": run.created_by_user_id,
        "createdAt": _iso(run.created_at),
        "updatedAt": _iso(run.updated_at),
    }


def mismatch_to_dict(mismatch: ReconciliationMismatchDB) -> Dict[str, Any]:
    return {
        "id": mismatch.id,
        "runId": mismatch.run_id,
        "organizationId": mismatch.organization_id,
        "orderNumber": mismatch.order_number,
        "machineCode": mismatch.machine_code,
        "orderTime": _iso(mismatch.order_time),
        "amount": _number(mismatch.amount),
        "paymentMethod": mismatch.payment_method,
        "mismatchType": _enum_value(mismatch.mismatch_type),
        "matchScore": _number(mismatch.match_score),
        "discrepancyAmount": _number(mismatch.discrepancy_amount),
        "sourcesData": mismatch.sources_data or {},
        "description": mismatch.description,
        "isResolved": bool(mismatch.is_resolved),
        "resolutionNotes": mismatch.resolution_notes,
        "resolvedAt": _iso(mismatch.resolved_at),
        "resolvedByUserId": mismatch.resolved_by_user_id,
        "createdAt": _iso(mismatch.created_at),
    }


def batch_to_dict(batch: HwImportBatchDB) -> Dict[str, Any]:
    return {
        "id": batch.id,
        "organizationId": batch.organization_id,
        "importSource": _enum_value(batch.import_source),
        "importFilename": batch.import_filename,
        "totalRows": batch.total_rows,
        "importedCount": batch.imported_count,
        "skippedCount": batch.skipped_count,
        "errors": batch.errors or [],
        "importedByUserId": batch.imported_by_user_id,
        "createdAt": _iso(batch.created_at),
    }


def page_to_dict(page: Dict[str, Any], serializer) -> Dict[str, Any]:
    return {
        "items": [serializer(item) for item in page["items"]],
        "total": page["total"],
        "page": page["page"],
        "limit": page["limit"],
        "totalPages": page["total_pages"],
    }


def stats_to_dict(stats: Dict[str, Any]) -> Dict[str, Any]:
    mismatches = stats["mismatches"]
    return {
        "runId": stats["run_id"],
        "status": stats["status"],
        "summary": stats["summary"],
        "mismatches": {
            "total": mismatches["total"],
            "resolved": mismatches["resolved"],
            "unresolved": mismatches["unresolved"],
            "byType": mismatches["by_type"],
        },
    }
