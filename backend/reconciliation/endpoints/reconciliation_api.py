"""
Reconciliation API Endpoints

REST API for the payment reconciliation engine:
- GET /api/reconciliation/status - Module status
- GET /api/reconciliation/sources - List supported sources
- POST /api/reconciliation/runs - Create a run (optionally auto-start)
- GET /api/reconciliation/runs - List runs
- GET /api/reconciliation/runs/{run_id} - Get a single run
- POST /api/reconciliation/runs/{run_id}/execute - Start a pending run
- DELETE /api/reconciliation/runs/{run_id} - Soft-delete a run
- GET /api/reconciliation/runs/{run_id}/mismatches - Mismatches of a run
- GET /api/reconciliation/runs/{run_id}/stats - Mismatch statistics of a run
- PATCH /api/reconciliation/mismatches/{mismatch_id}/resolve - Resolve a mismatch
- POST /api/reconciliation/import - Import HW sales (JSON rows)
- POST /api/reconciliation/import/file - Import HW sales (CSV / Excel upload)
- GET /api/reconciliation/import/batches - Import history
"""

import logging
from typing import Optional
from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, Query, Response, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database.connection import get_db, get_session_factory
from database.reconciliation_models import MismatchType, ReconciliationStatus
from reconciliation.errors import InvalidArgument, InvalidState, NotFound, ReconciliationError
from reconciliation.executor import RunExecutor
from reconciliation.parsers import detect_import_source, parse_sales_file
from reconciliation.repository import SqlReconciliationRepository
from reconciliation.schemas import (
    CreateRunRequest,
    ImportSalesRequest,
    ResolveMismatchRequest,
    batch_to_dict,
    mismatch_to_dict,
    page_to_dict,
    run_to_dict,
    stats_to_dict,
)
from reconciliation.services.import_service import SalesImportService
from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.services.resolution_service import ResolutionService
from reconciliation.source_registry import source_registry
from utils.validation_errors import (
    ValidationErrorResponse,
    raise_invalid_parameter,
    validate_optional_uuid,
    validate_required_uuid,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])


# ==================== Authentication / Context ====================

def verify_internal_auth(x_internal_api_key: Optional[str] = Header(None, alias="X-Internal-Api-Key")):
    """Verify internal API key authentication."""
    valid_keys = get_settings().internal_api_keys

    if not valid_keys:
        logger.warning("No internal API keys configured")
        raise HTTPException(status_code=503, detail="Internal authentication not configured")

    if not x_internal_api_key:
        raise HTTPException(status_code=401, detail="Missing X-Internal-Api-Key header")

    if x_internal_api_key not in valid_keys:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return True


def get_organization_id(x_organization_id: Optional[str] = Header(None, alias="X-Organization-Id")) -> str:
    """Organization scope of the request."""
    return validate_required_uuid(x_organization_id, "X-Organization-Id")


def get_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> Optional[str]:
    """Acting user, if the caller supplied one."""
    return validate_optional_uuid(x_user_id, "X-User-Id")


_run_executor: Optional[RunExecutor] = None


def get_run_executor() -> RunExecutor:
    """Process-wide background executor for run executions."""
    global _run_executor
    if _run_executor is None:
        _run_executor = RunExecutor(get_session_factory(), get_settings())
    return _run_executor


async def shutdown_run_executor():
    """Cancel in-flight executions on application shutdown."""
    global _run_executor
    if _run_executor is not None:
        await _run_executor.shutdown()
    _run_executor = None


def _to_http_exception(error: ReconciliationError) -> HTTPException:
    """Map engine errors to HTTP responses."""
    if isinstance(error, InvalidArgument):
        if error.parameter:
            detail = ValidationErrorResponse.invalid_parameter(error.parameter, error.message)
        else:
            detail = ValidationErrorResponse.validation_error(error.message)
        return HTTPException(status_code=400, detail=detail)
    if isinstance(error, NotFound):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, InvalidState):
        return HTTPException(status_code=409, detail=error.message)
    return HTTPException(status_code=500, detail=error.message)


# ==================== Module Endpoints ====================

@router.get("/status", summary="Module status")
async def get_module_status():
    """
    Get reconciliation module status.

    Returns configuration and availability information.
    """
    settings = get_settings()
    return {
        "module": "reconciliation",
        "status": "operational",
        "version": settings.API_VERSION,
        "features": {
            "tolerance_matching": True,
            "background_execution": True,
            "file_import": True,
            "mismatch_resolution": True
        },
        "defaults": {
            "time_tolerance": settings.RECON_DEFAULT_TIME_TOLERANCE,
            "amount_tolerance": settings.RECON_DEFAULT_AMOUNT_TOLERANCE,
            "currency": settings.RECON_CURRENCY
        },
        "sources_enabled": [s.value for s in source_registry.get_enabled_sources()],
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/sources", summary="List supported sources")
async def list_sources():
    """
    List all supported reconciliation sources.

    Returns configuration for each source including its comparison side.
    """
    configs = source_registry.get_all_configs()
    return {
        "sources": [cfg.to_dict() for cfg in configs],
        "enabled_count": len(source_registry.get_enabled_sources())
    }


# ==================== Runs ====================

@router.post("/runs", status_code=status.HTTP_201_CREATED, summary="Create reconciliation run")
async def create_run(
    request: CreateRunRequest,
    auto_start: bool = Query(default=False, description="Dispatch execution immediately"),
    db: AsyncSession = Depends(get_db),
    organization_id: str = Depends(get_organization_id),
    user_id: Optional[str] = Depends(get_user_id),
    executor: RunExecutor = Depends(get_run_executor),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Create a pending reconciliation run.

    With auto_start=true the run is executed in the background and the
    response carries the run as created (status pending).

    Requires internal API key authentication.
    """
    try:
        service = ReconciliationService(SqlReconciliationRepository(db))
        run = await service.create_run(
            organization_id=organization_id,
            date_from=request.date_from,
            date_to=request.date_to,
            sources=request.sources,
            machine_ids=request.machine_ids,
            time_tolerance=request.time_tolerance,
            amount_tolerance=request.amount_tolerance,
            created_by_user_id=user_id,
            metadata=request.metadata
        )
        body = run_to_dict(run)

        if auto_start:
            executor.dispatch(run.id, organization_id)

        return body

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise _to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to create reconciliation run: {e}")
        raise HTTPException(status_code=500, detail="Failed to create reconciliation run")


@router.get("/runs", summary="List reconciliation runs")
async def list_runs(
    run_status: Optional[str] = Query(default=None, alias="status", description="Filter by status"),
    date_from: Optional[date] = Query(default=None, alias="dateFrom"),
    date_to: Optional[date] = Query(default=None, alias="dateTo"),
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    db: AsyncSession = Depends(get_db),
    organization_id: str = Depends(get_organization_id),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    List runs of the organization, newest first.

    Requires internal API key authentication.
    """
    if run_status:
        try:
            ReconciliationStatus(run_status)
        except ValueError:
            raise_invalid_parameter(
                "status",
                f"Invalid status. Valid values: {[s.value for s in ReconciliationStatus]}",
                run_status
            )

    try:
        service = ReconciliationService(SqlReconciliationRepository(db))
        result = await service.list_runs(
            organization_id,
            status=run_status,
            date_from=date_from,
            date_to=date_to,
            page=page,
            limit=limit
        )
        return page_to_dict(result, run_to_dict)

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise _to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to list reconciliation runs: {e}")
        raise HTTPException(status_code=500, detail="Failed to list reconciliation runs")


@router.get("/runs/{run_id}", summary="Get reconciliation run")
async def get_run(
    run_id: str,
    db: AsyncSession = Depends(get_db),
    organization_id: str = Depends(get_organization_id),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Get a single run by ID.

    Requires internal API key authentication.
    """
    validated_run_id = validate_required_uuid(run_id, "run_id")

    try:
        service = ReconciliationService(SqlReconciliationRepository(db))
        run = await service.get_run(validated_run_id, organization_id)
        return run_to_dict(run)

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise _to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to get reconciliation run: {e}")
        raise HTTPException(status_code=500, detail="Failed to get reconciliation run")


@router.post("/runs/{run_id}/execute", status_code=status.HTTP_202_ACCEPTED, summary="Execute run")
async def execute_run(
    run_id: str,
    db: AsyncSession = Depends(get_db),
    organization_id: str = Depends(get_organization_id),
    executor: RunExecutor = Depends(get_run_executor),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Start executing a pending run in the background.

    Poll GET /runs/{run_id} for the outcome.

    Requires internal API key authentication.
    """
    validated_run_id = validate_required_uuid(run_id, "run_id")

    try:
        service = ReconciliationService(SqlReconciliationRepository(db))
        run = await service.get_run(validated_run_id, organization_id)
        run_status = ReconciliationStatus(run.status)
        if run_status != ReconciliationStatus.PENDING:
            raise InvalidState(f"Reconciliation run {run.id} is {run_status.value}, expected pending")

        executor.dispatch(run.id, organization_id)

        return {
            "success": True,
            "message": "Reconciliation run dispatched",
            "runId": run.id
        }

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise _to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to dispatch reconciliation run: {e}")
        raise HTTPException(status_code=500, detail="Failed to dispatch reconciliation run")


@router.delete("/runs/{run_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete run")
async def delete_run(
    run_id: str,
    db: AsyncSession = Depends(get_db),
    organization_id: str = Depends(get_organization_id),
    user_id: Optional[str] = Depends(get_user_id),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Soft-delete a run. Processing runs cannot be deleted.

    Requires internal API key authentication.
    """
    validated_run_id = validate_required_uuid(run_id, "run_id")

    try:
        service = ReconciliationService(SqlReconciliationRepository(db))
        await service.delete_run(validated_run_id, organization_id, actor=user_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise _to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to delete reconciliation run: {e}")
        raise HTTPException(status_code=500, detail="Failed to delete reconciliation run")


@router.get("/runs/{run_id}/mismatches", summary="Get run mismatches")
async def get_run_mismatches(
    run_id: str,
    mismatch_type: Optional[str] = Query(default=None, alias="mismatchType"),
    is_resolved: Optional[bool] = Query(default=None, alias="isResolved"),
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    db: AsyncSession = Depends(get_db),
    organization_id: str = Depends(get_organization_id),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Get mismatches of a run, filterable by type and resolution state.

    Requires internal API key authentication.
    """
    validated_run_id = validate_required_uuid(run_id, "run_id")

    if mismatch_type:
        try:
            MismatchType(mismatch_type)
        except ValueError:
            raise_invalid_parameter(
                "mismatchType",
                f"Invalid mismatchType. Valid values: {[t.value for t in MismatchType]}",
                mismatch_type
            )

    try:
        service = ReconciliationService(SqlReconciliationRepository(db))
        result = await service.get_mismatches(
            validated_run_id,
            organization_id,
            mismatch_type=mismatch_type,
            is_resolved=is_resolved,
            page=page,
            limit=limit
        )
        return page_to_dict(result, mismatch_to_dict)

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise _to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to get mismatches: {e}")
        raise HTTPException(status_code=500, detail="Failed to get mismatches")


@router.get("/runs/{run_id}/stats", summary="Get run statistics")
async def get_run_stats(
    run_id: str,
    db: AsyncSession = Depends(get_db),
    organization_id: str = Depends(get_organization_id),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Mismatch counts of a run by type and resolution state.

    Requires internal API key authentication.
    """
    validated_run_id = validate_required_uuid(run_id, "run_id")

    try:
        service = ReconciliationService(SqlReconciliationRepository(db))
        stats = await service.get_run_stats(validated_run_id, organization_id)
        return stats_to_dict(stats)

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise _to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to get run stats: {e}")
        raise HTTPException(status_code=500, detail="Failed to get statistics")


# ==================== Mismatches ====================

@router.patch("/mismatches/{mismatch_id}/resolve", summary="Resolve mismatch")
async def resolve_mismatch(
    mismatch_id: str,
    request: ResolveMismatchRequest,
    db: AsyncSession = Depends(get_db),
    organization_id: str = Depends(get_organization_id),
    user_id: Optional[str] = Depends(get_user_id),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Resolve a mismatch with notes. A resolved mismatch cannot be resolved again.

    Requires internal API key authentication.
    """
    validated_mismatch_id = validate_required_uuid(mismatch_id, "mismatch_id")

    try:
        service = ResolutionService(SqlReconciliationRepository(db))
        mismatch = await service.resolve(
            validated_mismatch_id,
            request.resolution_notes,
            resolved_by_user_id=user_id,
            organization_id=organization_id
        )
        return mismatch_to_dict(mismatch)

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise _to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to resolve mismatch: {e}")
        raise HTTPException(status_code=500, detail="Failed to resolve mismatch")


# ==================== Imports ====================

@router.post("/import", summary="Import HW sales")
async def import_sales(
    request: ImportSalesRequest,
    db: AsyncSession = Depends(get_db),
    organization_id: str = Depends(get_organization_id),
    user_id: Optional[str] = Depends(get_user_id),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Import hardware sale rows.

    Invalid rows are skipped and listed in errors; the batch still succeeds.

    Requires internal API key authentication.
    """
    try:
        service = SalesImportService(SqlReconciliationRepository(db))
        result = await service.import_sales(
            organization_id,
            request.sales,
            request.import_source,
            import_filename=request.import_filename,
            imported_by_user_id=user_id
        )
        return result.to_dict()

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise _to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to import sales: {e}")
        raise HTTPException(status_code=500, detail="Failed to import sales")


@router.post("/import/file", summary="Import HW sales file")
async def import_sales_file(
    file: UploadFile = File(..., description="CSV or .xlsx export"),
    import_source: Optional[str] = Form(default=None, alias="importSource"),
    db: AsyncSession = Depends(get_db),
    organization_id: str = Depends(get_organization_id),
    user_id: Optional[str] = Depends(get_user_id),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Import hardware sales from an uploaded CSV or Excel file.

    The source is taken from importSource, or guessed from the file name.

    Requires internal API key authentication.
    """
    source = import_source or detect_import_source(file.filename, file.content_type)
    if source not in ("csv", "excel"):
        raise_invalid_parameter(
            "importSource",
            "importSource must be csv or excel for file uploads",
            source
        )

    content = await file.read()
    try:
        rows = parse_sales_file(content, source, file.filename)
    except ValueError as e:
        raise HTTPException(
            status_code=400,
            detail=ValidationErrorResponse.invalid_parameter("file", str(e))
        )

    try:
        service = SalesImportService(SqlReconciliationRepository(db))
        result = await service.import_sales(
            organization_id,
            rows,
            source,
            import_filename=file.filename,
            imported_by_user_id=user_id
        )
        return result.to_dict()

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise _to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to import sales file: {e}")
        raise HTTPException(status_code=500, detail="Failed to import sales file")


@router.get("/import/batches", summary="List import batches")
async def list_import_batches(
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    db: AsyncSession = Depends(get_db),
    organization_id: str = Depends(get_organization_id),
    _auth: bool = Depends(verify_internal_auth)
):
    """
    Import history of the organization, newest first.

    Requires internal API key authentication.
    """
    try:
        service = ReconciliationService(SqlReconciliationRepository(db))
        result = await service.list_import_batches(organization_id, page=page, limit=limit)
        return page_to_dict(result, batch_to_dict)

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise _to_http_exception(e)
    except Exception as e:
        logger.error(f"Failed to list import batches: {e}")
        raise HTTPException(status_code=500, detail="Failed to list import batches")
