"""
Reconciliation Service

Run orchestration for the payment reconciliation engine:
- Creating runs (validated filters, tolerance defaults)
- Executing runs: Source Loader -> Matcher -> Classifier -> Summary
- Listing, fetching and soft-deleting runs
- Paginated mismatch access and per-run statistics
- Import batch history
- Audit logging

Run state machine:
    pending --execute--> processing --success--> completed
                         processing --failure--> failed

Execution failures (including timeout) are recorded on the run and never
raised to the caller of execute(); only contract violations are.
"""

import asyncio
import logging
import math
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from config import Settings, get_settings
from database.reconciliation_models import (
    MismatchType,
    ReconciliationRunDB,
    ReconciliationStatus,
    utc_now,
)
from reconciliation.classifier import classify
from reconciliation.errors import (
    ExecutionFailure,
    ExecutionTimeout,
    InvalidArgument,
    InvalidState,
    NotFound,
)
from reconciliation.loader import SourceLoader
from reconciliation.matching_rules.tolerance_matcher import match_records
from reconciliation.repository import ReconciliationRepository
from reconciliation.source_registry import source_registry
from reconciliation.summary import RunSummary, build_summary
from sentry_integration import capture_exception

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE_QUANTUM = Decimal("0.0001")


class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    RUN_CREATED = "reconciliation.run_created"
    RUN_STARTED = "reconciliation.run_started"
    RUN_COMPLETED = "reconciliation.run_completed"
    RUN_FAILED = "reconciliation.run_failed"
    RUN_DELETED = "reconciliation.run_deleted"
    MISMATCH_RESOLVED = "reconciliation.mismatch_resolved"
    SALES_IMPORTED = "reconciliation.sales_imported"


def log_reconciliation_event(
    event_type: str,
    organization_id: str,
    details: Dict[str, Any],
    run_id: Optional[str] = None,
    actor: str = "system"
):
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "organization_id": organization_id,
        "run_id": run_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)


def paginate(items: List[Any], total: int, page: int, limit: int) -> Dict[str, Any]:
    return {
        "items": items,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if total else 0
    }


def _parse_date(value: Union[date, datetime, str, None], parameter: str) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise InvalidArgument(f"{parameter} must be an ISO date (YYYY-MM-DD)", parameter)


class ReconciliationService:
    """
    Orchestrates reconciliation runs over an org-scoped repository.

    Collaborators are injectable so the pipeline can be exercised without
    a live database: loader (fetch + normalize) and clock (UTC now).
    """

    def __init__(
        self,
        repository: ReconciliationRepository,
        settings: Optional[Settings] = None,
        loader: Optional[SourceLoader] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.repository = repository
        self.settings = settings or get_settings()
        self.loader = loader or SourceLoader(
            repository, minor_digits=self.settings.RECON_CURRENCY_MINOR_DIGITS
        )
        self.clock = clock or utc_now

    # ==================== VALIDATION ====================

    def _validate_page(self, page: int, limit: Optional[int]) -> int:
        limit = self.settings.RECON_DEFAULT_PAGE_SIZE if limit is None else limit
        if page is None or page < 1:
            raise InvalidArgument("page must be >= 1", "page")
        if limit < 1 or limit > self.settings.RECON_MAX_PAGE_SIZE:
            raise InvalidArgument(
                f"limit must be between 1 and {self.settings.RECON_MAX_PAGE_SIZE}", "limit"
            )
        return limit

    def _validate_time_tolerance(self, value: Optional[int]) -> int:
        if value is None:
            return self.settings.RECON_DEFAULT_TIME_TOLERANCE
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidArgument("timeTolerance must be an integer number of seconds", "timeTolerance")
        if value < 0 or value > self.settings.RECON_MAX_TIME_TOLERANCE:
            raise InvalidArgument(
                f"timeTolerance must be between 0 and {self.settings.RECON_MAX_TIME_TOLERANCE}",
                "timeTolerance"
            )
        return value

    def _validate_amount_tolerance(self, value: Union[float, str, Decimal, None]) -> Decimal:
        if value is None:
            value = self.settings.RECON_DEFAULT_AMOUNT_TOLERANCE
        try:
            tolerance = value if isinstance(value, Decimal) else Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise InvalidArgument("amountTolerance must be a number", "amountTolerance")
        if not tolerance.is_finite() or tolerance < 0 or tolerance > Decimal(str(self.settings.RECON_MAX_AMOUNT_TOLERANCE)):
            raise InvalidArgument(
                f"amountTolerance must be between 0 and {self.settings.RECON_MAX_AMOUNT_TOLERANCE:g}",
                "amountTolerance"
            )
        # reconciliation_runs.amount_tolerance is Numeric(7, 4)
        if tolerance != tolerance.quantize(AMOUNT_TOLERANCE_QUANTUM):
            raise InvalidArgument("amountTolerance must have at most 4 decimal places", "amountTolerance")
        return tolerance

    # ==================== RUNS ====================

    async def create_run(
        self,
        organization_id: str,
        date_from: Union[date, str, None],
        date_to: Union[date, str, None],
        sources: Optional[Sequence[str]],
        machine_ids: Optional[Sequence[str]] = None,
        time_tolerance: Optional[int] = None,
        amount_tolerance: Union[float, str, Decimal, None] = None,
        created_by_user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ReconciliationRunDB:
        """
        Create a pending run.

        Raises:
            InvalidArgument: missing dates, date_to < date_from, empty or
                unknown sources, tolerances out of range
        """
        if not organization_id:
            raise InvalidArgument("organization_id is required", "organizationId")

        start = _parse_date(date_from, "dateFrom")
        end = _parse_date(date_to, "dateTo")
        if start is None:
            raise InvalidArgument("dateFrom is required", "dateFrom")
        if end is None:
            raise InvalidArgument("dateTo is required", "dateTo")
        if end < start:
            raise InvalidArgument("dateTo must be on or after dateFrom", "dateTo")

        if not sources:
            raise InvalidArgument("sources must contain at least one source", "sources")
        try:
            parsed_sources = source_registry.parse_sources(sources)
        except ValueError as e:
            raise InvalidArgument(str(e), "sources")

        machines: List[str] = []
        for machine in machine_ids or []:
            machine = str(machine).strip()
            if machine and machine not in machines:
                machines.append(machine)

        run = ReconciliationRunDB(
            organization_id=organization_id,
            status=ReconciliationStatus.PENDING,
            date_from=start,
            date_to=end,
            sources=[s.value for s in parsed_sources],
            machine_ids=machines,
            time_tolerance=self._validate_time_tolerance(time_tolerance),
            amount_tolerance=self._validate_amount_tolerance(amount_tolerance),
            summary=None,
            error_message=None,
            run_metadata=dict(metadata or {}),
            created_by_user_id=created_by_user_id,
            created_at=self.clock(),
            updated_at=self.clock(),
        )
        await self.repository.add_run(run)
        await self.repository.commit()

        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_CREATED,
            organization_id,
            {
                "date_from": start.isoformat(),
                "date_to": end.isoformat(),
                "sources": run.sources,
                "machine_ids": machines,
                "time_tolerance": run.time_tolerance,
                "amount_tolerance": str(run.amount_tolerance)
            },
            run_id=run.id,
            actor=created_by_user_id or "system"
        )
        return run

    async def get_run(self, run_id: str, organization_id: Optional[str] = None) -> ReconciliationRunDB:
        run = await self.repository.get_run(run_id, organization_id)
        if run is None:
            raise NotFound("Reconciliation run", run_id)
        return run

    async def list_runs(
        self,
        organization_id: str,
        status: Optional[str] = None,
        date_from: Union[date, str, None] = None,
        date_to: Union[date, str, None] = None,
        page: int = 1,
        limit: Optional[int] = None
    ) -> Dict[str, Any]:
        """Runs of one organization, newest first."""
        limit = self._validate_page(page, limit)

        status_filter = None
        if status:
            try:
                status_filter = ReconciliationStatus(status)
            except ValueError:
                raise InvalidArgument(
                    f"Invalid status. Valid values: {[s.value for s in ReconciliationStatus]}",
                    "status"
                )

        runs, total = await self.repository.list_runs(
            organization_id,
            status=status_filter,
            date_from=_parse_date(date_from, "dateFrom"),
            date_to=_parse_date(date_to, "dateTo"),
            offset=(page - 1) * limit,
            limit=limit
        )
        return paginate(runs, total, page, limit)

    async def delete_run(
        self,
        run_id: str,
        organization_id: Optional[str] = None,
        actor: Optional[str] = None
    ) -> None:
        """
        Soft-delete a run.

        Raises:
            NotFound: unknown or already deleted
            InvalidState: the run is processing
        """
        deleted = await self.repository.soft_delete_run(run_id, self.clock(), organization_id)
        if not deleted:
            await self.repository.rollback()
            run = await self.repository.get_run(run_id, organization_id)
            if run is None:
                raise NotFound("Reconciliation run", run_id)
            raise InvalidState(f"Cannot delete reconciliation run {run_id} while it is processing")

        await self.repository.commit()
        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_DELETED,
            organization_id or "",
            {},
            run_id=run_id,
            actor=actor or "system"
        )

    # ==================== EXECUTION ====================

    async def execute(self, run_id: str, organization_id: Optional[str] = None) -> ReconciliationRunDB:
        """
        Execute a pending run exactly once.

        The pending -> processing claim is a conditional update, so a
        concurrent second call observes the claim and is rejected.

        Raises:
            NotFound: unknown or deleted run
            InvalidState: run is not pending (already claimed or finished)

        Returns:
            The run after execution, completed or failed
        """
        run = await self.get_run(run_id, organization_id)
        status = ReconciliationStatus(run.status)
        if status != ReconciliationStatus.PENDING:
            raise InvalidState(f"Reconciliation run {run_id} is {status.value}, expected pending")
        org_id = run.organization_id

        started_at = self.clock()
        claimed = await self.repository.claim_run(run_id, started_at)
        if not claimed:
            await self.repository.rollback()
            current = await self.get_run(run_id, organization_id)
            raise InvalidState(
                f"Reconciliation run {run_id} is {ReconciliationStatus(current.status).value}, expected pending"
            )
        await self.repository.commit()

        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_STARTED,
            org_id,
            {"sources": run.sources, "machine_ids": run.machine_ids},
            run_id=run_id
        )

        timeout = self.settings.RECON_EXECUTION_TIMEOUT_SECONDS
        try:
            summary = await asyncio.wait_for(self._run_pipeline(run), timeout=timeout)
            completed_at = self.clock()
            await self.repository.complete_run(
                run_id,
                summary.to_dict(),
                completed_at,
                self._elapsed_ms(started_at, completed_at)
            )
            await self.repository.commit()

            log_reconciliation_event(
                ReconciliationAuditEvent.RUN_COMPLETED,
                org_id,
                {**summary.to_dict(), "processing_time_ms": self._elapsed_ms(started_at, completed_at)},
                run_id=run_id
            )
        except asyncio.CancelledError:
            await self._record_failure(run_id, org_id, started_at, "Execution cancelled")
            raise
        except asyncio.TimeoutError:
            failure = ExecutionTimeout(run_id, timeout)
            await self._record_failure(run_id, org_id, started_at, failure.message, failure)
        except ExecutionFailure as e:
            await self._record_failure(run_id, org_id, started_at, e.message, e)
        except Exception as e:
            await self._record_failure(run_id, org_id, started_at, self._describe_failure(e), e)

        return await self.repository.get_run(run_id, include_deleted=True)

    async def _run_pipeline(self, run: ReconciliationRunDB) -> RunSummary:
        hw_records, payment_records = await self.loader.load(run)

        outcome = await asyncio.to_thread(
            match_records,
            hw_records,
            payment_records,
            run.time_tolerance,
            Decimal(str(run.amount_tolerance)),
            self.settings.RECON_INCLUDE_UNREFERENCED_PAYMENTS
        )

        mismatches = classify(
            outcome,
            run.id,
            run.organization_id,
            currency=self.settings.RECON_CURRENCY,
            minor_digits=self.settings.RECON_CURRENCY_MINOR_DIGITS
        )
        await self.repository.add_mismatches(mismatches)
        await self.repository.mark_sales_reconciled(outcome.matched_hw_ids, run.id)

        summary = build_summary(outcome)
        if summary.matched + summary.mismatched + summary.missing != summary.total_records:
            raise ExecutionFailure(run.id, "Summary totals do not add up")

        logger.info(
            f"Run {run.id}: {summary.total_records} records, {summary.matched} matched, "
            f"{summary.mismatched} mismatched, {summary.missing} missing, "
            f"{len(outcome.unreferenced_payments)} unreferenced payments set aside"
        )
        return summary

    async def _record_failure(
        self,
        run_id: str,
        organization_id: str,
        started_at: datetime,
        message: str,
        error: Optional[BaseException] = None
    ):
        """Discard partial pipeline writes, then mark the run failed."""
        await self.repository.rollback()

        completed_at = self.clock()
        await self.repository.fail_run(
            run_id, message, completed_at, self._elapsed_ms(started_at, completed_at)
        )
        await self.repository.commit()

        logger.error(f"Reconciliation run {run_id} failed: {message}")
        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_FAILED,
            organization_id,
            {"error": message},
            run_id=run_id
        )
        if error is not None:
            capture_exception(error, run_id=run_id, organization_id=organization_id)

    @staticmethod
    def _describe_failure(error: Exception) -> str:
        detail = str(error).strip()
        return f"{type(error).__name__}: {detail}" if detail else type(error).__name__

    @staticmethod
    def _elapsed_ms(started_at: datetime, completed_at: datetime) -> int:
        return max(0, int((completed_at - started_at).total_seconds() * 1000))

    # ==================== MISMATCHES ====================

    async def get_mismatches(
        self,
        run_id: str,
        organization_id: Optional[str] = None,
        mismatch_type: Optional[str] = None,
        is_resolved: Optional[bool] = None,
        page: int = 1,
        limit: Optional[int] = None
    ) -> Dict[str, Any]:
        limit = self._validate_page(page, limit)
        await self.get_run(run_id, organization_id)

        type_filter = None
        if mismatch_type:
            try:
                type_filter = MismatchType(mismatch_type)
            except ValueError:
                raise InvalidArgument(
                    f"Invalid mismatchType. Valid values: {[t.value for t in MismatchType]}",
                    "mismatchType"
                )

        mismatches, total = await self.repository.list_mismatches(
            run_id,
            mismatch_type=type_filter,
            is_resolved=is_resolved,
            offset=(page - 1) * limit,
            limit=limit
        )
        return paginate(mismatches, total, page, limit)

    async def get_run_stats(self, run_id: str, organization_id: Optional[str] = None) -> Dict[str, Any]:
        """Mismatch counts by type and resolution state for one run."""
        run = await self.get_run(run_id, organization_id)
        counts = await self.repository.count_mismatches(run_id)

        by_type = {t.value: 0 for t in MismatchType}
        resolved = 0
        unresolved = 0
        for mismatch_type, is_resolved, count in counts:
            by_type[mismatch_type] = by_type.get(mismatch_type, 0) + count
            if is_resolved:
                resolved += count
            else:
                unresolved += count

        return {
            "run_id": run.id,
            "status": ReconciliationStatus(run.status).value,
            "summary": run.summary,
            "mismatches": {
                "total": resolved + unresolved,
                "resolved": resolved,
                "unresolved": unresolved,
                "by_type": by_type
            }
        }

    # ==================== IMPORT HISTORY ====================

    async def list_import_batches(
        self,
        organization_id: str,
        page: int = 1,
        limit: Optional[int] = None
    ) -> Dict[str, Any]:
        limit = self._validate_page(page, limit)
        batches, total = await self.repository.list_import_batches(
            organization_id, offset=(page - 1) * limit, limit=limit
        )
        return paginate(batches, total, page, limit)
