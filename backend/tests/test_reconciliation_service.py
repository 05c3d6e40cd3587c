"""
Tests for the Reconciliation Service

Tests all run functionality against an in-memory database:
- Run creation and validation
- Execution pipeline (load, match, classify, summarize)
- State machine and exclusive claim
- Timeout and failure handling
- Listing, soft delete, mismatch pages and stats

Run with: pytest tests/test_reconciliation_service.py -v
"""

import asyncio
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from conftest import OTHER_ORG_ID, ORG_ID, USER_ID, make_batch, make_payment, make_sale, utc
from database.reconciliation_models import (
    HwImportedSaleDB,
    MismatchType,
    PaymentProvider,
    PaymentTransactionStatus,
    ReconciliationStatus,
)
from reconciliation.errors import InvalidArgument, InvalidState, NotFound
from reconciliation.services.reconciliation_service import ReconciliationService, paginate


class Clock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start=None):
        self.current = start or utc(2024, 2, 1, 9, 0)

    def __call__(self):
        self.current = self.current + timedelta(seconds=1)
        return self.current


@pytest.fixture
def service(repository, settings):
    return ReconciliationService(repository, settings=settings, clock=Clock())


async def _create(service, **overrides):
    values = dict(
        organization_id=ORG_ID,
        date_from="2024-01-15",
        date_to="2024-01-15",
        sources=["hw", "payme"],
    )
    values.update(overrides)
    return await service.create_run(**values)


async def _seed_day(db):
    """
    One day of records on 2024-01-15:
    - s1/p1, s2/p2 matched
    - s3/p3 amount mismatch (100000 vs 95000)
    - s4 without payment
    - p4 (ORD-9) without sale
    - click, failed and other-org payments that the run must not load
    """
    batch = make_batch()
    db.add(batch)
    sales = [
        make_sale(batch, utc(2024, 1, 15, 10, 0), "10000.00", order_number="ORD-1", id="s1"),
        make_sale(batch, utc(2024, 1, 15, 11, 0), "5000.00", order_number="ORD-2", id="s2"),
        make_sale(batch, utc(2024, 1, 15, 12, 0), "100000.00", order_number="ORD-3", id="s3"),
        make_sale(batch, utc(2024, 1, 15, 13, 0), "2000.00", machine_code="M-002", id="s4"),
        make_sale(batch, utc(2024, 1, 16, 0, 0), "1000.00", id="s-next-day"),
    ]
    payments = [
        make_payment(utc(2024, 1, 15, 10, 1), "10000.00", order_id="ORD-1", id="p1"),
        make_payment(utc(2024, 1, 15, 11, 0, 30), "5000.00", order_id="ORD-2", id="p2"),
        make_payment(utc(2024, 1, 15, 12, 0, 10), "95000.00", order_id="ORD-3", id="p3"),
        make_payment(utc(2024, 1, 15, 15, 0), "7000.00", order_id="ORD-9", id="p4"),
        make_payment(utc(2024, 1, 15, 13, 0), "2000.00", machine_code="M-002",
                     provider=PaymentProvider.CLICK, id="p-click"),
        make_payment(utc(2024, 1, 15, 13, 0), "2000.00", machine_code="M-002",
                     status=PaymentTransactionStatus.FAILED, id="p-failed"),
        make_payment(utc(2024, 1, 15, 10, 0), "10000.00", organization_id=OTHER_ORG_ID, id="p-other"),
    ]
    db.add_all(sales + payments)
    await db.commit()


# ==================== CREATE ====================

class TestCreateRun:
    """Run creation and input validation."""

    @pytest.mark.asyncio
    async def test_create_pending_run_with_defaults(self, service, settings):
        run = await _create(service, created_by_user_id=USER_ID, metadata={"note": "january"})

        assert run.id
        assert run.status == ReconciliationStatus.PENDING
        assert run.date_from == date(2024, 1, 15)
        assert run.sources == ["hw", "payme"]
        assert run.machine_ids == []
        assert run.time_tolerance == settings.RECON_DEFAULT_TIME_TOLERANCE
        assert run.amount_tolerance == Decimal("0.01")
        assert run.summary is None
        assert run.error_message is None
        assert run.run_metadata == {"note": "january"}
        assert run.created_by_user_id == USER_ID

    @pytest.mark.asyncio
    async def test_sources_normalized(self, service):
        run = await _create(service, sources=["HW", "payme", "hw", " click "])
        assert run.sources == ["hw", "payme", "click"]

    @pytest.mark.asyncio
    async def test_machine_ids_deduplicated(self, service):
        run = await _create(service, machine_ids=["M-001", " M-001", "", "M-002"])
        assert run.machine_ids == ["M-001", "M-002"]

    @pytest.mark.asyncio
    async def test_date_to_before_date_from(self, service):
        with pytest.raises(InvalidArgument) as exc_info:
            await _create(service, date_from="2024-01-31", date_to="2024-01-01")
        assert exc_info.value.parameter == "dateTo"

    @pytest.mark.asyncio
    async def test_missing_dates(self, service):
        with pytest.raises(InvalidArgument):
            await _create(service, date_from=None)
        with pytest.raises(InvalidArgument):
            await _create(service, date_to="not-a-date")

    @pytest.mark.asyncio
    async def test_empty_sources(self, service):
        with pytest.raises(InvalidArgument) as exc_info:
            await _create(service, sources=[])
        assert exc_info.value.parameter == "sources"

    @pytest.mark.asyncio
    async def test_unknown_source(self, service):
        with pytest.raises(InvalidArgument) as exc_info:
            await _create(service, sources=["hw", "paypal"])
        assert "paypal" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_tolerance_bounds(self, service):
        with pytest.raises(InvalidArgument):
            await _create(service, time_tolerance=-1)
        with pytest.raises(InvalidArgument):
            await _create(service, time_tolerance=86401)
        with pytest.raises(InvalidArgument):
            await _create(service, amount_tolerance=-0.5)
        with pytest.raises(InvalidArgument):
            await _create(service, amount_tolerance="abc")

        run = await _create(service, time_tolerance=0, amount_tolerance=0)
        assert run.time_tolerance == 0
        assert run.amount_tolerance == Decimal("0")

    @pytest.mark.asyncio
    async def test_amount_tolerance_precision(self, service):
        with pytest.raises(InvalidArgument) as exc_info:
            await _create(service, amount_tolerance="0.00125")
        assert exc_info.value.parameter == "amountTolerance"
        with pytest.raises(InvalidArgument):
            await _create(service, amount_tolerance=1e-5)

        run = await _create(service, amount_tolerance="0.0125")
        assert run.amount_tolerance == Decimal("0.0125")

        trailing = await _create(service, amount_tolerance="0.050000")
        assert trailing.amount_tolerance == Decimal("0.05")


# ==================== EXECUTE ====================

class TestExecuteRun:
    """End-to-end execution against seeded records."""

    @pytest.mark.asyncio
    async def test_execute_completes_with_summary(self, service, db):
        await _seed_day(db)
        run = await _create(service)

        result = await service.execute(run.id, ORG_ID)

        assert result.status == ReconciliationStatus.COMPLETED
        assert result.error_message is None
        assert result.started_at is not None
        assert result.completed_at is not None
        assert result.processing_time_ms >= 0
        assert result.summary == {
            "totalRecords": 5,
            "matched": 2,
            "mismatched": 1,
            "missing": 2,
            "matchRate": 40.0,
        }

    @pytest.mark.asyncio
    async def test_execute_persists_mismatches(self, service, db):
        await _seed_day(db)
        run = await _create(service)
        await service.execute(run.id)

        page = await service.get_mismatches(run.id, ORG_ID)
        assert page["total"] == 3
        by_type = {m.mismatch_type: m for m in page["items"]}

        amount = by_type[MismatchType.AMOUNT_MISMATCH]
        assert amount.order_number == "ORD-3"
        assert amount.discrepancy_amount == Decimal("5000")
        assert amount.match_score == Decimal("0.95")
        assert amount.sources_data["hw"]["id"] == "s3"
        assert amount.sources_data["payment"]["id"] == "p3"
        assert amount.description == "Amount mismatch: HW=100000, Payment=95000 (diff=5000 UZS)"

        missing_payment = by_type[MismatchType.PAYMENT_NOT_FOUND]
        assert missing_payment.machine_code == "M-002"
        assert missing_payment.sources_data["payment"] is None

        missing_sale = by_type[MismatchType.ORDER_NOT_FOUND]
        assert missing_sale.order_number == "ORD-9"
        assert missing_sale.payment_method == "payme"
        assert all(m.is_resolved is False for m in page["items"])

    @pytest.mark.asyncio
    async def test_matched_sales_marked_reconciled(self, service, db):
        await _seed_day(db)
        run = await _create(service)
        await service.execute(run.id)

        result = await db.execute(
            select(HwImportedSaleDB.id).where(HwImportedSaleDB.is_reconciled.is_(True))
        )
        assert sorted(result.scalars().all()) == ["s1", "s2"]

    @pytest.mark.asyncio
    async def test_machine_filter(self, service, db):
        await _seed_day(db)
        run = await _create(service, machine_ids=["M-002"])

        result = await service.execute(run.id)

        assert result.summary["totalRecords"] == 1
        assert result.summary["missing"] == 1

    @pytest.mark.asyncio
    async def test_empty_window_completes(self, service, db):
        await _seed_day(db)
        run = await _create(service, date_from="2023-06-01", date_to="2023-06-30")

        result = await service.execute(run.id)

        assert result.status == ReconciliationStatus.COMPLETED
        assert result.summary["totalRecords"] == 0
        assert result.summary["matchRate"] == 0.0

    @pytest.mark.asyncio
    async def test_rerun_creates_independent_mismatches(self, service, db):
        await _seed_day(db)
        first = await _create(service)
        second = await _create(service)

        await service.execute(first.id)
        await service.execute(second.id)

        first_page = await service.get_mismatches(first.id)
        second_page = await service.get_mismatches(second.id)
        assert first_page["total"] == second_page["total"] == 3
        assert not {m.id for m in first_page["items"]} & {m.id for m in second_page["items"]}


class TestRunStateMachine:
    """Exclusive claim and terminal states."""

    @pytest.mark.asyncio
    async def test_second_execute_rejected(self, service):
        run = await _create(service)
        await service.execute(run.id)

        with pytest.raises(InvalidState):
            await service.execute(run.id)

    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, service, repository):
        run = await _create(service)

        assert await repository.claim_run(run.id, utc(2024, 2, 1)) is True
        assert await repository.claim_run(run.id, utc(2024, 2, 1)) is False
        await repository.commit()

        with pytest.raises(InvalidState):
            await service.execute(run.id)

    @pytest.mark.asyncio
    async def test_lost_claim_raises_invalid_state(self, settings):
        pending = MagicMock(id="run-1", organization_id=ORG_ID, status="pending")
        processing = MagicMock(id="run-1", organization_id=ORG_ID, status="processing")
        repo = AsyncMock()
        repo.get_run = AsyncMock(side_effect=[pending, processing])
        repo.claim_run = AsyncMock(return_value=False)

        service = ReconciliationService(repo, settings=settings, loader=AsyncMock())

        with pytest.raises(InvalidState):
            await service.execute("run-1")
        repo.rollback.assert_awaited_once()
        service.loader.load.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_run(self, service):
        with pytest.raises(NotFound):
            await service.execute("00000000-0000-4000-8000-000000000000")

    @pytest.mark.asyncio
    async def test_other_organization_cannot_execute(self, service):
        run = await _create(service)
        with pytest.raises(NotFound):
            await service.execute(run.id, OTHER_ORG_ID)


class TestExecutionFailures:
    """Failures are recorded on the run, never raised."""

    @pytest.mark.asyncio
    async def test_timeout_marks_run_failed(self, repository, settings):
        settings.RECON_EXECUTION_TIMEOUT_SECONDS = 0.05

        async def slow_load(run):
            await asyncio.sleep(1)
            return [], []

        loader = MagicMock()
        loader.load = slow_load
        service = ReconciliationService(repository, settings=settings, loader=loader, clock=Clock())
        run = await _create(service)

        result = await service.execute(run.id)

        assert result.status == ReconciliationStatus.FAILED
        assert result.error_message == "Timeout: processing exceeded 0.05 seconds"
        assert result.summary is None
        assert result.completed_at is not None

    @pytest.mark.asyncio
    async def test_loader_error_marks_run_failed(self, repository, settings):
        loader = MagicMock()
        loader.load = AsyncMock(side_effect=RuntimeError("payments store unavailable"))
        service = ReconciliationService(repository, settings=settings, loader=loader, clock=Clock())
        run = await _create(service)

        result = await service.execute(run.id)

        assert result.status == ReconciliationStatus.FAILED
        assert result.error_message == "RuntimeError: payments store unavailable"
        assert result.summary is None

    @pytest.mark.asyncio
    async def test_failed_run_leaves_no_mismatches(self, repository, settings, db):
        await _seed_day(db)
        service = ReconciliationService(repository, settings=settings, clock=Clock())
        run = await _create(service)

        repository.mark_sales_reconciled = AsyncMock(side_effect=RuntimeError("write failed"))
        result = await service.execute(run.id)

        assert result.status == ReconciliationStatus.FAILED
        page = await service.get_mismatches(run.id)
        assert page["total"] == 0

    @pytest.mark.asyncio
    async def test_failed_run_cannot_be_executed_again(self, repository, settings):
        loader = MagicMock()
        loader.load = AsyncMock(side_effect=RuntimeError("boom"))
        service = ReconciliationService(repository, settings=settings, loader=loader, clock=Clock())
        run = await _create(service)
        await service.execute(run.id)

        with pytest.raises(InvalidState):
            await service.execute(run.id)


# ==================== LIST / GET / DELETE ====================

class TestListAndDelete:
    """Listing, filters, pagination and soft delete."""

    @pytest.mark.asyncio
    async def test_list_newest_first(self, service):
        first = await _create(service)
        second = await _create(service)
        await _create(service, organization_id=OTHER_ORG_ID)

        page = await service.list_runs(ORG_ID)

        assert page["total"] == 2
        assert [r.id for r in page["items"]] == [second.id, first.id]
        assert page["total_pages"] == 1

    @pytest.mark.asyncio
    async def test_list_filters(self, service):
        january = await _create(service, date_from="2024-01-01", date_to="2024-01-31")
        await _create(service, date_from="2024-02-01", date_to="2024-02-29")
        await service.execute(january.id)

        completed = await service.list_runs(ORG_ID, status="completed")
        assert [r.id for r in completed["items"]] == [january.id]

        in_range = await service.list_runs(ORG_ID, date_from="2024-01-01", date_to="2024-01-31")
        assert [r.id for r in in_range["items"]] == [january.id]

    @pytest.mark.asyncio
    async def test_list_pagination(self, service):
        for _ in range(5):
            await _create(service)

        page = await service.list_runs(ORG_ID, page=2, limit=2)

        assert page["total"] == 5
        assert len(page["items"]) == 2
        assert page["total_pages"] == 3

    @pytest.mark.asyncio
    async def test_list_rejects_bad_arguments(self, service):
        with pytest.raises(InvalidArgument):
            await service.list_runs(ORG_ID, status="archived")
        with pytest.raises(InvalidArgument):
            await service.list_runs(ORG_ID, page=0)
        with pytest.raises(InvalidArgument):
            await service.list_runs(ORG_ID, limit=1000)

    @pytest.mark.asyncio
    async def test_delete_hides_run(self, service):
        run = await _create(service)

        await service.delete_run(run.id, ORG_ID, actor=USER_ID)

        with pytest.raises(NotFound):
            await service.get_run(run.id, ORG_ID)
        page = await service.list_runs(ORG_ID)
        assert page["total"] == 0

    @pytest.mark.asyncio
    async def test_delete_twice(self, service):
        run = await _create(service)
        await service.delete_run(run.id, ORG_ID)

        with pytest.raises(NotFound):
            await service.delete_run(run.id, ORG_ID)

    @pytest.mark.asyncio
    async def test_delete_completed_run(self, service):
        run = await _create(service)
        await service.execute(run.id)

        await service.delete_run(run.id, ORG_ID)
        with pytest.raises(NotFound):
            await service.get_run(run.id)

    @pytest.mark.asyncio
    async def test_processing_run_cannot_be_deleted(self, service, repository):
        run = await _create(service)
        await repository.claim_run(run.id, utc(2024, 2, 1))
        await repository.commit()

        with pytest.raises(InvalidState):
            await service.delete_run(run.id, ORG_ID)
        assert (await service.get_run(run.id)).status == ReconciliationStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_deleted_run_cannot_execute(self, service):
        run = await _create(service)
        await service.delete_run(run.id)

        with pytest.raises(NotFound):
            await service.execute(run.id)


# ==================== MISMATCH ACCESS ====================

class TestMismatchAccess:
    """Mismatch pages and run statistics."""

    @pytest.mark.asyncio
    async def test_filter_by_type(self, service, db):
        await _seed_day(db)
        run = await _create(service)
        await service.execute(run.id)

        page = await service.get_mismatches(run.id, mismatch_type="amount_mismatch")
        assert page["total"] == 1
        assert page["items"][0].mismatch_type == MismatchType.AMOUNT_MISMATCH

        with pytest.raises(InvalidArgument):
            await service.get_mismatches(run.id, mismatch_type="duplicate")

    @pytest.mark.asyncio
    async def test_unknown_run_mismatches(self, service):
        with pytest.raises(NotFound):
            await service.get_mismatches("00000000-0000-4000-8000-000000000000")

    @pytest.mark.asyncio
    async def test_run_stats(self, service, db):
        await _seed_day(db)
        run = await _create(service)
        await service.execute(run.id)

        stats = await service.get_run_stats(run.id, ORG_ID)

        assert stats["status"] == "completed"
        assert stats["summary"]["matched"] == 2
        assert stats["mismatches"] == {
            "total": 3,
            "resolved": 0,
            "unresolved": 3,
            "by_type": {
                "payment_not_found": 1,
                "order_not_found": 1,
                "amount_mismatch": 1,
            },
        }

    def test_paginate(self):
        assert paginate([], 0, 1, 20)["total_pages"] == 0
        assert paginate([1], 41, 1, 20)["total_pages"] == 3


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
