"""
Run Executor

Dispatches run executions as background asyncio tasks so the request that
starts a run returns immediately.

Features:
- One in-flight task per run id in this process (duplicate dispatch rejected)
- Each execution gets its own database session
- wait / cancel / shutdown for tests and graceful stop
- The pending -> processing claim in the database stays the durable guard
  across processes; this registry only avoids pointless duplicate tasks
"""

import asyncio
import logging
from typing import Dict, Optional

from config import Settings, get_settings
from logging_config import run_log_context
from reconciliation.errors import InvalidState, ReconciliationError
from reconciliation.repository import SqlReconciliationRepository
from reconciliation.services.reconciliation_service import ReconciliationService
from sentry_integration import capture_exception

logger = logging.getLogger(__name__)


class RunExecutor:
    """
    Background execution of reconciliation runs.
    """

    def __init__(self, db_session_factory, settings: Optional[Settings] = None):
        """
        Initialize the executor.

        Args:
            db_session_factory: SQLAlchemy async session factory
            settings: Application settings (defaults to get_settings())
        """
        self.db_session_factory = db_session_factory
        self.settings = settings or get_settings()
        self._tasks: Dict[str, asyncio.Task] = {}

    def is_running(self, run_id: str) -> bool:
        task = self._tasks.get(run_id)
        return task is not None and not task.done()

    def dispatch(self, run_id: str, organization_id: Optional[str] = None) -> asyncio.Task:
        """
        Start executing a run in the background.

        Raises:
            InvalidState: the run already has an in-flight task here
        """
        if self.is_running(run_id):
            raise InvalidState(f"Reconciliation run {run_id} is already executing")

        task = asyncio.create_task(
            self._execute(run_id, organization_id),
            name=f"reconciliation-run-{run_id}"
        )
        self._tasks[run_id] = task
        task.add_done_callback(lambda t: self._forget(run_id, t))
        logger.info(f"Dispatched reconciliation run {run_id}")
        return task

    def _forget(self, run_id: str, task: asyncio.Task):
        if self._tasks.get(run_id) is task:
            del self._tasks[run_id]

    async def _execute(self, run_id: str, organization_id: Optional[str]):
        with run_log_context(run_id, organization_id):
            return await self._execute_in_session(run_id, organization_id)

    async def _execute_in_session(self, run_id: str, organization_id: Optional[str]):
        async with self.db_session_factory() as db:
            service = ReconciliationService(SqlReconciliationRepository(db), settings=self.settings)
            try:
                run = await service.execute(run_id, organization_id)
                return run
            except ReconciliationError as e:
                # Lost the claim to another worker, or the run vanished
                logger.warning(f"Reconciliation run {run_id} not executed: {e.message}")
            except asyncio.CancelledError:
                logger.warning(f"Reconciliation run {run_id} cancelled")
                raise
            except Exception as e:
                logger.exception(f"Reconciliation run {run_id} crashed: {e}")
                capture_exception(e, run_id=run_id)
        return None

    async def wait(self, run_id: str, timeout: Optional[float] = None):
        """Wait for a dispatched run to finish; returns immediately if none is in flight."""
        task = self._tasks.get(run_id)
        if task is None:
            return None
        return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)

    async def cancel(self, run_id: str) -> bool:
        """Cancel an in-flight execution; the run is recorded as failed."""
        task = self._tasks.get(run_id)
        if task is None or task.done():
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        return True

    async def shutdown(self):
        """Cancel every in-flight execution (application shutdown)."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        if not tasks:
            return
        logger.info(f"Cancelling {len(tasks)} in-flight reconciliation runs")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
