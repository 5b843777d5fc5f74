"""Background scheduler for periodic ledger reconciliation.

Runs as an ``asyncio`` background task that calls
:meth:`TenantUsageLedger.reconcile` every ``interval_seconds``.  Each tick
reconciles every due pair; pairs already being reconciled elsewhere are
skipped as conflicts and picked up on a later tick.
"""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy.exc import InterfaceError, OperationalError

from ledger_api.middleware.prometheus import record_reconcile_report
from ledger_core.ledger.models import ReconcileReport
from ledger_core.ledger.reconciler import TenantUsageLedger

logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    """AsyncIO background task for scheduled reconciliation.

    Parameters
    ----------
    ledger:
        The process-wide ledger; sharing it with the HTTP trigger keeps
        both behind the same in-process pass locks.
    interval_seconds:
        Sleep between ticks.
    """

    def __init__(self, ledger: TenantUsageLedger, interval_seconds: float = 300.0) -> None:
        self._ledger = ledger
        self._interval = interval_seconds
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._ticks = 0

    @property
    def running(self) -> bool:
        """Whether the scheduler loop is active."""
        return self._running

    @property
    def ticks(self) -> int:
        """Completed reconcile ticks since start."""
        return self._ticks

    async def start(self) -> None:
        """Start the scheduler background task."""
        if self._running:
            logger.warning("ReconciliationScheduler already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("ReconciliationScheduler started (interval=%.0fs)", self._interval)

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("ReconciliationScheduler stopped")

    async def run_once(self) -> ReconcileReport:
        """Reconcile every due pair once."""
        report = await self._ledger.reconcile()
        record_reconcile_report(report)
        self._ticks += 1
        if report.pairs or report.conflicts:
            logger.info(
                "Scheduled reconcile: %d pair(s), %d summaries, %d conflicts, %d failures",
                len(report.pairs),
                report.summaries_written,
                len(report.conflicts),
                len(report.failures),
            )
        return report

    async def _run_loop(self) -> None:
        """Main scheduler loop."""
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("ReconciliationScheduler database error: %s", exc, exc_info=True)
            except Exception as exc:
                logger.critical("ReconciliationScheduler unexpected error: %s", exc, exc_info=True)
                self._running = False
                raise
            await asyncio.sleep(self._interval)
