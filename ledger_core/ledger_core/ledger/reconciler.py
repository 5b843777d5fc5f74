"""Tenant usage ledger: turns raw usage events into versioned period summaries.

Each (tenant, usage type) pair moves through ``IDLE → SCANNING →
RECONCILING → CLOSED → IDLE`` once per pass:

1. **SCANNING** loads (or creates) the billing cursor and computes
   ``target_end = min(now - safety_margin, end of the watermark's period)``.
   Events in ``[period_start(watermark - lookback), target_end)`` are read
   with ``as_of=now`` so the pass sees a fixed snapshot of the store.
2. **RECONCILING** deduplicates by ``event_id`` and sums per period.  Only
   periods fully closed by ``target_end`` are considered.
3. **CLOSED** writes a new summary version for every period whose total
   changed (or that has never been summarized) and advances the watermark
   to ``max(watermark, target_end)``, all in one transaction.

Passes for the same pair never overlap: an in-process ``asyncio.Lock``
plus a TTL row in ``ledger_pass_locks`` guard each pair, and a pass that
finds either held raises :class:`ReconciliationConflict` without writing.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_core.alerts import AlertKind, LoggingOperatorChannel, OperatorAlert, OperatorChannel
from ledger_core.config import LedgerSettings
from ledger_core.errors import ReconciliationConflict, ScanError
from ledger_core.ledger.aggregator import PeriodAggregator
from ledger_core.ledger.models import (
    BillingCursor,
    PairReport,
    PairState,
    PassResult,
    ReconcileReport,
    UsageSummary,
)
from ledger_core.ledger.periods import period_end, period_start
from ledger_core.retry import RetryConfig, async_retry_with_backoff
from ledger_core.state.database import set_service_context
from ledger_core.state.repository import (
    BillingCursorRepository,
    PassLockRepository,
    UsageEventRepository,
    UsageSummaryRepository,
)
from ledger_core.usage.events import TimeWindow
from ledger_core.usage.reader import UsageEventReader
from ledger_core.usage.registry import UsageType, normalize_quantity, spec_for

logger = logging.getLogger(__name__)

Pair = tuple[str, UsageType]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _default_instance_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class TenantUsageLedger:
    """Reconciles usage events into billing-grade summaries.

    Parameters
    ----------
    session_factory:
        Factory for write sessions.  No tenant data is cached between
        passes; every pass reloads its cursor and prior summaries.
    reader:
        Event store reader.
    settings:
        Window, retry, concurrency and retention settings.
    operator_channel:
        Receives an alert when a pass exhausts its scan retries.
    clock:
        Returns the current UTC time; injectable for tests.
    instance_id:
        Owner recorded on pass locks.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        reader: UsageEventReader,
        settings: LedgerSettings,
        operator_channel: OperatorChannel,
        *,
        clock: Callable[[], datetime] = _utcnow,
        instance_id: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._reader = reader
        self._settings = settings
        self._operator_channel = operator_channel
        self._clock = clock
        self._instance_id = instance_id or _default_instance_id()
        self._retry = RetryConfig.from_settings(settings)
        self._pair_locks: dict[Pair, asyncio.Lock] = {}
        self._states: dict[Pair, PairState] = {}

    @property
    def instance_id(self) -> str:
        return self._instance_id

    def now(self) -> datetime:
        return self._clock()

    # -- State ---------------------------------------------------------------

    def state_of(self, tenant_id: str, usage_type: UsageType) -> PairState:
        return self._states.get((tenant_id, UsageType(usage_type)), PairState.IDLE)

    def pair_states(self) -> dict[Pair, PairState]:
        return dict(self._states)

    def _transition(self, pair: Pair, state: PairState) -> None:
        previous = self._states.get(pair, PairState.IDLE)
        if state == PairState.IDLE:
            self._states.pop(pair, None)
        else:
            self._states[pair] = state
        logger.debug("Pair %s/%s: %s -> %s", pair[0], pair[1].value, previous.value, state.value)

    # -- Trigger -------------------------------------------------------------

    async def reconcile(
        self,
        tenant_id: str | None = None,
        usage_type: UsageType | str | None = None,
    ) -> ReconcileReport:
        """Reconcile one pair, every pair of a tenant, or every due pair.

        Conflicts and exhausted scans are recorded on the report; the
        other pairs still run.  Unexpected errors propagate.
        """
        report = ReconcileReport(started_at=self._clock())
        wanted = UsageType(usage_type) if usage_type is not None else None

        if tenant_id is not None and wanted is not None:
            pairs: list[Pair] = [(tenant_id, wanted)]
        elif tenant_id is not None:
            pairs = await self.tenant_pairs(tenant_id)
        else:
            pairs = await self.due_pairs()
            if wanted is not None:
                pairs = [p for p in pairs if p[1] == wanted]

        if not pairs:
            report.finished_at = self._clock()
            return report

        semaphore = asyncio.Semaphore(self._settings.worker_concurrency)

        async def _worker(pair: Pair) -> PairReport:
            async with semaphore:
                return await self.reconcile_pair(*pair)

        results = await asyncio.gather(*(_worker(p) for p in pairs), return_exceptions=True)
        for pair, outcome in zip(pairs, results, strict=True):
            label = f"{pair[0]}/{pair[1].value}"
            if isinstance(outcome, ReconciliationConflict):
                report.conflicts.append(label)
            elif isinstance(outcome, (ScanError, SQLAlchemyError)):
                report.failures.append(label)
                report.pairs.append(PairReport(tenant_id=pair[0], usage_type=pair[1], error=str(outcome)))
                if isinstance(outcome, SQLAlchemyError):
                    logger.error("Reconciliation of %s failed: %s", label, outcome, exc_info=outcome)
                    await self._operator_channel.notify(
                        OperatorAlert(
                            kind=AlertKind.RECONCILIATION_FAILED,
                            message=f"Reconciliation pass for {label} failed: {type(outcome).__name__}",
                            tenant_id=pair[0],
                            usage_type=pair[1].value,
                            details={"error": type(outcome).__name__},
                        )
                    )
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                report.pairs.append(outcome)

        report.finished_at = self._clock()
        logger.info(
            "Reconciled %d pair(s): %d summaries written, %d conflicts, %d failures",
            len(report.pairs) - len(report.failures),
            report.summaries_written,
            len(report.conflicts),
            len(report.failures),
        )
        return report

    async def due_pairs(self) -> list[Pair]:
        """Pairs with unseen events, a closable period, or a stale cursor."""
        now = self._clock()
        horizon = now - self._settings.safety_margin
        async with self._session_factory() as session:
            await set_service_context(session)
            unseen = await UsageEventRepository(session).pairs_with_unseen_events()
            behind = await BillingCursorRepository(session).due(
                behind=period_start(horizon, self._settings.billing_period),
                stale_before=now - self._settings.reconcile_interval,
            )
        return _typed_pairs(set(unseen) | set(behind))

    async def tenant_pairs(self, tenant_id: str) -> list[Pair]:
        """Every usage type the tenant has events or a cursor for."""
        async with self._session_factory() as session:
            await set_service_context(session)
            active = await UsageEventRepository(session).active_pairs()
            cursors = await BillingCursorRepository(session).list_all(tenant_id)
        raw = {p for p in active if p[0] == tenant_id} | {(c.tenant_id, c.usage_type) for c in cursors}
        return _typed_pairs(raw)

    # -- Per-pair ------------------------------------------------------------

    async def reconcile_pair(self, tenant_id: str, usage_type: UsageType | str) -> PairReport:
        """Run passes for one pair until caught up or ``max_periods_per_run`` is hit.

        Raises
        ------
        ReconciliationConflict
            Another pass for the pair is in flight.
        ScanError
            Event reads failed after all retries; the cursor is unchanged
            for the failed pass and an operator alert was sent.
        """
        pair: Pair = (tenant_id, UsageType(usage_type))
        report = PairReport(tenant_id=tenant_id, usage_type=pair[1])

        async with self._pass_lock(pair):
            try:
                for _ in range(self._settings.max_periods_per_run):
                    result, caught_up = await self._run_pass(pair)
                    report.passes.append(result)
                    if caught_up:
                        report.caught_up = True
                        break
            finally:
                self._transition(pair, PairState.IDLE)

        logger.info(
            "Pair %s/%s: %d pass(es), %d summaries, %d corrections%s",
            tenant_id,
            pair[1].value,
            len(report.passes),
            report.summaries_written,
            report.corrections,
            "" if report.caught_up else " (more periods pending)",
        )
        return report

    @asynccontextmanager
    async def _pass_lock(self, pair: Pair) -> AsyncIterator[None]:
        tenant_id, usage_type = pair
        local = self._pair_locks.setdefault(pair, asyncio.Lock())
        if local.locked():
            raise ReconciliationConflict(tenant_id, usage_type.value, held_by=self._instance_id)

        async with local:
            async with self._session_factory() as session, session.begin():
                await set_service_context(session)
                locks = PassLockRepository(session)
                acquired = await locks.acquire(
                    tenant_id,
                    usage_type.value,
                    self._instance_id,
                    self._settings.lock_ttl_seconds,
                )
                holder = None if acquired else await locks.holder(tenant_id, usage_type.value)
            if not acquired:
                raise ReconciliationConflict(tenant_id, usage_type.value, held_by=holder)

            try:
                yield
            finally:
                await self._release_lock(pair)

    async def _release_lock(self, pair: Pair) -> None:
        try:
            async with self._session_factory() as session, session.begin():
                await set_service_context(session)
                await PassLockRepository(session).release(pair[0], pair[1].value, self._instance_id)
        except SQLAlchemyError:
            logger.warning(
                "Failed to release pass lock for %s/%s; it expires after %ds",
                pair[0],
                pair[1].value,
                self._settings.lock_ttl_seconds,
                exc_info=True,
            )

    async def _load_cursor(self, pair: Pair, horizon: datetime) -> BillingCursor:
        tenant_id, usage_type = pair
        async with self._session_factory() as session:
            await set_service_context(session)
            row = await BillingCursorRepository(session).get(tenant_id, usage_type.value)
        if row is not None:
            return BillingCursor.from_row(row)

        earliest = await async_retry_with_backoff(
            lambda: self._reader.earliest_occurred_at(tenant_id, usage_type),
            self._retry,
            description=f"earliest event lookup for {tenant_id}/{usage_type.value}",
        )
        start = period_start(earliest if earliest is not None else horizon, self._settings.billing_period)
        async with self._session_factory() as session, session.begin():
            await set_service_context(session)
            row = await BillingCursorRepository(session).create(
                tenant_id,
                usage_type.value,
                start,
                self._settings.lookback_window,
            )
            cursor = BillingCursor.from_row(row)
        logger.info("Created billing cursor for %s/%s at %s", tenant_id, usage_type.value, start.isoformat())
        return cursor

    async def _event_seq(self, pair: Pair) -> int:
        # Taken before the scan; rows landing mid-scan keep the pair due.
        async with self._session_factory() as session:
            await set_service_context(session)
            return await UsageEventRepository(session).latest_seq(pair[0], pair[1].value)

    async def _run_pass(self, pair: Pair) -> tuple[PassResult, bool]:
        tenant_id, usage_type = pair
        settings = self._settings
        period = settings.billing_period

        self._transition(pair, PairState.SCANNING)
        now = self._clock()
        horizon = now - settings.safety_margin
        try:
            cursor = await self._load_cursor(pair, horizon)
            event_seq = await self._event_seq(pair)
            watermark = cursor.watermark
            target_end = min(horizon, period_end(watermark, period))
            scan_start = period_start(watermark - settings.lookback_window, period)

            async def _scan() -> PeriodAggregator:
                aggregator = PeriodAggregator(usage_type, period, scan_start, target_end)
                window = TimeWindow(start=scan_start, end=target_end)
                async for event in self._reader.read(tenant_id, usage_type, window, as_of=now):
                    aggregator.add(event)
                return aggregator

            aggregator = await async_retry_with_backoff(
                _scan,
                self._retry,
                description=f"usage scan for {tenant_id}/{usage_type.value}",
            )
        except ScanError as exc:
            await self._operator_channel.notify(
                OperatorAlert(
                    kind=AlertKind.SCAN_RETRIES_EXHAUSTED,
                    message=f"Usage scan failed after {self._retry.max_retries + 1} attempts: {exc}",
                    tenant_id=tenant_id,
                    usage_type=usage_type.value,
                    details={"error": type(exc).__name__},
                )
            )
            raise

        self._transition(pair, PairState.RECONCILING)
        result = PassResult(
            tenant_id=tenant_id,
            usage_type=usage_type,
            scan_start=scan_start,
            target_end=target_end,
            watermark_before=watermark,
            watermark_after=max(watermark, target_end),
            events_read=aggregator.events_read,
            duplicates_dropped=aggregator.duplicates_dropped,
        )
        unit = spec_for(usage_type).unit

        async with self._session_factory() as session, session.begin():
            await set_service_context(session)
            summaries = UsageSummaryRepository(session)
            prior = {
                row.period_start: row
                for row in await summaries.current_for_range(tenant_id, usage_type.value, scan_start, target_end)
            }

            for total in aggregator.totals():
                result.periods_closed += 1
                previous = prior.get(total.period_start)
                if previous is None:
                    if total.period_start < cursor.origin and total.event_count == 0:
                        continue
                    pass_number = 0
                elif normalize_quantity(usage_type, previous.total_quantity) == total.total:
                    result.unchanged += 1
                    continue
                else:
                    pass_number = previous.pass_number + 1

                row = await summaries.insert(
                    summary_id=uuid.uuid4().hex,
                    tenant_id=tenant_id,
                    usage_type=usage_type.value,
                    period_start=total.period_start,
                    period_end=total.period_end,
                    total_quantity=total.total,
                    unit=unit,
                    event_count=total.event_count,
                    event_digest=total.digest,
                    pass_number=pass_number,
                    reconciled_through=target_end,
                )
                if previous is not None:
                    await summaries.mark_superseded(previous.summary_id, row.summary_id)
                    result.corrections += 1
                    result.pruned += await summaries.prune_superseded(
                        tenant_id,
                        usage_type.value,
                        total.period_start,
                        keep=settings.max_reconciliation_passes_retained,
                    )
                    logger.info(
                        "Corrected %s/%s period %s: %s -> %s (pass %d)",
                        tenant_id,
                        usage_type.value,
                        total.period_start.isoformat(),
                        previous.total_quantity,
                        total.total,
                        pass_number,
                    )
                result.summaries_written.append(UsageSummary.from_row(row))

            self._transition(pair, PairState.CLOSED)
            await BillingCursorRepository(session).advance(
                tenant_id,
                usage_type.value,
                result.watermark_after,
                settings.lookback_window,
                advanced_at=now,
                event_seq=event_seq,
            )

        caught_up = target_end >= horizon
        return result, caught_up


def _typed_pairs(raw: set[tuple[str, str]]) -> list[Pair]:
    pairs: list[Pair] = []
    for tenant_id, raw_type in sorted(raw):
        try:
            pairs.append((tenant_id, UsageType(raw_type)))
        except ValueError:
            logger.warning("Skipping unknown usage type %r for tenant %s", raw_type, tenant_id)
    return pairs


def build_ledger(
    session_factory: async_sessionmaker[AsyncSession],
    settings: LedgerSettings,
    operator_channel: OperatorChannel | None = None,
    *,
    clock: Callable[[], datetime] = _utcnow,
) -> TenantUsageLedger:
    """Wire a ledger with a reader configured from *settings*."""
    reader = UsageEventReader(
        session_factory,
        page_size=settings.scan_page_size,
        page_timeout=settings.scan_timeout_seconds,
    )
    return TenantUsageLedger(
        session_factory,
        reader,
        settings,
        operator_channel or LoggingOperatorChannel(),
        clock=clock,
    )
