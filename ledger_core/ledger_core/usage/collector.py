"""Ingestion-edge collector that classifies, buffers and flushes usage events.

Raw events are classified through the :class:`UsageTypeRegistry` on
``record``; unknown kinds and invalid quantities are rejected there and
counted, so nothing unclassified is ever written for the ledger to read.

Two sinks are provided:

* :class:`DatabaseSink` -- appends rows to the ``usage_events`` table.
* :class:`FileSink` -- appends events as JSON lines to a local file.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import Counter
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_core.errors import InvalidUsageEvent, UnknownUsageType
from ledger_core.state.database import set_service_context
from ledger_core.state.repository import UsageEventRepository
from ledger_core.usage.events import RawUsageEvent, UsageEvent
from ledger_core.usage.registry import UsageTypeRegistry

logger = logging.getLogger(__name__)


class UsageSink(Protocol):
    """Protocol for classified event persistence."""

    async def flush(self, events: Sequence[UsageEvent]) -> None:
        """Persist a batch of events."""
        ...


class FileSink:
    """Appends usage events as JSON lines to a local file."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    async def flush(self, events: Sequence[UsageEvent]) -> None:
        if not events:
            return
        lines = "".join(event.model_dump_json() + "\n" for event in events)
        await asyncio.to_thread(self._append, lines)
        logger.debug("Flushed %d events to %s", len(events), self._path)

    def _append(self, lines: str) -> None:
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(lines)


class DatabaseSink:
    """Appends usage events to ``usage_events`` in one transaction per batch."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def flush(self, events: Sequence[UsageEvent]) -> None:
        if not events:
            return
        rows = [
            {
                "event_id": e.event_id,
                "tenant_id": e.tenant_id,
                "usage_type": e.usage_type.value,
                "quantity": e.quantity,
                "unit": e.unit,
                "occurred_at": e.occurred_at,
                "observed_at": e.observed_at,
            }
            for e in events
        ]
        async with self._session_factory() as session, session.begin():
            await set_service_context(session)
            await UsageEventRepository(session).insert_many(rows)
        logger.debug("Flushed %d events to database", len(events))


class IngestionCollector:
    """Thread-safe buffer of classified events with periodic flushing.

    Parameters
    ----------
    registry:
        Registry used to classify raw events.
    sink:
        Destination for flushed batches.
    flush_interval_seconds:
        Period of the background flush task.
    max_buffer_size:
        Buffer length at which :meth:`ingest` flushes immediately.
    """

    def __init__(
        self,
        registry: UsageTypeRegistry,
        sink: UsageSink,
        flush_interval_seconds: float = 10.0,
        max_buffer_size: int = 1000,
    ) -> None:
        self._registry = registry
        self._sink = sink
        self._flush_interval = flush_interval_seconds
        self._max_buffer_size = max_buffer_size
        self._buffer: list[UsageEvent] = []
        self._lock = threading.Lock()
        self._flush_lock = asyncio.Lock()
        self._accepted = 0
        self._rejected: Counter[str] = Counter()
        self._task: asyncio.Task[None] | None = None

    def record(self, raw: RawUsageEvent) -> UsageEvent:
        """Classify and buffer *raw*.

        Raises
        ------
        UnknownUsageType
            The raw kind is unmapped.  Counted under ``unknown_usage_type``.
        InvalidUsageEvent
            Unit or quantity failed validation.  Counted under
            ``invalid_usage_event``.
        """
        try:
            event = self._registry.classify_event(raw)
        except UnknownUsageType:
            with self._lock:
                self._rejected["unknown_usage_type"] += 1
            logger.warning("Rejected event %s: unknown usage kind %r", raw.event_id, raw.usage_type_raw)
            raise
        except InvalidUsageEvent as exc:
            with self._lock:
                self._rejected["invalid_usage_event"] += 1
            logger.warning("Rejected event %s: %s", raw.event_id, exc)
            raise

        with self._lock:
            self._buffer.append(event)
            self._accepted += 1
        return event

    async def ingest(self, raw: RawUsageEvent) -> UsageEvent:
        """Record *raw* and flush if the buffer reached ``max_buffer_size``."""
        event = self.record(raw)
        if self.pending_count >= self._max_buffer_size:
            await self.flush()
        return event

    async def ingest_many(self, raws: Sequence[RawUsageEvent]) -> tuple[int, int]:
        """Record a batch, skipping rejects; returns ``(accepted, rejected)``."""
        accepted = rejected = 0
        for raw in raws:
            try:
                await self.ingest(raw)
                accepted += 1
            except (UnknownUsageType, InvalidUsageEvent):
                rejected += 1
        return accepted, rejected

    async def flush(self) -> int:
        """Flush buffered events to the sink and return how many were written.

        On sink failure the batch is put back at the head of the buffer and
        the error propagates.
        """
        async with self._flush_lock:
            with self._lock:
                batch = list(self._buffer)
                self._buffer.clear()
            if not batch:
                return 0
            try:
                await self._sink.flush(batch)
            except Exception:
                with self._lock:
                    self._buffer[:0] = batch
                logger.error("Usage flush failed; %d events kept for retry", len(batch))
                raise
            return len(batch)

    def start_background_flush(self) -> None:
        """Start an asyncio task that flushes every ``flush_interval_seconds``."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name="usage-ingest-flush")
        logger.info("Usage ingest flush started (interval=%.0fs)", self._flush_interval)

    async def stop_background_flush(self) -> None:
        """Cancel the background task and flush whatever is left."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            try:
                await self.flush()
            except Exception:
                logger.warning("Background usage flush failed", exc_info=True)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._buffer)

    def stats(self) -> dict[str, int]:
        """Accepted and per-reason rejected counts since start."""
        with self._lock:
            return {
                "accepted": self._accepted,
                "pending": len(self._buffer),
                **{f"rejected_{reason}": count for reason, count in self._rejected.items()},
            }
