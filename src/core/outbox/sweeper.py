"""
Outbox Sweeper

Background worker that re-sends outbox entries the dispatcher could not
deliver immediately. Each entry is claimed with an optimistic update
before it is sent, so overlapping sweeps do not double-send.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from ..dlq.models import MAX_RETRIES_EXCEEDED, DeadLetterRecord, DeadLetterSource
from ..dlq.sink import DeadLetterSink
from ..exceptions import DeadLetterWriteError
from ..messaging.transport import MessageTransport
from ..observability.metrics import record_histogram
from ..observability.tracing import create_span
from ..periodic import PeriodicSweep
from .models import OutboxMessage, OutboxStatus
from .store import OutboxStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SweepSummary:
    """Counts from one sweep run."""
    fetched: int = 0
    dispatched: int = 0
    failed: int = 0
    abandoned: int = 0
    dead_lettered: int = 0
    skipped: int = 0
    errors: int = 0
    cleaned: int = 0
    cancelled: bool = False


class OutboxSweeper(PeriodicSweep):
    """
    Periodically dispatches pending outbox entries.

    Features:
    - Claims each entry before sending (PENDING -> DISPATCHING)
    - Records success or failure through the store's transitions
    - Dead-letters ABANDONED entries that have no dead-letter record yet,
      when configured; a failed write is retried on the next sweep
    - Isolates failures per entry
    - Checks the stop signal between entries
    """

    name = "OutboxSweeper"

    def __init__(
        self,
        store: OutboxStore,
        transport: MessageTransport,
        dead_letter_sink: Optional[DeadLetterSink] = None,
        interval_seconds: Optional[float] = None,
        send_timeout_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow
    ):
        super().__init__(interval_seconds or store.options.sweep_interval_seconds)
        self._store = store
        self._transport = transport
        self._sink = dead_letter_sink
        self.send_timeout_seconds = send_timeout_seconds or store.options.dispatch_timeout_seconds
        self._clock = clock

    async def run_once(self, stop_event: Optional[asyncio.Event] = None) -> SweepSummary:
        """
        Run a single sweep.

        Args:
            stop_event: Checked between entries; when set the sweep returns
                early and skips cleanup

        Returns:
            SweepSummary for this run
        """
        summary = SweepSummary()
        started = time.monotonic()

        with create_span("outbox.sweep", {"outbox.batch_size": self._store.options.batch_size}) as span:
            messages = await self._store.get_pending_messages()
            summary.fetched = len(messages)

            for message in messages:
                if stop_event is not None and stop_event.is_set():
                    summary.cancelled = True
                    logger.info("Outbox sweep cancelled between messages")
                    break

                try:
                    await self._dispatch(message, summary)
                except Exception as e:
                    summary.errors += 1
                    logger.error(
                        "Unexpected error sweeping outbox message %s: %s",
                        message.id, e,
                        exc_info=True,
                        extra={"correlation_id": message.correlation_id, "message_id": message.id}
                    )

            if not summary.cancelled:
                await self._dead_letter_abandoned(summary)

                try:
                    summary.cleaned = await self._store.cleanup_old_messages()
                except Exception as e:
                    logger.error(f"Outbox cleanup failed: {e}", exc_info=True)

            span.set_attribute("outbox.dispatched", summary.dispatched)
            span.set_attribute("outbox.failed", summary.failed)
            span.set_attribute("outbox.abandoned", summary.abandoned)
            span.set_attribute("outbox.dead_lettered", summary.dead_lettered)

        record_histogram("sweep_duration_seconds", time.monotonic() - started, {"sweep": "outbox"})

        if summary.fetched or summary.dead_lettered:
            logger.info(
                f"Outbox sweep: fetched={summary.fetched} dispatched={summary.dispatched} "
                f"failed={summary.failed} abandoned={summary.abandoned} dead_lettered={summary.dead_lettered} "
                f"skipped={summary.skipped} errors={summary.errors}"
            )
        return summary

    async def _dispatch(self, message: OutboxMessage, summary: SweepSummary):
        claimed = await self._store.try_claim(message)
        if claimed is None:
            summary.skipped += 1
            return

        try:
            await asyncio.wait_for(
                self._transport.send(claimed.payload, claimed.correlation_id, message_id=claimed.id),
                timeout=self.send_timeout_seconds
            )
        except Exception as e:
            error_text = str(e) or type(e).__name__
            logger.warning(
                "Outbox dispatch failed for %s (retry %s): %s",
                claimed.id, claimed.retry_count, error_text,
                extra={
                    "correlation_id": claimed.correlation_id,
                    "retry_count": claimed.retry_count,
                    "error": error_text,
                }
            )
            updated = await self._store.mark_failed(claimed.id, error_text)
            if updated.status == OutboxStatus.ABANDONED:
                summary.abandoned += 1
            else:
                summary.failed += 1
            return

        await self._store.mark_dispatched(claimed.id)
        summary.dispatched += 1

    async def _dead_letter_abandoned(self, summary: SweepSummary):
        if self._sink is None or not self._store.options.dead_letter_abandoned:
            return

        try:
            abandoned = await self._store.get_abandoned_without_dead_letter(self._sink.table_name)
        except Exception as e:
            summary.errors += 1
            logger.error(f"Could not list abandoned outbox messages: {e}", exc_info=True)
            return

        for message in abandoned:
            try:
                await self._sink.write(self._dead_letter_record(message))
            except DeadLetterWriteError as e:
                summary.errors += 1
                logger.error(
                    "Dead-letter write failed for abandoned outbox message %s, retrying next sweep: %s",
                    message.id, e,
                    extra={"correlation_id": message.correlation_id, "message_id": message.id}
                )
                continue
            summary.dead_lettered += 1

    def _dead_letter_record(self, message: OutboxMessage) -> DeadLetterRecord:
        return DeadLetterRecord(
            id=message.id,
            source=DeadLetterSource.OUTBOX,
            payload=message.payload,
            correlation_id=message.correlation_id,
            retry_count=message.retry_count,
            original_timestamp=message.created_at,
            source_reference=f"outbox/{message.id}",
            failure_reason=MAX_RETRIES_EXCEEDED,
            last_attempt_at=message.abandon_at or self._clock()
        )
