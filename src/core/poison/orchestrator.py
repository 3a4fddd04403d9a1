"""
Poison-Channel Retry Orchestrator

Drains the poison channel. Per envelope the outcome is one of:

    SUCCESS      delivered, envelope removed
    RETRY        new envelope with retry_count + 1 enqueued with a
                 visibility delay, original removed
    DEAD_LETTER  written to the dead-letter sink, original removed
    DROPPED      unparseable and the policy is "drop", original removed
    LEFT         nothing changed; the lease expires and the envelope
                 reappears on a later pass

The visibility lease taken by receive() is the only exclusion between
overlapping passes.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from ..config import PoisonQueueRetryOptions
from ..delivery.endpoint import ExternalEndpointClient
from ..dlq.models import (
    MAX_RETRIES_EXCEEDED,
    NON_RETRYABLE_FAILURE,
    UNPARSEABLE,
    DeadLetterRecord,
)
from ..dlq.sink import DeadLetterSink
from ..exceptions import DeadLetterWriteError, EnvelopeFormatError
from ..messaging.channel import MessageChannel, QueueMessageLease
from ..messaging.envelope import PoisonEnvelope
from ..observability.metrics import record_counter, record_histogram
from ..observability.tracing import create_span, message_span
from ..periodic import PeriodicSweep
from ..retry import ExponentialBackoffRetryStrategy, RetryContext

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_poison_retry_strategy(options: PoisonQueueRetryOptions) -> ExponentialBackoffRetryStrategy:
    """Backoff for poison-channel retries, in minutes."""
    return ExponentialBackoffRetryStrategy(
        base=options.base_retry_delay_minutes,
        unit=timedelta(minutes=1),
        use_jitter=options.use_jitter,
        max_jitter_percentage=options.max_jitter_percentage,
    )


class EnvelopeOutcome(str, Enum):
    SUCCESS = "success"
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"
    DROPPED = "dropped"
    LEFT = "left"


@dataclass
class BatchSummary:
    """Counts from one poison-channel pass."""
    received: int = 0
    succeeded: int = 0
    retried: int = 0
    dead_lettered: int = 0
    dropped: int = 0
    left: int = 0
    errors: int = 0
    cancelled: bool = False

    def count(self, outcome: EnvelopeOutcome):
        if outcome == EnvelopeOutcome.SUCCESS:
            self.succeeded += 1
        elif outcome == EnvelopeOutcome.RETRY:
            self.retried += 1
        elif outcome == EnvelopeOutcome.DEAD_LETTER:
            self.dead_lettered += 1
        elif outcome == EnvelopeOutcome.DROPPED:
            self.dropped += 1
        else:
            self.left += 1


class PoisonQueueRetryOrchestrator(PeriodicSweep):
    """
    Retries envelopes from the poison channel with exponential backoff and
    dead-letters the ones that cannot be delivered.
    """

    name = "PoisonQueueRetryOrchestrator"

    def __init__(
        self,
        poison_channel: MessageChannel,
        endpoint: ExternalEndpointClient,
        dead_letter_sink: DeadLetterSink,
        options: Optional[PoisonQueueRetryOptions] = None,
        retry_strategy: Optional[ExponentialBackoffRetryStrategy] = None,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.options = options or PoisonQueueRetryOptions()
        super().__init__(self.options.sweep_interval_seconds)
        self._channel = poison_channel
        self._endpoint = endpoint
        self._sink = dead_letter_sink
        self._retry_strategy = retry_strategy or build_poison_retry_strategy(self.options)
        self._clock = clock

    async def run_once(self, stop_event: Optional[asyncio.Event] = None) -> BatchSummary:
        return await self.process_batch(stop_event=stop_event)

    async def process_batch(
        self,
        max_batch_size: Optional[int] = None,
        visibility_timeout: Optional[timedelta] = None,
        stop_event: Optional[asyncio.Event] = None
    ) -> BatchSummary:
        """
        Lease and process up to max_batch_size envelopes.

        Args:
            max_batch_size: Defaults to the configured batch size
            visibility_timeout: Lease length; defaults to the configured timeout
            stop_event: Checked between envelopes; unprocessed leases expire

        Returns:
            BatchSummary for this pass
        """
        max_batch_size = max_batch_size or self.options.max_batch_size
        visibility_timeout = visibility_timeout or timedelta(minutes=self.options.visibility_timeout_minutes)
        summary = BatchSummary()
        started = time.monotonic()

        with create_span("poison.process_batch", {"poison.max_batch_size": max_batch_size}) as span:
            leases = await self._channel.receive(max_batch_size, visibility_timeout)
            summary.received = len(leases)

            for lease in leases:
                if stop_event is not None and stop_event.is_set():
                    summary.cancelled = True
                    logger.info("Poison batch cancelled; remaining leases will expire")
                    break

                try:
                    outcome = await self._process_envelope(lease)
                except Exception as e:
                    summary.errors += 1
                    logger.error(
                        "Unexpected error processing poison message %s, leaving it for its lease to expire: %s",
                        lease.message_id, e,
                        exc_info=True,
                        extra={"message_id": lease.message_id}
                    )
                    continue

                summary.count(outcome)
                record_counter("poison_messages_processed_total", attributes={"outcome": outcome.value})

            span.set_attribute("poison.received", summary.received)
            span.set_attribute("poison.dead_lettered", summary.dead_lettered)

        record_histogram("sweep_duration_seconds", time.monotonic() - started, {"sweep": "poison"})

        if summary.received:
            logger.info(
                f"Poison batch: received={summary.received} succeeded={summary.succeeded} "
                f"retried={summary.retried} dead_lettered={summary.dead_lettered} "
                f"dropped={summary.dropped} left={summary.left} errors={summary.errors}"
            )
        return summary

    async def _process_envelope(self, lease: QueueMessageLease) -> EnvelopeOutcome:
        try:
            envelope = PoisonEnvelope.from_message(lease.body)
        except EnvelopeFormatError as e:
            return await self._handle_unparseable(lease, e)

        with message_span("poison.envelope", envelope.correlation_id, envelope.retry_count):
            context = RetryContext(
                correlation_id=envelope.correlation_id,
                current_retry_count=envelope.retry_count,
                max_retry_attempts=self.options.max_retry_attempts
            )

            if not self._retry_strategy.should_retry(context):
                return await self._dead_letter(lease, envelope, MAX_RETRIES_EXCEEDED)

            result = await self._endpoint.post_message(envelope.payload, correlation_id=envelope.correlation_id)

            if result.success:
                await self._channel.delete(lease.message_id, lease.pop_receipt)
                logger.info(
                    f"Poison envelope {lease.message_id} delivered on retry {envelope.retry_count}",
                    extra={"correlation_id": envelope.correlation_id, "retry_count": envelope.retry_count}
                )
                return EnvelopeOutcome.SUCCESS

            logger.warning(
                "Poison envelope %s delivery failed (retry %s): %s",
                lease.message_id, envelope.retry_count, result.error,
                extra={
                    "correlation_id": envelope.correlation_id,
                    "retry_count": envelope.retry_count,
                    "error": result.error,
                    "retryable": result.retryable,
                }
            )

            if not result.retryable:
                return await self._dead_letter(lease, envelope, NON_RETRYABLE_FAILURE)

            return await self._reschedule(lease, envelope, context)

    async def _reschedule(
        self,
        lease: QueueMessageLease,
        envelope: PoisonEnvelope,
        context: RetryContext
    ) -> EnvelopeOutcome:
        delay = self._retry_strategy.calculate_next_delay(context)
        retry = envelope.next_attempt()

        await self._channel.send(retry.to_message(), visibility_delay=delay)
        await self._channel.delete(lease.message_id, lease.pop_receipt)

        logger.warning(
            "Rescheduled poison envelope %s as retry %s in %.0fs",
            lease.message_id, retry.retry_count, delay.total_seconds(),
            extra={"correlation_id": envelope.correlation_id, "retry_count": retry.retry_count}
        )
        return EnvelopeOutcome.RETRY

    async def _dead_letter(
        self,
        lease: QueueMessageLease,
        envelope: PoisonEnvelope,
        reason: str
    ) -> EnvelopeOutcome:
        record = DeadLetterRecord.from_envelope(lease.message_id, envelope, reason, self._clock())
        return await self._write_then_delete(lease, record)

    async def _handle_unparseable(self, lease: QueueMessageLease, error: EnvelopeFormatError) -> EnvelopeOutcome:
        if self.options.unparseable_policy == "drop":
            await self._channel.delete(lease.message_id, lease.pop_receipt)
            logger.warning(
                f"Dropped unparseable poison message {lease.message_id}: {error}",
                extra={"message_id": lease.message_id}
            )
            return EnvelopeOutcome.DROPPED

        record = DeadLetterRecord.from_raw(lease.message_id, lease.body, UNPARSEABLE, self._clock())
        return await self._write_then_delete(lease, record)

    async def _write_then_delete(self, lease: QueueMessageLease, record: DeadLetterRecord) -> EnvelopeOutcome:
        try:
            await self._sink.write(record)
        except DeadLetterWriteError as e:
            logger.error(
                f"Keeping poison message {lease.message_id}: {e}",
                extra={"correlation_id": record.correlation_id, "message_id": lease.message_id}
            )
            return EnvelopeOutcome.LEFT

        await self._channel.delete(lease.message_id, lease.pop_receipt)
        return EnvelopeOutcome.DEAD_LETTER
