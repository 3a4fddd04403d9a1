"""
Processing Queue Consumer

First-line consumer of the processing channel. Delivers each envelope to
the external endpoint; a message that keeps failing is handed over to the
poison channel, where the retry orchestrator takes it from there.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from ..config import PoisonQueueRetryOptions
from ..delivery.endpoint import ExternalEndpointClient
from ..exceptions import EnvelopeFormatError
from ..messaging.channel import MessageChannel, QueueMessageLease
from ..messaging.envelope import PoisonEnvelope
from ..observability.metrics import record_counter, record_histogram
from ..observability.tracing import create_span, message_span
from ..periodic import PeriodicSweep

logger = logging.getLogger(__name__)


@dataclass
class ConsumeSummary:
    """Counts from one processing-channel pass."""
    received: int = 0
    delivered: int = 0
    deferred: int = 0
    moved_to_poison: int = 0
    errors: int = 0
    cancelled: bool = False


class ProcessingQueueConsumer(PeriodicSweep):
    """
    Delivers envelopes from the processing channel.

    - success: the message is deleted
    - failure: the lease is left to expire so the message is retried, until
      its dequeue count reaches processing_max_dequeue_count
    - exhausted, unparseable, or permanently rejected: moved to the poison
      channel unchanged (send, then delete)
    """

    name = "ProcessingQueueConsumer"

    def __init__(
        self,
        processing_channel: MessageChannel,
        poison_channel: MessageChannel,
        endpoint: ExternalEndpointClient,
        options: Optional[PoisonQueueRetryOptions] = None
    ):
        self.options = options or PoisonQueueRetryOptions()
        super().__init__(self.options.processing_poll_interval_seconds)
        self._processing = processing_channel
        self._poison = poison_channel
        self._endpoint = endpoint

    async def run_once(self, stop_event: Optional[asyncio.Event] = None) -> ConsumeSummary:
        """Lease a batch from the processing channel and deliver it."""
        summary = ConsumeSummary()
        started = time.monotonic()

        with create_span("processing.consume", {"processing.max_batch_size": self.options.max_batch_size}):
            leases = await self._processing.receive(
                self.options.max_batch_size,
                timedelta(minutes=self.options.visibility_timeout_minutes)
            )
            summary.received = len(leases)

            for lease in leases:
                if stop_event is not None and stop_event.is_set():
                    summary.cancelled = True
                    break

                try:
                    outcome = await self._consume(lease)
                except Exception as e:
                    summary.errors += 1
                    logger.error(
                        f"Unexpected error consuming {lease.message_id}: {e}",
                        exc_info=True,
                        extra={"message_id": lease.message_id}
                    )
                    continue

                setattr(summary, outcome, getattr(summary, outcome) + 1)
                record_counter("processing_messages_total", attributes={"outcome": outcome})

        record_histogram("sweep_duration_seconds", time.monotonic() - started, {"sweep": "processing"})
        return summary

    async def _consume(self, lease: QueueMessageLease) -> str:
        try:
            envelope = PoisonEnvelope.from_message(lease.body)
        except EnvelopeFormatError as e:
            logger.error(f"Unparseable processing message {lease.message_id}: {e}")
            await self._move_to_poison(lease)
            return "moved_to_poison"

        with message_span(
            "processing.deliver",
            envelope.correlation_id,
            envelope.retry_count,
            {"processing.dequeue_count": lease.dequeue_count}
        ):
            result = await self._endpoint.post_message(envelope.payload, correlation_id=envelope.correlation_id)

            if result.success:
                await self._processing.delete(lease.message_id, lease.pop_receipt)
                return "delivered"

            exhausted = lease.dequeue_count >= self.options.processing_max_dequeue_count
            logger.warning(
                "Delivery failed for processing message %s (attempt %s/%s): %s",
                lease.message_id, lease.dequeue_count,
                self.options.processing_max_dequeue_count, result.error,
                extra={
                    "correlation_id": envelope.correlation_id,
                    "retry_count": envelope.retry_count,
                    "error": result.error,
                }
            )

            if exhausted or not result.retryable:
                await self._move_to_poison(lease)
                return "moved_to_poison"

            return "deferred"

    async def _move_to_poison(self, lease: QueueMessageLease):
        await self._poison.send(lease.body)
        await self._processing.delete(lease.message_id, lease.pop_receipt)
        logger.warning(f"Moved message {lease.message_id} to '{self._poison.name}'")
