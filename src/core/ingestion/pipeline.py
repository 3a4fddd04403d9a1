"""
Ingestion Pipeline

Entry point for a newly arrived lab report: dedup check, encode, and hand
the encoded message to the outbox.
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union
from uuid import uuid4

from ..inbox.guard import IdempotencyGuard
from ..observability.tracing import message_span
from ..outbox.dispatcher import OutboxAwareDispatcher

logger = logging.getLogger(__name__)

PayloadEncoder = Callable[[bytes], Union[str, Awaitable[str]]]


@dataclass(frozen=True)
class IngestionResult:
    """What happened to one ingested document."""
    skipped: bool
    correlation_id: Optional[str] = None
    message_id: Optional[str] = None


class IngestionPipeline:
    """
    Runs a document through the idempotency guard and into the outbox.

    The encoder turns raw document bytes into the protocol message string
    stored as the outbox payload; it may be sync or async. Any error from
    the encoder or the outbox write is recorded as a FAILED outcome and
    re-raised so the trigger can move the document aside.
    """

    def __init__(
        self,
        guard: IdempotencyGuard,
        dispatcher: OutboxAwareDispatcher,
        encoder: PayloadEncoder
    ):
        self._guard = guard
        self._dispatcher = dispatcher
        self._encoder = encoder

    async def process(self, source_identifier: str, content: bytes) -> IngestionResult:
        if not source_identifier:
            raise ValueError("source_identifier is required")
        if not content:
            raise ValueError("content must not be empty")

        correlation_id = str(uuid4())

        with message_span("ingestion.process", correlation_id, attributes={"ingestion.source": source_identifier}):
            async with self._guard.attempt(source_identifier, content) as attempt:
                if not attempt.should_process:
                    logger.info(
                        f"Skipping already processed document: {source_identifier}",
                        extra={"source_identifier": source_identifier}
                    )
                    return IngestionResult(skipped=True)

                logger.info(
                    f"Ingesting document {source_identifier} ({len(content)} bytes)",
                    extra={"correlation_id": correlation_id, "source_identifier": source_identifier}
                )

                payload = self._encoder(content)
                if inspect.isawaitable(payload):
                    payload = await payload

                message_id = await self._dispatcher.send(payload, correlation_id)

        return IngestionResult(skipped=False, correlation_id=correlation_id, message_id=message_id)
