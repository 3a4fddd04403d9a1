"""
Outbox-Aware Dispatcher

Wraps a transport so that every send is durably recorded first. The
caller's guarantee is "queued for delivery": once send() returns, the
message is either delivered or sitting in the outbox for the sweeper.
"""

import asyncio
import logging
from typing import Optional
from uuid import uuid4

from ..messaging.transport import MessageTransport
from .store import OutboxStore

logger = logging.getLogger(__name__)


class OutboxAwareDispatcher:
    """
    Persist-then-send decorator around a MessageTransport.

    Only the outbox write may fail the call. The immediate send is a
    best-effort shortcut; if it fails the entry stays PENDING.
    """

    def __init__(
        self,
        store: OutboxStore,
        transport: MessageTransport,
        message_type: Optional[str] = None,
        send_timeout_seconds: Optional[float] = None
    ):
        self._store = store
        self._transport = transport
        self.message_type = message_type or store.options.message_type
        self.send_timeout_seconds = send_timeout_seconds or store.options.dispatch_timeout_seconds

    async def send(self, payload: str, correlation_id: Optional[str] = None) -> str:
        """
        Record the payload in the outbox, then try to send it right away.

        Returns:
            The outbox entry id

        Raises:
            OutboxWriteError: If the outbox write failed; nothing was sent
        """
        correlation_id = correlation_id or str(uuid4())

        message_id = await self._store.add_message(self.message_type, payload, correlation_id)

        try:
            await asyncio.wait_for(
                self._transport.send(payload, correlation_id, message_id=message_id),
                timeout=self.send_timeout_seconds
            )
        except Exception as e:
            logger.warning(
                "Immediate send failed for outbox message %s, left for the sweeper: %s",
                message_id, str(e) or type(e).__name__,
                extra={"correlation_id": correlation_id, "message_id": message_id, "error": str(e)}
            )
            return message_id

        try:
            await self._store.mark_dispatched(message_id)
        except Exception as e:
            # Sent but not recorded; the sweeper will resend
            logger.error(
                "Sent outbox message %s but could not mark it dispatched: %s",
                message_id, e,
                extra={"correlation_id": correlation_id, "message_id": message_id, "error": str(e)}
            )

        return message_id
