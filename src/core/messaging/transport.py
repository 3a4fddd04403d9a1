"""
Message Transports

The "send now" operation behind the outbox. A transport either completes
or raises DeliveryError; the outbox decides what a failure means.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from ..delivery.endpoint import ExternalEndpointClient
from ..exceptions import DeliveryError
from .channel import MessageChannel
from .envelope import PoisonEnvelope

logger = logging.getLogger(__name__)


class MessageTransport(ABC):
    """Abstract immediate send."""

    @abstractmethod
    async def send(
        self,
        payload: str,
        correlation_id: str,
        message_id: Optional[str] = None
    ) -> None:
        """
        Send a payload.

        Args:
            payload: Encoded message
            correlation_id: Correlation id carried end to end
            message_id: Outbox entry id, when sending on behalf of the outbox

        Raises:
            DeliveryError: If the send did not complete
        """
        ...


class ChannelTransport(MessageTransport):
    """Enqueues the payload as a fresh envelope on the processing channel."""

    def __init__(self, channel: MessageChannel):
        self._channel = channel

    async def send(
        self,
        payload: str,
        correlation_id: str,
        message_id: Optional[str] = None
    ) -> None:
        envelope = PoisonEnvelope(
            payload=payload,
            correlation_id=correlation_id,
            source_reference=f"outbox/{message_id}" if message_id else ""
        )
        try:
            await self._channel.send(envelope.to_message())
        except Exception as e:
            raise DeliveryError(
                f"Enqueue on '{self._channel.name}' failed: {e}",
                correlation_id=correlation_id
            ) from e

        logger.debug(
            f"Enqueued envelope on '{self._channel.name}'",
            extra={"correlation_id": correlation_id, "message_id": message_id}
        )


class EndpointTransport(MessageTransport):
    """Posts the payload straight to the external endpoint."""

    def __init__(self, client: ExternalEndpointClient):
        self._client = client

    async def send(
        self,
        payload: str,
        correlation_id: str,
        message_id: Optional[str] = None
    ) -> None:
        result = await self._client.post_message(payload, correlation_id=correlation_id)
        if not result.success:
            raise DeliveryError(
                result.error or "delivery failed",
                retryable=result.retryable,
                status_code=result.status_code,
                correlation_id=correlation_id
            )
