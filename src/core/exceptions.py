"""
Gateway Exception Classes

Error taxonomy for the delivery path. Whether a failure is worth retrying is
carried as `retryable` on the exception.
"""

from typing import Optional


class GatewayError(Exception):
    """
    Base exception for delivery errors.

    All gateway exceptions inherit from this class and expose
    `retryable` so callers can decide without type dispatch.
    """

    retryable: bool = False

    def __init__(self, message: str, correlation_id: Optional[str] = None):
        self.message = message
        self.correlation_id = correlation_id
        super().__init__(message)


class OutboxWriteError(GatewayError):
    """Persisting a new outbox entry failed. Always surfaced to the caller."""


class OutboxMessageNotFoundError(GatewayError):
    """No outbox entry with the given id."""

    def __init__(self, message_id: str):
        super().__init__(f"Outbox message with ID '{message_id}' not found")
        self.message_id = message_id


class OutboxConcurrencyError(GatewayError):
    """An optimistic update kept losing to concurrent writers."""

    retryable = True


class DeliveryError(GatewayError):
    """
    Sending a payload failed.

    Raised by transports; `retryable` distinguishes transient failures
    (timeouts, 5xx, throttling) from permanent ones (validation, 4xx).
    """

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        status_code: Optional[int] = None,
        correlation_id: Optional[str] = None
    ):
        super().__init__(message, correlation_id=correlation_id)
        self.retryable = retryable
        self.status_code = status_code


class DeadLetterWriteError(GatewayError):
    """Writing a dead-letter record failed after every in-pass attempt."""

    retryable = True


class EnvelopeFormatError(GatewayError):
    """A channel message body could not be parsed into an envelope."""
