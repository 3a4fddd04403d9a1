"""
External Endpoint Client

Posts encoded HL7 messages to the downstream endpoint and classifies the
outcome. Callers branch on DeliveryResult.retryable.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx

from ..config import EndpointOptions
from ..observability.metrics import record_histogram

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429})


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one delivery attempt."""
    success: bool
    retryable: bool = False
    status_code: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, status_code: int) -> "DeliveryResult":
        return cls(success=True, status_code=status_code)

    @classmethod
    def failed(
        cls,
        error: str,
        retryable: bool,
        status_code: Optional[int] = None
    ) -> "DeliveryResult":
        return cls(success=False, retryable=retryable, status_code=status_code, error=error)


def is_retryable_status(status_code: int) -> bool:
    """Server errors and throttling are worth retrying; other 4xx are not."""
    return status_code >= 500 or status_code in RETRYABLE_STATUS_CODES


class ExternalEndpointClient:
    """
    HTTP client for the downstream HL7 endpoint.

    Every request carries the configured timeout; a timeout is reported as a
    retryable failure like any other transport error.
    """

    def __init__(
        self,
        options: Optional[EndpointOptions] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.options = options or EndpointOptions()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self.options.timeout_seconds)

    async def __aenter__(self) -> "ExternalEndpointClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self, correlation_id: Optional[str]) -> dict:
        headers = {"Content-Type": f"{self.options.content_type}; charset=utf-8"}
        if self.options.api_key:
            headers["x-api-key"] = self.options.api_key
        if correlation_id:
            headers["x-correlation-id"] = correlation_id
        return headers

    async def post_message(
        self,
        message: str,
        correlation_id: Optional[str] = None
    ) -> DeliveryResult:
        """
        POST an encoded message.

        Args:
            message: Encoded HL7 text
            correlation_id: Forwarded as x-correlation-id

        Returns:
            DeliveryResult; never raises for transport or HTTP failures
        """
        if not message or not message.strip():
            logger.error("Refusing to post an empty HL7 message", extra={"correlation_id": correlation_id})
            return DeliveryResult.failed("message is empty", retryable=False)

        started = time.monotonic()
        try:
            response = await self._client.post(
                self.options.url,
                content=message.encode("utf-8"),
                headers=self._headers(correlation_id),
                timeout=self.options.timeout_seconds
            )
        except httpx.TimeoutException:
            logger.warning(
                f"Timed out posting HL7 message after {self.options.timeout_seconds}s",
                extra={"correlation_id": correlation_id}
            )
            return DeliveryResult.failed("endpoint request timed out", retryable=True)
        except httpx.HTTPError as e:
            logger.error(
                f"HTTP error posting HL7 message: {e}",
                extra={"correlation_id": correlation_id, "error": str(e)}
            )
            return DeliveryResult.failed(f"endpoint request failed: {e}", retryable=True)
        finally:
            record_histogram("delivery_duration_seconds", time.monotonic() - started)

        if response.is_success:
            logger.info(
                f"Posted HL7 message: status={response.status_code} length={len(message)}",
                extra={"correlation_id": correlation_id}
            )
            return DeliveryResult.ok(response.status_code)

        retryable = is_retryable_status(response.status_code)
        logger.warning(
            f"Endpoint rejected HL7 message: status={response.status_code} response={response.text[:500]}",
            extra={"correlation_id": correlation_id, "retryable": retryable}
        )
        return DeliveryResult.failed(
            f"endpoint returned {response.status_code}",
            retryable=retryable,
            status_code=response.status_code
        )
