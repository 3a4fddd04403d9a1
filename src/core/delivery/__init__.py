"""
Delivery to the external HL7 endpoint.
"""

from .endpoint import (
    DeliveryResult,
    ExternalEndpointClient,
    is_retryable_status,
)

__all__ = [
    "DeliveryResult",
    "ExternalEndpointClient",
    "is_retryable_status",
]
