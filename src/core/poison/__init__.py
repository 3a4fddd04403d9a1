"""
Processing-channel consumption and poison-channel retries.
"""

from .consumer import ConsumeSummary, ProcessingQueueConsumer
from .orchestrator import (
    BatchSummary,
    EnvelopeOutcome,
    PoisonQueueRetryOrchestrator,
    build_poison_retry_strategy,
)

__all__ = [
    "BatchSummary",
    "ConsumeSummary",
    "EnvelopeOutcome",
    "PoisonQueueRetryOrchestrator",
    "ProcessingQueueConsumer",
    "build_poison_retry_strategy",
]
