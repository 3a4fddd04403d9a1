"""
Dead-letter records: the terminal sink and operator inspection.
"""

from .manager import DLQAction, DLQManager
from .models import (
    MAX_RETRIES_EXCEEDED,
    NON_RETRYABLE_FAILURE,
    UNPARSEABLE,
    DeadLetterRecord,
    DeadLetterSource,
)
from .sink import DeadLetterSink

__all__ = [
    "DLQAction",
    "DLQManager",
    "DeadLetterRecord",
    "DeadLetterSink",
    "DeadLetterSource",
    "MAX_RETRIES_EXCEEDED",
    "NON_RETRYABLE_FAILURE",
    "UNPARSEABLE",
]
