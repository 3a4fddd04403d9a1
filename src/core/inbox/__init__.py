"""
Inbox-side deduplication for ingested documents.

Usage:
    from src.core.inbox import IdempotencyGuard

    async with guard.attempt(blob_name, content) as attempt:
        if attempt.should_process:
            await do_something(content)
"""

from .guard import (
    IdempotencyGuard,
    IdempotencyKey,
    ProcessingAttempt,
    ProcessingOutcome,
    ProcessingRecord,
)

__all__ = [
    "IdempotencyGuard",
    "IdempotencyKey",
    "ProcessingAttempt",
    "ProcessingOutcome",
    "ProcessingRecord",
]
