"""
Outbox Pattern Implementation

Every outbound HL7 message is durably recorded before it is sent.

Usage:
    from src.core.outbox import OutboxStore, OutboxAwareDispatcher

    store = OutboxStore(db, options)
    dispatcher = OutboxAwareDispatcher(store, transport)

    # Raises OutboxWriteError only if the message could not be recorded
    message_id = await dispatcher.send(hl7_message, correlation_id)
"""

from .dispatcher import OutboxAwareDispatcher
from .models import OutboxMessage, OutboxStatus
from .store import OutboxStore, build_outbox_retry_strategy
from .sweeper import OutboxSweeper, SweepSummary

__all__ = [
    "OutboxAwareDispatcher",
    "OutboxMessage",
    "OutboxStatus",
    "OutboxStore",
    "OutboxSweeper",
    "SweepSummary",
    "build_outbox_retry_strategy",
]
