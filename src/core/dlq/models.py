"""
Dead Letter Models
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel

from ..database.schema import from_db_timestamp
from ..messaging.envelope import PoisonEnvelope

MAX_RETRIES_EXCEEDED = "max retries exceeded"
UNPARSEABLE = "unparseable"
NON_RETRYABLE_FAILURE = "non-retryable delivery failure"

UNKNOWN_CORRELATION_ID = "unknown"


class DeadLetterSource(str, Enum):
    """Which retry loop gave up on the message."""
    OUTBOX = "outbox"
    POISON = "poison"


class DeadLetterRecord(BaseModel):
    """
    A message that exhausted its retries, kept for manual review.

    The id is derived from the originating entry (channel message id or
    outbox id) so a repeated write of the same failure is a no-op.
    """

    id: str
    source: DeadLetterSource
    payload: str
    correlation_id: str
    retry_count: int = 0
    original_timestamp: Optional[datetime] = None
    source_reference: str = ""
    failure_reason: str
    last_attempt_at: datetime

    @classmethod
    def from_envelope(
        cls,
        record_id: str,
        envelope: PoisonEnvelope,
        failure_reason: str,
        now: datetime
    ) -> "DeadLetterRecord":
        return cls(
            id=record_id,
            source=DeadLetterSource.POISON,
            payload=envelope.payload,
            correlation_id=envelope.correlation_id,
            retry_count=envelope.retry_count,
            original_timestamp=envelope.timestamp,
            source_reference=envelope.source_reference,
            failure_reason=failure_reason,
            last_attempt_at=now,
        )

    @classmethod
    def from_raw(cls, record_id: str, body: str, failure_reason: str, now: datetime) -> "DeadLetterRecord":
        """Record for a channel body that never parsed into an envelope."""
        return cls(
            id=record_id,
            source=DeadLetterSource.POISON,
            payload=body,
            correlation_id=UNKNOWN_CORRELATION_ID,
            failure_reason=failure_reason,
            last_attempt_at=now,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DeadLetterRecord":
        return cls(
            id=row["id"],
            source=DeadLetterSource(row["source"]),
            payload=row["payload"],
            correlation_id=row["correlation_id"],
            retry_count=row["retry_count"],
            original_timestamp=from_db_timestamp(row.get("original_timestamp")),
            source_reference=row.get("source_reference") or "",
            failure_reason=row["failure_reason"],
            last_attempt_at=from_db_timestamp(row["last_attempt_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source.value,
            "correlation_id": self.correlation_id,
            "retry_count": self.retry_count,
            "original_timestamp": self.original_timestamp.isoformat() if self.original_timestamp else None,
            "source_reference": self.source_reference,
            "failure_reason": self.failure_reason,
            "last_attempt_at": self.last_attempt_at.isoformat(),
        }
