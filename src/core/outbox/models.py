"""
Outbox Models
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any
from uuid import uuid4

from pydantic import BaseModel, Field

from ..database.schema import from_db_timestamp


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class OutboxStatus(str, Enum):
    """Status of an outbox entry."""
    PENDING = "pending"
    DISPATCHING = "dispatching"
    DISPATCHED = "dispatched"
    FAILED = "failed"  # Transient; persisted entries go back to PENDING
    ABANDONED = "abandoned"  # Exceeded max retries

    @property
    def is_terminal(self) -> bool:
        return self in (OutboxStatus.DISPATCHED, OutboxStatus.ABANDONED)


class OutboxMessage(BaseModel):
    """An entry in the outbox table."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    message_type: str
    payload: str
    correlation_id: str

    status: OutboxStatus = OutboxStatus.PENDING
    retry_count: int = 0
    version: int = 0

    created_at: datetime = Field(default_factory=_utcnow)
    dispatched_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    abandon_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "OutboxMessage":
        return cls(
            id=row["id"],
            message_type=row["message_type"],
            payload=row["payload"],
            correlation_id=row["correlation_id"],
            status=OutboxStatus(row["status"]),
            retry_count=row["retry_count"],
            version=row["version"],
            created_at=from_db_timestamp(row["created_at"]),
            dispatched_at=from_db_timestamp(row.get("dispatched_at")),
            last_attempt_at=from_db_timestamp(row.get("last_attempt_at")),
            next_retry_at=from_db_timestamp(row.get("next_retry_at")),
            abandon_at=from_db_timestamp(row.get("abandon_at")),
            error_message=row.get("error_message"),
        )
