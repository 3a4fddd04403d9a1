"""
Dead Letter Queue (DLQ) Management

Operator-facing inspection of dead-letter records: list, count, report,
replay onto the poison channel, and purge.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..database.adapter import DatabaseAdapter, affected_rows
from ..database.schema import from_db_timestamp, validate_identifier
from ..messaging.channel import MessageChannel
from ..messaging.envelope import PoisonEnvelope
from .models import DeadLetterRecord

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DLQAction(str, Enum):
    """Actions that can be taken on DLQ entries."""
    REPLAY = "replay"
    PURGE = "purge"


class DLQManager:
    """
    Manages dead-letter records.

    Replay never modifies the record: it enqueues a fresh envelope with
    retry_count 0 on the poison channel, where the normal retry path picks
    it up.
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        poison_channel: MessageChannel,
        table_name: str = "dead_letters",
        clock: Callable[[], datetime] = _utcnow
    ):
        self._db = db
        self._poison_channel = poison_channel
        self._table = validate_identifier(table_name)
        self._clock = clock

    async def get_entries(
        self,
        limit: int = 100,
        offset: int = 0,
        correlation_id: Optional[str] = None
    ) -> List[DeadLetterRecord]:
        """Get DLQ entries, newest first."""
        if correlation_id:
            rows = await self._db.fetch(
                f"""
                SELECT * FROM {self._table}
                WHERE correlation_id = $1
                ORDER BY last_attempt_at DESC
                LIMIT $2 OFFSET $3
                """,
                correlation_id, limit, offset
            )
        else:
            rows = await self._db.fetch(
                f"""
                SELECT * FROM {self._table}
                ORDER BY last_attempt_at DESC
                LIMIT $1 OFFSET $2
                """,
                limit, offset
            )

        return [DeadLetterRecord.from_row(row) for row in rows]

    async def get_entry(self, entry_id: str) -> Optional[DeadLetterRecord]:
        row = await self._db.fetchrow(f"SELECT * FROM {self._table} WHERE id = $1", entry_id)
        return DeadLetterRecord.from_row(row) if row else None

    async def get_count(self, correlation_id: Optional[str] = None) -> int:
        """Get total DLQ entry count."""
        if correlation_id:
            result = await self._db.fetchrow(
                f"SELECT COUNT(*) AS count FROM {self._table} WHERE correlation_id = $1",
                correlation_id
            )
        else:
            result = await self._db.fetchrow(f"SELECT COUNT(*) AS count FROM {self._table}")

        return result["count"] if result else 0

    async def replay_entry(self, entry_id: str, operator_id: Optional[str] = None) -> Optional[str]:
        """
        Re-enqueue a DLQ entry on the poison channel.

        Args:
            entry_id: The dead-letter record id
            operator_id: ID of operator performing the action

        Returns:
            The new channel message id, or None if no such entry
        """
        record = await self.get_entry(entry_id)
        if record is None:
            return None

        envelope = PoisonEnvelope(
            payload=record.payload,
            correlation_id=record.correlation_id,
            retry_count=0,
            timestamp=self._clock(),
            source_reference=record.source_reference
        )
        message_id = await self._poison_channel.send(envelope.to_message())

        self._log_action(entry_id, DLQAction.REPLAY, operator_id)
        return message_id

    async def purge_entry(self, entry_id: str, operator_id: Optional[str] = None) -> bool:
        """
        Permanently delete a DLQ entry.

        Returns:
            True if entry was deleted
        """
        self._log_action(entry_id, DLQAction.PURGE, operator_id)

        status = await self._db.execute(f"DELETE FROM {self._table} WHERE id = $1", entry_id)
        return affected_rows(status) == 1

    async def get_stats(self) -> Dict[str, Any]:
        """Get DLQ statistics."""
        total = await self.get_count()

        by_source = await self._db.fetch(
            f"""
            SELECT source, COUNT(*) AS count
            FROM {self._table}
            GROUP BY source
            """
        )

        by_reason = await self._db.fetch(
            f"""
            SELECT failure_reason, COUNT(*) AS count
            FROM {self._table}
            GROUP BY failure_reason
            ORDER BY count DESC
            """
        )

        oldest = await self._db.fetchval(f"SELECT MIN(last_attempt_at) AS oldest FROM {self._table}")
        oldest_at = from_db_timestamp(oldest)

        return {
            "total_count": total,
            "by_source": {row["source"]: row["count"] for row in by_source},
            "by_failure_reason": {row["failure_reason"]: row["count"] for row in by_reason},
            "oldest_entry": oldest_at.isoformat() if oldest_at else None,
        }

    def _log_action(self, entry_id: str, action: DLQAction, operator_id: Optional[str]):
        logger.info(f"DLQ action: {action.value} on {entry_id} by {operator_id}")
