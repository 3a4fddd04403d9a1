"""
Outbox Store

Durable ledger of outbound messages. Every state change is a single-row
conditional UPDATE guarded by the row's `version` column, so concurrent
sweepers in different processes cannot both win the same transition.

State machine:
    PENDING -> DISPATCHING -> DISPATCHED
                           -> PENDING (scheduled retry)
                           -> ABANDONED
DISPATCHED and ABANDONED are terminal.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from ..config import OutboxOptions
from ..database.adapter import DatabaseAdapter, affected_rows
from ..database.schema import to_db_timestamp, validate_identifier
from ..exceptions import OutboxConcurrencyError, OutboxMessageNotFoundError, OutboxWriteError
from ..observability.metrics import record_counter
from ..retry import ExponentialBackoffRetryStrategy, RetryContext
from .models import OutboxMessage, OutboxStatus

logger = logging.getLogger(__name__)

# Optimistic update attempts before giving up on a contended row
MAX_CONFLICT_RETRIES = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_outbox_retry_strategy(options: OutboxOptions) -> ExponentialBackoffRetryStrategy:
    """Backoff for outbox retries, from the outbox options."""
    max_delay = options.max_retry_delay_seconds
    return ExponentialBackoffRetryStrategy(
        base=options.base_retry_delay,
        unit=timedelta(seconds=options.retry_delay_unit_seconds),
        max_delay=timedelta(seconds=max_delay) if max_delay else None,
    )


class OutboxStore:
    """
    Persists and transitions outbox entries.

    Entries are only ever mutated through the transition methods below.
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        options: Optional[OutboxOptions] = None,
        retry_strategy: Optional[ExponentialBackoffRetryStrategy] = None,
        clock: Callable[[], datetime] = _utcnow
    ):
        self._db = db
        self.options = options or OutboxOptions()
        self._table = self.options.table_name
        self._retry_strategy = retry_strategy or build_outbox_retry_strategy(self.options)
        self._clock = clock

    async def add_message(self, message_type: str, payload: str, correlation_id: str) -> str:
        """
        Durably persist a new PENDING entry.

        Returns:
            The new entry id

        Raises:
            OutboxWriteError: If the write did not complete
        """
        if not message_type or payload is None or correlation_id is None:
            raise ValueError("message_type, payload and correlation_id are required")

        message = OutboxMessage(
            message_type=message_type,
            payload=payload,
            correlation_id=correlation_id,
            created_at=self._clock()
        )

        try:
            await self._db.execute(
                f"""
                INSERT INTO {self._table} (
                    id, message_type, payload, status, correlation_id,
                    retry_count, version, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                message.id,
                message.message_type,
                message.payload,
                OutboxStatus.PENDING.value,
                message.correlation_id,
                0,
                0,
                to_db_timestamp(message.created_at)
            )
        except Exception as e:
            logger.error(
                "Failed to persist outbox message: type=%s correlation=%s: %s",
                message_type, correlation_id, e,
                extra={"correlation_id": correlation_id, "error": str(e)}
            )
            raise OutboxWriteError(
                f"Outbox write failed: {e}", correlation_id=correlation_id
            ) from e

        record_counter("outbox_messages_added_total", attributes={"message_type": message_type})
        logger.info(
            "Added message to outbox: id=%s type=%s correlation=%s",
            message.id, message_type, correlation_id
        )
        return message.id

    async def get_message(self, message_id: str) -> Optional[OutboxMessage]:
        row = await self._db.fetchrow(
            f"SELECT * FROM {self._table} WHERE id = $1",
            message_id
        )
        return OutboxMessage.from_row(row) if row else None

    async def get_pending_messages(self, limit: Optional[int] = None) -> List[OutboxMessage]:
        """
        Entries due for dispatch, oldest first.

        Includes PENDING entries whose next_retry_at is unset or past, and
        DISPATCHING entries whose claim is older than the dispatch timeout
        (their sweeper died mid-send).
        """
        now = self._clock()
        stale_claim = now - timedelta(seconds=self.options.dispatch_timeout_seconds)

        rows = await self._db.fetch(
            f"""
            SELECT * FROM {self._table}
            WHERE (status = $1 AND (next_retry_at IS NULL OR next_retry_at <= $2))
               OR (status = $3 AND last_attempt_at < $4)
            ORDER BY created_at ASC
            LIMIT $5
            """,
            OutboxStatus.PENDING.value,
            to_db_timestamp(now),
            OutboxStatus.DISPATCHING.value,
            to_db_timestamp(stale_claim),
            limit or self.options.batch_size
        )

        messages = [OutboxMessage.from_row(row) for row in rows]
        logger.debug(f"Retrieved {len(messages)} pending outbox messages")
        return messages

    async def get_abandoned_without_dead_letter(
        self,
        dead_letter_table: str,
        limit: Optional[int] = None
    ) -> List[OutboxMessage]:
        """ABANDONED entries with no row in dead_letter_table, oldest first."""
        dead_letter_table = validate_identifier(dead_letter_table)
        rows = await self._db.fetch(
            f"""
            SELECT o.* FROM {self._table} o
            WHERE o.status = $1
              AND NOT EXISTS (SELECT 1 FROM {dead_letter_table} d WHERE d.id = o.id)
            ORDER BY o.created_at ASC
            LIMIT $2
            """,
            OutboxStatus.ABANDONED.value,
            limit or self.options.batch_size
        )
        return [OutboxMessage.from_row(row) for row in rows]

    async def try_claim(self, message: OutboxMessage) -> Optional[OutboxMessage]:
        """
        Move an entry to DISPATCHING if nobody else changed it since it was read.

        Returns:
            The claimed entry, or None if another worker got there first
        """
        now = self._clock()
        status = await self._db.execute(
            f"""
            UPDATE {self._table}
            SET status = $1, last_attempt_at = $2, version = version + 1
            WHERE id = $3 AND version = $4 AND status IN ($5, $6)
            """,
            OutboxStatus.DISPATCHING.value,
            to_db_timestamp(now),
            message.id,
            message.version,
            OutboxStatus.PENDING.value,
            OutboxStatus.DISPATCHING.value
        )

        if affected_rows(status) != 1:
            logger.debug(f"Outbox message {message.id} claimed elsewhere, skipping")
            return None

        return message.model_copy(update={
            "status": OutboxStatus.DISPATCHING,
            "last_attempt_at": now,
            "version": message.version + 1,
        })

    async def mark_dispatched(self, message_id: str) -> None:
        """
        Transition to DISPATCHED. Idempotent: already-dispatched is a no-op.

        Raises:
            OutboxMessageNotFoundError: If the id does not exist
        """
        now = self._clock()
        status = await self._db.execute(
            f"""
            UPDATE {self._table}
            SET status = $1, dispatched_at = $2, next_retry_at = NULL,
                error_message = NULL, version = version + 1
            WHERE id = $3 AND status IN ($4, $5)
            """,
            OutboxStatus.DISPATCHED.value,
            to_db_timestamp(now),
            message_id,
            OutboxStatus.PENDING.value,
            OutboxStatus.DISPATCHING.value
        )

        if affected_rows(status) == 1:
            record_counter("outbox_dispatched_total")
            logger.info(f"Marked outbox message as dispatched: {message_id}")
            return

        current = await self.get_message(message_id)
        if current is None:
            raise OutboxMessageNotFoundError(message_id)
        if current.status == OutboxStatus.ABANDONED:
            logger.warning(
                f"Outbox message {message_id} delivered after being abandoned; leaving it abandoned"
            )
        else:
            logger.debug(f"Outbox message {message_id} already dispatched")

    async def mark_failed(self, message_id: str, error_message: str) -> OutboxMessage:
        """
        Record a failed dispatch.

        Increments retry_count. Past max_retries the entry becomes ABANDONED
        with abandon_at = now; otherwise it returns to PENDING with
        next_retry_at from the retry strategy.

        Returns:
            The entry as persisted after the transition

        Raises:
            OutboxMessageNotFoundError: If the id does not exist
            OutboxConcurrencyError: If the row kept changing underneath us
        """
        for _ in range(MAX_CONFLICT_RETRIES):
            message = await self.get_message(message_id)
            if message is None:
                raise OutboxMessageNotFoundError(message_id)

            if message.status.is_terminal:
                logger.warning(
                    f"Ignoring failure report for terminal outbox message {message_id} ({message.status.value})"
                )
                return message

            now = self._clock()
            retry_count = message.retry_count + 1
            error_text = (error_message or "")[:1000]

            if retry_count > self.options.max_retries:
                new_status = OutboxStatus.ABANDONED
                next_retry_at = None
                abandon_at = now
            else:
                # Delay keyed on the count before this failure: first failure waits base**1
                delay = self._retry_strategy.calculate_next_delay(RetryContext(
                    message.correlation_id, message.retry_count, self.options.max_retries
                ))
                new_status = OutboxStatus.PENDING
                next_retry_at = now + delay
                abandon_at = None

            status = await self._db.execute(
                f"""
                UPDATE {self._table}
                SET status = $1, retry_count = $2, next_retry_at = $3, abandon_at = $4,
                    error_message = $5, version = version + 1
                WHERE id = $6 AND version = $7
                """,
                new_status.value,
                retry_count,
                to_db_timestamp(next_retry_at),
                to_db_timestamp(abandon_at),
                error_text,
                message_id,
                message.version
            )

            if affected_rows(status) != 1:
                continue

            updated = message.model_copy(update={
                "status": new_status,
                "retry_count": retry_count,
                "next_retry_at": next_retry_at,
                "abandon_at": abandon_at,
                "error_message": error_text,
                "version": message.version + 1,
            })

            if new_status == OutboxStatus.ABANDONED:
                record_counter("outbox_abandoned_total")
                logger.error(
                    "Outbox message %s abandoned after %s failures: %s",
                    message_id, retry_count, error_text,
                    extra={"correlation_id": message.correlation_id, "retry_count": retry_count}
                )
            else:
                record_counter("outbox_failed_total")
                logger.warning(
                    "Outbox message %s failed (retry %s), next attempt at %s: %s",
                    message_id, retry_count, next_retry_at.isoformat(), error_text,
                    extra={"correlation_id": message.correlation_id, "retry_count": retry_count}
                )
            return updated

        raise OutboxConcurrencyError(
            f"Could not record failure for outbox message {message_id}: concurrent updates"
        )

    async def cleanup_old_messages(self) -> int:
        """
        Delete DISPATCHED entries older than the retention window.

        PENDING and ABANDONED entries are never touched.
        """
        cutoff = self._clock() - timedelta(hours=self.options.message_retention_hours)
        status = await self._db.execute(
            f"""
            DELETE FROM {self._table}
            WHERE status = $1 AND dispatched_at IS NOT NULL AND dispatched_at < $2
            """,
            OutboxStatus.DISPATCHED.value,
            to_db_timestamp(cutoff)
        )

        removed = affected_rows(status)
        if removed:
            logger.info(f"Cleaned up {removed} old dispatched outbox messages")
        return removed

    async def get_stats(self) -> Dict[str, int]:
        """Entry counts per status."""
        rows = await self._db.fetch(
            f"""
            SELECT status, COUNT(*) AS count
            FROM {self._table}
            GROUP BY status
            """
        )

        stats = {status.value: 0 for status in OutboxStatus}
        for row in rows:
            stats[row["status"]] = row["count"]

        return stats
