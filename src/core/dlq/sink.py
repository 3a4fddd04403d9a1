"""
Dead Letter Sink

Terminal store for messages that exhausted their retries. Records are
written once and never modified by the delivery path.
"""

import asyncio
import logging
from typing import Optional

from ..database.adapter import DatabaseAdapter, affected_rows
from ..database.schema import to_db_timestamp, validate_identifier
from ..exceptions import DeadLetterWriteError
from ..observability.metrics import record_counter
from .models import DeadLetterRecord

logger = logging.getLogger(__name__)


class DeadLetterSink:
    """
    Writes DeadLetterRecords.

    A failed write is retried within the same call; if every attempt fails
    DeadLetterWriteError is raised and the caller must keep the original
    message.
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        table_name: str = "dead_letters",
        write_attempts: int = 3,
        retry_backoff_seconds: float = 0.5
    ):
        self._db = db
        self._table = validate_identifier(table_name)
        self._write_attempts = max(1, write_attempts)
        self._retry_backoff_seconds = retry_backoff_seconds

    @property
    def table_name(self) -> str:
        return self._table

    async def write(self, record: DeadLetterRecord) -> bool:
        """
        Persist a record.

        Returns:
            True if a new record was stored, False if one with the same id
            already existed

        Raises:
            DeadLetterWriteError: If every attempt failed
        """
        last_error: Optional[Exception] = None

        for attempt in range(1, self._write_attempts + 1):
            try:
                status = await self._insert(record)
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Dead-letter write attempt {attempt}/{self._write_attempts} failed for {record.id}: {e}",
                    extra={"correlation_id": record.correlation_id, "error": str(e)}
                )
                if attempt < self._write_attempts and self._retry_backoff_seconds > 0:
                    await asyncio.sleep(self._retry_backoff_seconds * attempt)
                continue

            inserted = affected_rows(status) == 1
            if inserted:
                record_counter("dlq_entries_total", attributes={"source": record.source.value})
                logger.error(
                    "Dead-lettered %s from %s: %s",
                    record.id, record.source.value, record.failure_reason,
                    extra={
                        "correlation_id": record.correlation_id,
                        "retry_count": record.retry_count,
                        "failure_reason": record.failure_reason,
                    }
                )
            else:
                logger.info(f"Dead-letter record {record.id} already exists")
            return inserted

        raise DeadLetterWriteError(
            f"Could not write dead-letter record {record.id}: {last_error}",
            correlation_id=record.correlation_id
        )

    async def _insert(self, record: DeadLetterRecord) -> str:
        return await self._db.execute(
            f"""
            INSERT INTO {self._table} (
                id, source, payload, correlation_id, retry_count,
                original_timestamp, source_reference, failure_reason, last_attempt_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT (id) DO NOTHING
            """,
            record.id,
            record.source.value,
            record.payload,
            record.correlation_id,
            record.retry_count,
            to_db_timestamp(record.original_timestamp),
            record.source_reference,
            record.failure_reason,
            to_db_timestamp(record.last_attempt_at)
        )
