"""
Idempotency Guard

Suppresses duplicate ingestion of byte-identical content delivered more than
once by the upstream trigger.

Records are keyed by (source identifier, SHA-256 of the raw bytes), so a
corrected resubmission under the same identifier is new work while a retrigger
of identical bytes is skipped. Records older than the retention window count
as absent.

If the backing store is unreachable the guard fails open: the check reports
"not processed" and ingestion continues, accepting a possible duplicate rather
than blocking delivery.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from ..config import IdempotencyOptions
from ..database.adapter import DatabaseAdapter, affected_rows
from ..database.schema import from_db_timestamp, to_db_timestamp
from ..observability.metrics import record_counter
from ..observability.tracing import create_span

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcessingOutcome(str, Enum):
    """How a processing attempt concluded."""
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class IdempotencyKey:
    """Lookup key derived from the source identifier and the content digest."""
    source_identifier: str
    content_digest: str

    @classmethod
    def from_content(cls, source_identifier: str, content: bytes) -> "IdempotencyKey":
        return cls(source_identifier, hashlib.sha256(content).hexdigest())


@dataclass
class ProcessingRecord:
    """A concluded processing attempt."""
    key: IdempotencyKey
    outcome: ProcessingOutcome
    processed_at: datetime
    error_message: Optional[str] = None

    def is_live(self, now: datetime, retention: timedelta) -> bool:
        return now - self.processed_at < retention


class IdempotencyGuard:
    """
    Gate in front of ingestion.

    Usage:
        guard = IdempotencyGuard(db, options)

        async with guard.attempt(blob_name, content) as attempt:
            if attempt.should_process:
                await process(blob_name, content)
            else:
                logger.info("Already processed, skipping")

    The attempt records SUCCESS when the block exits cleanly and FAILED
    when it raises.
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        options: Optional[IdempotencyOptions] = None,
        clock: Callable[[], datetime] = _utcnow
    ):
        self._db = db
        self.options = options or IdempotencyOptions()
        self._table = self.options.table_name
        self._clock = clock

    @property
    def retention(self) -> timedelta:
        return timedelta(hours=self.options.ttl_hours)

    async def has_been_processed(self, source_identifier: str, content: bytes) -> bool:
        """
        Check whether this exact content was already processed.

        Returns False when no record exists, the record has expired, or the
        store could not be reached.
        """
        key = IdempotencyKey.from_content(source_identifier, content)

        with create_span("idempotency.check", {"source.identifier": source_identifier}) as span:
            try:
                record = await self._fetch(key)
            except Exception as e:
                logger.warning(
                    "Idempotency store unavailable, failing open for %s: %s",
                    source_identifier, e,
                    extra={"source_identifier": source_identifier, "error": str(e)}
                )
                record_counter("idempotency_store_errors_total")
                span.set_attribute("idempotency.result", "fail_open")
                return False

            if record is not None and record.is_live(self._clock(), self.retention):
                logger.info("Source %s has already been processed", source_identifier)
                record_counter("idempotency_hits_total")
                span.set_attribute("idempotency.result", "hit")
                return True

            record_counter("idempotency_misses_total")
            span.set_attribute("idempotency.result", "miss")
            return False

    async def mark_processed(
        self,
        source_identifier: str,
        content: bytes,
        outcome: ProcessingOutcome,
        error_message: Optional[str] = None
    ) -> None:
        """Upsert the processing record with processed_at = now."""
        key = IdempotencyKey.from_content(source_identifier, content)

        await self._db.execute(
            f"""
            INSERT INTO {self._table} (
                source_identifier, content_digest, outcome, processed_at, error_message
            ) VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (source_identifier, content_digest) DO UPDATE SET
                outcome = excluded.outcome,
                processed_at = excluded.processed_at,
                error_message = excluded.error_message
            """,
            key.source_identifier,
            key.content_digest,
            outcome.value,
            to_db_timestamp(self._clock()),
            error_message[:1000] if error_message else None
        )

        logger.info(
            "Marked %s as processed with outcome %s", source_identifier, outcome.value
        )

    async def get_record(self, source_identifier: str, content: bytes) -> Optional[ProcessingRecord]:
        """Return the stored record for this content, expired or not."""
        return await self._fetch(IdempotencyKey.from_content(source_identifier, content))

    async def purge_expired(self) -> int:
        """Delete records past the retention window. Returns the count removed."""
        cutoff = to_db_timestamp(self._clock() - self.retention)
        status = await self._db.execute(
            f"DELETE FROM {self._table} WHERE processed_at < $1",
            cutoff
        )
        removed = affected_rows(status)
        if removed:
            logger.info(f"Purged {removed} expired idempotency records")
        return removed

    def attempt(self, source_identifier: str, content: bytes) -> "ProcessingAttempt":
        return ProcessingAttempt(self, source_identifier, content)

    async def _fetch(self, key: IdempotencyKey) -> Optional[ProcessingRecord]:
        row = await self._db.fetchrow(
            f"""
            SELECT outcome, processed_at, error_message FROM {self._table}
            WHERE source_identifier = $1 AND content_digest = $2
            """,
            key.source_identifier,
            key.content_digest
        )
        if row is None:
            return None
        return ProcessingRecord(
            key=key,
            outcome=ProcessingOutcome(row["outcome"]),
            processed_at=from_db_timestamp(row["processed_at"]),
            error_message=row.get("error_message")
        )


class ProcessingAttempt:
    """
    Async context manager pairing the check with the final record.

    Recording failures are logged, not raised.
    """

    def __init__(self, guard: IdempotencyGuard, source_identifier: str, content: bytes):
        self._guard = guard
        self.source_identifier = source_identifier
        self._content = content
        self.should_process = False

    async def __aenter__(self) -> "ProcessingAttempt":
        already = await self._guard.has_been_processed(self.source_identifier, self._content)
        self.should_process = not already
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if not self.should_process:
            return False

        outcome = ProcessingOutcome.SUCCESS if exc_type is None else ProcessingOutcome.FAILED
        try:
            await self._guard.mark_processed(
                self.source_identifier,
                self._content,
                outcome,
                error_message=str(exc_val) if exc_val is not None else None
            )
        except Exception as record_error:
            logger.error(
                "Failed to record processing outcome for %s: %s",
                self.source_identifier, record_error,
                extra={"source_identifier": self.source_identifier, "error": str(record_error)}
            )
        return False
