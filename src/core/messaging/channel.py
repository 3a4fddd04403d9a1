"""
Message Channel

Queue with visibility leases, the only concurrency-exclusion mechanism the
sweeps rely on:

- receive() hides each returned message for the visibility timeout and
  hands out a fresh pop receipt
- delete() only succeeds with the current pop receipt, so a consumer whose
  lease expired (and was re-leased elsewhere) cannot remove the message
- send() can delay first visibility, which is how retries are scheduled
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional
from uuid import uuid4

from ..database.adapter import DatabaseAdapter, affected_rows
from ..database.schema import channel_table_name, to_db_timestamp

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class QueueMessageLease:
    """A received message and the receipt proving the current lease."""
    message_id: str
    pop_receipt: str
    body: str
    dequeue_count: int


class MessageChannel(ABC):
    """
    Abstract queue with receive-with-lease, delete and delayed send.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def send(self, body: str, visibility_delay: Optional[timedelta] = None) -> str:
        """
        Enqueue a message.

        Args:
            body: Message text
            visibility_delay: Keep the message hidden this long before first delivery

        Returns:
            The new message id
        """
        ...

    @abstractmethod
    async def receive(self, max_messages: int, visibility_timeout: timedelta) -> List[QueueMessageLease]:
        """
        Lease up to max_messages visible messages.

        Each returned message stays invisible to other consumers for
        visibility_timeout.
        """
        ...

    @abstractmethod
    async def delete(self, message_id: str, pop_receipt: str) -> bool:
        """
        Remove a leased message.

        Returns:
            True if deleted, False if the receipt is no longer current
        """
        ...

    @abstractmethod
    async def peek_count(self) -> int:
        """Approximate number of messages, visible or not."""
        ...


class TableMessageChannel(MessageChannel):
    """
    MessageChannel stored in a database table.

    Leases are taken with a conditional UPDATE on (message_id, pop_receipt,
    visible_at), so two consumers racing for the same row cannot both win.
    """

    def __init__(
        self,
        db: DatabaseAdapter,
        queue_name: str,
        clock: Callable[[], datetime] = _utcnow
    ):
        self._db = db
        self._name = queue_name
        self._table = channel_table_name(queue_name)
        self._clock = clock

    @property
    def name(self) -> str:
        return self._name

    async def send(self, body: str, visibility_delay: Optional[timedelta] = None) -> str:
        now = self._clock()
        message_id = str(uuid4())
        visible_at = now + (visibility_delay or timedelta(0))

        await self._db.execute(
            f"""
            INSERT INTO {self._table} (
                message_id, body, pop_receipt, visible_at, inserted_at, dequeue_count
            ) VALUES ($1, $2, $3, $4, $5, $6)
            """,
            message_id,
            body,
            "",
            to_db_timestamp(visible_at),
            to_db_timestamp(now),
            0
        )

        logger.debug(
            "Enqueued message %s on '%s' (visible at %s)",
            message_id, self._name, visible_at.isoformat()
        )
        return message_id

    async def receive(self, max_messages: int, visibility_timeout: timedelta) -> List[QueueMessageLease]:
        now = self._clock()
        lease_until = to_db_timestamp(now + visibility_timeout)

        candidates = await self._db.fetch(
            f"""
            SELECT message_id, body, pop_receipt, dequeue_count
            FROM {self._table}
            WHERE visible_at <= $1
            ORDER BY visible_at ASC, inserted_at ASC
            LIMIT $2
            """,
            to_db_timestamp(now),
            max_messages
        )

        leases: List[QueueMessageLease] = []
        for row in candidates:
            receipt = uuid4().hex
            status = await self._db.execute(
                f"""
                UPDATE {self._table}
                SET pop_receipt = $1, visible_at = $2, dequeue_count = dequeue_count + 1
                WHERE message_id = $3 AND pop_receipt = $4 AND visible_at <= $5
                """,
                receipt,
                lease_until,
                row["message_id"],
                row["pop_receipt"],
                to_db_timestamp(now)
            )
            if affected_rows(status) != 1:
                continue
            leases.append(QueueMessageLease(
                message_id=row["message_id"],
                pop_receipt=receipt,
                body=row["body"],
                dequeue_count=row["dequeue_count"] + 1
            ))

        return leases

    async def delete(self, message_id: str, pop_receipt: str) -> bool:
        status = await self._db.execute(
            f"DELETE FROM {self._table} WHERE message_id = $1 AND pop_receipt = $2",
            message_id,
            pop_receipt
        )
        deleted = affected_rows(status) == 1
        if not deleted:
            logger.warning(
                f"Could not delete message {message_id} from '{self._name}': lease no longer held"
            )
        return deleted

    async def peek_count(self) -> int:
        value = await self._db.fetchval(f"SELECT COUNT(*) AS count FROM {self._table}")
        return int(value or 0)
