"""
Tests for the dead-letter sink and DLQ inspection.
"""

from datetime import timedelta

import pytest

from src.core.dlq import (
    MAX_RETRIES_EXCEEDED,
    UNPARSEABLE,
    DeadLetterRecord,
    DeadLetterSink,
    DeadLetterSource,
    DLQManager,
)
from src.core.exceptions import DeadLetterWriteError
from src.core.messaging import PoisonEnvelope, TableMessageChannel


def record_for(clock, record_id="msg-1", correlation_id="corr-1", reason=MAX_RETRIES_EXCEEDED):
    envelope = PoisonEnvelope(
        payload="MSH|1",
        correlation_id=correlation_id,
        retry_count=3,
        timestamp=clock.now - timedelta(hours=1),
        source_reference="reports/a.csv"
    )
    return DeadLetterRecord.from_envelope(record_id, envelope, reason, clock.now)


@pytest.fixture
def sink(db):
    return DeadLetterSink(db, retry_backoff_seconds=0)


@pytest.fixture
def poison(db, clock):
    return TableMessageChannel(db, "poison", clock=clock)


@pytest.fixture
def manager(db, poison, clock):
    return DLQManager(db, poison, clock=clock)


class TestDeadLetterSink:

    @pytest.mark.asyncio
    async def test_write_persists_envelope_fields(self, sink, manager, clock):
        assert await sink.write(record_for(clock)) is True

        stored = await manager.get_entry("msg-1")
        assert stored.source == DeadLetterSource.POISON
        assert stored.payload == "MSH|1"
        assert stored.retry_count == 3
        assert stored.source_reference == "reports/a.csv"
        assert stored.original_timestamp == clock.now - timedelta(hours=1)
        assert stored.last_attempt_at == clock.now

    @pytest.mark.asyncio
    async def test_repeat_write_is_noop(self, sink, manager, clock):
        await sink.write(record_for(clock))

        assert await sink.write(record_for(clock)) is False
        assert await manager.get_count() == 1

    @pytest.mark.asyncio
    async def test_exhausted_attempts_raise(self, broken_db, clock):
        sink = DeadLetterSink(broken_db, write_attempts=3, retry_backoff_seconds=0)

        with pytest.raises(DeadLetterWriteError) as exc_info:
            await sink.write(record_for(clock))

        assert broken_db.calls == 3
        assert exc_info.value.correlation_id == "corr-1"

    def test_rejects_bad_table_name(self, db):
        with pytest.raises(ValueError):
            DeadLetterSink(db, table_name="dead letters; drop")

    def test_raw_record_for_unparseable_body(self, clock):
        record = DeadLetterRecord.from_raw("msg-9", "{oops", UNPARSEABLE, clock.now)

        assert record.payload == "{oops"
        assert record.failure_reason == UNPARSEABLE
        assert record.correlation_id == "unknown"


class TestDLQManager:

    @pytest.mark.asyncio
    async def test_entries_filter_and_count(self, sink, manager, clock):
        await sink.write(record_for(clock, "msg-1", "corr-1"))
        clock.advance(minutes=1)
        await sink.write(record_for(clock, "msg-2", "corr-2"))

        all_entries = await manager.get_entries()
        filtered = await manager.get_entries(correlation_id="corr-1")

        assert [e.id for e in all_entries] == ["msg-2", "msg-1"]
        assert [e.id for e in filtered] == ["msg-1"]
        assert await manager.get_count() == 2
        assert await manager.get_count(correlation_id="corr-2") == 1

    @pytest.mark.asyncio
    async def test_stats(self, sink, manager, clock):
        await sink.write(record_for(clock, "msg-1"))
        await sink.write(DeadLetterRecord.from_raw("msg-2", "{", UNPARSEABLE, clock.now))

        stats = await manager.get_stats()

        assert stats["total_count"] == 2
        assert stats["by_source"] == {"poison": 2}
        assert stats["by_failure_reason"] == {MAX_RETRIES_EXCEEDED: 1, UNPARSEABLE: 1}
        assert stats["oldest_entry"] == clock.now.isoformat()

    @pytest.mark.asyncio
    async def test_replay_enqueues_fresh_envelope_and_keeps_record(self, sink, manager, poison, clock):
        await sink.write(record_for(clock))

        message_id = await manager.replay_entry("msg-1", operator_id="ops-1")

        assert message_id is not None
        [lease] = await poison.receive(10, timedelta(minutes=5))
        envelope = PoisonEnvelope.from_message(lease.body)
        assert envelope.retry_count == 0
        assert envelope.payload == "MSH|1"
        assert envelope.correlation_id == "corr-1"
        assert await manager.get_count() == 1

    @pytest.mark.asyncio
    async def test_replay_unknown_entry(self, manager, poison):
        assert await manager.replay_entry("missing") is None
        assert await poison.peek_count() == 0

    @pytest.mark.asyncio
    async def test_purge(self, sink, manager, clock):
        await sink.write(record_for(clock))

        assert await manager.purge_entry("msg-1", operator_id="ops-1") is True
        assert await manager.purge_entry("msg-1") is False
        assert await manager.get_count() == 0

    def test_rejects_bad_table_name(self, db, poison):
        with pytest.raises(ValueError):
            DLQManager(db, poison, table_name="dead_letters; drop table outbox_messages")
