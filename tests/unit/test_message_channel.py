"""
Tests for the table-backed message channel and its visibility leases.
"""

from datetime import timedelta

import pytest

from src.core.messaging import PoisonEnvelope, TableMessageChannel
from src.core.exceptions import EnvelopeFormatError


@pytest.fixture
def channel(db, clock):
    return TableMessageChannel(db, "processing", clock=clock)


LEASE = timedelta(minutes=5)


class TestSendReceive:

    @pytest.mark.asyncio
    async def test_round_trip(self, channel):
        message_id = await channel.send("hello")

        [lease] = await channel.receive(10, LEASE)

        assert lease.message_id == message_id
        assert lease.body == "hello"
        assert lease.dequeue_count == 1
        assert lease.pop_receipt

    @pytest.mark.asyncio
    async def test_respects_max_messages(self, channel):
        for n in range(5):
            await channel.send(f"m{n}")

        assert len(await channel.receive(3, LEASE)) == 3

    @pytest.mark.asyncio
    async def test_delayed_message_invisible_until_due(self, channel, clock):
        await channel.send("later", visibility_delay=timedelta(minutes=4))

        assert await channel.receive(10, LEASE) == []

        clock.advance(minutes=4)
        assert len(await channel.receive(10, LEASE)) == 1

    @pytest.mark.asyncio
    async def test_peek_count_includes_invisible(self, channel):
        await channel.send("now")
        await channel.send("later", visibility_delay=timedelta(hours=1))

        assert await channel.peek_count() == 2


class TestLeases:

    @pytest.mark.asyncio
    async def test_leased_message_hidden_from_other_consumers(self, channel):
        await channel.send("only-once")

        first = await channel.receive(10, LEASE)
        second = await channel.receive(10, LEASE)

        assert len(first) == 1
        assert second == []

    @pytest.mark.asyncio
    async def test_expired_lease_redelivers_with_new_receipt(self, channel, clock):
        await channel.send("retry-me")
        [first] = await channel.receive(10, LEASE)

        clock.advance(minutes=5)
        [second] = await channel.receive(10, LEASE)

        assert second.message_id == first.message_id
        assert second.pop_receipt != first.pop_receipt
        assert second.dequeue_count == 2

    @pytest.mark.asyncio
    async def test_delete_with_current_receipt(self, channel):
        await channel.send("done")
        [lease] = await channel.receive(10, LEASE)

        assert await channel.delete(lease.message_id, lease.pop_receipt) is True
        assert await channel.peek_count() == 0

    @pytest.mark.asyncio
    async def test_delete_with_stale_receipt_fails(self, channel, clock):
        await channel.send("contended")
        [stale] = await channel.receive(10, LEASE)
        clock.advance(minutes=6)
        [current] = await channel.receive(10, LEASE)

        assert await channel.delete(stale.message_id, stale.pop_receipt) is False
        assert await channel.peek_count() == 1
        assert await channel.delete(current.message_id, current.pop_receipt) is True

    @pytest.mark.asyncio
    async def test_channels_are_isolated(self, db, clock, channel):
        poison = TableMessageChannel(db, "poison", clock=clock)
        await channel.send("processing-only")

        assert await poison.receive(10, LEASE) == []


class TestPoisonEnvelope:

    def test_round_trip(self):
        envelope = PoisonEnvelope(
            payload="MSH|...",
            correlation_id="corr-1",
            retry_count=2,
            source_reference="reports/a.csv"
        )

        parsed = PoisonEnvelope.from_message(envelope.to_message())

        assert parsed == envelope

    def test_next_attempt_increments_only_retry_count(self):
        envelope = PoisonEnvelope(payload="MSH|...", correlation_id="corr-1", retry_count=1)

        retry = envelope.next_attempt()

        assert retry.retry_count == 2
        assert retry.payload == envelope.payload
        assert retry.correlation_id == envelope.correlation_id
        assert envelope.retry_count == 1

    @pytest.mark.parametrize("body", [
        "not json",
        '{"correlation_id": "corr-1"}',
        '{"payload": "", "correlation_id": "corr-1"}',
        '{"payload": "MSH", "correlation_id": "corr-1", "retry_count": -1}',
    ])
    def test_unparseable_bodies(self, body):
        with pytest.raises(EnvelopeFormatError):
            PoisonEnvelope.from_message(body)
