"""
Tests for the outbox-aware dispatcher.
"""

import asyncio
from datetime import timedelta

import pytest

from src.core.config import OutboxOptions
from src.core.exceptions import DeliveryError, OutboxWriteError
from src.core.messaging import ChannelTransport, MessageTransport, PoisonEnvelope, TableMessageChannel
from src.core.outbox import OutboxAwareDispatcher, OutboxStatus, OutboxStore


class RecordingTransport(MessageTransport):
    """Transport that records sends and can be told to fail or hang."""

    def __init__(self, error: Exception = None, hang: bool = False):
        self.error = error
        self.hang = hang
        self.sent = []

    async def send(self, payload, correlation_id, message_id=None):
        if self.hang:
            await asyncio.sleep(60)
        if self.error:
            raise self.error
        self.sent.append((payload, correlation_id, message_id))


@pytest.fixture
def store(db, clock):
    return OutboxStore(db, OutboxOptions(dispatch_timeout_seconds=0.2), clock=clock)


class TestSend:

    @pytest.mark.asyncio
    async def test_successful_send_marks_dispatched(self, store, hl7_message):
        transport = RecordingTransport()
        dispatcher = OutboxAwareDispatcher(store, transport)

        message_id = await dispatcher.send(hl7_message, "corr-1")

        assert transport.sent == [(hl7_message, "corr-1", message_id)]
        entry = await store.get_message(message_id)
        assert entry.status == OutboxStatus.DISPATCHED
        assert entry.message_type == "HL7Message"

    @pytest.mark.asyncio
    async def test_failed_send_leaves_entry_pending(self, store, hl7_message, caplog):
        dispatcher = OutboxAwareDispatcher(store, RecordingTransport(error=DeliveryError("503")))

        with caplog.at_level("WARNING"):
            message_id = await dispatcher.send(hl7_message, "corr-1")

        entry = await store.get_message(message_id)
        assert entry.status == OutboxStatus.PENDING
        assert entry.retry_count == 0
        assert "left for the sweeper" in caplog.text

    @pytest.mark.asyncio
    async def test_hanging_send_times_out_and_stays_pending(self, store):
        dispatcher = OutboxAwareDispatcher(store, RecordingTransport(hang=True))

        message_id = await asyncio.wait_for(dispatcher.send("MSH|1", "corr-1"), timeout=5)

        assert (await store.get_message(message_id)).status == OutboxStatus.PENDING

    @pytest.mark.asyncio
    async def test_outbox_write_failure_propagates_and_nothing_is_sent(self, broken_db):
        transport = RecordingTransport()
        dispatcher = OutboxAwareDispatcher(OutboxStore(broken_db), transport)

        with pytest.raises(OutboxWriteError):
            await dispatcher.send("MSH|1", "corr-1")

        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_exactly_one_entry_per_send(self, store):
        dispatcher = OutboxAwareDispatcher(store, RecordingTransport(error=DeliveryError("down")))

        await dispatcher.send("MSH|1", "corr-1")
        await dispatcher.send("MSH|1", "corr-1")

        stats = await store.get_stats()
        assert stats["pending"] == 2

    @pytest.mark.asyncio
    async def test_generates_correlation_id_when_missing(self, store):
        transport = RecordingTransport()
        dispatcher = OutboxAwareDispatcher(store, transport)

        message_id = await dispatcher.send("MSH|1")

        entry = await store.get_message(message_id)
        assert entry.correlation_id
        assert transport.sent[0][1] == entry.correlation_id


class TestChannelTransport:

    @pytest.mark.asyncio
    async def test_enqueues_envelope_on_processing_channel(self, db, store, clock):
        channel = TableMessageChannel(db, "processing", clock=clock)
        dispatcher = OutboxAwareDispatcher(store, ChannelTransport(channel))

        message_id = await dispatcher.send("MSH|1", "corr-1")

        [lease] = await channel.receive(10, timedelta(minutes=5))
        envelope = PoisonEnvelope.from_message(lease.body)
        assert envelope.payload == "MSH|1"
        assert envelope.correlation_id == "corr-1"
        assert envelope.retry_count == 0
        assert envelope.source_reference == f"outbox/{message_id}"
