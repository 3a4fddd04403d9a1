"""
Tests for the ingestion pipeline.
"""

import pytest

from src.core.config import IdempotencyOptions
from src.core.exceptions import DeliveryError, OutboxWriteError
from src.core.inbox import IdempotencyGuard, ProcessingOutcome
from src.core.ingestion import IngestionPipeline
from src.core.messaging import MessageTransport
from src.core.outbox import OutboxAwareDispatcher, OutboxStatus, OutboxStore


REPORT = b"patient_id,test,value\n123456,GLU,5.4\n"


def encode_hl7(content: bytes) -> str:
    return "MSH|^~\\&|LABSYS|LAB|||20240301080000||ORU^R01|1|P|2.5\r" + content.decode("utf-8")


async def encode_async(content: bytes) -> str:
    return encode_hl7(content)


def broken_encoder(content: bytes) -> str:
    raise ValueError("missing patient_id column")


class DownTransport(MessageTransport):
    async def send(self, payload, correlation_id, message_id=None):
        raise DeliveryError("processing channel unavailable")


@pytest.fixture
def guard(db, clock):
    return IdempotencyGuard(db, IdempotencyOptions(), clock=clock)


@pytest.fixture
def store(db, clock):
    return OutboxStore(db, clock=clock)


@pytest.fixture
def pipeline(guard, store):
    return IngestionPipeline(guard, OutboxAwareDispatcher(store, DownTransport()), encode_hl7)


class TestProcess:

    @pytest.mark.asyncio
    async def test_new_document_lands_in_outbox(self, pipeline, guard, store):
        result = await pipeline.process("reports/a.csv", REPORT)

        assert result.skipped is False
        entry = await store.get_message(result.message_id)
        assert entry.status == OutboxStatus.PENDING
        assert entry.correlation_id == result.correlation_id
        assert entry.payload == encode_hl7(REPORT)

        record = await guard.get_record("reports/a.csv", REPORT)
        assert record.outcome == ProcessingOutcome.SUCCESS

    @pytest.mark.asyncio
    async def test_duplicate_document_skipped(self, pipeline, store):
        await pipeline.process("reports/a.csv", REPORT)

        second = await pipeline.process("reports/a.csv", REPORT)

        assert second.skipped is True
        assert second.message_id is None
        assert (await store.get_stats())["pending"] == 1

    @pytest.mark.asyncio
    async def test_changed_content_processed_again(self, pipeline, store):
        await pipeline.process("reports/a.csv", REPORT)

        result = await pipeline.process("reports/a.csv", REPORT + b"123456,HGB,140\n")

        assert result.skipped is False
        assert (await store.get_stats())["pending"] == 2

    @pytest.mark.asyncio
    async def test_async_encoder(self, guard, store):
        pipeline = IngestionPipeline(guard, OutboxAwareDispatcher(store, DownTransport()), encode_async)

        result = await pipeline.process("reports/b.csv", REPORT)

        assert (await store.get_message(result.message_id)).payload == encode_hl7(REPORT)

    @pytest.mark.asyncio
    async def test_encoder_failure_recorded_and_raised(self, guard, store):
        pipeline = IngestionPipeline(guard, OutboxAwareDispatcher(store, DownTransport()), broken_encoder)

        with pytest.raises(ValueError, match="patient_id"):
            await pipeline.process("reports/c.csv", REPORT)

        record = await guard.get_record("reports/c.csv", REPORT)
        assert record.outcome == ProcessingOutcome.FAILED
        assert "patient_id" in record.error_message
        assert (await store.get_stats())["pending"] == 0

    @pytest.mark.asyncio
    async def test_outbox_failure_propagates(self, guard, broken_db):
        pipeline = IngestionPipeline(guard, OutboxAwareDispatcher(OutboxStore(broken_db), DownTransport()), encode_hl7)

        with pytest.raises(OutboxWriteError):
            await pipeline.process("reports/d.csv", REPORT)

        record = await guard.get_record("reports/d.csv", REPORT)
        assert record.outcome == ProcessingOutcome.FAILED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("source, content", [("", REPORT), ("reports/a.csv", b"")])
    async def test_rejects_empty_input(self, pipeline, source, content):
        with pytest.raises(ValueError):
            await pipeline.process(source, content)
