"""Tests for the ingestion gate and request signing."""
import asyncio
import json
import time

import pytest
from unittest.mock import AsyncMock

from conftest import TEST_SECRET, ScriptedRouter
from core.errors import (
    AuthenticationFailure, ConfigurationError, InfrastructureFailure, ValidationFailure,
)
from ingestion.gate import IngestionGate
from job_queue.message_queue import InMemoryMessageQueue
from models.schemas import LeaseState
from utils.signing import compute_signature, verify_signature


def signed(body: dict, secret: str = TEST_SECRET) -> tuple[bytes, str]:
    raw = json.dumps(body).encode("utf-8")
    return raw, compute_signature(raw, secret)


EVENT = {"eventId": "evt-001", "type": "ORDER_CREATED", "payload": {"orderId": "12345"}}


class CallRecordingQueue(InMemoryMessageQueue):
    """Records which queue operations the gate performs."""

    def __init__(self):
        super().__init__()
        self.calls: list[str] = []

    async def enqueue(self, job_data, idempotency_key=None):
        self.calls.append("enqueue")
        return await super().enqueue(job_data, idempotency_key)

    async def get_job(self, job_id):
        self.calls.append("get_job")
        return await super().get_job(job_id)


class TestSigning:
    def test_signature_is_hex_sha256(self):
        sig = compute_signature(b"{}", TEST_SECRET)
        assert len(sig) == 64
        int(sig, 16)

    def test_str_and_bytes_agree(self):
        assert compute_signature("abc", TEST_SECRET) == compute_signature(b"abc", TEST_SECRET)

    def test_verify(self):
        sig = compute_signature(b"body", TEST_SECRET)
        assert verify_signature(b"body", sig, TEST_SECRET)
        assert verify_signature(b"body", sig.upper(), TEST_SECRET)
        assert not verify_signature(b"body2", sig, TEST_SECRET)
        assert not verify_signature(b"body", sig, "other-secret")
        assert not verify_signature(b"body", "", TEST_SECRET)
        assert not verify_signature(b"body", None, TEST_SECRET)
        assert not verify_signature(b"body", "abc", TEST_SECRET)

    def test_non_ascii_signature_is_rejected(self):
        assert not verify_signature(b"body", "\u00e9" * 64, TEST_SECRET)
        assert not verify_signature(b"body", "\ud800", TEST_SECRET)


class TestIngestionGate:
    @pytest.fixture
    def gate(self, queue):
        return IngestionGate(queue, TEST_SECRET)

    @pytest.mark.asyncio
    async def test_accepts_and_enqueues(self, gate, queue):
        raw, sig = signed(EVENT)
        receipt = await gate.ingest(raw, sig, "corr-1")

        assert receipt.event_id == "evt-001"
        assert receipt.job_id == "evt-001"
        assert receipt.correlation_id == "corr-1"
        assert receipt.duplicate is False
        assert receipt.latency_ms >= 0
        job = await queue.get_job("evt-001")
        assert job.lease_state == LeaseState.WAITING
        assert job.data.correlation_id == "corr-1"
        assert job.data.payload == {"orderId": "12345"}

    @pytest.mark.asyncio
    async def test_generates_correlation_id(self, gate):
        raw, sig = signed(EVENT)
        receipt = await gate.ingest(raw, sig)
        assert receipt.correlation_id

    @pytest.mark.asyncio
    async def test_response_shape(self, gate):
        raw, sig = signed(EVENT)
        body = (await gate.ingest(raw, sig, "corr-1")).to_response()
        assert body["accepted"] is True
        assert body["eventId"] == "evt-001"
        assert body["correlationId"] == "corr-1"
        assert body["message"] == "Event queued for processing"
        assert "latencyMs" in body

    @pytest.mark.asyncio
    async def test_duplicate_submission_reported(self, gate, queue):
        raw, sig = signed(EVENT)
        await gate.ingest(raw, sig)
        second = await gate.ingest(raw, sig)
        assert second.duplicate is True
        assert (await queue.stats()).waiting == 1

    @pytest.mark.asyncio
    async def test_enqueue_is_the_only_queue_call(self):
        queue = CallRecordingQueue()
        await queue.connect()
        gate = IngestionGate(queue, TEST_SECRET)
        raw, sig = signed(EVENT)

        await gate.ingest(raw, sig)
        duplicate = await gate.ingest(raw, sig)

        assert queue.calls == ["enqueue", "enqueue"]
        assert duplicate.duplicate is True
        await queue.close()

    @pytest.mark.asyncio
    async def test_bad_signature(self, gate, queue):
        raw, _ = signed(EVENT)
        with pytest.raises(AuthenticationFailure, match="Invalid signature"):
            await gate.ingest(raw, "0" * 64)
        assert await queue.get_job("evt-001") is None

    @pytest.mark.asyncio
    async def test_non_ascii_signature_is_an_authentication_failure(self, gate, queue):
        raw, _ = signed(EVENT)
        with pytest.raises(AuthenticationFailure):
            await gate.ingest(raw, "\u00e9" * 64, "c1")
        assert await queue.get_job("evt-001") is None

    @pytest.mark.asyncio
    async def test_signature_over_raw_bytes(self, gate):
        raw, sig = signed(EVENT)
        reformatted = json.dumps(EVENT, indent=2).encode()
        with pytest.raises(AuthenticationFailure):
            await gate.ingest(reformatted, sig)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body,missing", [
        ({"type": "T", "payload": {}}, ["eventId"]),
        ({"eventId": "e1", "payload": {}}, ["type"]),
        ({"eventId": "e1", "type": "T"}, ["payload"]),
        ({"eventId": "", "type": "T", "payload": {}}, ["eventId"]),
        ({"eventId": "e1", "type": "T", "payload": None}, ["payload"]),
    ])
    async def test_missing_fields(self, gate, body, missing):
        raw, sig = signed(body)
        with pytest.raises(ValidationFailure) as exc:
            await gate.ingest(raw, sig)
        assert exc.value.missing == missing
        assert str(exc.value) == "Missing required fields: eventId, type, payload"

    @pytest.mark.asyncio
    async def test_empty_payload_allowed(self, gate):
        raw, sig = signed({"eventId": "e1", "type": "T", "payload": {}})
        receipt = await gate.ingest(raw, sig)
        assert receipt.event_id == "e1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [b"not json", b"[1, 2]", b""])
    async def test_malformed_body(self, gate, raw):
        with pytest.raises(ValidationFailure):
            await gate.ingest(raw, compute_signature(raw, TEST_SECRET))

    @pytest.mark.asyncio
    async def test_non_object_payload(self, gate):
        raw, sig = signed({"eventId": "e1", "type": "T", "payload": [1]})
        with pytest.raises(ValidationFailure):
            await gate.ingest(raw, sig)

    @pytest.mark.asyncio
    async def test_missing_secret_is_misconfiguration(self, queue):
        gate = IngestionGate(queue, "")
        raw, sig = signed(EVENT)
        with pytest.raises(ConfigurationError):
            await gate.ingest(raw, sig)

    @pytest.mark.asyncio
    async def test_queue_failure_is_infrastructure_failure(self):
        broken = AsyncMock()
        broken.enqueue = AsyncMock(side_effect=ConnectionError("redis down"))
        gate = IngestionGate(broken, TEST_SECRET)
        raw, sig = signed(EVENT)
        with pytest.raises(InfrastructureFailure) as exc:
            await gate.ingest(raw, sig)
        assert exc.value.component == "queue"

    @pytest.mark.asyncio
    async def test_enqueue_latency_independent_of_routing(self, queue, make_scheduler):
        # Workers are busy with a 10 s routing call; acknowledgement must not wait on it.
        scheduler = make_scheduler(ScriptedRouter(delay_s=10), concurrency=2)
        await scheduler.start()
        gate = IngestionGate(queue, TEST_SECRET)
        try:
            started = time.perf_counter()
            for i in range(20):
                raw, sig = signed({"eventId": f"e{i}", "type": "T", "payload": {}})
                receipt = await gate.ingest(raw, sig)
                assert receipt.latency_ms < 100
            assert time.perf_counter() - started < 1.0
        finally:
            await scheduler.stop(grace_s=0.1)
