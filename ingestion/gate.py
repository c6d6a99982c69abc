"""
Ingestion Gate — Authenticate, validate and enqueue inbound events.

The gate's only side effect is one enqueue. It never reads the ledger and
never calls the routing collaborator, so acknowledgement latency depends on
the queue alone, not on how slow routing currently is.

Flow:
  raw body + signature
    → HMAC-SHA256 check (constant time)       ✗ AuthenticationFailure
    → JSON parse, eventId / type / payload    ✗ ValidationFailure
    → queue.enqueue(key=eventId)              ✗ InfrastructureFailure
    → IngestionReceipt
"""
from __future__ import annotations

import json
import time
import uuid
import structlog
from dataclasses import dataclass
from typing import Any, Optional, Union

from core.errors import (
    AuthenticationFailure, ConfigurationError, InfrastructureFailure, ValidationFailure,
)
from job_queue.message_queue import MessageQueue
from models.schemas import EventJobData
from utils.signing import verify_signature

logger = structlog.get_logger()

REQUIRED_FIELDS = ("eventId", "type", "payload")


@dataclass
class IngestionReceipt:
    event_id: str
    job_id: str
    correlation_id: str
    latency_ms: float
    duplicate: bool = False

    def to_response(self) -> dict[str, Any]:
        return {
            "accepted": True,
            "eventId": self.event_id,
            "correlationId": self.correlation_id,
            "message": "Event queued for processing",
            "latencyMs": round(self.latency_ms, 2),
        }


def new_correlation_id() -> str:
    return str(uuid.uuid4())


class IngestionGate:

    def __init__(self, queue: MessageQueue, hmac_secret: str):
        self.queue = queue
        self.hmac_secret = hmac_secret

    async def ingest(self, raw_body: Union[bytes, str], signature: Optional[str],
                     correlation_id: Optional[str] = None) -> IngestionReceipt:
        started = time.perf_counter()
        correlation_id = correlation_id or new_correlation_id()

        if not self.hmac_secret:
            logger.error("hmac_secret_not_configured", correlation_id=correlation_id)
            raise ConfigurationError("Server misconfiguration")

        if not verify_signature(raw_body, signature, self.hmac_secret):
            logger.warning("invalid_hmac_signature", correlation_id=correlation_id)
            raise AuthenticationFailure()

        job_data = self._parse(raw_body, correlation_id)

        try:
            enqueued = await self.queue.enqueue(job_data, idempotency_key=job_data.event_id)
        except Exception as e:
            logger.error("event_enqueue_failed",
                         event_id=job_data.event_id,
                         correlation_id=correlation_id,
                         error=str(e))
            raise InfrastructureFailure(f"Failed to enqueue event: {e}", component="queue") from e

        latency_ms = (time.perf_counter() - started) * 1000
        logger.info("event_queued",
                    event_id=job_data.event_id,
                    type=job_data.type,
                    job_id=enqueued.job_id,
                    correlation_id=correlation_id,
                    duplicate=not enqueued.created,
                    latency_ms=round(latency_ms, 2))
        return IngestionReceipt(
            event_id=job_data.event_id,
            job_id=enqueued.job_id,
            correlation_id=correlation_id,
            latency_ms=latency_ms,
            duplicate=not enqueued.created,
        )

    @staticmethod
    def _parse(raw_body: Union[bytes, str], correlation_id: str) -> EventJobData:
        try:
            body = json.loads(raw_body or b"")
        except (ValueError, UnicodeDecodeError):
            raise ValidationFailure("Invalid JSON body")
        if not isinstance(body, dict):
            raise ValidationFailure("Request body must be a JSON object")

        # An empty payload object is allowed; a missing or null one is not.
        missing = [
            name for name in REQUIRED_FIELDS
            if body.get(name) is None or (name != "payload" and body.get(name) == "")
        ]
        if missing:
            logger.warning("event_validation_failed", missing=missing, correlation_id=correlation_id)
            raise ValidationFailure(missing=missing)

        if not isinstance(body["eventId"], str) or not isinstance(body["type"], str):
            raise ValidationFailure("eventId and type must be strings", missing=[])
        if not isinstance(body["payload"], dict):
            raise ValidationFailure("payload must be a JSON object", missing=[])

        return EventJobData(
            event_id=body["eventId"],
            type=body["type"],
            payload=body["payload"],
            correlation_id=correlation_id,
        )
