"""
Routing Collaborator — the external decision service every event must pass.

The pipeline treats it as opaque: a call takes about two seconds and fails
at some unknown rate. Any failure is raised as TransientRoutingFailure.

Implementations:
  - SimulatedRoutingService: sleeps, then fails with a configurable probability
  - HttpRoutingClient:       POSTs the event to a routing API over httpx
"""
from __future__ import annotations

import abc
import asyncio
import random
import structlog
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from config.settings import RoutingConfig
from core.errors import TransientRoutingFailure

logger = structlog.get_logger()


@dataclass
class RoutingDecision:
    event_id: str
    destination: str = ""
    details: dict[str, Any] = field(default_factory=dict)


class RoutingCollaborator(abc.ABC):
    """Abstract base for routing backends."""

    @abc.abstractmethod
    async def route(self, event_id: str, payload: dict[str, Any]) -> RoutingDecision:
        """Route one event. Raises TransientRoutingFailure on any failure."""
        ...

    async def close(self):
        pass


class SimulatedRoutingService(RoutingCollaborator):
    """
    Stand-in for the real routing API: waits ``delay_ms`` and fails
    ``failure_rate`` of the time.
    """

    def __init__(self, delay_ms: int = 2000, failure_rate: float = 0.1,
                 rng: Optional[random.Random] = None):
        if not 0.0 <= failure_rate <= 1.0:
            raise ValueError("failure_rate must be within [0, 1]")
        self.delay_ms = delay_ms
        self.failure_rate = failure_rate
        self._rng = rng or random.Random()

    async def route(self, event_id: str, payload: dict[str, Any]) -> RoutingDecision:
        await asyncio.sleep(self.delay_ms / 1000.0)
        if self._rng.random() < self.failure_rate:
            raise TransientRoutingFailure("Routing service temporarily unavailable", event_id)
        return RoutingDecision(event_id=event_id, destination="default")


class HttpRoutingClient(RoutingCollaborator):
    """
    REST routing client.
    Calls ``POST {base_url}/route`` with ``{"eventId", "payload"}``.
    """

    def __init__(self, config: RoutingConfig):
        self.config = config
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout_s,
            )
        return self.client

    async def route(self, event_id: str, payload: dict[str, Any]) -> RoutingDecision:
        client = await self._get_client()
        try:
            response = await client.post("/route", json={"eventId": event_id, "payload": payload})
            response.raise_for_status()
            body = response.json() if response.content else {}
        except httpx.HTTPError as e:
            logger.warning("routing_request_failed", event_id=event_id, error=str(e))
            raise TransientRoutingFailure(f"Routing request failed: {e}", event_id) from e
        return RoutingDecision(
            event_id=event_id,
            destination=str(body.get("destination", "")),
            details=body,
        )

    async def close(self):
        if self.client:
            await self.client.aclose()


def create_routing_client(config: RoutingConfig = None) -> RoutingCollaborator:
    """Factory: create the configured routing backend."""
    config = config or RoutingConfig()
    if config.backend == "http":
        if not config.base_url:
            logger.warning("routing_base_url_missing")
        return HttpRoutingClient(config)
    return SimulatedRoutingService(delay_ms=config.delay_ms, failure_rate=config.failure_rate)
