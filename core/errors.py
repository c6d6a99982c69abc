"""
Error taxonomy for the gateway.

Gate-level failures (authentication, validation) never reach the pipeline.
Routing failures are retried by the queue; infrastructure failures propagate
to whoever can retry the whole operation (the producer at ingestion, the lease
timeout inside the worker).
"""
from __future__ import annotations


class GatewayError(Exception):
    """Base exception for all gateway operations."""


class ConfigurationError(GatewayError):
    """The process is misconfigured (e.g. no signing secret)."""


class AuthenticationFailure(GatewayError):
    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message)


class ValidationFailure(GatewayError):
    def __init__(self, message: str = "Missing required fields: eventId, type, payload",
                 missing: list[str] = None):
        self.missing = missing or []
        super().__init__(message)


class InfrastructureFailure(GatewayError):
    """Queue or ledger unavailable. The caller should retry the whole operation."""

    def __init__(self, message: str, component: str = ""):
        self.component = component
        super().__init__(message)


class TransientRoutingFailure(GatewayError):
    """The routing collaborator failed; retried until attempts are exhausted."""

    def __init__(self, message: str, event_id: str = ""):
        self.event_id = event_id
        super().__init__(message)


class ExhaustedRetries(GatewayError):
    def __init__(self, event_id: str, attempts: int, reason: str):
        self.event_id = event_id
        self.attempts = attempts
        self.reason = reason
        super().__init__(f"Event {event_id} failed after {attempts} attempts: {reason}")


class InvalidTransition(GatewayError):
    def __init__(self, event_id: str, current: str, target: str):
        self.event_id = event_id
        self.current = current
        self.target = target
        super().__init__(f"Illegal transition for {event_id}: {current} -> {target}")


class JobNotFound(GatewayError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class LeaseLost(GatewayError):
    """The caller no longer holds the job's lease; the job was left untouched."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Lease lost for job: {job_id}")
