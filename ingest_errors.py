# ingest_errors.py – Error taxonomy for the killmail ingest pipeline
from __future__ import annotations
from enum import Enum
from typing import Optional


class RetryErrorType(Enum):
    """Classification of outbound call failures"""
    TRANSIENT_NETWORK = "transient_network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"

    @property
    def retryable(self) -> bool:
        return self is not RetryErrorType.CLIENT_ERROR


class IngestError(Exception):
    """Base class for pipeline errors."""


class UpstreamError(IngestError):
    """An external HTTP dependency failed."""
    def __init__(self, message: str, error_type: RetryErrorType,
                 status_code: Optional[int] = None, attempts: int = 1):
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.attempts = attempts


class UpstreamClientError(UpstreamError):
    """4xx other than 429. Never retried."""


class UpstreamUnavailable(UpstreamError):
    """Transient failures persisted past the retry budget."""


class IngestCancelled(IngestError):
    """Shutdown was requested while waiting or calling out."""


class ReconcileError(IngestError):
    """The reconciliation unit of work aborted; nothing was committed."""
    def __init__(self, killmail_id: int, cause: Exception):
        super().__init__(f"reconcile failed for killmail {killmail_id}: {cause}")
        self.killmail_id = killmail_id
        self.cause = cause


class RegistryUnavailable(IngestError):
    """The tracked-entity registry could not be loaded at startup."""


class CheckpointUnavailable(IngestError):
    """The checkpoint store cannot be read."""
