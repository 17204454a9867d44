"""
Error Taxonomy
--------------
Exceptions raised by the drift engine. Transient infrastructure errors are
retried locally; data-integrity errors become a per-resource error state.
"""

from typing import Optional


class DriftEngineError(Exception):
    """Base error for drift engine operations."""
    pass


class TransientError(DriftEngineError):
    """Infrastructure error that is retried with backoff."""
    pass


class SourceUnavailable(TransientError):
    """The configuration source could not be reached."""
    pass


class ProviderUnavailable(TransientError):
    """The resource provider could not be reached."""
    pass


class UnsupportedKind(DriftEngineError):
    """No normalization rule exists for a resource kind."""

    def __init__(self, kind: str):
        super().__init__(f"No normalization rule for kind '{kind}'")
        self.kind = kind


class DataIntegrityError(DriftEngineError):
    """Malformed manifest or schema violation for a single resource."""
    pass


class ScorerError(DriftEngineError):
    """The external scorer returned an unusable response."""
    pass


class ScorerTimeout(ScorerError):
    """The external scorer did not answer within its timeout."""
    pass


class RemediationConflict(DriftEngineError):
    """Another remediation is already in flight for the resource."""

    def __init__(self, resource_key: str):
        super().__init__(f"Remediation already in flight for {resource_key}")
        self.resource_key = resource_key


class RemediationFailed(DriftEngineError):
    """The apply action did not converge."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class StaleWriteError(DriftEngineError):
    """A conditional update found a newer version than expected."""

    def __init__(self, record_id: str, expected_version: Optional[int] = None):
        super().__init__(
            f"Stale write rejected for {record_id} (expected version {expected_version})"
        )
        self.record_id = record_id
        self.expected_version = expected_version


class InvalidTransition(DriftEngineError):
    """A lifecycle or state machine transition is not allowed."""
    pass


class RecordNotFound(DriftEngineError):
    """No drift record matches the given id."""
    pass


class StorageUnavailable(DriftEngineError):
    """Persistent storage cannot be reached at startup. Process-fatal."""
    pass
