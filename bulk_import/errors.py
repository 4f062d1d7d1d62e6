from __future__ import annotations

"""Shared exception roots for the import pipeline.

Component specific errors (IngestError, RecoveryError, ExecutionError, ...) are
defined next to the code that raises them and derive from ImportPipelineError.
"""

__all__ = [
    "ImportPipelineError",
    "ExternalServiceError",
    "SessionNotFound",
    "InvalidSessionState",
]


class ImportPipelineError(Exception):
    """Base exception for all pipeline errors."""


class ExternalServiceError(ImportPipelineError):
    """An external collaborator (semantic service, channel sink) failed or timed out.

    Always caught by the caller and degraded; never fatal for a session.
    """


class SessionNotFound(ImportPipelineError):
    """Raised when a session id is unknown or has expired."""


class InvalidSessionState(ImportPipelineError):
    """Raised when an operation is not allowed in the session's current status."""
