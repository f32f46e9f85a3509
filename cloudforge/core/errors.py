"""
Error taxonomy for the deployment orchestrator.

Synchronous errors (validation, authentication, conflicts) are raised
before any workspace or subprocess exists.  Failures that happen while
Terraform runs never cross the streaming boundary as exceptions; they
become the terminal ``error`` event of the deployment stream and carry
one of the :class:`FailureKind` values.
"""

from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """Kind attached to a terminal ``error`` event."""

    INIT_FAILURE = "InitFailure"
    APPLY_FAILURE = "ApplyFailure"
    INTERNAL_ERROR = "InternalError"


class CloudForgeError(Exception):
    """Base class for every error raised by CloudForge."""

    status_code = 500


class ValidationError(CloudForgeError):
    """The resource selection or its parameters cannot be compiled."""

    status_code = 400

    def __init__(self, message: str, *, problems: list[str] | None = None) -> None:
        super().__init__(message)
        self.problems = problems or [message]


class AuthenticationRequired(CloudForgeError):
    """No credentials are stored for the requesting user."""

    status_code = 401


class NotFound(CloudForgeError):
    """The requested ledger entry does not exist."""

    status_code = 404


class DeploymentInProgress(CloudForgeError):
    """A deployment with the same id is already running."""

    status_code = 409


class InternalError(CloudForgeError):
    """Unexpected failure inside the orchestrator (I/O, queue overflow)."""

    status_code = 500


class WorkspaceError(InternalError):
    """A deployment workspace could not be created, written or removed."""


class EventOverflow(InternalError):
    """The consumer fell too far behind the Terraform output."""


class StreamConsumed(CloudForgeError):
    """A deployment's event stream was iterated a second time."""
