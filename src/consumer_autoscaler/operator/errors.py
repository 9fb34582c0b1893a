"""
Error taxonomy for the reconciliation engine.

Every failure that can end a reconcile cycle is a ReconcileError carrying an
ErrorKind. The kind decides whether the cycle is retried with backoff
(transient) or left alone until the ConsumerScaler is edited (terminal).
"""

from enum import Enum


class ErrorKind(Enum):
    """Kinds of reconcile failures."""

    DEPENDENCY_MISSING = "DependencyMissing"
    DEPENDENCY_NOT_READY = "DependencyNotReady"
    INVALID_SPEC = "InvalidSpec"
    CONFLICT = "Conflict"
    STORE_UNAVAILABLE = "StoreUnavailable"
    TIMEOUT = "Timeout"
    PARTIAL_APPLY_FAILURE = "PartialApplyFailure"


TRANSIENT_KINDS = frozenset(
    {
        ErrorKind.DEPENDENCY_MISSING,
        ErrorKind.DEPENDENCY_NOT_READY,
        ErrorKind.CONFLICT,
        ErrorKind.STORE_UNAVAILABLE,
        ErrorKind.TIMEOUT,
        ErrorKind.PARTIAL_APPLY_FAILURE,
    }
)


class ReconcileError(Exception):
    """Base error for anything that fails a reconcile cycle."""

    kind: ErrorKind = ErrorKind.STORE_UNAVAILABLE

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def transient(self) -> bool:
        """Whether the failure should be retried with backoff."""
        return self.kind in TRANSIENT_KINDS

    def status_message(self) -> str:
        """Stable, tagged form written to ConsumerScaler.status.message."""
        return f"[{self.kind.value}] {self.message}"


class DependencyMissingError(ReconcileError):
    """The referenced KafkaTopic does not exist."""

    kind = ErrorKind.DEPENDENCY_MISSING


class DependencyNotReadyError(ReconcileError):
    """The referenced KafkaTopic exists but is not ready yet."""

    kind = ErrorKind.DEPENDENCY_NOT_READY


class InvalidSpecError(ReconcileError):
    """The ConsumerScaler spec (or a manifest derived from it) is malformed."""

    kind = ErrorKind.INVALID_SPEC


class ConflictError(ReconcileError):
    """A write lost an optimistic concurrency race."""

    kind = ErrorKind.CONFLICT


class AlreadyExistsError(ConflictError):
    """A create collided with an existing object of the same key."""


class StoreUnavailableError(ReconcileError):
    """The resource store could not be reached or refused the request."""

    kind = ErrorKind.STORE_UNAVAILABLE


class ReconcileTimeoutError(ReconcileError):
    """A cycle exceeded its deadline."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, timeout_seconds: float):
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


class PartialApplyFailureError(ReconcileError):
    """Some, but not all, child applies failed."""

    kind = ErrorKind.PARTIAL_APPLY_FAILURE

    def __init__(self, message: str, failures: list[tuple[str, ReconcileError]]):
        super().__init__(message)
        self.failures = failures
