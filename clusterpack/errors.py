"""
Error classes for clusterpack.

These error types enable retry classification at execution boundaries:
- TransientError: Safe to retry (I/O hiccups, process spawn failures)
- PermanentError: Do not retry (bad input, missing packages, broken plans)

Package resolution and plan execution raise these errors; the FSM engine
catches them at the phase boundary for retry and state recording.

Error handling contract:
- Errors are exceptions, not values
- Lower layers wrap with context (``raise ... from err``), never translate
- NotFoundError is a normal outcome of many searches, not an alarm
"""

from typing import Optional


class ClusterpackError(Exception):
    """Base exception for clusterpack."""
    pass


class TransientError(ClusterpackError):
    """
    Transient error - safe to retry.

    Examples:
    - Archive read or decompress failure
    - Process spawn failure
    - Remote node temporarily unreachable
    """
    pass


class PermanentError(ClusterpackError):
    """
    Permanent error - do not retry.

    Examples:
    - Package or command not found
    - Malformed version
    - Downgrade or cross-application update
    - Unknown phase executor
    """
    pass


class NotFoundError(PermanentError):
    """No matching package, phase or command."""
    pass


class AlreadyExistsError(PermanentError):
    """A package with the same locator is already in the store."""
    pass


class InvalidArgumentError(PermanentError):
    """Bad parameter: the request can never succeed as given."""
    pass


class MalformedVersionError(InvalidArgumentError):
    """Version string is not a valid semantic version."""
    pass


class BadArgumentsError(InvalidArgumentError):
    """Arguments do not match a manifest's declared configuration schema."""
    pass


class PlanIntegrityError(InvalidArgumentError):
    """The plan itself is defective (empty executor, duplicate IDs, cycles)."""
    pass


class UnsupportedOperationError(InvalidArgumentError):
    """Plan operation type does not match the dispatch table."""
    pass


class UnknownExecutorError(InvalidArgumentError):
    """Phase executor name is outside the dispatch table's vocabulary."""
    pass


class InvalidManifestError(PermanentError):
    """Package manifest is missing or lacks a required section."""
    pass


class InvalidTransitionError(PermanentError):
    """Illegal phase state change."""
    pass


class TransportError(TransientError):
    """Archive, filesystem or process I/O failure."""
    pass


class CommandError(TransportError):
    """
    A package command failed to run or exited non-zero.

    The combined output captured before the failure is kept on the
    exception so callers can log it.
    """

    def __init__(self, message: str, output: bytes = b"", returncode: Optional[int] = None):
        super().__init__(message)
        self.output = output
        self.returncode = returncode


class PhaseCancelledError(ClusterpackError):
    """A running phase observed the cancellation signal."""
    pass


def is_not_found(err: BaseException) -> bool:
    """Return True if err (or anything it was raised from) is a NotFoundError."""
    while err is not None:
        if isinstance(err, NotFoundError):
            return True
        err = err.__cause__
    return False
