"""Error taxonomy shared by both backend adapters.

Every failure that leaves the query layer is a :class:`PipelineError`.  The
subclasses keep "the backend could not be reached", "the backend said no" and
"the backend said something we cannot parse" apart so callers can react to
each differently.  Nothing in this package retries.
"""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base error for all query-layer failures."""


class TransportError(PipelineError):
    """Raised when a backend or the credential provider cannot be reached.

    The originating exception is always chained as ``__cause__``.
    """


class AnalyticsUnreachableError(TransportError):
    """Raised when the analytics cluster cannot be reached.

    The cluster only accepts connections from the corporate network, so the
    message carries a hint about VPN access.
    """

    HINT = "The analytics cluster is only reachable from the corporate network; are you on VPN?"

    def __init__(self, message: str) -> None:
        super().__init__(f"{message}. {self.HINT}")


class BackendRequestError(PipelineError):
    """Raised when a backend answers with a non-success status."""

    def __init__(self, *, status_code: int, operation: str, target: str, message: str) -> None:
        self.status_code = status_code
        self.operation = operation
        self.target = target
        self.message = message
        super().__init__(f"{operation} failed for {target} ({status_code}): {message}")


class DeserializationError(PipelineError):
    """Raised when a response body does not match the expected shape."""

    def __init__(self, *, operation: str, message: str) -> None:
        self.operation = operation
        self.message = message
        super().__init__(f"Failed to deserialize {operation} response: {message}")


class CorrelationError(DeserializationError):
    """Raised when a work item's embedded properties cannot be correlated to a build."""


class NotFoundError(PipelineError, LookupError):
    """Raised when a named entity does not exist."""


class ArtifactNotFoundError(NotFoundError):
    """Raised when an artifact is missing or cannot be downloaded."""


class WorkItemNotFoundError(NotFoundError):
    """Raised when a point work-item lookup returns no rows."""


class AmbiguousWorkItemError(PipelineError, LookupError):
    """Raised when a point work-item lookup returns more than one row."""


class InvalidArgumentError(PipelineError, ValueError):
    """Raised before any remote call when an identifier is malformed."""

    def __init__(self, name: str, value: object, reason: str) -> None:
        self.name = name
        self.value = value
        super().__init__(f"{name} {reason}, got {value!r}")


class BackendNotConfiguredError(PipelineError):
    """Raised when an operation needs a backend the facade was opened without."""
