"""Application-level exception types for code-iterator."""

from __future__ import annotations


class CodeIteratorError(Exception):
    """Base exception for code-iterator."""


class ConfigurationError(CodeIteratorError):
    """Base exception for configuration and startup validation errors."""


class RouteBindingError(ConfigurationError):
    """Raised when an HTTP or WebSocket route cannot be bound."""


class CollaboratorError(CodeIteratorError):
    """Base exception for failures inside one event-handling cycle."""

    kind = "error"

    def user_message(self) -> str:
        detail = str(self)
        return f"{self.kind}: {detail}" if detail else self.kind


class MalformedEnvelopeError(CollaboratorError):
    """Raised when an envelope is missing required fields or has the wrong shape."""

    kind = "malformed"


class EmptyResponseError(CollaboratorError):
    """Raised when a collaborator replied without a payload."""

    kind = "empty_response"


class TransportFailureError(CollaboratorError):
    """Raised on network or inter-process failures."""

    kind = "transport_failure"


class CompletionTimeoutError(TransportFailureError):
    """Raised when the LLM completion call exceeds its budget."""

    kind = "completion_timeout"


class ExecutionTimeoutError(TransportFailureError):
    """Raised when sandboxed code exceeds its run budget."""

    kind = "execution_timeout"
