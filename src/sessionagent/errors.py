class AgentError(Exception):
    """Base class for errors raised by the agent backend."""


class RequestValidationError(AgentError, ValueError):
    """Malformed or unacceptable inbound request. Never retried."""


class MessageTooLargeError(RequestValidationError):
    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Message exceeds maximum size ({size} > {limit} characters)")
        self.size = size
        self.limit = limit


class BackendError(AgentError):
    """The generative backend failed to produce a response."""


class BackendTimeoutError(BackendError, TimeoutError):
    """A backend call exceeded its time limit."""


class CircuitOpenError(BackendError):
    """The circuit breaker is open; the call was rejected without being attempted."""
