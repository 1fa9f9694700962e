"""Custom exceptions for steerline."""


class SteerlineError(Exception):
    """Base exception for steerline."""

    pass


class ConfigurationError(SteerlineError):
    """Configuration-related errors."""

    pass


class ValidationError(SteerlineError):
    """Validation errors."""

    pass


class SteeringValidationError(ValidationError):
    """Steering message rejected before it was buffered."""

    def __init__(self, field: str, message: str):
        super().__init__(f"Invalid steering {field}: {message}")
        self.field = field


class SessionError(SteerlineError):
    """Session-related errors."""

    pass


class SessionIdentityError(SessionError):
    """Malformed conversation identity or session key."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


class IllegalTransitionError(SessionError):
    """A state change not allowed by the session state tables."""

    def __init__(self, machine: str, current: str, target: str):
        super().__init__(f"Illegal {machine} transition: {current} -> {target}")
        self.machine = machine
        self.current = current
        self.target = target


class QueryCancelledError(SessionError):
    """Stop was requested before the query reached the provider."""

    def __init__(self, message: str = "Query cancelled"):
        super().__init__(message)


class ChoiceTransitionError(SteerlineError):
    """Choice selection could not be applied to the current choice state."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


class ProviderError(SteerlineError):
    """Provider/agent related errors."""

    pass


class ProviderAPIError(ProviderError):
    """Provider API errors (rate limit, crash, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class QueryAbortedError(ProviderError):
    """Provider stream ended because the query was aborted."""

    def __init__(self, message: str = "aborted"):
        super().__init__(message)


class ChannelBoundaryError(SteerlineError):
    """Inbound payload refused at the channel boundary."""

    def __init__(self, code: str, message: str, retryable: bool = False):
        super().__init__(message)
        self.code = code
        self.retryable = retryable


class LaneClearedError(RuntimeError):
    """Raised when queued tasks are rejected after a lane clear."""

    def __init__(self, lane: str | None = None):
        message = f'Lane "{lane}" cleared' if lane else "Lane cleared"
        super().__init__(message)
        self.lane = lane or ""
