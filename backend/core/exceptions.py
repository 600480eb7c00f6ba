"""Custom exceptions for the journey engine."""


class JourneyEngineError(Exception):
    """Base exception for the journey engine."""

    def __init__(self, message: str):
        """Initialize exception with a message.

        Args:
            message: Exception message
        """
        self.message = message
        super().__init__(self.message)


class NotFoundError(JourneyEngineError):
    """Record not found."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message)


class ValidationError(JourneyEngineError):
    """Invalid workflow, node or schedule configuration."""

    def __init__(self, message: str = "Validation failed"):
        super().__init__(message)


class GraphIntegrityError(ValidationError):
    """Workflow graph violates a structural invariant."""


class ScheduleConfigError(ValidationError):
    """Schedule configuration cannot produce a fire time."""


class ConflictError(JourneyEngineError):
    """A conditional write lost against a concurrent writer."""

    def __init__(self, message: str = "Concurrent modification"):
        super().__init__(message)
