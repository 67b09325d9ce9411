"""Custom exceptions for Event Intelligence."""


class EventIntelError(Exception):
    """Base exception for ingestion errors."""


class InvalidEvent(EventIntelError):
    """Raised when an event is missing its source or has a non-mapping payload."""

    def __init__(self, message: str = "Invalid event: missing source or payload"):
        self.reason = "invalid_event"
        super().__init__(message)


class ProcessingError(EventIntelError):
    """Raised for storage or injected faults during the commit sequence."""


class SimulatedFailure(ProcessingError):
    """Fault injected before the commit point to exercise rollback."""

    def __init__(self, message: str = "Simulated database failure"):
        super().__init__(message)


class UnitOfWorkTimeout(ProcessingError):
    """Raised when a unit of work runs past its caller-supplied deadline."""

    def __init__(self, elapsed_seconds: float, deadline_seconds: float):
        self.elapsed_seconds = elapsed_seconds
        self.deadline_seconds = deadline_seconds
        super().__init__(
            f"Unit of work exceeded deadline: elapsed={elapsed_seconds:.3f}s, deadline={deadline_seconds:.3f}s"
        )


class UniqueConstraintViolation(EventIntelError):
    """Raised by the store when a uniquely-keyed insert collides."""

    def __init__(self, table: str, key: str):
        self.table = table
        self.key = key
        super().__init__(f"Unique constraint violation on {table}: {key}")
