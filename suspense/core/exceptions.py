"""
Custom exceptions for the Suspense soundscape engine.
"""


class SuspenseError(Exception):
    """Base exception for all Suspense errors."""

    def __init__(self, message: str, code: str = "SUSPENSE_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


class AudioDeviceError(SuspenseError):
    """No audio output device or stream could be obtained."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="AUDIO_DEVICE_ERROR")


class GraphError(SuspenseError):
    """Invalid signal graph wiring."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="GRAPH_ERROR")


class ContextClosedError(SuspenseError):
    """Audio context used after it was released."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="CONTEXT_CLOSED")


class InvalidStateError(SuspenseError):
    """Source node started twice or stopped before starting."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_STATE")


class SchedulerError(SuspenseError):
    """Timer registration on a scheduler that has been shut down."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="SCHEDULER_ERROR")
