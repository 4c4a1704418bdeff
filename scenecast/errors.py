"""
Error taxonomy for the companion.

Nothing here is process-fatal: every error is caught at a stage boundary,
reported, and the auto-loop reschedules.
"""


class CompanionError(Exception):
    """Base class for all companion errors."""


class DeviceError(CompanionError):
    """Capture device unavailable or access denied."""


class NetworkError(CompanionError):
    """An outbound call did not succeed."""

    def __init__(self, message: str, status: int = 0, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class ParseError(CompanionError):
    """A response did not have the expected shape."""


class ValidationError(CompanionError):
    """Session start preconditions were not met."""


class ConcurrencyRejection(CompanionError):
    """A cycle or render is already in flight."""


def format_error(error: object) -> str:
    """Render an error for the status board."""
    if isinstance(error, BaseException):
        message = str(error)
        return message if message else type(error).__name__
    if isinstance(error, str):
        return error
    return "Unknown error"
