# backend/sca/core/exceptions.py
from typing import Any, Optional


class SCAError(Exception):
    """Base class for errors raised by the task and resource services"""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(SCAError):
    """Missing task or resource"""

    status_code = 404


class UnauthorizedError(SCAError):
    """Ownership or group mismatch"""

    status_code = 401


class ValidationError(SCAError):
    """Missing or malformed request field"""

    status_code = 400

    def __init__(self, message: str, field: str = None, value: Any = None):
        self.field = field
        self.value = value
        super().__init__(message)


class RemoteConnectionError(SCAError):
    """SSH authentication or network failure"""


class RemoteTimeoutError(SCAError):
    """Remote operation did not complete in time"""


class RemoteStepFailure(SCAError):
    """A pipeline step failed on the remote host"""

    def __init__(self, step: str, cause: Optional[BaseException] = None):
        self.step = step
        self.cause = cause
        detail = str(cause) if cause is not None else "unknown error"
        super().__init__(f"{step} failed: {detail}")
