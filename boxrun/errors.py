"""Exceptions raised by boxrun."""

from typing import Optional


class BoxrunError(Exception):
    """Base class for every error raised by boxrun."""


class ConfigurationError(BoxrunError):
    """The daemon connection could not be configured."""


class TransportError(BoxrunError):
    """Talking to the container daemon failed."""


class DaemonConnectionError(TransportError):
    """The daemon could not be reached (refused, reset, socket gone)."""


class MalformedResponseError(TransportError):
    """The daemon answered with a body we could not make sense of."""


class DaemonError(TransportError):
    """The daemon answered with a non-success status code."""

    def __init__(self, status_code: int, explanation: str, path: Optional[str] = None):
        self.status_code = status_code
        self.explanation = explanation
        self.path = path
        message = f"{status_code} from daemon"
        if path:
            message += f" ({path})"
        if explanation:
            message += f": {explanation}"
        super().__init__(message)


class NotFound(DaemonError):
    """404: the container (or another object) does not exist."""


class ImageNotFound(NotFound):
    """404 on container creation: the image is not present locally."""


class Conflict(DaemonError):
    """409: the container is in a state that forbids the request."""


class ExecutionTimeout(BoxrunError, TimeoutError):
    """The execution did not finish before its deadline."""

    def __init__(self, timeout: float, container_id: Optional[str] = None):
        self.timeout = timeout
        self.container_id = container_id
        super().__init__(f"Execution timed out after {timeout} seconds")
