"""Project error hierarchy."""


class OllaBridgeError(Exception):
    """Base error."""


class BackendUnreachableError(OllaBridgeError):
    """Raised when the backend cannot be connected to or times out."""


class BackendHTTPError(OllaBridgeError):
    """Raised when the backend answers with a non-success status."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"backend_http_error:{status_code}:{detail}")
        self.status_code = status_code
        self.detail = detail


class BackendStreamError(OllaBridgeError):
    """Raised when the backend connection fails after the stream has started."""
