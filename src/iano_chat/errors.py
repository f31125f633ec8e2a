from __future__ import annotations

import httpx


class ChatClientError(Exception):
    """Base class for failures surfaced by the chat client."""


class StreamNetworkError(ChatClientError):
    """Connection refused, reset, or otherwise lost. Retryable."""


class StreamAbortedError(ChatClientError):
    """The stream was cancelled by the caller."""


class HttpStatusError(ChatClientError):
    def __init__(self, status: int, detail: str = ""):
        self.status = status
        self.detail = detail
        super().__init__(f"HTTP {status}: {detail}" if detail else f"HTTP {status}")


class ProtocolError(ChatClientError):
    """The backend reported a failure inside the event stream."""


class ApiError(ChatClientError):
    """A JSON endpoint answered with a non-200 ``code``."""

    def __init__(self, message: str, code: int | None = None):
        self.code = code
        super().__init__(message)


class ChatBusyError(ChatClientError):
    """A streaming send is already in flight on this store."""


# httpx.NetworkError covers ConnectError (refused / DNS), ReadError, WriteError
# and CloseError. RemoteProtocolError is raised when the peer drops the
# connection mid-response.
_NETWORK_ERRORS: tuple[type[Exception], ...] = (
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


def classify_transport_error(exc: Exception) -> ChatClientError:
    """Map an httpx exception to the client's closed error set."""
    if isinstance(exc, ChatClientError):
        return exc
    if isinstance(exc, httpx.ConnectError):
        return StreamNetworkError(f"Failed to fetch: {exc}")
    if isinstance(exc, _NETWORK_ERRORS):
        return StreamNetworkError(f"Network error: {exc}")
    if isinstance(exc, httpx.TimeoutException):
        return ChatClientError(f"Request timed out: {exc}")
    if isinstance(exc, httpx.HTTPStatusError):
        return HttpStatusError(exc.response.status_code, exc.response.text)
    return ChatClientError(str(exc) or type(exc).__name__)
