from typing import Optional

POLL_TIMEOUT = "POLL_TIMEOUT"
CANCELLED = "cancelled"
MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
NETWORK_ERROR = "NETWORK_ERROR"
REQUEST_TIMEOUT = "REQUEST_TIMEOUT"


class RelayError(Exception):
    code = "RELAY_ERROR"


class ConfigError(RelayError):
    code = "CONFIG_ERROR"


class InvalidTransitionError(RelayError):
    code = "INVALID_TRANSITION"


class DispatchError(RelayError):
    """Failure of a single HTTP call made by the dispatcher"""

    retryable = False

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.url = url


class NetworkError(DispatchError):
    code = NETWORK_ERROR
    retryable = True


class DispatchTimeoutError(DispatchError, TimeoutError):
    code = REQUEST_TIMEOUT
    retryable = True


class HttpError(DispatchError):
    def __init__(
        self,
        status: int,
        message: str,
        url: Optional[str] = None,
        body: bytes = b"",
    ):
        super().__init__(f"HTTP {status}: {message}", url=url)
        self.status = status
        self.body = body

    @property
    def code(self) -> str:
        return f"HTTP_{self.status}"

    @property
    def retryable(self) -> bool:
        return self.status >= 500

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status < 500


class MalformedResponseError(DispatchError):
    code = MALFORMED_RESPONSE


class PollTimeoutError(RelayError, TimeoutError):
    code = POLL_TIMEOUT

    def __init__(self, request_id: str, max_duration_ms: int):
        super().__init__(
            f"Request {request_id} did not complete within {max_duration_ms / 1000:.0f} seconds"
        )
        self.request_id = request_id
        self.max_duration_ms = max_duration_ms
