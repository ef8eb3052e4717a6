import asyncio
import json
from typing import Any, Iterable, Mapping, Optional

import aiohttp
from loguru import logger

from capture_relay.errors import DispatchTimeoutError, HttpError, NetworkError
from capture_relay.models import DEFAULT_SENSITIVE_HEADERS, RawResponse

REDACTED = "***"


def redact_headers(
    headers: Mapping[str, str], sensitive: Iterable[str] = DEFAULT_SENSITIVE_HEADERS
) -> dict[str, str]:
    """Returns a copy of ``headers`` with the values of sensitive names masked"""
    names = {name.lower() for name in sensitive}
    return {key: (REDACTED if key.lower() in names else value) for key, value in headers.items()}


class HttpDispatcher:
    """Issues single HTTP calls with a hard deadline and typed failures. Never retries."""

    def __init__(
        self,
        sensitive_headers: Iterable[str] = DEFAULT_SENSITIVE_HEADERS,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.sensitive_headers = frozenset(name.lower() for name in sensitive_headers)
        self.logger = logger
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "HttpDispatcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def send(
        self,
        method: str,
        url: str,
        body: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout_ms: int = 30000,
    ) -> RawResponse:
        """Performs one request, returning the response or raising a DispatchError"""
        request_headers = {"Accept": "application/json"}
        data = None
        if body is not None:
            request_headers["Content-Type"] = "application/json"
            data = json.dumps(body)
        request_headers.update(headers or {})

        self.logger.debug(
            f"{method} {url} headers={redact_headers(request_headers, self.sensitive_headers)} "
            f"timeout={timeout_ms}ms"
        )

        session = await self._get_session()
        timeout_s = timeout_ms / 1000
        try:
            return await asyncio.wait_for(
                self._perform(session, method, url, data, request_headers, timeout_s),
                timeout=timeout_s,
            )
        except (asyncio.TimeoutError, aiohttp.ServerTimeoutError):
            self.logger.warning(f"{method} {url} timed out after {timeout_ms}ms")
            raise DispatchTimeoutError(f"Request timed out after {timeout_ms}ms", url=url)
        except aiohttp.ClientResponseError as e:
            self.logger.error(f"HTTP error {e.status} at {url}: {e.message}")
            raise HttpError(e.status, e.message, url=url)
        except aiohttp.ClientError as e:
            self.logger.error(f"Network error at {url}: {e}")
            raise NetworkError(f"Network error: {e}", url=url)

    async def _perform(
        self,
        session: aiohttp.ClientSession,
        method: str,
        url: str,
        data: Optional[str],
        headers: dict[str, str],
        timeout_s: float,
    ) -> RawResponse:
        async with session.request(
            method,
            url,
            data=data,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout_s),
        ) as response:
            payload = await response.read()
            if not 200 <= response.status < 300:
                self.logger.error(f"HTTP error {response.status} at {url}: {response.reason}")
                raise HttpError(response.status, response.reason or "", url=url, body=payload)
            self.logger.debug(f"{method} {url} -> {response.status} ({len(payload)} bytes)")
            return RawResponse(
                status_code=response.status,
                body=payload,
                headers=dict(response.headers),
            )
