"""Resilient relay of HTTP requests through an active VPN connection."""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from types import TracebackType
from typing import Any, Protocol

import httpx

from .exceptions import (
    ConnectionInactiveError,
    ForwardExhaustedError,
    InvalidTargetError,
)
from .logging import get_logger
from .models import NormalizedResponse, RequestDescriptor

logger = get_logger(__name__)

# Connection-management headers the caller must not copy back to its client
HOP_RESPONSE_HEADERS = frozenset({"transfer-encoding", "connection", "keep-alive"})


class ConnectionStatusSource(Protocol):
    """The part of the lifecycle manager the forwarder depends on."""

    def is_active(self, name: str) -> bool: ...


def validate_target(url: str) -> httpx.URL:
    """Parse and check a forward target.

    Args:
        url: Target URL

    Returns:
        Parsed URL

    Raises:
        InvalidTargetError: If the URL is not an absolute http(s) URL
    """
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as e:
        raise InvalidTargetError(f"Invalid URL format: {url!r}") from e

    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise InvalidTargetError(f"Invalid URL format: {url!r}")
    return parsed


def relayable_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Upstream response headers minus connection-management ones."""
    return {
        key: value
        for key, value in headers.items()
        if key.lower() not in HOP_RESPONSE_HEADERS
    }


def decode_body(response: httpx.Response) -> Any:
    """Decode a response body the way a JSON API client would.

    JSON content types become Python objects, other text becomes ``str`` and
    anything that is not text stays ``bytes``.
    """
    content_type = response.headers.get("content-type", "").lower()
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            pass
    if not response.content:
        return ""
    try:
        return response.content.decode(response.encoding or "utf-8")
    except (UnicodeDecodeError, LookupError):
        return response.content


class RequestForwarder:
    """Sends one request through a named connection with bounded retry.

    Only transport failures are retried. Every HTTP status, 4xx and 5xx
    included, is returned to the caller as a normal response.
    """

    def __init__(
        self,
        connections: ConnectionStatusSource,
        client: httpx.AsyncClient | None = None,
        *,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff: float = 1.0,
        target_param: str = "url",
    ):
        """Initialize forwarder.

        Args:
            connections: Source of connection liveness (the lifecycle manager)
            client: HTTP client to send with (created if None)
            timeout: Per-attempt timeout in seconds
            max_retries: Maximum number of attempts
            backoff: Base backoff; attempt ``n`` waits ``n * backoff`` seconds
            target_param: Query key carrying the target URL, stripped before relay
        """
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.connections = connections
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff = backoff
        self.target_param = target_param
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout), follow_redirects=True
        )
        self._sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    async def __aenter__(self) -> "RequestForwarder":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def prepare(self, request: RequestDescriptor) -> RequestDescriptor:
        """Sanitize a request and validate its target.

        Raises:
            InvalidTargetError: If the target URL is malformed
        """
        sanitized = request.sanitized(self.target_param)
        validate_target(sanitized.url)
        return sanitized

    async def forward(
        self, connection_id: str, request: RequestDescriptor
    ) -> NormalizedResponse:
        """Relay a request through an active connection.

        Args:
            connection_id: Connection to relay through
            request: Outbound request

        Returns:
            Upstream response with the attempt count

        Raises:
            ConnectionInactiveError: If the connection is not connected
            InvalidTargetError: If the target URL is malformed
            ForwardExhaustedError: If every attempt failed, the connection
                dropped between attempts, or the failure is not retryable
                (redirect loop, undecodable body)
        """
        if not self.connections.is_active(connection_id):
            raise ConnectionInactiveError(connection_id)

        prepared = self.prepare(request)
        last_error: Exception | None = None

        for attempt in range(1, self.max_retries + 1):
            try:
                logger.debug(
                    "Making request through VPN",
                    connection=connection_id,
                    method=prepared.method,
                    attempt=attempt,
                )
                response = await self._send(prepared)
            except httpx.TransportError as e:
                last_error = e
                logger.warning(
                    "Request attempt failed through VPN",
                    connection=connection_id,
                    attempt=attempt,
                    error=_describe(e),
                )

                if not self.connections.is_active(connection_id):
                    logger.warning(
                        "VPN connection dropped during request", connection=connection_id
                    )
                    raise ForwardExhaustedError(
                        connection_id, attempt, _describe(e), connection_dropped=True
                    ) from e

                if attempt < self.max_retries:
                    await self._sleep(self.backoff * attempt)
                continue
            except httpx.RequestError as e:
                # redirect loops and undecodable bodies fail the same way again
                logger.warning(
                    "Request failed through VPN, not retrying",
                    connection=connection_id,
                    attempt=attempt,
                    error=_describe(e),
                )
                raise ForwardExhaustedError(connection_id, attempt, _describe(e)) from e

            logger.info(
                "Request successful through VPN",
                connection=connection_id,
                status=response.status_code,
                reason=response.reason_phrase,
                attempt=attempt,
            )
            return NormalizedResponse(
                connection_id=connection_id,
                status_code=response.status_code,
                status_text=response.reason_phrase,
                headers=dict(response.headers.items()),
                body=decode_body(response),
                attempts=attempt,
            )

        assert last_error is not None
        raise ForwardExhaustedError(
            connection_id, self.max_retries, _describe(last_error)
        ) from last_error

    async def _send(self, request: RequestDescriptor) -> httpx.Response:
        kwargs: dict[str, Any] = {
            "headers": request.headers,
            "params": request.params,
            "timeout": self.timeout,
        }
        if request.json_body is not None:
            kwargs["json"] = request.json_body
        elif request.content is not None:
            kwargs["content"] = request.content

        return await self._client.request(request.method, request.url, **kwargs)


def _describe(error: Exception) -> str:
    return str(error) or type(error).__name__
