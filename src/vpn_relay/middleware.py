"""Cross-cutting HTTP protections for the relay front end."""

import time
from collections import deque
from collections.abc import Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.middleware.cors import CORSMiddleware

from .config import RelaySettings
from .logging import get_logger

logger = get_logger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]

# Conservative browser hardening headers, applied unless a route set its own
SECURITY_HEADERS = {
    "Content-Security-Policy": "default-src 'self'; frame-ancestors 'self'",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "SAMEORIGIN",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}

RATE_LIMIT_MESSAGE = "Too many requests from this IP, please try again later"


class SlidingWindowRateLimiter:
    """Per-client request budget over a sliding time window."""

    def __init__(
        self,
        max_requests: int = 100,
        window: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize rate limiter.

        Args:
            max_requests: Requests allowed per client within one window
            window: Window length in seconds
            clock: Monotonic time source
        """
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}

    def check(self, client: str) -> bool:
        """Record a request and report whether it is within budget."""
        now = self._clock()
        hits = self._hits.setdefault(client, deque())
        while hits and now - hits[0] >= self.window:
            hits.popleft()

        if len(hits) >= self.max_requests:
            return False

        hits.append(now)
        return True

    def retry_after(self, client: str) -> float:
        """Seconds until the client's oldest counted request expires."""
        hits = self._hits.get(client)
        if not hits:
            return 0.0
        return max(self.window - (self._clock() - hits[0]), 0.0)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def install_protections(
    app: FastAPI,
    settings: RelaySettings,
    limiter: SlidingWindowRateLimiter | None = None,
) -> None:
    """Add CORS, security headers, the body size limit and rate limiting.

    Args:
        app: Application to protect
        settings: Source of the limits and allowed origins
        limiter: Rate limiter to use (built from settings if None)
    """
    limiter = limiter or SlidingWindowRateLimiter(
        settings.rate_limit_max, settings.rate_limit_window
    )

    @app.middleware("http")
    async def body_limit(request: Request, call_next: CallNext) -> Response:
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > settings.max_body_bytes:
            logger.warning(
                "Rejected oversized request body",
                path=request.url.path,
                size=int(declared),
                limit=settings.max_body_bytes,
            )
            return JSONResponse(
                status_code=413, content={"error": "Request body too large"}
            )
        return await call_next(request)

    if settings.rate_limit_max > 0:

        @app.middleware("http")
        async def rate_limit(request: Request, call_next: CallNext) -> Response:
            client = _client_ip(request)
            if not limiter.check(client):
                logger.warning("Rate limit exceeded", client=client)
                return JSONResponse(
                    status_code=429,
                    content={"error": RATE_LIMIT_MESSAGE},
                    headers={"Retry-After": str(int(limiter.retry_after(client)) + 1)},
                )
            return await call_next(request)

    @app.middleware("http")
    async def security_headers(request: Request, call_next: CallNext) -> Response:
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    # the last middleware added runs first, so rejections above still get
    # security and CORS headers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
