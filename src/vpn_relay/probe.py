"""Liveness probing through the system routing table."""

import asyncio
import time
from collections.abc import Awaitable, Callable

from .exceptions import ConnectionTimeoutError, ProcessError
from .logging import get_logger

logger = get_logger(__name__)

RouteCheck = Callable[[], Awaitable[bool]]


async def tunnel_route_present(interface_prefix: str = "tun") -> bool:
    """Check whether a tunnel interface shows up in ``ip route``.

    This only proves the local route exists, not that traffic can pass.

    Args:
        interface_prefix: Interface name prefix to look for

    Returns:
        True if the routing table mentions the prefix
    """
    try:
        process = await asyncio.create_subprocess_exec(
            "ip",
            "route",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        stdout, _ = await process.communicate()
    except OSError as e:
        logger.debug("Routing table query failed", error=str(e))
        return False
    return interface_prefix in stdout.decode(errors="replace")


class LivenessProber:
    """Polls a route check until it passes or a deadline expires."""

    def __init__(
        self,
        check: RouteCheck | None = None,
        interval: float = 1.0,
        timeout: float = 30.0,
    ):
        """Initialize prober.

        Args:
            check: Async predicate for "tunnel is up"; defaults to ``ip route``
            interval: Seconds between polls
            timeout: Overall deadline in seconds
        """
        self.check = check or tunnel_route_present
        self.interval = interval
        self.timeout = timeout

    async def wait_until_up(
        self,
        connection_id: str,
        is_running: Callable[[], bool] = lambda: True,
    ) -> int:
        """Poll until the tunnel route is present.

        Args:
            connection_id: Connection being probed, for errors and logs
            is_running: Reports whether the client process is still alive

        Returns:
            Number of polls it took

        Raises:
            ConnectionTimeoutError: If the deadline passes first
            ProcessError: If the client process exits before the route appears
        """
        deadline = time.monotonic() + self.timeout
        polls = 0

        while True:
            if not is_running():
                raise ProcessError(
                    f"VPN client for {connection_id} exited before connecting"
                )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ConnectionTimeoutError(connection_id, self.timeout)

            polls += 1
            try:
                up = await asyncio.wait_for(self.check(), timeout=remaining)
            except TimeoutError as e:
                raise ConnectionTimeoutError(connection_id, self.timeout) from e

            if up:
                logger.debug("Tunnel route detected", connection=connection_id, polls=polls)
                return polls

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ConnectionTimeoutError(connection_id, self.timeout)
            await asyncio.sleep(min(self.interval, remaining))
