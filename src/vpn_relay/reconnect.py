"""Bounded reconnection after unintentional client exits."""

import asyncio
from collections.abc import Awaitable, Callable

from .exceptions import VPNRelayError
from .logging import get_logger
from .models import ConnectionState, ProcessExit, Protocol
from .registry import ConnectionRegistry

logger = get_logger(__name__)

Restart = Callable[[str, Protocol], Awaitable[bool]]


class ReconnectPolicy:
    """Decides whether a dropped connection is started again.

    Only exits with a non-zero code and no signal count, and only for
    connections that reached ``connected`` since their last explicit stop.
    The exit code of the client is opaque, so no further intent is inferred.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        max_attempts: int = 3,
        delay: float = 5.0,
    ):
        self.registry = registry
        self.max_attempts = max_attempts
        self.delay = delay

    def handle_exit(
        self, event: ProcessExit, restart: Restart
    ) -> "asyncio.Task[None] | None":
        """React to a process exit.

        Must be called with the connection's registry lock held.

        Args:
            event: Exit reported by the supervisor
            restart: Coroutine function that starts a connection

        Returns:
            The scheduled reconnect task, or None when no attempt is made
        """
        name = event.connection_id
        entry = self.registry.entry(name)
        if entry is None or not event.unintentional:
            return None

        connection = entry.connection
        if not connection.was_connected:
            logger.debug("Not reconnecting, connection never came up", connection=name)
            return None

        attempts = connection.reconnect_attempts + 1
        self.registry.update(name, reconnect_attempts=attempts)

        if attempts >= self.max_attempts:
            logger.error(
                "Max reconnection attempts reached for VPN",
                connection=name,
                attempts=attempts,
            )
            self.registry.set_state(name, ConnectionState.DISCONNECTED)
            return None

        logger.info(
            "Attempting to reconnect VPN",
            connection=name,
            attempt=attempts,
            delay=self.delay,
        )
        if entry.reconnect_task is not None:
            entry.reconnect_task.cancel()
        entry.reconnect_task = asyncio.create_task(
            self._reconnect(name, connection.protocol, attempts, restart),
            name=f"vpn-reconnect-{name}",
        )
        return entry.reconnect_task

    async def _reconnect(
        self, name: str, protocol: Protocol, attempt: int, restart: Restart
    ) -> None:
        try:
            await asyncio.sleep(self.delay)
        finally:
            # only a reconnect that is still waiting counts as pending
            entry = self.registry.entry(name)
            if entry is not None and entry.reconnect_task is asyncio.current_task():
                entry.reconnect_task = None

        try:
            await restart(name, protocol)
        except VPNRelayError as e:
            logger.error(
                "Reconnection attempt failed for VPN",
                connection=name,
                attempt=attempt,
                error=str(e),
            )
        else:
            logger.info("Reconnected VPN", connection=name, attempt=attempt)

    def cancel(self, name: str) -> None:
        """Drop any pending reconnect for a connection."""
        entry = self.registry.entry(name)
        if entry is not None and entry.reconnect_task is not None:
            entry.reconnect_task.cancel()
            entry.reconnect_task = None
