"""Connection registry: the single source of truth for connection state."""

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .logging import get_logger
from .models import Connection, ConnectionState, Protocol

if TYPE_CHECKING:
    from .process import ProcessSupervisor

logger = get_logger(__name__)


@dataclass
class ConnectionEntry:
    """Registry slot for one connection name.

    ``connection`` is replaced wholesale on every update. The remaining
    fields are owned by the lifecycle manager and only touched while
    ``lock`` is held.
    """

    connection: Connection
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    supervisor: "ProcessSupervisor | None" = None
    start_task: "asyncio.Task[bool] | None" = None
    reconnect_task: "asyncio.Task[None] | None" = None
    # bumped by every stop; a launch from an older generation must not spawn
    generation: int = 0

    @property
    def is_live(self) -> bool:
        return self.supervisor is not None


class ConnectionRegistry:
    """In-memory table of named connections with per-name locking."""

    def __init__(self) -> None:
        self._entries: dict[str, ConnectionEntry] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def ensure(self, name: str, protocol: Protocol) -> ConnectionEntry:
        """Get the entry for a name, creating it on first use.

        An existing entry keeps its state but takes the newly requested
        protocol, since the next launch will use that protocol's config.

        Args:
            name: Connection name
            protocol: Requested protocol

        Returns:
            Registry entry for the name
        """
        entry = self._entries.get(name)
        if entry is None:
            entry = ConnectionEntry(connection=Connection(name=name, protocol=protocol))
            self._entries[name] = entry
            logger.debug("Registered connection", connection=name, protocol=protocol.value)
        elif entry.connection.protocol != protocol and not entry.is_live:
            self.update(name, protocol=protocol)
        return entry

    def entry(self, name: str) -> ConnectionEntry | None:
        return self._entries.get(name)

    def get_connection(self, name: str) -> Connection | None:
        """Get the current connection snapshot by name.

        Args:
            name: Connection name

        Returns:
            Connection if tracked, None otherwise
        """
        entry = self._entries.get(name)
        return entry.connection if entry else None

    def get_state(self, name: str) -> ConnectionState:
        """State of a connection; untracked names read as disconnected."""
        connection = self.get_connection(name)
        if connection is None:
            return ConnectionState.DISCONNECTED
        return connection.state

    def set_state(self, name: str, state: ConnectionState) -> Connection:
        """Transition a tracked connection to a new state.

        Args:
            name: Connection name
            state: New state

        Returns:
            Updated connection

        Raises:
            KeyError: If the name is not tracked
        """
        entry = self._entries[name]
        previous = entry.connection.state
        entry.connection = entry.connection.with_state(state)
        if previous != state:
            logger.info(
                "Connection state changed",
                connection=name,
                previous=previous.value,
                state=state.value,
            )
        return entry.connection

    def update(self, name: str, **changes: Any) -> Connection:
        """Replace fields of a tracked connection.

        Raises:
            KeyError: If the name is not tracked
        """
        entry = self._entries[name]
        entry.connection = entry.connection.model_copy(update=changes)
        return entry.connection

    def lock(self, name: str) -> asyncio.Lock:
        """Lock serializing state changes for one name.

        Raises:
            KeyError: If the name is not tracked
        """
        return self._entries[name].lock

    def live_names(self) -> list[str]:
        """Names of connections that currently own a client process."""
        return [name for name, entry in self._entries.items() if entry.is_live]

    def list_connections(
        self, state: ConnectionState | None = None
    ) -> list[Connection]:
        """List connections with optional state filtering.

        Args:
            state: Filter by state

        Returns:
            List of matching connections
        """
        connections = [entry.connection for entry in self._entries.values()]

        if state is not None:
            connections = [c for c in connections if c.state == state]

        return connections

    def clear(self) -> None:
        """Remove every entry. Only used during shutdown."""
        self._entries.clear()
        logger.info("Cleared all connections from registry")

    def to_dict(self) -> dict[str, Any]:
        return {
            "connections": [
                entry.connection.model_dump(mode="json")
                for entry in self._entries.values()
            ]
        }
