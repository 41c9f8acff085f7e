"""Connection, request and response models.

Connections follow the immutable update pattern: every state change produces
a new model instance that the registry swaps in.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Protocol(str, Enum):
    """Transport the tunnel configuration is built for."""

    TCP = "tcp"
    UDP = "udp"


class ConnectionState(str, Enum):
    """Connection state enumeration."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class Connection(BaseModel):
    """Tracked state of one named tunnel connection."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, description="Unique connection name")
    protocol: Protocol = Field(description="Protocol of the launched config")
    state: ConnectionState = Field(default=ConnectionState.DISCONNECTED)
    started_at: datetime | None = Field(
        default=None, description="When the current client process was spawned"
    )
    connected_at: datetime | None = Field(default=None)
    reconnect_attempts: int = Field(default=0, ge=0)
    was_connected: bool = Field(
        default=False,
        description="Reached connected at least once since the last explicit stop",
    )

    def with_state(self, state: ConnectionState) -> "Connection":
        """Create new connection instance with updated state.

        Reaching CONNECTED stamps ``connected_at`` and resets the reconnect
        counter.

        Args:
            state: New connection state

        Returns:
            New connection instance
        """
        update_data: dict[str, Any] = {"state": state}

        if state == ConnectionState.CONNECTED:
            update_data["connected_at"] = datetime.now()
            update_data["reconnect_attempts"] = 0
            update_data["was_connected"] = True

        return self.model_copy(update=update_data)


class ConnectionStatus(BaseModel):
    """Point-in-time status report for one connection."""

    model_config = ConfigDict(frozen=True)

    name: str
    state: ConnectionState
    protocol: Protocol | None = None
    uptime: float = Field(default=0.0, ge=0, description="Seconds since spawn")
    reconnect_attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.state.value,
            "protocol": self.protocol.value if self.protocol else "unknown",
            "uptime": round(self.uptime, 3),
            "reconnectAttempts": self.reconnect_attempts,
        }


class ProcessExit(BaseModel):
    """Exit notification emitted by a process supervisor."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    connection_id: str
    supervisor: Any = Field(description="Supervisor that owned the process")
    returncode: int | None
    signal: int | None = None
    requested: bool = Field(
        default=False, description="Exit followed a stop or timeout kill"
    )

    @property
    def unintentional(self) -> bool:
        """Non-zero exit code with no signal and no stop request."""
        return (
            not self.requested
            and self.signal is None
            and self.returncode is not None
            and self.returncode != 0
        )


HOP_REQUEST_HEADERS = frozenset({"host", "content-length"})


class RequestDescriptor(BaseModel):
    """Outbound request to relay through a connection."""

    model_config = ConfigDict(frozen=True)

    url: str = Field(description="Absolute target URL")
    method: str = Field(default="GET")
    headers: dict[str, str] = Field(default_factory=dict)
    params: dict[str, str | list[str]] = Field(default_factory=dict)
    content: bytes | None = Field(default=None, description="Raw request body")
    json_body: Any = Field(default=None, description="Body to send as JSON")

    def sanitized(self, target_param: str = "url") -> "RequestDescriptor":
        """Copy without hop-specific headers and the target query key.

        Args:
            target_param: Query key that carries the target URL

        Returns:
            New descriptor safe to send upstream
        """
        headers = {
            key: value
            for key, value in self.headers.items()
            if key.lower() not in HOP_REQUEST_HEADERS
        }
        params = {
            key: value for key, value in self.params.items() if key != target_param
        }
        return self.model_copy(
            update={"headers": headers, "params": params, "method": self.method.upper()}
        )


class NormalizedResponse(BaseModel):
    """Upstream response in a uniform shape, whatever the retry count."""

    model_config = ConfigDict(frozen=True)

    connection_id: str
    status_code: int
    status_text: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    attempts: int = Field(default=1, ge=1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status_code,
            "statusText": self.status_text,
            "headers": self.headers,
            "data": self.body,
        }
