"""VPN relay - supervised VPN tunnels with resilient HTTP request relay."""

from .config import ArtifactLocator, EndpointConfig, RelaySettings
from .exceptions import (
    BinaryNotFoundError,
    ConfigMissingError,
    ConnectionInactiveError,
    ConnectionTimeoutError,
    ForwardExhaustedError,
    InvalidTargetError,
    ProcessError,
    VPNRelayError,
)
from .forwarder import RequestForwarder, relayable_headers
from .logging import get_logger, setup_logging
from .manager import ConnectionManager
from .models import (
    Connection,
    ConnectionState,
    ConnectionStatus,
    NormalizedResponse,
    Protocol,
    RequestDescriptor,
)
from .probe import LivenessProber
from .process import ProcessSupervisor
from .reconnect import ReconnectPolicy
from .registry import ConnectionRegistry

__version__ = "0.1.0"


__all__ = [
    # Lifecycle
    "ConnectionManager",
    "ConnectionRegistry",
    "ProcessSupervisor",
    "LivenessProber",
    "ReconnectPolicy",
    # Forwarding
    "RequestForwarder",
    "relayable_headers",
    # Models
    "Connection",
    "ConnectionState",
    "ConnectionStatus",
    "Protocol",
    "RequestDescriptor",
    "NormalizedResponse",
    # Configuration
    "RelaySettings",
    "EndpointConfig",
    "ArtifactLocator",
    # Exceptions
    "VPNRelayError",
    "ConfigMissingError",
    "ConnectionTimeoutError",
    "ConnectionInactiveError",
    "InvalidTargetError",
    "ForwardExhaustedError",
    "ProcessError",
    "BinaryNotFoundError",
    # Logging
    "get_logger",
    "setup_logging",
]
