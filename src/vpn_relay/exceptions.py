"""Custom exceptions for VPN relay."""


class VPNRelayError(Exception):
    """Base exception for all VPN relay errors."""

    pass


class ConfigMissingError(VPNRelayError):
    """Raised when a configuration or credential artifact does not exist."""

    pass


class ProcessError(VPNRelayError):
    """Raised when the tunneling client process fails to launch or run."""

    pass


class BinaryNotFoundError(ProcessError):
    """Raised when the tunneling client binary is not found or not executable."""

    pass


class ConnectionTimeoutError(VPNRelayError):
    """Raised when a connection does not come up before the probe deadline."""

    def __init__(self, connection_id: str, timeout: float):
        super().__init__(
            f"VPN connection {connection_id} timed out after {timeout:g}s"
        )
        self.connection_id = connection_id
        self.timeout = timeout


class ConnectionInactiveError(VPNRelayError):
    """Raised when forwarding through a connection that is not connected."""

    def __init__(self, connection_id: str):
        super().__init__(f"VPN connection {connection_id} is not active")
        self.connection_id = connection_id


class InvalidTargetError(VPNRelayError):
    """Raised when a forward target URL is malformed."""

    pass


class ForwardExhaustedError(VPNRelayError):
    """Raised when every forward attempt failed at the transport level."""

    def __init__(
        self,
        connection_id: str,
        attempts: int,
        last_error: str,
        connection_dropped: bool = False,
    ):
        super().__init__(f"Request failed after {attempts} attempts: {last_error}")
        self.connection_id = connection_id
        self.attempts = attempts
        self.last_error = last_error
        self.connection_dropped = connection_dropped
