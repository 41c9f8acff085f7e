"""Settings and configuration artifact lookup for VPN relay."""

import os
import re
import shutil
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import BinaryNotFoundError, ConfigMissingError
from .logging import get_logger
from .models import Protocol

logger = get_logger(__name__)

ENV_PREFIX = "VPN_RELAY_"


def _parse_millis(raw: str) -> int | None:
    """Leading integer of a millisecond value, None if there is none."""
    match = re.match(r"\s*(\d+)", raw)
    return int(match.group(1)) if match else None


class EndpointConfig(BaseModel):
    """A proxy endpoint bound to one named connection."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    path: str = Field(min_length=2, description="Route path, e.g. /api/website1")
    connection_id: str = Field(min_length=1, description="Connection to relay through")
    protocol: Protocol = Field(default=Protocol.TCP)

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Validate endpoint route format."""
        if not v.startswith("/"):
            raise ValueError("Endpoint path must start with '/'")
        if v.endswith("/"):
            raise ValueError("Endpoint path cannot end with '/'")
        return v


DEFAULT_ENDPOINTS = [
    EndpointConfig(path="/api/website1", connection_id="website1-tcp"),
    EndpointConfig(
        path="/api/website2", connection_id="website2-udp", protocol=Protocol.UDP
    ),
    EndpointConfig(path="/api/general", connection_id="general-tcp"),
]


class RelaySettings(BaseModel):
    """Runtime settings for the lifecycle manager, forwarder and front end."""

    model_config = ConfigDict(
        str_strip_whitespace=True, validate_assignment=True, extra="forbid"
    )

    config_dir: Path = Field(
        default=Path("config"), description="Directory with .ovpn and auth files"
    )
    logs_dir: Path = Field(
        default=Path("logs"), description="Directory for client log and pid files"
    )
    openvpn_binary: str | None = Field(
        default=None, description="Path to openvpn (searched in PATH if None)"
    )

    connect_timeout: float = Field(default=30.0, gt=0, le=600.0)
    probe_interval: float = Field(default=1.0, gt=0, le=60.0)
    stop_grace_period: float = Field(default=5.0, ge=0, le=60.0)

    max_reconnect_attempts: int = Field(default=3, ge=0, le=100)
    reconnect_delay: float = Field(default=5.0, ge=0, le=600.0)

    request_timeout: float = Field(default=30.0, gt=0, le=600.0)
    max_retries: int = Field(default=3, ge=1, le=20)
    retry_backoff: float = Field(default=1.0, ge=0, le=60.0)
    target_param: str = Field(default="url", min_length=1)

    environment: str = Field(default="development")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000, ge=1, le=65535)
    autostart_delay: float = Field(default=2.0, ge=0)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    rate_limit_max: int = Field(
        default=100, ge=0, description="Requests per window per client IP, 0 disables"
    )
    rate_limit_window: float = Field(default=900.0, gt=0)
    max_body_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    endpoints: list[EndpointConfig] = Field(
        default_factory=lambda: list(DEFAULT_ENDPOINTS)
    )

    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level name."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def is_production(self) -> bool:
        """True when internal error messages must not reach clients."""
        return self.environment.lower() == "production"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "RelaySettings":
        """Build settings from environment variables.

        ``VPN_RELAY_<FIELD>`` variables override fields by name. The variables
        ``PORT``, ``NODE_ENV``, ``MAX_RETRIES`` and ``REQUEST_TIMEOUT``
        (milliseconds) are honoured as well.

        Args:
            environ: Mapping to read instead of ``os.environ``

        Returns:
            Validated settings
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}

        if "PORT" in env:
            values["port"] = env["PORT"]
        if "NODE_ENV" in env:
            values["environment"] = env["NODE_ENV"]
        if "MAX_RETRIES" in env:
            values["max_retries"] = env["MAX_RETRIES"]
        if "REQUEST_TIMEOUT" in env:
            timeout_ms = _parse_millis(env["REQUEST_TIMEOUT"])
            if timeout_ms:
                values["request_timeout"] = timeout_ms / 1000
            else:
                logger.warning(
                    "Ignoring invalid REQUEST_TIMEOUT, using default",
                    value=env["REQUEST_TIMEOUT"],
                )

        for name, field in cls.model_fields.items():
            if name == "endpoints":
                continue
            raw = env.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            if field.annotation is bool:
                values[name] = raw.strip().lower() in {"1", "true", "yes", "on"}
            elif field.annotation == list[str]:
                values[name] = [item.strip() for item in raw.split(",") if item.strip()]
            else:
                values[name] = raw

        return cls.model_validate(values)


class ArtifactLocator:
    """Resolves configuration and credential files for a connection."""

    CREDENTIALS_FILE = "auth.txt"

    def __init__(self, config_dir: Path | str):
        self.config_dir = Path(config_dir)

    @staticmethod
    def config_filename(protocol: Protocol) -> str:
        return f"vpn-{protocol.value}.ovpn"

    def resolve(self, connection_id: str, protocol: Protocol) -> tuple[Path, Path]:
        """Find config and credential files for a connection.

        A directory named after the connection takes precedence over the
        shared files in ``config_dir``.

        Args:
            connection_id: Connection name
            protocol: Tunnel protocol

        Returns:
            (config_path, credentials_path)

        Raises:
            ConfigMissingError: If either file does not exist
        """
        config_name = self.config_filename(protocol)
        override_dir = self.config_dir / connection_id

        config_path = override_dir / config_name
        if not config_path.is_file():
            config_path = self.config_dir / config_name

        auth_path = override_dir / self.CREDENTIALS_FILE
        if not auth_path.is_file():
            auth_path = self.config_dir / self.CREDENTIALS_FILE

        if not config_path.is_file():
            raise ConfigMissingError(f"VPN config file not found: {config_path}")

        if not auth_path.is_file():
            raise ConfigMissingError(f"Auth file not found: {auth_path}")

        logger.debug(
            "Resolved connection artifacts",
            connection=connection_id,
            config=str(config_path),
            auth=str(auth_path),
        )
        return config_path, auth_path


def find_openvpn_binary(binary_path: str | None = None) -> str:
    """Find the OpenVPN client binary.

    Args:
        binary_path: Explicit path to check first

    Returns:
        Path to an executable openvpn binary

    Raises:
        BinaryNotFoundError: If no usable binary is found
    """
    if binary_path:
        path = Path(binary_path)
        if not path.is_file():
            raise BinaryNotFoundError(f"Binary not found: {binary_path}")
        if not os.access(binary_path, os.X_OK):
            raise BinaryNotFoundError(f"Binary is not executable: {binary_path}")
        return binary_path

    found = shutil.which("openvpn")
    if found is None:
        raise BinaryNotFoundError(
            "OpenVPN client binary 'openvpn' not found in system PATH. "
            f"Install OpenVPN or set {ENV_PREFIX}OPENVPN_BINARY."
        )
    return found
