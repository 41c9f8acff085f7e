"""Shared pytest fixtures for VPN relay tests."""

from collections.abc import Callable
from pathlib import Path

import pytest

from vpn_relay.config import RelaySettings
from vpn_relay.manager import ConnectionManager
from vpn_relay.probe import LivenessProber


@pytest.fixture
def config_dir(tmp_path):
    """Create a config directory with tcp/udp configs and credentials.

    Returns:
        Path: Directory holding vpn-tcp.ovpn, vpn-udp.ovpn and auth.txt
    """
    directory = tmp_path / "config"
    directory.mkdir()
    (directory / "vpn-tcp.ovpn").write_text("client\nproto tcp\ndev tun\n")
    (directory / "vpn-udp.ovpn").write_text("client\nproto udp\ndev tun\n")
    (directory / "auth.txt").write_text("user\nsecret\n")
    return directory


@pytest.fixture
def spawn_log(tmp_path):
    """File that fake client binaries append one line to per launch."""
    return tmp_path / "spawns.log"


@pytest.fixture
def tunnel_marker(tmp_path):
    """File whose presence means "tunnel route is up" for fake route checks."""
    return tmp_path / "tun-up"


@pytest.fixture
def make_binary(tmp_path, spawn_log):
    """Factory for fake openvpn executables.

    Each binary records its launch in ``spawn_log`` and then runs ``body``
    as a POSIX shell script.

    Returns:
        Callable[[str], Path]: Creates a binary from a script body
    """
    counter = 0

    def _make(body: str) -> Path:
        nonlocal counter
        counter += 1
        path = tmp_path / f"openvpn-{counter}"
        path.write_text(f'#!/bin/sh\necho "$*" >> "{spawn_log}"\n{body}\n')
        path.chmod(0o755)
        return path

    return _make


@pytest.fixture
def spawn_count(spawn_log) -> Callable[[], int]:
    """Number of times any fake binary was launched."""

    def _count() -> int:
        if not spawn_log.exists():
            return 0
        return len(spawn_log.read_text().splitlines())

    return _count


@pytest.fixture
def make_settings(tmp_path, config_dir):
    """Factory for settings tuned for fast tests.

    Returns:
        Callable[..., RelaySettings]: Builds settings, keyword overrides allowed
    """

    def _make(binary: Path | None = None, **overrides) -> RelaySettings:
        values = {
            "config_dir": config_dir,
            "logs_dir": tmp_path / "logs",
            "openvpn_binary": str(binary) if binary else None,
            "connect_timeout": 2.0,
            "probe_interval": 0.02,
            "stop_grace_period": 0.5,
            "reconnect_delay": 0.05,
            "max_reconnect_attempts": 3,
            "request_timeout": 1.0,
            "retry_backoff": 0.0,
            "endpoints": [],
        }
        values.update(overrides)
        return RelaySettings(**values)

    return _make


@pytest.fixture
def marker_check(tunnel_marker):
    """Async route check that passes while the tunnel marker file exists."""

    async def _check() -> bool:
        return tunnel_marker.exists()

    return _check


@pytest.fixture
def make_manager(make_settings, marker_check):
    """Factory for managers probing the tunnel marker file.

    Returns:
        Callable[..., ConnectionManager]: Builds a manager around a binary
    """

    def _make(binary=None, check=None, **overrides) -> ConnectionManager:
        settings = make_settings(binary, **overrides)
        prober = LivenessProber(
            check or marker_check,
            interval=settings.probe_interval,
            timeout=settings.connect_timeout,
        )
        return ConnectionManager(settings, prober=prober)

    return _make


@pytest.fixture
def tunnel_binary(make_binary, tunnel_marker):
    """Client that brings the tunnel up and stays connected."""
    return make_binary(f'touch "{tunnel_marker}"\nexec sleep 30')
