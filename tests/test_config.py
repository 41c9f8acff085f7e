"""Tests for settings and artifact lookup."""

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from vpn_relay.config import (
    ArtifactLocator,
    EndpointConfig,
    RelaySettings,
    find_openvpn_binary,
)
from vpn_relay.exceptions import BinaryNotFoundError, ConfigMissingError
from vpn_relay.models import Protocol


class TestRelaySettings:
    def test_defaults(self):
        settings = RelaySettings()

        assert settings.connect_timeout == 30.0
        assert settings.probe_interval == 1.0
        assert settings.stop_grace_period == 5.0
        assert settings.max_reconnect_attempts == 3
        assert settings.reconnect_delay == 5.0
        assert settings.request_timeout == 30.0
        assert settings.max_retries == 3
        assert settings.retry_backoff == 1.0
        assert settings.target_param == "url"
        assert [e.connection_id for e in settings.endpoints] == [
            "website1-tcp",
            "website2-udp",
            "general-tcp",
        ]
        assert not settings.is_production

    def test_rejects_unknown_fields(self):
        with pytest.raises(ValidationError):
            RelaySettings(unknown_option=True)

    def test_rejects_invalid_timeout(self):
        with pytest.raises(ValidationError):
            RelaySettings(connect_timeout=0)

    def test_log_level_normalized(self):
        assert RelaySettings(log_level="debug").log_level == "DEBUG"

        with pytest.raises(ValidationError):
            RelaySettings(log_level="chatty")

    def test_production_mode(self):
        assert RelaySettings(environment="Production").is_production

    def test_from_env_reads_original_variables(self):
        """PORT, NODE_ENV, MAX_RETRIES and REQUEST_TIMEOUT (ms) are honoured"""
        settings = RelaySettings.from_env(
            {
                "PORT": "8080",
                "NODE_ENV": "production",
                "MAX_RETRIES": "5",
                "REQUEST_TIMEOUT": "2500",
            }
        )

        assert settings.port == 8080
        assert settings.is_production
        assert settings.max_retries == 5
        assert settings.request_timeout == 2.5

    @pytest.mark.parametrize("raw", ["soon", "", "0"])
    def test_from_env_bad_request_timeout_uses_default(self, raw):
        settings = RelaySettings.from_env({"REQUEST_TIMEOUT": raw})

        assert settings.request_timeout == 30.0

    def test_from_env_request_timeout_leading_digits(self):
        assert RelaySettings.from_env({"REQUEST_TIMEOUT": "4500ms"}).request_timeout == 4.5

    def test_from_env_cors_origins(self):
        settings = RelaySettings.from_env(
            {"VPN_RELAY_CORS_ORIGINS": "https://a.example, https://b.example"}
        )

        assert settings.cors_origins == ["https://a.example", "https://b.example"]

    def test_from_env_prefixed_variables(self):
        settings = RelaySettings.from_env(
            {
                "VPN_RELAY_CONFIG_DIR": "/etc/vpn",
                "VPN_RELAY_MAX_RECONNECT_ATTEMPTS": "7",
                "VPN_RELAY_LOG_JSON": "yes",
                "VPN_RELAY_OPENVPN_BINARY": "/usr/sbin/openvpn",
            }
        )

        assert settings.config_dir == Path("/etc/vpn")
        assert settings.max_reconnect_attempts == 7
        assert settings.log_json is True
        assert settings.openvpn_binary == "/usr/sbin/openvpn"

    def test_from_env_prefixed_overrides_original(self):
        settings = RelaySettings.from_env({"PORT": "8080", "VPN_RELAY_PORT": "9090"})

        assert settings.port == 9090

    def test_from_env_invalid_value(self):
        with pytest.raises(ValidationError):
            RelaySettings.from_env({"MAX_RETRIES": "0"})


class TestEndpointConfig:
    def test_valid(self):
        endpoint = EndpointConfig(
            path="/api/site", connection_id="site-udp", protocol="udp"
        )

        assert endpoint.protocol == Protocol.UDP

    @pytest.mark.parametrize("path", ["api/site", "/api/site/", "/"])
    def test_invalid_path(self, path):
        with pytest.raises(ValidationError):
            EndpointConfig(path=path, connection_id="site")


class TestArtifactLocator:
    def test_resolves_protocol_config(self, config_dir):
        locator = ArtifactLocator(config_dir)

        config_path, auth_path = locator.resolve("site-a", Protocol.UDP)

        assert config_path == config_dir / "vpn-udp.ovpn"
        assert auth_path == config_dir / "auth.txt"

    def test_connection_directory_takes_precedence(self, config_dir):
        override = config_dir / "site-a"
        override.mkdir()
        (override / "vpn-tcp.ovpn").write_text("client\n")

        config_path, auth_path = ArtifactLocator(config_dir).resolve(
            "site-a", Protocol.TCP
        )

        assert config_path == override / "vpn-tcp.ovpn"
        assert auth_path == config_dir / "auth.txt"

    def test_missing_config(self, config_dir):
        (config_dir / "vpn-udp.ovpn").unlink()

        with pytest.raises(ConfigMissingError, match="VPN config file not found"):
            ArtifactLocator(config_dir).resolve("site-a", Protocol.UDP)

    def test_missing_credentials(self, config_dir):
        (config_dir / "auth.txt").unlink()

        with pytest.raises(ConfigMissingError, match="Auth file not found"):
            ArtifactLocator(config_dir).resolve("site-a", Protocol.TCP)


class TestFindOpenvpnBinary:
    def test_explicit_path(self, tmp_path):
        binary = tmp_path / "openvpn"
        binary.write_text("#!/bin/sh\n")
        binary.chmod(0o755)

        assert find_openvpn_binary(str(binary)) == str(binary)

    def test_explicit_path_missing(self, tmp_path):
        with pytest.raises(BinaryNotFoundError, match="Binary not found"):
            find_openvpn_binary(str(tmp_path / "nope"))

    def test_explicit_path_not_executable(self, tmp_path):
        binary = tmp_path / "openvpn"
        binary.write_text("#!/bin/sh\n")
        binary.chmod(0o644)

        with pytest.raises(BinaryNotFoundError, match="not executable"):
            find_openvpn_binary(str(binary))

    def test_searches_path(self, tmp_path, monkeypatch):
        binary = tmp_path / "openvpn"
        binary.write_text("#!/bin/sh\n")
        binary.chmod(0o755)
        monkeypatch.setenv("PATH", str(tmp_path))

        assert find_openvpn_binary() == str(binary)

    def test_not_in_path(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PATH", str(tmp_path))

        with pytest.raises(BinaryNotFoundError, match="not found in system PATH"):
            find_openvpn_binary()
