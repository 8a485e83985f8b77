"""Tests for environment configuration and the node-agent client config file."""

import base64
import os
from unittest.mock import patch

import pytest

from epimetheus.agent.talosconfig import AgentContext, load_context
from epimetheus.config import ServiceConfig, parse_size
from epimetheus.errors import AgentConnectionError, ConfigurationError


def b64(text: str) -> str:
    return base64.b64encode(text.encode()).decode()


CLIENT_CONFIG = f"""
context: prod
contexts:
  prod:
    endpoints:
      - 10.0.0.10
      - 10.0.0.11
    nodes:
      - 10.0.0.10
    ca: {b64("CA PEM")}
    crt: {b64("CRT PEM")}
    key: {b64("KEY PEM")}
  lab:
    endpoints:
      - cp.lab.example:50001
    ca: {b64("LAB CA")}
    crt: {b64("LAB CRT")}
    key: {b64("LAB KEY")}
"""


class TestParseSize:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("512MiB", 512 * 1024 ** 2),
            ("1GiB", 1024 ** 3),
            ("1GB", 1000 ** 3),
            ("100kb", 100_000),
            ("4096", 4096),
            ("1.5 GiB", int(1.5 * 1024 ** 3)),
        ],
    )
    def test_valid_sizes(self, value, expected):
        assert parse_size(value) == expected

    @pytest.mark.parametrize("value", ["", "lots", "12XB", "-5MB"])
    def test_invalid_sizes(self, value):
        with pytest.raises(ConfigurationError):
            parse_size(value)


class TestServiceConfig:
    def test_defaults(self):
        with patch.dict(os.environ, {"TALOSCONFIG": "/tmp/talosconfig"}, clear=True):
            config = ServiceConfig.from_env()
        assert config.listen_address == "127.0.0.1:8080"
        assert config.username == "ghost"
        assert config.agent_port == 50000
        assert config.rpc_deadline == 10.0
        assert config.retry_interval == 0.1
        assert config.min_db_size == 512 * 1024 ** 2
        assert config.trusted_proxies is None
        assert config.talosconfig == "/tmp/talosconfig"

    def test_password_generated_when_unset(self):
        with patch.dict(os.environ, {"TALOSCONFIG": "/tmp/talosconfig"}, clear=True):
            first = ServiceConfig.from_env()
            second = ServiceConfig.from_env()
        assert first.password_generated
        assert len(first.password) == 32
        assert first.password != second.password

    def test_explicit_settings(self):
        env = {
            "LISTEN_ADDRESS": "0.0.0.0:9000",
            "AUTH_USERNAME": "monitor",
            "AUTH_PASSWORD": "hunter2",
            "TRUSTED_PROXIES": "10.0.0.1, 10.0.0.2",
            "EPIMETHEUS_RPC_DEADLINE": "3",
            "EPIMETHEUS_MIN_DB_SIZE": "1GiB",
            "LOG_LEVEL": "debug",
            "TALOSCONFIG": "/tmp/talosconfig",
        }
        with patch.dict(os.environ, env, clear=True):
            config = ServiceConfig.from_env()
        assert config.host == "0.0.0.0"
        assert config.port == 9000
        assert config.username == "monitor"
        assert config.password == "hunter2"
        assert not config.password_generated
        assert config.trusted_proxies == ["10.0.0.1", "10.0.0.2"]
        assert config.rpc_deadline == 3.0
        assert config.min_db_size == 1024 ** 3
        assert config.log_level == "DEBUG"

    def test_invalid_numbers_fall_back_to_defaults(self):
        env = {
            "EPIMETHEUS_RPC_DEADLINE": "soon",
            "EPIMETHEUS_AGENT_PORT": "fifty",
            "EPIMETHEUS_MIN_DB_SIZE": "huge",
            "TALOSCONFIG": "/tmp/talosconfig",
        }
        with patch.dict(os.environ, env, clear=True):
            config = ServiceConfig.from_env()
        assert config.rpc_deadline == 10.0
        assert config.agent_port == 50000
        assert config.min_db_size == 512 * 1024 ** 2


class TestLoadContext:
    def test_active_context(self, tmp_path):
        path = tmp_path / "config"
        path.write_text(CLIENT_CONFIG)

        context = load_context(str(path))

        assert context.name == "prod"
        assert context.endpoints == ["10.0.0.10", "10.0.0.11"]
        assert context.ca == b"CA PEM"
        assert context.key == b"KEY PEM"
        assert context.target(50000) == "ipv4:10.0.0.10:50000,10.0.0.11:50000"

    def test_named_context_with_hostname_endpoint(self, tmp_path):
        path = tmp_path / "config"
        path.write_text(CLIENT_CONFIG)

        context = load_context(str(path), context="lab")
        assert context.target(50000) == "cp.lab.example:50001"

    def test_missing_file(self, tmp_path):
        with pytest.raises(AgentConnectionError) as exc_info:
            load_context(str(tmp_path / "absent"))
        assert exc_info.value.context["config_path"].endswith("absent")

    def test_unknown_context(self, tmp_path):
        path = tmp_path / "config"
        path.write_text(CLIENT_CONFIG)
        with pytest.raises(AgentConnectionError, match="no context 'staging'"):
            load_context(str(path), context="staging")

    def test_bad_certificate_encoding(self, tmp_path):
        path = tmp_path / "config"
        path.write_text(
            "context: a\ncontexts:\n  a:\n    endpoints: [10.0.0.1]\n"
            "    ca: '!!!'\n    crt: eA==\n    key: eA==\n"
        )
        with pytest.raises(AgentConnectionError, match="not valid base64"):
            load_context(str(path))

    def test_single_endpoint_target(self):
        context = AgentContext(name="x", endpoints=["10.0.0.1"], ca=b"", crt=b"", key=b"")
        assert context.target(50000) == "10.0.0.1:50000"

    def test_ipv6_endpoint_target(self):
        context = AgentContext(name="x", endpoints=["fd00::1"], ca=b"", crt=b"", key=b"")
        assert context.target(50000) == "[fd00::1]:50000"
