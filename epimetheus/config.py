"""Service configuration.

All settings come from environment variables. Invalid numeric values are
ignored in favour of the defaults so a typo in a deployment manifest does not
keep the service from starting.

Environment Variables:
    LISTEN_ADDRESS: host:port to bind (default: 127.0.0.1:8080)
    AUTH_USERNAME: basic-auth user for /v1 routes (default: ghost)
    AUTH_PASSWORD: basic-auth password (default: randomly generated)
    TRUSTED_PROXIES: comma-separated proxies allowed to set forwarded headers
    TALOSCONFIG: node-agent client configuration file
    EPIMETHEUS_AGENT_PORT: node-agent API port (default: 50000)
    EPIMETHEUS_RPC_DEADLINE: overall retry deadline in seconds (default: 10)
    EPIMETHEUS_RPC_RETRY_INTERVAL: constant backoff in seconds (default: 0.1)
    EPIMETHEUS_MIN_DB_SIZE: etcd fragmentation threshold (default: 512MiB)
    LOG_LEVEL: root log level (default: INFO)
"""

from __future__ import annotations

import logging
import os
import re
import secrets
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

IN_CLUSTER_TALOSCONFIG = "/var/run/secrets/talos.dev/config"
LOCAL_TALOSCONFIG = "~/.talos/config"

DEFAULT_LISTEN_ADDRESS = "127.0.0.1:8080"
DEFAULT_USERNAME = "ghost"
DEFAULT_AGENT_PORT = 50000
DEFAULT_RPC_DEADLINE = 10.0
DEFAULT_RETRY_INTERVAL = 0.1
DEFAULT_MIN_DB_SIZE = "512MiB"

_SIZE_UNITS = {
    "": 1,
    "b": 1,
    "kb": 1000,
    "mb": 1000 ** 2,
    "gb": 1000 ** 3,
    "tb": 1000 ** 4,
    "kib": 1024,
    "mib": 1024 ** 2,
    "gib": 1024 ** 3,
    "tib": 1024 ** 4,
}
_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")


def parse_size(value: str) -> int:
    """Parse a byte size such as ``512MiB``, ``1GB`` or ``4096``.

    Raises:
        ConfigurationError: If the value is not a recognised size
    """
    match = _SIZE_RE.match(value or "")
    if not match:
        raise ConfigurationError(f"invalid size: {value!r}")
    number, unit = match.groups()
    multiplier = _SIZE_UNITS.get(unit.lower())
    if multiplier is None:
        raise ConfigurationError(f"unknown size unit {unit!r} in {value!r}")
    return int(float(number) * multiplier)


def default_talosconfig_path() -> str:
    """Mounted service-account config inside the cluster, user profile otherwise."""
    if os.path.exists(IN_CLUSTER_TALOSCONFIG):
        return IN_CLUSTER_TALOSCONFIG
    return str(Path(LOCAL_TALOSCONFIG).expanduser())


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


@dataclass
class ServiceConfig:
    """Runtime settings for the HTTP service and its node-agent client."""
    listen_address: str = DEFAULT_LISTEN_ADDRESS
    username: str = DEFAULT_USERNAME
    password: str = ""
    password_generated: bool = False
    trusted_proxies: list[str] | None = None
    talosconfig: str = field(default_factory=default_talosconfig_path)
    agent_port: int = DEFAULT_AGENT_PORT
    rpc_deadline: float = DEFAULT_RPC_DEADLINE
    retry_interval: float = DEFAULT_RETRY_INTERVAL
    min_db_size: int = parse_size(DEFAULT_MIN_DB_SIZE)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        config = cls(
            listen_address=os.getenv("LISTEN_ADDRESS", DEFAULT_LISTEN_ADDRESS),
            username=os.getenv("AUTH_USERNAME", DEFAULT_USERNAME),
            password=os.getenv("AUTH_PASSWORD", ""),
            talosconfig=os.getenv("TALOSCONFIG") or default_talosconfig_path(),
            agent_port=_env_int("EPIMETHEUS_AGENT_PORT", DEFAULT_AGENT_PORT),
            rpc_deadline=_env_float("EPIMETHEUS_RPC_DEADLINE", DEFAULT_RPC_DEADLINE),
            retry_interval=_env_float("EPIMETHEUS_RPC_RETRY_INTERVAL", DEFAULT_RETRY_INTERVAL),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

        proxies = os.getenv("TRUSTED_PROXIES")
        if proxies is not None:
            config.trusted_proxies = [p.strip() for p in proxies.split(",") if p.strip()]

        raw_size = os.getenv("EPIMETHEUS_MIN_DB_SIZE")
        if raw_size:
            try:
                config.min_db_size = parse_size(raw_size)
            except ConfigurationError:
                logger.warning(
                    "Ignoring invalid EPIMETHEUS_MIN_DB_SIZE=%r, using %s",
                    raw_size,
                    DEFAULT_MIN_DB_SIZE,
                )

        if not config.password:
            config.password = secrets.token_urlsafe(24)[:32]
            config.password_generated = True

        return config

    @property
    def host(self) -> str:
        host, _, _ = self.listen_address.rpartition(":")
        return host or "127.0.0.1"

    @property
    def port(self) -> int:
        _, _, port = self.listen_address.rpartition(":")
        try:
            return int(port)
        except ValueError:
            return 8080
