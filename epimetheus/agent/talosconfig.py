"""Node-agent client configuration file.

The file is the YAML document written by the node OS tooling::

    context: prod
    contexts:
      prod:
        endpoints: [10.0.0.10, 10.0.0.11]
        nodes: [10.0.0.10]
        ca: <base64 PEM>
        crt: <base64 PEM>
        key: <base64 PEM>

Inside the cluster it is mounted at /var/run/secrets/talos.dev/config by the
service-account machinery; outside the cluster the user's profile is used.
"""

from __future__ import annotations

import base64
import binascii
import ipaddress
from dataclasses import dataclass
from pathlib import Path

import yaml

from ..errors import AgentConnectionError


@dataclass(frozen=True)
class AgentContext:
    """Endpoints and mutual-TLS material for one configuration context."""
    name: str
    endpoints: list[str]
    ca: bytes
    crt: bytes
    key: bytes

    def target(self, port: int) -> str:
        """gRPC target string covering every endpoint of the context."""
        addresses = [_with_port(e, port) for e in self.endpoints]
        if len(addresses) == 1 or not all(_is_ipv4(e) for e in self.endpoints):
            return addresses[0]
        return "ipv4:" + ",".join(addresses)


def _is_ipv4(endpoint: str) -> bool:
    host = endpoint.rsplit(":", 1)[0] if endpoint.count(":") == 1 else endpoint
    try:
        return isinstance(ipaddress.ip_address(host), ipaddress.IPv4Address)
    except ValueError:
        return False


def _with_port(endpoint: str, port: int) -> str:
    if endpoint.startswith("["):
        return endpoint if "]:" in endpoint else f"{endpoint}:{port}"
    if endpoint.count(":") == 1:
        return endpoint
    if ":" in endpoint:
        return f"[{endpoint}]:{port}"
    return f"{endpoint}:{port}"


def _decode(value: str | None, what: str, path: str) -> bytes:
    if not value:
        raise AgentConnectionError(f"client configuration has no {what}", config_path=path)
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AgentConnectionError(
            f"client configuration {what} is not valid base64: {e}",
            config_path=path,
        ) from e


def load_context(path: str, context: str | None = None) -> AgentContext:
    """Load a configuration context from ``path``.

    Args:
        path: Location of the YAML configuration file
        context: Context name, defaults to the file's active context

    Raises:
        AgentConnectionError: If the file or the context cannot be used
    """
    try:
        text = Path(path).read_text()
    except OSError as e:
        raise AgentConnectionError(
            f"cannot read client configuration: {e}", config_path=path
        ) from e

    try:
        document = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise AgentConnectionError(
            f"cannot parse client configuration: {e}", config_path=path
        ) from e

    name = context or document.get("context")
    contexts = document.get("contexts") or {}
    if not name or name not in contexts:
        raise AgentConnectionError(
            f"client configuration has no context {name!r}", config_path=path
        )

    entry = contexts[name] or {}
    endpoints = [str(e) for e in entry.get("endpoints") or []]
    if not endpoints:
        raise AgentConnectionError(
            f"context {name!r} has no endpoints", config_path=path
        )

    return AgentContext(
        name=name,
        endpoints=endpoints,
        ca=_decode(entry.get("ca"), "ca", path),
        crt=_decode(entry.get("crt"), "crt", path),
        key=_decode(entry.get("key"), "key", path),
    )
