"""Node-agent RPC client with reconnection and bounded retry.

Usage:
    from epimetheus.agent import FanOutInvoker, agent_connection

    invoker = FanOutInvoker(agent_connection(config.talosconfig, config.agent_port))
    result = await invoker.invoke(
        lambda client, nodes, timeout: client.service_list(nodes, timeout),
        ["10.0.0.10", "10.0.0.11"],
        operation="ServiceList",
    )
"""

from .client import AgentClient
from .connection import ConnectionManager
from .invoker import FanOutInvoker, FetchResult
from .talosconfig import AgentContext, load_context

__all__ = [
    "AgentClient",
    "AgentContext",
    "ConnectionManager",
    "FanOutInvoker",
    "FetchResult",
    "agent_connection",
    "load_context",
]


def agent_connection(config_path: str, port: int) -> ConnectionManager[AgentClient]:
    """Connection manager for the node-agent API described by ``config_path``.

    The configuration file is re-read on every reconnect so rotated client
    certificates are picked up.
    """

    async def connect() -> AgentClient:
        return AgentClient.from_context(load_context(config_path), port)

    return ConnectionManager(
        connect=connect,
        probe=lambda client, timeout: client.version(timeout=timeout),
        close=lambda client: client.close(),
        name="node-agent",
    )
