"""
Epimetheus Error Hierarchy

Unified exception hierarchy for the node-agent client, the node directory and
the HTTP handlers. All custom exceptions inherit from EpimetheusError so the
request boundary can catch and translate them in one place.

Usage:
    from epimetheus.errors import AgentConnectionError, RemoteCallError

    try:
        result = await invoker.invoke(op, targets)
    except AgentConnectionError as e:
        logger.error(f"Node agent unreachable: {e.message}")

Note that a degraded health judgement is not an error: evaluators return it as
an ordinary HealthReport.
"""

from typing import Any

__all__ = [
    # Connection errors
    "AgentConnectionError",
    "ConfigurationError",
    # Directory errors
    "DirectoryError",
    # Base error
    "EpimetheusError",
    "NodeNotFoundError",
    "NonRetryableError",
    # Remote call errors
    "RemoteCallError",
    # Retry classification
    "RetryableError",
    "ServiceNotFoundError",
]


class EpimetheusError(Exception):
    """Base exception for all Epimetheus errors.

    Attributes:
        code: Machine-readable error code for categorization
        message: Human-readable error description
        context: Additional context for debugging
    """
    code: str = "EPIMETHEUS_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"[{self.code}] {self.message} ({ctx})"
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
        }


# =============================================================================
# Retry Classification
# =============================================================================


class RetryableError(EpimetheusError):
    """Error that can be retried (network issues, transient failures).

    The fan-out invoker keeps retrying these until its deadline elapses.
    """
    code: str = "RETRYABLE_ERROR"


class NonRetryableError(EpimetheusError):
    """Error that should not be retried.

    The fan-out invoker aborts immediately and surfaces these to the caller.
    """
    code: str = "NON_RETRYABLE_ERROR"


# =============================================================================
# Node Agent Errors
# =============================================================================


class RemoteCallError(RetryableError):
    """A node-agent RPC failed.

    Raised for transport failures and for responses in which one or more of
    the targeted nodes reported an error. When some nodes did answer, their
    records are kept on ``partial`` so callers can still surface them.

    Attributes:
        operation: Name of the remote operation (e.g. "ServiceList")
        nodes: Node addresses the call was addressed to
        partial: Records decoded from the nodes that did answer, or None
    """
    code: str = "REMOTE_CALL_ERROR"

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        nodes: list[str] | None = None,
        partial: Any | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        self.operation = operation
        self.nodes = list(nodes or [])
        self.partial = partial
        if operation:
            self.context["operation"] = operation
        if self.nodes:
            self.context["nodes"] = ",".join(self.nodes)


class ServiceNotFoundError(NonRetryableError):
    """None of the targeted nodes reports the requested service."""
    code: str = "SERVICE_NOT_FOUND"

    def __init__(
        self,
        message: str,
        service: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        if service:
            self.context["service"] = service


class AgentConnectionError(NonRetryableError):
    """The node-agent connection could not be (re-)established.

    Fatal for the current request. Raised when the client configuration
    cannot be loaded or the replacement channel cannot be built.
    """
    code: str = "AGENT_CONNECTION_ERROR"

    def __init__(
        self,
        message: str,
        config_path: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        if config_path:
            self.context["config_path"] = config_path


# =============================================================================
# Directory Errors
# =============================================================================


class DirectoryError(NonRetryableError):
    """The node directory (Kubernetes API) could not be queried."""
    code: str = "DIRECTORY_ERROR"


class NodeNotFoundError(DirectoryError):
    """A node requested by name is not known to the directory."""
    code: str = "NODE_NOT_FOUND"

    def __init__(
        self,
        message: str,
        node: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, context=context)
        if node:
            self.context["node"] = node


# =============================================================================
# Validation Errors
# =============================================================================


class ConfigurationError(NonRetryableError):
    """Invalid configuration or parameter value."""
    code: str = "CONFIGURATION_ERROR"
