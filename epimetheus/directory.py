"""Kubernetes-backed node directory and workload source.

The directory resolves node names, internal addresses and role labels so the
node-agent calls can be addressed, and reads node conditions and pods for the
node and workload health checks. Credentials are ambient: the pod's service
account inside the cluster, the user's kubeconfig otherwise.

The Kubernetes client library is synchronous; every API call runs in a worker
thread so the event loop is never blocked.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Optional, Sequence

from kubernetes import client as k8s
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from .agent.connection import ConnectionManager
from .errors import DirectoryError, NodeNotFoundError, RemoteCallError
from .models import NodeCondition, NodeConditionSet, NodeRef, WorkloadRecord

logger = logging.getLogger(__name__)

SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"
ROLE_LABEL_PREFIX = "node-role.kubernetes.io/"

INTERNAL_IP = "InternalIP"


class KubeClient:
    """Thin async wrapper around one Kubernetes ApiClient."""

    def __init__(self, api_client: k8s.ApiClient):
        self.api_client = api_client
        self.core = k8s.CoreV1Api(api_client)
        self.versions = k8s.VersionApi(api_client)

    @classmethod
    def from_ambient_config(cls) -> "KubeClient":
        configuration = k8s.Configuration()
        if os.path.exists(SERVICE_ACCOUNT_DIR):
            k8s_config.load_incluster_config(client_configuration=configuration)
        else:
            k8s_config.load_kube_config(client_configuration=configuration)
        return cls(k8s.ApiClient(configuration))

    async def version(self, timeout: Optional[float] = None) -> str:
        info = await asyncio.to_thread(
            self.versions.get_code, _request_timeout=timeout
        )
        return info.git_version

    async def list_nodes(self, label_selector: str = "") -> list:
        result = await asyncio.to_thread(
            self.core.list_node, label_selector=label_selector
        )
        return list(result.items)

    async def read_node(self, name: str) -> Any:
        return await asyncio.to_thread(self.core.read_node, name)

    async def list_pods(
        self,
        namespace: str = "",
        field_selector: str = "",
        timeout: Optional[float] = None,
    ) -> list:
        if namespace:
            result = await asyncio.to_thread(
                self.core.list_namespaced_pod,
                namespace,
                field_selector=field_selector,
                _request_timeout=timeout,
            )
        else:
            result = await asyncio.to_thread(
                self.core.list_pod_for_all_namespaces,
                field_selector=field_selector,
                _request_timeout=timeout,
            )
        return list(result.items)

    async def close(self) -> None:
        await asyncio.to_thread(self.api_client.close)


async def connect_kubernetes() -> KubeClient:
    """Build a client from the in-cluster service account or the kubeconfig."""
    try:
        return await asyncio.to_thread(KubeClient.from_ambient_config)
    except ConfigException as e:
        raise DirectoryError(f"cannot load Kubernetes credentials: {e}") from e


def kubernetes_connection() -> ConnectionManager[KubeClient]:
    return ConnectionManager(
        connect=connect_kubernetes,
        probe=lambda client, timeout: client.version(timeout),
        close=lambda client: client.close(),
        name="kubernetes",
        error_cls=DirectoryError,
    )


# =============================================================================
# Object conversion
# =============================================================================


def node_ref(node: Any) -> NodeRef:
    """Name, internal address and role labels of a V1Node."""
    name = node.metadata.name
    address = ""
    for addr in (node.status.addresses or []) if node.status else []:
        if addr.type == INTERNAL_IP:
            address = addr.address
            break

    roles = frozenset(
        label[len(ROLE_LABEL_PREFIX):]
        for label in (node.metadata.labels or {})
        if label.startswith(ROLE_LABEL_PREFIX)
    )
    return NodeRef(name=name, address=address, roles=roles)


def node_conditions(node: Any) -> NodeConditionSet:
    ref = node_ref(node)
    conditions = [
        NodeCondition(
            kind=cond.type,
            status=cond.status,
            reason=cond.reason or "",
            message=cond.message or "",
        )
        for cond in ((node.status.conditions or []) if node.status else [])
    ]
    return NodeConditionSet(
        node_name=ref.name,
        address=ref.address,
        roles=sorted(ref.roles),
        conditions=conditions,
    )


def workload_record(pod: Any) -> WorkloadRecord:
    """Readiness summary of a V1Pod."""
    owners = pod.metadata.owner_references or []
    owner_kinds = [ref.kind for ref in owners]
    if "Node" in owner_kinds:
        owner = "Node"
    else:
        owner = owner_kinds[0] if owner_kinds else None

    record = WorkloadRecord(
        name=pod.metadata.name,
        namespace=pod.metadata.namespace,
        node_name=pod.spec.node_name if pod.spec else None,
        phase=pod.status.phase if pod.status else None,
        owner_mechanism=owner,
    )
    for cond in ((pod.status.conditions or []) if pod.status else []):
        if cond.type == "Ready":
            record.ready_condition_met = cond.status == "True"
            record.condition_reason = cond.reason or ""
            record.condition_message = cond.message or ""
    return record


# =============================================================================
# Directory
# =============================================================================


class NodeDirectory:
    """Read-only view of the cluster's nodes."""

    def __init__(self, connection: ConnectionManager[KubeClient]):
        self.connection = connection

    async def _call(self, what: str, fn, *args):
        client = await self.connection.current()
        try:
            return await fn(client, *args)
        except ApiException as e:
            await self._refresh(client)
            raise DirectoryError(f"{what} failed: {e.status} {e.reason}") from e
        except (HTTPError, OSError) as e:
            await self._refresh(client)
            raise DirectoryError(f"{what} failed: {e}") from e

    async def _refresh(self, client: KubeClient) -> None:
        # The failed call already cost the request; only swap the handle for the next one.
        try:
            await self.connection.ensure_live(client)
        except DirectoryError as e:
            logger.error("Kubernetes connection cannot be re-established: %s", e)

    async def list_nodes(self, role: str = "") -> list[NodeRef]:
        """Nodes carrying the ``role`` label; every node when role is empty."""
        selector = f"{ROLE_LABEL_PREFIX}{role}" if role else ""
        nodes = await self._call(
            "listing nodes", lambda c: c.list_nodes(label_selector=selector)
        )
        return [node_ref(n) for n in nodes]

    async def _read_node(self, name: str) -> Any:
        async def read(client: KubeClient) -> Any:
            try:
                return await client.read_node(name)
            except ApiException as e:
                if e.status == 404:
                    raise NodeNotFoundError(f"node {name!r} not found", node=name) from e
                raise

        return await self._call("reading node", read)

    async def get_node(self, name: str) -> NodeRef:
        return node_ref(await self._read_node(name))

    async def get_node_conditions(self, name: str) -> NodeConditionSet:
        return node_conditions(await self._read_node(name))

    async def addresses(self, role: str = "") -> list[str]:
        """Internal addresses of the nodes carrying ``role``."""
        return [n.address for n in await self.list_nodes(role) if n.address]


async def list_workloads(
    client: KubeClient,
    nodes: Sequence[str],
    timeout: Optional[float],
    namespace: str = "",
) -> list[WorkloadRecord]:
    """Pods of ``namespace`` (all namespaces when empty), narrowed to one node.

    Shaped as a fan-out operation: ``nodes`` holds at most one node name.

    Raises:
        RemoteCallError: On API or transport failure, so the call is retried
    """
    selector = f"spec.nodeName={nodes[0]}" if nodes else ""
    try:
        pods = await client.list_pods(namespace, selector, timeout)
    except ApiException as e:
        raise RemoteCallError(
            f"listing pods failed: {e.status} {e.reason}",
            operation="ListPods",
            nodes=list(nodes),
        ) from e
    except (HTTPError, OSError) as e:
        raise RemoteCallError(
            f"listing pods failed: {e}", operation="ListPods", nodes=list(nodes)
        ) from e
    return [workload_record(p) for p in pods]
