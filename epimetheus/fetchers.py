"""Domain fetchers.

Each fetcher shapes one request and runs it through a FanOutInvoker: the
node-agent invoker for everything the node agents report, the Kubernetes
invoker for workloads. Targets are node addresses resolved by the caller;
an empty list asks the node-agent endpoint about its own node.
"""

from __future__ import annotations

from typing import Optional, Sequence

from .agent.invoker import FanOutInvoker, FetchResult
from .directory import list_workloads

# (namespace, type, id) of the single-instance resources read per node
SYSTEM_INFORMATION = ("hardware", "SystemInformations.hardware.talos.dev", "systeminformation")
PLATFORM_METADATA = ("runtime", "PlatformMetadatas.talos.dev", "platformmetadata")


class ClusterFetcher:
    """Request shapers over the node-agent and Kubernetes invokers."""

    def __init__(self, agent: FanOutInvoker, kube: FanOutInvoker):
        self.agent = agent
        self.kube = kube

    async def service_list(self, targets: Sequence[str]) -> FetchResult:
        return await self.agent.invoke(
            lambda client, nodes, timeout: client.service_list(nodes, timeout),
            targets,
            operation="ServiceList",
        )

    async def service_info(self, targets: Sequence[str], service_id: str) -> FetchResult:
        return await self.agent.invoke(
            lambda client, nodes, timeout: client.service_info(service_id, nodes, timeout),
            targets,
            operation="ServiceInfo",
        )

    async def etcd_status(self, targets: Sequence[str]) -> FetchResult:
        return await self.agent.invoke(
            lambda client, nodes, timeout: client.etcd_status(nodes, timeout),
            targets,
            operation="EtcdStatus",
        )

    async def etcd_alarms(self, targets: Sequence[str]) -> FetchResult:
        return await self.agent.invoke(
            lambda client, nodes, timeout: client.etcd_alarm_list(nodes, timeout),
            targets,
            operation="EtcdAlarmList",
        )

    async def image_list(self, targets: Sequence[str]) -> FetchResult:
        return await self.agent.invoke(
            lambda client, nodes, timeout: client.image_list(nodes, timeout=timeout),
            targets,
            operation="ImageList",
        )

    async def workload_list(
        self,
        node_name: Optional[str] = None,
        namespace: str = "",
    ) -> FetchResult:
        return await self.kube.invoke(
            lambda client, nodes, timeout: list_workloads(client, nodes, timeout, namespace),
            [node_name] if node_name else [],
            operation="ListPods",
        )

    async def time_check(self, server: str, targets: Sequence[str] = ()) -> FetchResult:
        return await self.agent.invoke(
            lambda client, nodes, timeout: client.time_check(server, nodes, timeout),
            targets,
            operation="TimeCheck",
        )

    async def node_system_info(self, address: str) -> FetchResult:
        return await self.agent.invoke(
            lambda client, nodes, timeout: client.resource_spec(
                *SYSTEM_INFORMATION, node=nodes[0], timeout=timeout
            ),
            [address],
            operation="SystemInformation",
        )

    async def node_platform_metadata(self, address: str) -> FetchResult:
        return await self.agent.invoke(
            lambda client, nodes, timeout: client.resource_spec(
                *PLATFORM_METADATA, node=nodes[0], timeout=timeout
            ),
            [address],
            operation="PlatformMetadata",
        )
