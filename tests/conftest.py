"""
Shared pytest fixtures for Epimetheus tests.

Record factories are function-scoped so each test builds its own inputs. The
fake fetcher and directory stand in for the node-agent and Kubernetes layers
when exercising the HTTP routes.
"""

from pathlib import Path
import sys
from typing import Callable, Dict, List, Optional

import pytest

# Ensure the repository root is on sys.path so `import epimetheus` works when
# running pytest without installing the package.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from epimetheus.agent.invoker import FetchResult
from epimetheus.errors import NodeNotFoundError
from epimetheus.models import (
    ConsensusAlarm,
    ConsensusMemberStatus,
    NodeCondition,
    NodeConditionSet,
    NodeRef,
    ServiceRecord,
    WorkloadRecord,
)


# =============================================================================
# FACTORY FIXTURES
# =============================================================================


@pytest.fixture
def service_factory() -> Callable[..., ServiceRecord]:
    """Factory for ServiceRecord instances that are healthy by default."""

    def _create_service(
        service_id: str = "apid",
        host_node: str = "cp-1",
        state: str = "Running",
        healthy: Optional[bool] = True,
    ) -> ServiceRecord:
        return ServiceRecord(
            host_node=host_node,
            service_id=service_id,
            state=state,
            healthy=healthy,
        )

    return _create_service


@pytest.fixture
def member_factory() -> Callable[..., ConsensusMemberStatus]:
    """Factory for etcd member statuses with a small, unfragmented db."""

    def _create_member(
        host_node: str = "cp-1",
        leader_id: int = 7,
        db_size: int = 64 * 1024 * 1024,
        db_in_use: int = 16 * 1024 * 1024,
        member_id: int = 1,
    ) -> ConsensusMemberStatus:
        return ConsensusMemberStatus(
            host_node=host_node,
            member_id=member_id,
            leader_id=leader_id,
            db_size_bytes=db_size,
            db_size_in_use_bytes=db_in_use,
        )

    return _create_member


@pytest.fixture
def alarm_factory() -> Callable[..., ConsensusAlarm]:
    def _create_alarm(
        host_node: str = "cp-1",
        alarm_kind: str = "NOSPACE",
        member_id: int = 0xABC,
    ) -> ConsensusAlarm:
        return ConsensusAlarm(host_node=host_node, member_id=member_id, alarm_kind=alarm_kind)

    return _create_alarm


@pytest.fixture
def workload_factory() -> Callable[..., WorkloadRecord]:
    """Factory for pods that are ready by default."""

    def _create_workload(
        name: str = "coredns-abc",
        namespace: str = "kube-system",
        owner: Optional[str] = "ReplicaSet",
        ready: Optional[bool] = True,
        reason: str = "",
        message: str = "",
        node_name: str = "worker-1",
    ) -> WorkloadRecord:
        return WorkloadRecord(
            name=name,
            namespace=namespace,
            node_name=node_name,
            owner_mechanism=owner,
            ready_condition_met=ready,
            condition_reason=reason,
            condition_message=message,
        )

    return _create_workload


@pytest.fixture
def node_conditions_factory() -> Callable[..., NodeConditionSet]:
    """Factory for node condition sets; a healthy node by default."""

    def _create_conditions(
        node_name: str = "worker-1",
        statuses: Optional[Dict[str, str]] = None,
    ) -> NodeConditionSet:
        statuses = statuses or {
            "MemoryPressure": "False",
            "DiskPressure": "False",
            "PIDPressure": "False",
            "Ready": "True",
        }
        return NodeConditionSet(
            node_name=node_name,
            address="10.0.0.20",
            conditions=[
                NodeCondition(kind=kind, status=status, message=f"{kind} is {status}")
                for kind, status in statuses.items()
            ],
        )

    return _create_conditions


# =============================================================================
# FAKE COLLABORATORS
# =============================================================================


CLUSTER_NODES: List[NodeRef] = [
    NodeRef(name="cp-1", address="10.0.0.10", roles=frozenset({"control-plane"})),
    NodeRef(name="cp-2", address="10.0.0.11", roles=frozenset({"control-plane"})),
    NodeRef(name="worker-1", address="10.0.0.20", roles=frozenset()),
]


class FakeDirectory:
    """In-memory node directory."""

    def __init__(self, nodes: Optional[List[NodeRef]] = None, conditions=None):
        self.nodes = list(CLUSTER_NODES if nodes is None else nodes)
        self.conditions = conditions or {}
        self.error: Optional[Exception] = None

    async def list_nodes(self, role: str = "") -> List[NodeRef]:
        if self.error is not None:
            raise self.error
        return [n for n in self.nodes if not role or role in n.roles]

    async def addresses(self, role: str = "") -> List[str]:
        return [n.address for n in await self.list_nodes(role)]

    async def get_node(self, name: str) -> NodeRef:
        for node in await self.list_nodes():
            if node.name == name:
                return node
        raise NodeNotFoundError(f"node {name!r} not found", node=name)

    async def get_node_conditions(self, name: str) -> NodeConditionSet:
        await self.get_node(name)
        return self.conditions[name]


class FakeFetcher:
    """Returns canned FetchResults and records the targets it was asked for."""

    def __init__(self):
        self.results: Dict[str, FetchResult] = {}
        self.calls: List[tuple] = []

    def _result(self, name: str, *args) -> FetchResult:
        self.calls.append((name,) + args)
        return self.results.get(name, FetchResult([]))

    async def service_list(self, targets):
        return self._result("service_list", list(targets))

    async def service_info(self, targets, service_id):
        return self._result("service_info", list(targets), service_id)

    async def etcd_status(self, targets):
        return self._result("etcd_status", list(targets))

    async def etcd_alarms(self, targets):
        return self._result("etcd_alarms", list(targets))

    async def image_list(self, targets):
        return self._result("image_list", list(targets))

    async def workload_list(self, node_name=None, namespace=""):
        return self._result("workload_list", node_name, namespace)

    async def time_check(self, server, targets=()):
        return self._result("time_check", server, list(targets))

    async def node_system_info(self, address):
        return self._result("node_system_info", address)

    async def node_platform_metadata(self, address):
        return self._result("node_platform_metadata", address)


@pytest.fixture
def fake_directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()
