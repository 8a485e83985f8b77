"""
Pydantic models for cluster status records.

Records are decoded from node-agent RPC responses and Kubernetes API objects,
inspected by the evaluators in ``epimetheus.health`` and serialized verbatim
into HTTP responses.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, FrozenSet
from enum import Enum


class Judgement(str, Enum):
    """Outcome of a health evaluation"""
    OK = "ok"
    DEGRADED = "degraded"


class NodeRef(BaseModel):
    """A cluster node as known to the node directory"""
    name: str
    address: str
    roles: FrozenSet[str] = frozenset()

    class Config:
        frozen = True


class ServiceRecord(BaseModel):
    """State of one node-agent managed service on one node"""
    host_node: str
    service_id: str
    state: str
    # None when the service does not report health at all
    healthy: Optional[bool] = None
    health_message: str = ""


class ConsensusMemberStatus(BaseModel):
    """Status of one consensus-store (etcd) member"""
    host_node: str
    member_id: int = 0
    leader_id: int = 0
    db_size_bytes: int = 0
    db_size_in_use_bytes: int = 0
    protocol_version: str = ""
    raft_index: int = 0
    raft_term: int = 0
    is_learner: bool = False
    errors: List[str] = Field(default_factory=list)


class ConsensusAlarm(BaseModel):
    """An alarm raised by a consensus-store member"""
    host_node: str
    member_id: int = 0
    alarm_kind: str


class WorkloadRecord(BaseModel):
    """Readiness summary of a pod"""
    name: str
    namespace: str
    node_name: Optional[str] = None
    phase: Optional[str] = None
    # Kind of the owning object; "Node" for static pods placed by the node agent
    owner_mechanism: Optional[str] = None
    # None when the pod has no Ready condition yet
    ready_condition_met: Optional[bool] = None
    condition_reason: str = ""
    condition_message: str = ""


class NodeCondition(BaseModel):
    """One entry of a node's status conditions"""
    kind: str
    status: str
    reason: str = ""
    message: str = ""

    @property
    def is_true(self) -> bool:
        return self.status == "True"

    @property
    def is_false(self) -> bool:
        return self.status == "False"


class NodeConditionSet(BaseModel):
    """A node together with its ordered status conditions"""
    node_name: str
    address: str = ""
    roles: List[str] = Field(default_factory=list)
    conditions: List[NodeCondition] = Field(default_factory=list)


class ImageRecord(BaseModel):
    """A container image present on a node"""
    host_node: str
    name: str
    digest: str = ""
    size_bytes: int = 0
    size: str = ""
    created_at: Optional[str] = None


class TimeRecord(BaseModel):
    """Clock of one node compared against a time server"""
    host_node: str
    server: str = ""
    local_time: Optional[str] = None
    remote_time: Optional[str] = None


class HealthReport(BaseModel):
    """Judgement plus the itemized reasons behind it"""
    judgement: Judgement = Judgement.OK
    reasons: List[str] = Field(default_factory=list)

    @classmethod
    def from_reasons(cls, reasons: List[str]) -> "HealthReport":
        """Build a report that is degraded iff any reason was collected."""
        judgement = Judgement.DEGRADED if reasons else Judgement.OK
        return cls(judgement=judgement, reasons=list(reasons))

    @property
    def ok(self) -> bool:
        return self.judgement == Judgement.OK
