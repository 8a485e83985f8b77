"""Health evaluators for cluster status records.

Each evaluator is a pure function from a list of records to a HealthReport.
A report is degraded iff at least one reason was collected, and every reason
names the node, service, member or pod it is about. Evaluators only look at
set membership and grouping, never at record order, so results are stable
across the order in which nodes happened to answer.

Usage:
    from epimetheus.health import evaluate_services

    report = evaluate_services(records)
    if not report.ok:
        for reason in report.reasons:
            print(reason)
"""

from __future__ import annotations

from typing import Iterable

from .models import (
    ConsensusAlarm,
    ConsensusMemberStatus,
    HealthReport,
    NodeConditionSet,
    WorkloadRecord,
    ServiceRecord,
)

__all__ = [
    "DEFAULT_MIN_DB_SIZE",
    "FRAGMENTATION_RATIO_LIMIT",
    "HEALTH_EXEMPT_SERVICES",
    "READY_CONDITION",
    "STATIC_OWNER_KIND",
    "evaluate_consensus_alarms",
    "evaluate_consensus_status",
    "evaluate_node_conditions",
    "evaluate_services",
    "evaluate_workloads",
]

# Services that run fine but never report themselves healthy.
HEALTH_EXEMPT_SERVICES: frozenset[str] = frozenset({
    "dashboard",
    "ext-iscsid",
    "ext-qemu-guest-agent",
    "ext-lldpd",
})

RUNNING_STATE = "Running"

DEFAULT_MIN_DB_SIZE = 512 * 1024 * 1024
FRAGMENTATION_RATIO_LIMIT = 0.5

# Owner kind of static pods, i.e. pods created by the kubelet from manifests
STATIC_OWNER_KIND = "Node"
COMPLETED_REASON = "PodCompleted"

READY_CONDITION = "Ready"


def evaluate_services(
    records: Iterable[ServiceRecord],
    exempt: frozenset[str] = HEALTH_EXEMPT_SERVICES,
) -> HealthReport:
    """Check that every service is running and, unless exempt, healthy.

    A record may contribute both a "not healthy" and a "not running" reason.
    Services that report no health at all (``healthy is None``) are only
    checked for their state.
    """
    reasons: list[str] = []
    for svc in records:
        if svc.service_id not in exempt and svc.healthy is False:
            reasons.append(f"Service '{svc.service_id}' on {svc.host_node} not healthy")
        if svc.state != RUNNING_STATE:
            reasons.append(f"Service '{svc.service_id}' on {svc.host_node} not running")
    return HealthReport.from_reasons(reasons)


def evaluate_consensus_status(
    members: Iterable[ConsensusMemberStatus],
    min_db_size: int = DEFAULT_MIN_DB_SIZE,
) -> HealthReport:
    """Check leader agreement and database fragmentation across members.

    A leader id of 0 means the member has not observed a leader yet and is
    not counted as a disagreement. Disagreement is reported once, however
    many members diverge. Members whose database exceeds ``min_db_size``
    are checked for an in-use ratio above FRAGMENTATION_RATIO_LIMIT.
    """
    reasons: list[str] = []
    leaders: dict[int, set[str]] = {}

    for member in members:
        if member.leader_id:
            leaders.setdefault(member.leader_id, set()).add(member.host_node)

        if member.db_size_bytes > min_db_size:
            ratio = member.db_size_in_use_bytes / member.db_size_bytes
            if ratio > FRAGMENTATION_RATIO_LIMIT:
                reasons.append(
                    f"Member {member.host_node}: db exceeds 50% fragmentation "
                    f"({ratio:.0%} of {member.db_size_bytes} bytes)"
                )

    if len(leaders) > 1:
        views = "; ".join(
            f"{leader:x} seen by {', '.join(sorted(hosts))}"
            for leader, hosts in sorted(leaders.items())
        )
        reasons.insert(0, f"Members don't agree on the same leader ({views})")

    return HealthReport.from_reasons(reasons)


def evaluate_consensus_alarms(alarms: Iterable[ConsensusAlarm]) -> HealthReport:
    """Any alarm at all is a failure; each one is reported."""
    reasons = [
        f"Member {alarm.host_node} ({alarm.member_id:x}) raised alarm {alarm.alarm_kind}"
        for alarm in alarms
    ]
    return HealthReport.from_reasons(reasons)


def is_static(workload: WorkloadRecord) -> bool:
    """True for pods placed directly by the node agent rather than the scheduler."""
    return workload.owner_mechanism == STATIC_OWNER_KIND


def select_workloads(
    workloads: Iterable[WorkloadRecord],
    static_only: bool = False,
) -> list[WorkloadRecord]:
    """Return the workloads in scope for evaluation."""
    if not static_only:
        return list(workloads)
    return [w for w in workloads if is_static(w)]


def evaluate_workloads(
    workloads: Iterable[WorkloadRecord],
    static_only: bool = False,
) -> HealthReport:
    """Check that in-scope pods are ready, ignoring pods that ran to completion."""
    reasons: list[str] = []
    for pod in select_workloads(workloads, static_only):
        if pod.ready_condition_met is False and pod.condition_reason != COMPLETED_REASON:
            reasons.append(
                f"Pod '{pod.namespace}/{pod.name}' not ready: {pod.condition_message}"
            )
    return HealthReport.from_reasons(reasons)


def evaluate_node_conditions(node: NodeConditionSet) -> HealthReport:
    """The Ready condition must be True, every other condition must be False."""
    reasons: list[str] = []
    for cond in node.conditions:
        if cond.kind == READY_CONDITION:
            failing = not cond.is_true
        else:
            failing = not cond.is_false
        if failing:
            reasons.append(f"{cond.kind}: {cond.message}")
    return HealthReport.from_reasons(reasons)
