"""gRPC client for the node-agent machine API.

AgentClient holds one grpc.aio channel and exposes the handful of
MachineService, TimeService and resource calls this service needs, decoded into the records from
``epimetheus.models``. It does no retrying of its own: retry and reconnection
are layered on top by ConnectionManager and FanOutInvoker.

Calls are addressed to nodes through the ``nodes`` call metadata. The endpoint
proxies the call to every listed node and returns one message per node; nodes
that failed report it in their message metadata instead of failing the call.
Such per-node failures are split off and raised as a RemoteCallError that
keeps the records of the nodes that did answer.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Sequence

import grpc
import yaml

from ..errors import RemoteCallError
from ..models import (
    ConsensusAlarm,
    ConsensusMemberStatus,
    ImageRecord,
    ServiceRecord,
    TimeRecord,
)
from . import proto
from .talosconfig import AgentContext

logger = logging.getLogger(__name__)

LOCAL_NODE = "local"

_SIZE_SUFFIXES = ("B", "kB", "MB", "GB", "TB", "PB")


def human_bytes(size: int) -> str:
    """SI formatted byte count, e.g. ``83 MB``."""
    value = float(size)
    for suffix in _SIZE_SUFFIXES:
        if value < 1000 or suffix == _SIZE_SUFFIXES[-1]:
            if suffix == "B":
                return f"{int(value)} B"
            return f"{value:.1f} {suffix}" if value < 10 else f"{value:.0f} {suffix}"
        value /= 1000
    return f"{size} B"


def node_metadata(nodes: Sequence[str]) -> tuple[tuple[str, str], ...]:
    """Call metadata that fans a call out to ``nodes``; empty means local."""
    return tuple(("nodes", node) for node in nodes)


def _hostname(message: Any, nodes: Sequence[str]) -> str:
    if message.metadata.hostname:
        return message.metadata.hostname
    if len(nodes) == 1:
        return nodes[0]
    return LOCAL_NODE


def split_messages(
    messages: Iterable[Any],
    nodes: Sequence[str],
    operation: str,
    decode: Callable[[Any, str], list],
) -> list:
    """Decode per-node messages, raising for nodes that reported an error.

    Raises:
        RemoteCallError: If any node reported an error. ``partial`` holds the
            records of the nodes that answered, or None if none did.
    """
    records: list = []
    failures: list[str] = []
    answered = False
    for message in messages:
        host = _hostname(message, nodes)
        if message.metadata.error:
            failures.append(f"{host}: {message.metadata.error}")
            continue
        answered = True
        records.extend(decode(message, host))

    if failures:
        raise RemoteCallError(
            f"{operation} failed on {len(failures)} node(s): " + "; ".join(failures),
            operation=operation,
            nodes=list(nodes),
            partial=records if answered else None,
        )
    return records


def _decode_services(message: Any, host: str) -> list[ServiceRecord]:
    records = []
    for svc in message.services:
        health = svc.health
        records.append(ServiceRecord(
            host_node=host,
            service_id=svc.id,
            state=svc.state,
            healthy=None if health.unknown else health.healthy,
            health_message=health.last_message,
        ))
    return records


def _decode_etcd_status(message: Any, host: str) -> list[ConsensusMemberStatus]:
    status = message.member_status
    return [ConsensusMemberStatus(
        host_node=host,
        member_id=status.member_id,
        leader_id=status.leader,
        db_size_bytes=status.db_size,
        db_size_in_use_bytes=status.db_size_in_use,
        protocol_version=status.protocol_version,
        raft_index=status.raft_index,
        raft_term=status.raft_term,
        is_learner=status.is_learner,
        errors=list(status.errors),
    )]


def _decode_etcd_alarms(message: Any, host: str) -> list[ConsensusAlarm]:
    return [
        ConsensusAlarm(
            host_node=host,
            member_id=alarm.member_id,
            alarm_kind=proto.ALARM_TYPES.get(alarm.alarm, str(alarm.alarm)),
        )
        for alarm in message.member_alarms
    ]


def _isoformat(message: Any, field: str) -> str | None:
    if not message.HasField(field):
        return None
    stamp = getattr(message, field)
    return datetime.fromtimestamp(stamp.seconds + stamp.nanos / 1e9, tz=timezone.utc).isoformat()


def _decode_time(message: Any, host: str) -> list[TimeRecord]:
    return [TimeRecord(
        host_node=host,
        server=message.server,
        local_time=_isoformat(message, "localtime"),
        remote_time=_isoformat(message, "remotetime"),
    )]


def _decode_image(message: Any, host: str) -> list[ImageRecord]:
    created_at = _isoformat(message, "created_at")
    return [ImageRecord(
        host_node=host,
        name=message.name,
        digest=message.digest,
        size_bytes=message.size,
        size=human_bytes(message.size),
        created_at=created_at,
    )]


class AgentClient:
    """Node-agent API client over a single gRPC channel."""

    def __init__(self, channel: grpc.aio.Channel, name: str = ""):
        self.channel = channel
        self.name = name

    @classmethod
    def from_context(cls, context: AgentContext, port: int) -> "AgentClient":
        """Open a mutual-TLS channel to the endpoints of ``context``."""
        credentials = grpc.ssl_channel_credentials(
            root_certificates=context.ca,
            private_key=context.key,
            certificate_chain=context.crt,
        )
        target = context.target(port)
        channel = grpc.aio.secure_channel(
            target,
            credentials,
            options=(("grpc.lb_policy_name", "round_robin"),),
        )
        logger.info("Opened node-agent channel to %s (context %s)", target, context.name)
        return cls(channel, name=context.name)

    async def _unary(
        self,
        operation: str,
        deserializer: Callable[[bytes], Any],
        nodes: Sequence[str],
        timeout: float | None,
        request: Any = None,
        service: str = proto.SERVICE,
        metadata: tuple[tuple[str, str], ...] | None = None,
    ) -> Any:
        call = self.channel.unary_unary(
            proto.method(operation, service),
            request_serializer=(
                proto.empty_request if request is None
                else lambda message: message.SerializeToString()
            ),
            response_deserializer=deserializer,
        )
        if metadata is None:
            metadata = node_metadata(nodes)
        try:
            return await call(request, metadata=metadata, timeout=timeout)
        except grpc.aio.AioRpcError as e:
            raise RemoteCallError(
                f"{operation} failed: {e.code().name}: {e.details()}",
                operation=operation,
                nodes=list(nodes),
            ) from e

    async def version(self, nodes: Sequence[str] = (), timeout: float | None = None) -> list[str]:
        """Liveness probe; returns the version tag reported by each node."""
        response = await self._unary("Version", proto.VersionResponse.FromString, nodes, timeout)
        return split_messages(
            response.messages, nodes, "Version",
            lambda message, host: [message.version.tag],
        )

    async def service_list(
        self, nodes: Sequence[str] = (), timeout: float | None = None
    ) -> list[ServiceRecord]:
        response = await self._unary(
            "ServiceList", proto.ServiceListResponse.FromString, nodes, timeout
        )
        return split_messages(response.messages, nodes, "ServiceList", _decode_services)

    async def service_info(
        self, service_id: str, nodes: Sequence[str] = (), timeout: float | None = None
    ) -> list[ServiceRecord]:
        """ServiceList narrowed down to one service id."""
        try:
            services = await self.service_list(nodes, timeout)
        except RemoteCallError as e:
            if e.partial is not None:
                e.partial = [s for s in e.partial if s.service_id == service_id]
            raise
        return [s for s in services if s.service_id == service_id]

    async def etcd_status(
        self, nodes: Sequence[str] = (), timeout: float | None = None
    ) -> list[ConsensusMemberStatus]:
        response = await self._unary(
            "EtcdStatus", proto.EtcdStatusResponse.FromString, nodes, timeout
        )
        return split_messages(response.messages, nodes, "EtcdStatus", _decode_etcd_status)

    async def etcd_alarm_list(
        self, nodes: Sequence[str] = (), timeout: float | None = None
    ) -> list[ConsensusAlarm]:
        response = await self._unary(
            "EtcdAlarmList", proto.EtcdAlarmListResponse.FromString, nodes, timeout
        )
        return split_messages(response.messages, nodes, "EtcdAlarmList", _decode_etcd_alarms)

    async def time_check(
        self, server: str = "", nodes: Sequence[str] = (), timeout: float | None = None
    ) -> list[TimeRecord]:
        """Compare each node's clock against ``server``, or its configured server if empty."""
        response = await self._unary(
            "TimeCheck", proto.TimeResponse.FromString, nodes, timeout,
            request=proto.TimeRequest(server=server),
            service=proto.TIME_SERVICE,
        )
        return split_messages(response.messages, nodes, "TimeCheck", _decode_time)

    async def resource_spec(
        self,
        namespace: str,
        resource_type: str,
        resource_id: str,
        node: str,
        timeout: float | None = None,
    ) -> dict:
        """Fetch one resource from ``node`` and return its decoded spec.

        Resource reads address a single node, so they carry ``node`` rather
        than ``nodes`` call metadata.
        """
        operation = f"Get {resource_type}"
        response = await self._unary(
            "Get", proto.GetResponse.FromString, [node], timeout,
            request=proto.GetRequest(namespace=namespace, type=resource_type, id=resource_id),
            service=proto.COSI_SERVICE,
            metadata=(("node", node),),
        )
        try:
            spec = yaml.safe_load(response.resource.spec.yaml_spec) or {}
        except yaml.YAMLError as e:
            raise RemoteCallError(
                f"{operation} returned an unreadable spec: {e}",
                operation=operation,
                nodes=[node],
            ) from e
        if not isinstance(spec, dict):
            raise RemoteCallError(
                f"{operation} returned a {type(spec).__name__} spec, expected a mapping",
                operation=operation,
                nodes=[node],
            )
        return spec

    async def image_list(
        self,
        nodes: Sequence[str] = (),
        namespace: int = proto.NS_CRI,
        timeout: float | None = None,
    ) -> list[ImageRecord]:
        """Stream the image inventory of ``namespace`` from every node."""
        call = self.channel.unary_stream(
            proto.method("ImageList"),
            request_serializer=lambda request: request.SerializeToString(),
            response_deserializer=proto.ImageListResponse.FromString,
        )
        request = proto.ImageListRequest(namespace=namespace)
        messages = []
        try:
            async for message in call(request, metadata=node_metadata(nodes), timeout=timeout):
                messages.append(message)
        except grpc.aio.AioRpcError as e:
            raise RemoteCallError(
                f"ImageList failed: {e.code().name}: {e.details()}",
                operation="ImageList",
                nodes=list(nodes),
                partial=[
                    record
                    for m in messages if not m.metadata.error
                    for record in _decode_image(m, _hostname(m, nodes))
                ] or None,
            ) from e
        return split_messages(messages, nodes, "ImageList", _decode_image)

    async def close(self) -> None:
        await self.channel.close()
