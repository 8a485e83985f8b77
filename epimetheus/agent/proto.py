"""Protobuf messages for the node-agent machine API.

Only the subset of ``machine.MachineService``, ``time.TimeService`` and the
COSI ``cosi.resource.State`` API consumed by this service is described here.
Field numbers match the upstream ``machine.proto``, ``time.proto``,
``resource.proto`` and ``common.proto``; fields not listed are skipped by the
decoder as unknown fields. Message classes are built at import time from
descriptors so no generated ``_pb2`` modules are needed.
"""

from __future__ import annotations

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf import timestamp_pb2

SERVICE = "machine.MachineService"
TIME_SERVICE = "time.TimeService"
COSI_SERVICE = "cosi.resource.State"

_F = descriptor_pb2.FieldDescriptorProto

_STRING = _F.TYPE_STRING
_BYTES = _F.TYPE_BYTES
_BOOL = _F.TYPE_BOOL
_INT64 = _F.TYPE_INT64
_UINT64 = _F.TYPE_UINT64
_MESSAGE = _F.TYPE_MESSAGE
_ENUM = _F.TYPE_ENUM

# (message name, [(field name, number, type, repeated, type name)])
_MESSAGES: list[tuple[str, list[tuple]]] = [
    ("Metadata", [
        ("hostname", 1, _STRING, False, None),
        ("error", 2, _STRING, False, None),
    ]),
    ("VersionInfo", [
        ("tag", 1, _STRING, False, None),
        ("sha", 2, _STRING, False, None),
        ("built", 3, _STRING, False, None),
        ("go_version", 4, _STRING, False, None),
        ("os", 5, _STRING, False, None),
        ("arch", 6, _STRING, False, None),
    ]),
    ("Version", [
        ("metadata", 1, _MESSAGE, False, ".machine.Metadata"),
        ("version", 2, _MESSAGE, False, ".machine.VersionInfo"),
    ]),
    ("VersionResponse", [
        ("messages", 1, _MESSAGE, True, ".machine.Version"),
    ]),
    ("ServiceHealth", [
        ("unknown", 1, _BOOL, False, None),
        ("healthy", 2, _BOOL, False, None),
        ("last_message", 3, _STRING, False, None),
        ("last_change", 4, _MESSAGE, False, ".google.protobuf.Timestamp"),
    ]),
    ("ServiceInfo", [
        ("id", 1, _STRING, False, None),
        ("state", 2, _STRING, False, None),
        ("health", 4, _MESSAGE, False, ".machine.ServiceHealth"),
    ]),
    ("ServiceList", [
        ("metadata", 1, _MESSAGE, False, ".machine.Metadata"),
        ("services", 2, _MESSAGE, True, ".machine.ServiceInfo"),
    ]),
    ("ServiceListResponse", [
        ("messages", 1, _MESSAGE, True, ".machine.ServiceList"),
    ]),
    ("EtcdMemberStatus", [
        ("protocol_version", 1, _STRING, False, None),
        ("db_size", 2, _INT64, False, None),
        ("db_size_in_use", 3, _INT64, False, None),
        ("leader", 4, _UINT64, False, None),
        ("raft_index", 5, _UINT64, False, None),
        ("raft_term", 6, _UINT64, False, None),
        ("raft_applied_index", 7, _UINT64, False, None),
        ("errors", 8, _STRING, True, None),
        ("is_learner", 9, _BOOL, False, None),
        ("member_id", 10, _UINT64, False, None),
    ]),
    ("EtcdStatus", [
        ("metadata", 1, _MESSAGE, False, ".machine.Metadata"),
        ("member_status", 2, _MESSAGE, False, ".machine.EtcdMemberStatus"),
    ]),
    ("EtcdStatusResponse", [
        ("messages", 1, _MESSAGE, True, ".machine.EtcdStatus"),
    ]),
    ("EtcdMemberAlarm", [
        ("member_id", 1, _UINT64, False, None),
        ("alarm", 2, _ENUM, False, ".machine.EtcdMemberAlarm.AlarmType"),
    ]),
    ("EtcdAlarm", [
        ("metadata", 1, _MESSAGE, False, ".machine.Metadata"),
        ("member_alarms", 2, _MESSAGE, True, ".machine.EtcdMemberAlarm"),
    ]),
    ("EtcdAlarmListResponse", [
        ("messages", 1, _MESSAGE, True, ".machine.EtcdAlarm"),
    ]),
    ("ImageListRequest", [
        ("namespace", 1, _ENUM, False, ".machine.ContainerdNamespace"),
    ]),
    ("ImageListResponse", [
        ("metadata", 1, _MESSAGE, False, ".machine.Metadata"),
        ("name", 2, _STRING, False, None),
        ("digest", 3, _STRING, False, None),
        ("size", 4, _INT64, False, None),
        ("created_at", 5, _MESSAGE, False, ".google.protobuf.Timestamp"),
    ]),
    # time.TimeService messages; package names do not travel on the wire
    ("TimeRequest", [
        ("server", 1, _STRING, False, None),
    ]),
    ("Time", [
        ("metadata", 1, _MESSAGE, False, ".machine.Metadata"),
        ("server", 2, _STRING, False, None),
        ("localtime", 3, _MESSAGE, False, ".google.protobuf.Timestamp"),
        ("remotetime", 4, _MESSAGE, False, ".google.protobuf.Timestamp"),
    ]),
    ("TimeResponse", [
        ("messages", 1, _MESSAGE, True, ".machine.Time"),
    ]),
]

# cosi.resource.State, the resource API proxied by the node agent
_COSI_MESSAGES: list[tuple[str, list[tuple]]] = [
    ("GetRequest", [
        ("namespace", 1, _STRING, False, None),
        ("type", 2, _STRING, False, None),
        ("id", 3, _STRING, False, None),
    ]),
    ("Metadata", [
        ("namespace", 1, _STRING, False, None),
        ("type", 2, _STRING, False, None),
        ("id", 3, _STRING, False, None),
        ("version", 4, _STRING, False, None),
        ("owner", 5, _STRING, False, None),
        ("phase", 6, _STRING, False, None),
    ]),
    ("Spec", [
        ("proto_spec", 1, _BYTES, False, None),
        ("yaml_spec", 2, _STRING, False, None),
    ]),
    ("Resource", [
        ("metadata", 1, _MESSAGE, False, ".cosi.resource.Metadata"),
        ("spec", 2, _MESSAGE, False, ".cosi.resource.Spec"),
    ]),
    ("GetResponse", [
        ("resource", 1, _MESSAGE, False, ".cosi.resource.Resource"),
    ]),
]

ALARM_TYPES = {0: "NONE", 1: "NOSPACE", 2: "CORRUPT"}
NS_CRI = 2


def _build_file(file_name: str, package: str, messages) -> descriptor_pb2.FileDescriptorProto:
    file_proto = descriptor_pb2.FileDescriptorProto(
        name=file_name,
        package=package,
        syntax="proto3",
        dependency=["google/protobuf/timestamp.proto"],
    )

    if package == "machine":
        namespaces = file_proto.enum_type.add(name="ContainerdNamespace")
        for number, name in enumerate(("NS_UNKNOWN", "NS_SYSTEM", "NS_CRI")):
            namespaces.value.add(name=name, number=number)

    for message_name, fields in messages:
        message = file_proto.message_type.add(name=message_name)
        for name, number, ftype, repeated, type_name in fields:
            field = message.field.add(
                name=name,
                number=number,
                type=ftype,
                label=_F.LABEL_REPEATED if repeated else _F.LABEL_OPTIONAL,
            )
            if type_name:
                field.type_name = type_name
        if message_name == "EtcdMemberAlarm":
            alarm_type = message.enum_type.add(name="AlarmType")
            for number, name in sorted(ALARM_TYPES.items()):
                alarm_type.value.add(name=name, number=number)

    return file_proto


_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(timestamp_pb2.DESCRIPTOR.serialized_pb)
_pool.AddSerializedFile(
    _build_file("epimetheus/machine_subset.proto", "machine", _MESSAGES).SerializeToString()
)
_pool.AddSerializedFile(
    _build_file("epimetheus/resource_subset.proto", "cosi.resource", _COSI_MESSAGES).SerializeToString()
)


def _message(name: str, package: str = "machine"):
    return message_factory.GetMessageClass(_pool.FindMessageTypeByName(f"{package}.{name}"))


VersionResponse = _message("VersionResponse")
ServiceListResponse = _message("ServiceListResponse")
EtcdStatusResponse = _message("EtcdStatusResponse")
EtcdAlarmListResponse = _message("EtcdAlarmListResponse")
ImageListRequest = _message("ImageListRequest")
ImageListResponse = _message("ImageListResponse")
TimeRequest = _message("TimeRequest")
TimeResponse = _message("TimeResponse")
GetRequest = _message("GetRequest", "cosi.resource")
GetResponse = _message("GetResponse", "cosi.resource")


def method(name: str, service: str = SERVICE) -> str:
    """Full gRPC method path for an RPC, MachineService by default."""
    return f"/{service}/{name}"


def empty_request(_request: object = None) -> bytes:
    """Serialized google.protobuf.Empty."""
    return b""
