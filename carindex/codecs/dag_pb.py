"""
carindex/codecs/dag_pb.py
dag-pb and UnixFS messages.

The .proto definitions are built as descriptors at import time instead of
shipping generated _pb2 modules, once, on first use. Field numbers follow the dag-pb and UnixFS
schemas, so any encoder produces bytes these classes can parse.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List

from google.protobuf import descriptor_pb2
from google.protobuf import descriptor_pool
from google.protobuf import message_factory

from carindex.data.models import ContentID

LABEL_OPTIONAL = 1
LABEL_REPEATED = 3

TYPE_UINT64 = 4
TYPE_STRING = 9
TYPE_MESSAGE = 11
TYPE_BYTES = 12
TYPE_UINT32 = 13
TYPE_ENUM = 14
TYPE_INT64 = 3
TYPE_FIXED32 = 7

# UnixFS Data.DataType values, named the way UnixFS tooling names them.
UNIXFS_TYPES = {
    0: "raw",
    1: "directory",
    2: "file",
    3: "metadata",
    4: "symlink",
    5: "hamt-sharded-directory",
}


def _add_field(
    msg: descriptor_pb2.DescriptorProto,
    *,
    name: str,
    number: int,
    label: int,
    field_type: int,
    type_name: str = "",
) -> None:
    field = msg.field.add()
    field.name = name
    field.number = number
    field.label = label
    field.type = field_type
    if type_name:
        field.type_name = type_name


@dataclass(frozen=True)
class DagPbMessages:
    PBNode: type
    PBLink: type
    UnixFSData: type


@lru_cache(maxsize=1)
def _messages() -> DagPbMessages:
    fdp = descriptor_pb2.FileDescriptorProto()
    fdp.name = "carindex_dag_pb.proto"
    fdp.package = "carindex.dagpb"
    fdp.syntax = "proto2"

    link = fdp.message_type.add()
    link.name = "PBLink"
    _add_field(link, name="Hash", number=1, label=LABEL_OPTIONAL, field_type=TYPE_BYTES)
    _add_field(link, name="Name", number=2, label=LABEL_OPTIONAL, field_type=TYPE_STRING)
    _add_field(link, name="Tsize", number=3, label=LABEL_OPTIONAL, field_type=TYPE_UINT64)

    node = fdp.message_type.add()
    node.name = "PBNode"
    _add_field(node, name="Links", number=2, label=LABEL_REPEATED, field_type=TYPE_MESSAGE, type_name=".carindex.dagpb.PBLink")
    _add_field(node, name="Data", number=1, label=LABEL_OPTIONAL, field_type=TYPE_BYTES)

    data_type = fdp.enum_type.add()
    data_type.name = "DataType"
    for number, name in sorted(UNIXFS_TYPES.items()):
        value = data_type.value.add()
        value.name = name.upper().replace("-", "_")
        value.number = number

    unix_time = fdp.message_type.add()
    unix_time.name = "UnixTime"
    _add_field(unix_time, name="Seconds", number=1, label=LABEL_OPTIONAL, field_type=TYPE_INT64)
    _add_field(unix_time, name="FractionalNanoseconds", number=2, label=LABEL_OPTIONAL, field_type=TYPE_FIXED32)

    unixfs = fdp.message_type.add()
    unixfs.name = "Data"
    _add_field(unixfs, name="Type", number=1, label=LABEL_OPTIONAL, field_type=TYPE_ENUM, type_name=".carindex.dagpb.DataType")
    _add_field(unixfs, name="Data", number=2, label=LABEL_OPTIONAL, field_type=TYPE_BYTES)
    _add_field(unixfs, name="filesize", number=3, label=LABEL_OPTIONAL, field_type=TYPE_UINT64)
    _add_field(unixfs, name="blocksizes", number=4, label=LABEL_REPEATED, field_type=TYPE_UINT64)
    _add_field(unixfs, name="hashType", number=5, label=LABEL_OPTIONAL, field_type=TYPE_UINT64)
    _add_field(unixfs, name="fanout", number=6, label=LABEL_OPTIONAL, field_type=TYPE_UINT64)
    _add_field(unixfs, name="mode", number=7, label=LABEL_OPTIONAL, field_type=TYPE_UINT32)
    _add_field(unixfs, name="mtime", number=8, label=LABEL_OPTIONAL, field_type=TYPE_MESSAGE, type_name=".carindex.dagpb.UnixTime")

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(fdp.SerializeToString())
    node_desc = pool.FindMessageTypeByName("carindex.dagpb.PBNode")
    link_desc = pool.FindMessageTypeByName("carindex.dagpb.PBLink")
    unixfs_desc = pool.FindMessageTypeByName("carindex.dagpb.Data")
    return DagPbMessages(
        PBNode=message_factory.GetMessageClass(node_desc),
        PBLink=message_factory.GetMessageClass(link_desc),
        UnixFSData=message_factory.GetMessageClass(unixfs_desc),
    )


def message_classes() -> DagPbMessages:
    return _messages()


def decode_dag_pb(payload: bytes) -> Dict[str, Any]:
    """dag-pb node as {"Data": bytes | None, "Links": [{"Hash", "Name", "Tsize"}]}."""
    node = _messages().PBNode()
    node.ParseFromString(payload)
    links: List[Dict[str, Any]] = []
    for link in node.Links:
        item: Dict[str, Any] = {"Hash": ContentID.from_bytes(link.Hash)}
        if link.HasField("Name"):
            item["Name"] = link.Name
        if link.HasField("Tsize"):
            item["Tsize"] = link.Tsize
        links.append(item)
    return {
        "Data": node.Data if node.HasField("Data") else None,
        "Links": links,
    }


def unmarshal_unixfs(data: bytes) -> Dict[str, Any]:
    """UnixFS Data message reduced to its type name and block sizes."""
    message = _messages().UnixFSData()
    message.ParseFromString(data)
    return {
        "type": UNIXFS_TYPES.get(message.Type, "raw"),
        "blocks": list(message.blocksizes),
    }
