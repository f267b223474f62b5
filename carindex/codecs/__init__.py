"""
Multicodec handling.

- **registry.py**: codec number -> (label, decode) table, with the default codecs
- **dag_pb.py**: protobuf schemas for dag-pb nodes and UnixFS data
- **dispatch.py**: decodes a block and normalizes structured payloads
"""
