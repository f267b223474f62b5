"""
carindex/data/models.py
Data model shared by the codecs, the merger and the ingestor.

ContentID, Block and ArchiveLocator are in-process values produced by the
archive reader. BlockRecord, ArchiveRecord and Occurrence describe what is
persisted; they are written to the store as plain field dictionaries.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Any, List, Optional, Set, Tuple

from pydantic import BaseModel, Field

CIDV0_CODEC = 0x70
SHA2_256 = 0x12


# ============================================================================
# Varints
# ============================================================================

def encode_varint(value: int) -> bytes:
    """Unsigned LEB128, as used by multiformats."""
    if value < 0:
        raise ValueError("varint must be non-negative")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_varint(buf: bytes, pos: int = 0) -> Tuple[int, int]:
    """Returns (value, next_position)."""
    value = 0
    shift = 0
    while True:
        if pos >= len(buf):
            raise ValueError("truncated varint")
        byte = buf[pos]
        pos += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, pos
        shift += 7
        if shift > 63:
            raise ValueError("varint too long")


# ============================================================================
# ContentID
# ============================================================================

@dataclass(frozen=True)
class ContentID:
    """
    Self-describing block identifier: multicodec plus multihash.

    The canonical string form is CIDv1 in lower-case base32 with the "b"
    multibase prefix. CIDv0 identifiers are rendered in that form too.
    """

    codec: int
    multihash: bytes
    version: int = 1

    @classmethod
    def from_bytes(cls, buf: bytes) -> "ContentID":
        buf = bytes(buf)
        if len(buf) == 34 and buf[0] == SHA2_256 and buf[1] == 0x20:
            return cls(codec=CIDV0_CODEC, multihash=buf, version=0)
        version, pos = decode_varint(buf)
        if version != 1:
            raise ValueError(f"unsupported CID version {version}")
        codec, pos = decode_varint(buf, pos)
        if pos >= len(buf):
            raise ValueError("CID has no multihash")
        return cls(codec=codec, multihash=buf[pos:], version=1)

    @classmethod
    def parse(cls, text: str) -> "ContentID":
        """Parse the canonical base32 string form."""
        if not text.startswith("b"):
            raise ValueError(f"unsupported multibase prefix in {text!r}")
        body = text[1:].upper()
        body += "=" * (-len(body) % 8)
        return cls.from_bytes(base64.b32decode(body))

    def to_bytes(self) -> bytes:
        return encode_varint(1) + encode_varint(self.codec) + self.multihash

    def __str__(self) -> str:
        return "b" + base64.b32encode(self.to_bytes()).decode("ascii").lower().rstrip("=")


# ============================================================================
# Archive stream values
# ============================================================================

@dataclass(frozen=True)
class Block:
    """One entry of an archive. ``payload`` None marks a raw, undecoded block."""

    cid: ContentID
    payload: Optional[bytes]
    offset: int
    length: int


@dataclass(frozen=True)
class ArchiveLocator:
    bucket: str
    key: str

    @property
    def archive_id(self) -> str:
        # The s3:// URL of the object without its scheme.
        return f"{self.bucket}/{self.key}"

    def __str__(self) -> str:
        return f"s3://{self.archive_id}"


# ============================================================================
# Persisted records
# ============================================================================

class Occurrence(BaseModel):
    archive: str
    offset: int
    length: int

    def sort_key(self) -> Tuple[int, str]:
        return (self.offset, self.archive)


class BlockRecord(BaseModel):
    cid: str
    kind: str
    created_at: str
    occurrences: List[Occurrence] = Field(default_factory=list)
    decoded_payload: Any = None


class ArchiveRecord(BaseModel):
    path: str
    bucket: str
    key: str
    created_at: str
    roots: Set[str] = Field(default_factory=set)
    version: int
    total_length: int
    current_position: int = 0
    completed: bool = False
    duration_time: Optional[float] = None


def sort_occurrences(occurrences: List[Occurrence]) -> List[Occurrence]:
    """Ascending by offset, then archive id."""
    return sorted(occurrences, key=Occurrence.sort_key)
