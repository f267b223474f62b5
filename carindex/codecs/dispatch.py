"""
carindex/codecs/dispatch.py
Block decoding.

decode() never raises for a bad block. It returns a DecodeResult that either
carries (kind, payload) or the IndexerError explaining why the block cannot be
stored, and the ingestion loop decides what to do with it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from carindex.codecs.dag_pb import unmarshal_unixfs
from carindex.codecs.registry import CodecRegistry, default_registry
from carindex.data.models import Block
from carindex.errors import CodecDecodeError, IndexerError, UnsupportedCodecError

logger = logging.getLogger(__name__)

# Codec labels of the directory/file family. Their "Data" field holds a UnixFS
# message.
STRUCTURED_PREFIX = "dag"


@dataclass(frozen=True)
class DecodeResult:
    kind: Optional[str] = None
    payload: Any = None
    error: Optional[IndexerError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, kind: str, payload: Any) -> "DecodeResult":
        return cls(kind=kind, payload=payload)

    @classmethod
    def failure(cls, error: IndexerError) -> "DecodeResult":
        return cls(error=error)


class CodecDispatch:
    """Resolves a block's codec through the registry and decodes its payload."""

    def __init__(self, registry: Optional[CodecRegistry] = None):
        self.registry = registry if registry is not None else default_registry()

    def decode(self, block: Block) -> DecodeResult:
        codec = self.registry.get(block.cid.codec)
        if codec is None:
            error = UnsupportedCodecError(block.cid.codec, block.offset)
            logger.error(f"[CodecDispatch] {error.message}")
            return DecodeResult.failure(error)

        try:
            data = codec.decode(block.payload)
            if codec.label.startswith(STRUCTURED_PREFIX):
                data = self._normalize_structured(data)
        except Exception as e:
            error = CodecDecodeError(codec.label, block.offset, str(e) or type(e).__name__)
            logger.error(f"[CodecDispatch] {error.message}")
            return DecodeResult.failure(error)

        return DecodeResult.success(codec.label, data)

    @staticmethod
    def _normalize_structured(data: Any) -> Any:
        # Replace the UnixFS bytes with {type, blocks}. A node without Data
        # (Data is None) carries no UnixFS message and is stored as decoded.
        if isinstance(data, dict) and isinstance(data.get("Data"), (bytes, bytearray)):
            data = dict(data)
            data["Data"] = unmarshal_unixfs(bytes(data["Data"]))
        return data
