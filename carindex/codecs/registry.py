"""
carindex/codecs/registry.py
Codec registry: maps a multicodec number to a label and a decode function.

The default registry knows the codecs whose decoders ship with our
dependencies. Anything else (dag-cbor, for example) has to be registered by
the caller before ingestion, otherwise blocks using it fail as unsupported.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from carindex.codecs.dag_pb import decode_dag_pb

logger = logging.getLogger(__name__)

RAW = 0x55
DAG_PB = 0x70
DAG_CBOR = 0x71
DAG_JSON = 0x0129
JSON = 0x0200

Decoder = Callable[[bytes], Any]


@dataclass(frozen=True)
class Codec:
    code: int
    label: str
    decode: Decoder


class CodecRegistry:
    """Lookup table of codecs keyed by multicodec number."""

    def __init__(self) -> None:
        self._codecs: Dict[int, Codec] = {}

    def register(self, code: int, label: str, decode: Decoder) -> Codec:
        codec = Codec(code=code, label=label, decode=decode)
        if code in self._codecs:
            logger.debug(f"[CodecRegistry] Replacing codec 0x{code:x} ({self._codecs[code].label} -> {label})")
        self._codecs[code] = codec
        return codec

    def get(self, code: int) -> Optional[Codec]:
        return self._codecs.get(code)

    def labels(self) -> List[str]:
        return [codec.label for _, codec in sorted(self._codecs.items())]

    def __contains__(self, code: int) -> bool:
        return code in self._codecs

    def __len__(self) -> int:
        return len(self._codecs)


def _decode_raw(payload: bytes) -> bytes:
    return bytes(payload)


def _decode_json(payload: bytes) -> Any:
    return json.loads(payload.decode("utf-8"))


def default_registry() -> CodecRegistry:
    """A fresh registry holding raw, dag-pb, dag-json and json."""
    registry = CodecRegistry()
    registry.register(RAW, "raw", _decode_raw)
    registry.register(DAG_PB, "dag-pb", decode_dag_pb)
    registry.register(DAG_JSON, "dag-json", _decode_json)
    registry.register(JSON, "json", _decode_json)
    return registry
