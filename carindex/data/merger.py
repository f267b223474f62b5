"""
carindex/data/merger.py
Cross-archive block deduplication.

Every block is stored once per CID. The first sighting writes the decoded
payload; every later sighting (same archive or another one) only appends an
occurrence {archive, offset, length} to the record.

Key design decisions:

  - kind, decoded_payload and created_at are written once, by the full
    overwrite of record_first_sighting(), and never touched again.

  - append_occurrence() writes only the occurrences field, kept sorted by
    (offset, archive) whatever order the sightings arrived in.

  - (archive, offset) pairs are not deduplicated. Replaying an archive would
    append its occurrences again; the ingestor's completed flag is what
    prevents replays.

  - Lookup and write are two separate store calls. Two ingestions racing on the
    same CID can lose an occurrence.

Usage:
    merger = BlockMerger(store)
    outcome = await merger.merge(archive_id, block, decode=lambda: ("raw", {}))
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from carindex.base.config import StorageConfig
from carindex.data.models import (
    Block,
    BlockRecord,
    ContentID,
    Occurrence,
    sort_occurrences,
)
from carindex.data.store import BlockStore
from carindex.utils.clock import utc_now_iso

logger = logging.getLogger(__name__)

# Produces (kind, decoded_payload) for a block seen for the first time.
Decode = Callable[[], Tuple[str, Any]]


class MergeOutcome(str, Enum):
    NEW = "new"
    APPENDED = "appended"


def normalize_link(value: Any) -> Any:
    """Canonical string form of a child reference."""
    if isinstance(value, ContentID):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return str(ContentID.from_bytes(bytes(value)))
    return str(value)


def normalize_links(payload: Any) -> Any:
    if not isinstance(payload, dict):
        return payload
    links = payload.get("Links")
    if not isinstance(links, list):
        return payload
    payload = dict(payload)
    payload["Links"] = [
        {**link, "Hash": normalize_link(link["Hash"])} if isinstance(link, dict) and "Hash" in link else link
        for link in links
    ]
    return payload


class BlockMerger:
    """Insert-or-append of BlockRecords, keyed by CID string."""

    def __init__(
        self,
        store: BlockStore,
        storage: Optional[StorageConfig] = None,
        clock: Callable[[], str] = utc_now_iso,
    ):
        storage = storage or StorageConfig()
        self.store = store
        self.table = storage.blocks_table
        self.key_field = storage.blocks_key
        self.clock = clock

    async def lookup(self, cid: ContentID) -> Optional[Dict[str, Any]]:
        return await self.store.get(self.table, self.key_field, str(cid))

    async def record_first_sighting(
        self,
        archive_id: str,
        block: Block,
        kind: str,
        decoded_payload: Any = None,
    ) -> BlockRecord:
        """Write a brand-new record for block. Replaces whatever is stored under its CID."""
        cid = str(block.cid)
        record = BlockRecord(
            cid=cid,
            kind=kind,
            created_at=self.clock(),
            occurrences=[Occurrence(archive=archive_id, offset=block.offset, length=block.length)],
            decoded_payload=normalize_links(decoded_payload if decoded_payload is not None else {}),
        )
        fields = record.model_dump(exclude={"cid"})
        await self.store.put(True, self.table, self.key_field, cid, fields)
        logger.debug(f"[BlockMerger] Stored new {kind} block {cid} from {archive_id}@{block.offset}")
        return record

    async def append_occurrence(
        self,
        existing: Dict[str, Any],
        archive_id: str,
        block: Block,
    ) -> List[Occurrence]:
        """Add one occurrence to an existing record and persist the sorted list."""
        occurrences = [Occurrence.model_validate(item) for item in existing.get("occurrences") or []]
        occurrences.append(Occurrence(archive=archive_id, offset=block.offset, length=block.length))
        occurrences = sort_occurrences(occurrences)
        await self.store.put(
            False,
            self.table,
            self.key_field,
            str(block.cid),
            {"occurrences": [item.model_dump() for item in occurrences]},
        )
        logger.debug(
            f"[BlockMerger] Appended {archive_id}@{block.offset} to {block.cid} "
            f"({len(occurrences)} occurrence(s))"
        )
        return occurrences

    async def merge(self, archive_id: str, block: Block, decode: Decode) -> MergeOutcome:
        """
        Look the CID up; append an occurrence if it is known, otherwise call
        decode() and store the first sighting. A known block is never decoded
        again, even when this sighting carries its bytes.
        """
        existing = await self.lookup(block.cid)
        if existing is not None:
            await self.append_occurrence(existing, archive_id, block)
            return MergeOutcome.APPENDED

        kind, payload = decode()
        await self.record_first_sighting(archive_id, block, kind, payload)
        return MergeOutcome.NEW
