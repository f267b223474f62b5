"""Pytest configuration for carindex."""
import asyncio
import hashlib
import itertools
import os
from typing import Dict, Iterable, List, Optional

import pytest

from carindex.base.config import IndexerConfig, IngestConfig, StorageConfig
from carindex.codecs.dag_pb import message_classes
from carindex.data.models import ArchiveLocator, Block, ContentID
from carindex.data.store import MemoryBlockStore


def pytest_configure():
    # Never touch a real database from a test that forgets to pass a config.
    os.environ.setdefault("CARINDEX_STORE_BACKEND", "memory")


def make_cid(data: bytes, codec: int) -> ContentID:
    """CIDv1 over a sha2-256 multihash of data."""
    return ContentID(codec=codec, multihash=bytes([0x12, 0x20]) + hashlib.sha256(data).digest())


def make_block(data: bytes, codec: int, offset: int, with_payload: bool = True) -> Block:
    return Block(
        cid=make_cid(data, codec),
        payload=data if with_payload else None,
        offset=offset,
        length=len(data) + 40,
    )


def make_dag_pb(links: Iterable[ContentID], unixfs_type: int = 2, blocksizes: Iterable[int] = ()) -> bytes:
    """Serialized dag-pb node whose Data is a UnixFS message."""
    messages = message_classes()
    unixfs = messages.UnixFSData()
    unixfs.Type = unixfs_type
    unixfs.blocksizes.extend(blocksizes)
    node = messages.PBNode()
    for index, cid in enumerate(links):
        link = node.Links.add()
        link.Hash = cid.to_bytes()
        link.Name = f"part-{index}"
        link.Tsize = 10
    node.Data = unixfs.SerializeToString()
    return node.SerializeToString()


class FakeArchive:
    """In-memory ArchiveStream. Yields control between blocks like a real reader."""

    def __init__(
        self,
        blocks: List[Block],
        roots: Iterable[ContentID] = (),
        version: int = 1,
        fail_at: Optional[int] = None,
    ):
        self.blocks = list(blocks)
        self.roots = set(roots)
        self.version = version
        self.total_length = max((b.offset + b.length for b in self.blocks), default=0)
        self.position = 0
        self.yielded = 0
        self.closed = False
        self.fail_at = fail_at

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for index, block in enumerate(self.blocks):
            await asyncio.sleep(0)
            if self.fail_at == index:
                raise OSError("connection reset while reading archive")
            self.position = block.offset + block.length
            self.yielded += 1
            yield block

    async def aclose(self):
        self.closed = True


class FakeOpener:
    """ArchiveOpener serving FakeArchives by archive id."""

    def __init__(self, archives: Optional[Dict[str, FakeArchive]] = None):
        self.archives = dict(archives or {})
        self.opened: List[str] = []

    async def __call__(self, locator: ArchiveLocator) -> FakeArchive:
        self.opened.append(locator.archive_id)
        try:
            return self.archives[locator.archive_id]
        except KeyError:
            raise FileNotFoundError(f"no such object: {locator}") from None


@pytest.fixture
def store():
    return MemoryBlockStore()


@pytest.fixture
def config(tmp_path):
    return IndexerConfig(storage=StorageConfig(backend="memory", base_dir=tmp_path))


@pytest.fixture
def concurrent_config(tmp_path):
    return IndexerConfig(
        storage=StorageConfig(backend="memory", base_dir=tmp_path),
        ingest=IngestConfig(block_concurrency=4),
    )


@pytest.fixture
def clock():
    counter = itertools.count(1)
    return lambda: f"2024-01-01T00:00:{next(counter):02d}+00:00"
