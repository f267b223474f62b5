"""
Unit tests for the ArchiveIngestor state machine and batch driver.

Verifies:
1. A mixed raw/dag-pb archive is stored and marked completed.
2. Completed archives are skipped without a single write.
3. A failing block aborts the archive and the remaining batch, leaving the
   archive record resumable.
4. Parallel blocks sharing a CID are decoded once and keep every occurrence.
"""

import asyncio

import pytest

from carindex.codecs.dispatch import CodecDispatch
from carindex.codecs.registry import DAG_CBOR, DAG_PB, RAW, default_registry
from carindex.data.models import ArchiveLocator, Block
from carindex.data.store import MemoryBlockStore
from carindex.engine.ingestor import ArchiveIngestor, ArchiveState, CidLocks
from carindex.errors import (
    ArchiveOpenError,
    ErrorCode,
    SchedulerTaskError,
    StoreIOError,
    UnsupportedCodecError,
)

from conftest import FakeArchive, FakeOpener, make_block, make_cid, make_dag_pb

ONE = ArchiveLocator("bucket", "one.car")
TWO = ArchiveLocator("bucket", "two.car")


def raw_and_dag_archive():
    block_a = make_block(b"raw leaf bytes", RAW, offset=59, with_payload=False)
    block_b = make_block(make_dag_pb([block_a.cid], unixfs_type=2, blocksizes=[14]), DAG_PB, offset=120)
    archive = FakeArchive([block_a, block_b], roots=[block_b.cid])
    return archive, block_a, block_b


@pytest.mark.asyncio
async def test_raw_and_dag_blocks_are_stored(store, config, clock):
    archive, block_a, block_b = raw_and_dag_archive()
    opener = FakeOpener({ONE.archive_id: archive})
    ingestor = ArchiveIngestor(store, opener, config=config, clock=clock)

    report = await ingestor.ingest(ONE)

    assert report.state is ArchiveState.COMPLETED
    assert not report.skipped
    assert report.new_blocks == 2
    assert archive.closed

    record_b = await store.get("blocks", "cid", str(block_b.cid))
    assert record_b["kind"] == "dag-pb"
    assert record_b["decoded_payload"]["Data"] == {"type": "file", "blocks": [14]}
    assert record_b["decoded_payload"]["Links"][0]["Hash"] == str(block_a.cid)
    assert record_b["occurrences"] == [
        {"archive": "bucket/one.car", "offset": block_b.offset, "length": block_b.length}
    ]

    record_a = await store.get("blocks", "cid", str(block_a.cid))
    assert record_a["kind"] == "raw"
    assert record_a["decoded_payload"] == {}

    car = await store.get("archives", "path", "bucket/one.car")
    assert car["bucket"] == "bucket"
    assert car["key"] == "one.car"
    assert car["roots"] == {str(block_b.cid)}
    assert car["version"] == 1
    assert car["total_length"] == archive.total_length
    assert car["current_position"] == archive.total_length
    assert car["completed"] is True
    assert isinstance(car["duration_time"], float)


@pytest.mark.asyncio
async def test_completed_archive_is_skipped_without_writes(store, config):
    archive, _, _ = raw_and_dag_archive()
    opener = FakeOpener({ONE.archive_id: archive})
    ingestor = ArchiveIngestor(store, opener, config=config)
    await ingestor.ingest(ONE)
    writes = store.writes

    report = await ingestor.ingest(ONE)

    assert report.skipped
    assert report.state is ArchiveState.SKIPPED
    assert store.writes == writes
    assert opener.opened == ["bucket/one.car"]


@pytest.mark.asyncio
async def test_restart_discards_previous_partial_record(store, config, clock):
    await store.put(True, "archives", "path", ONE.archive_id, {
        "bucket": "bucket",
        "key": "one.car",
        "created_at": "2020-01-01T00:00:00+00:00",
        "roots": {"stale-root"},
        "version": 2,
        "total_length": 999,
        "current_position": 500,
        "completed": False,
        "duration_time": 12.5,
    })
    archive, _, block_b = raw_and_dag_archive()
    ingestor = ArchiveIngestor(store, FakeOpener({ONE.archive_id: archive}), config=config, clock=clock)

    await ingestor.ingest(ONE)

    car = await store.get("archives", "path", ONE.archive_id)
    assert car["roots"] == {str(block_b.cid)}
    assert car["version"] == 1
    assert car["total_length"] == archive.total_length
    assert car["created_at"] == "2024-01-01T00:00:01+00:00"
    assert car["completed"] is True


@pytest.mark.asyncio
async def test_block_seen_in_two_archives(store, config):
    shared_x = make_block(b"shared", RAW, offset=10)
    shared_y = make_block(b"shared", RAW, offset=5)
    opener = FakeOpener({
        "bucket/x.car": FakeArchive([shared_x]),
        "bucket/y.car": FakeArchive([make_block(b"only-y", RAW, offset=0), shared_y]),
    })
    ingestor = ArchiveIngestor(store, opener, config=config)

    await ingestor.ingest_batch([ArchiveLocator("bucket", "x.car"), ArchiveLocator("bucket", "y.car")])

    record = await store.get("blocks", "cid", str(shared_x.cid))
    assert [(o["archive"], o["offset"]) for o in record["occurrences"]] == [
        ("bucket/y.car", 5),
        ("bucket/x.car", 10),
    ]


@pytest.mark.asyncio
async def test_unsupported_codec_aborts_archive_and_batch(store, config):
    good = make_block(b"good", RAW, offset=0)
    bad = make_block(b"cbor", DAG_CBOR, offset=50)
    after = make_block(b"after", RAW, offset=100)
    first = FakeArchive([good, bad, after])
    opener = FakeOpener({ONE.archive_id: first, TWO.archive_id: FakeArchive([make_block(b"two", RAW, offset=0)])})
    ingestor = ArchiveIngestor(store, opener, config=config)

    with pytest.raises(UnsupportedCodecError) as excinfo:
        await ingestor.ingest_batch([ONE, TWO])

    assert excinfo.value.details == {"codec": DAG_CBOR, "offset": 50}
    assert opener.opened == [ONE.archive_id]
    assert await store.get("blocks", "cid", str(good.cid)) is not None
    assert await store.get("blocks", "cid", str(bad.cid)) is None
    assert await store.get("blocks", "cid", str(after.cid)) is None
    assert first.closed

    car = await store.get("archives", "path", ONE.archive_id)
    assert car["completed"] is False


@pytest.mark.asyncio
async def test_retry_after_registering_codec_completes(store, config):
    bad = make_block(b"cbor", DAG_CBOR, offset=0)
    opener = FakeOpener({ONE.archive_id: FakeArchive([bad])})

    with pytest.raises(UnsupportedCodecError):
        await ArchiveIngestor(store, opener, config=config).ingest(ONE)

    registry = default_registry()
    registry.register(DAG_CBOR, "dag-cbor", lambda raw: {"decoded": raw.decode()})
    opener.archives[ONE.archive_id] = FakeArchive([bad])
    report = await ArchiveIngestor(store, opener, CodecDispatch(registry), config=config).ingest(ONE)

    assert report.state is ArchiveState.COMPLETED
    record = await store.get("blocks", "cid", str(bad.cid))
    assert record["kind"] == "dag-cbor"
    assert record["decoded_payload"] == {"decoded": "cbor"}


class YieldingBlockStore(MemoryBlockStore):
    """Suspends on every call, the way a networked store would."""

    def __init__(self):
        super().__init__()
        self.first_sightings = 0

    async def get(self, table, key_field, key):
        await asyncio.sleep(0)
        return await super().get(table, key_field, key)

    async def put(self, full_overwrite, table, key_field, key, fields):
        await asyncio.sleep(0)
        if table == "blocks" and full_overwrite:
            self.first_sightings += 1
        await super().put(full_overwrite, table, key_field, key, fields)


@pytest.mark.asyncio
async def test_concurrent_block_handling(concurrent_config):
    store = YieldingBlockStore()
    blocks = [make_block(f"block-{i % 7}".encode(), RAW, offset=i * 100) for i in range(20)]
    opener = FakeOpener({ONE.archive_id: FakeArchive(blocks)})
    ingestor = ArchiveIngestor(store, opener, config=concurrent_config)

    report = await ingestor.ingest(ONE)

    assert report.blocks == 20
    assert report.new_blocks == 7
    assert store.first_sightings == 7
    car = await store.get("archives", "path", ONE.archive_id)
    assert car["completed"] is True
    for cid in {block.cid for block in blocks}:
        record = await store.get("blocks", "cid", str(cid))
        expected = sorted(block.offset for block in blocks if block.cid == cid)
        assert [o["offset"] for o in record["occurrences"]] == expected


@pytest.mark.asyncio
async def test_repeated_block_in_one_archive_keeps_every_occurrence(concurrent_config):
    store = YieldingBlockStore()
    blocks = [make_block(b"same bytes", RAW, offset=offset) for offset in (0, 100, 200, 300)]
    opener = FakeOpener({ONE.archive_id: FakeArchive(blocks)})

    report = await ArchiveIngestor(store, opener, config=concurrent_config).ingest(ONE)

    assert report.new_blocks == 1
    assert report.appended_blocks == 3
    assert store.first_sightings == 1
    record = await store.get("blocks", "cid", str(blocks[0].cid))
    assert record["occurrences"] == [
        {"archive": ONE.archive_id, "offset": offset, "length": blocks[0].length}
        for offset in (0, 100, 200, 300)
    ]


@pytest.mark.asyncio
async def test_cid_locks_serialize_holders_and_are_dropped():
    locks = CidLocks()
    inside = []

    async def hold(key, label):
        async with locks.hold(key):
            inside.append(label)
            await asyncio.sleep(0)
            inside.append(f"{label}-done")

    await asyncio.gather(hold("a", "a1"), hold("a", "a2"), hold("b", "b1"))

    assert inside.index("a1-done") < inside.index("a2")
    assert len(locks) == 0

class FailingBlockStore(MemoryBlockStore):
    def __init__(self, error):
        super().__init__()
        self.error = error

    async def put(self, full_overwrite, table, key_field, key, fields):
        if table == "blocks":
            raise self.error
        await super().put(full_overwrite, table, key_field, key, fields)


@pytest.mark.asyncio
async def test_store_failure_propagates(config):
    store = FailingBlockStore(StoreIOError(ErrorCode.STORE_WRITE_FAILED, "throttled"))
    opener = FakeOpener({ONE.archive_id: FakeArchive([make_block(b"a", RAW, offset=0)])})

    with pytest.raises(StoreIOError) as excinfo:
        await ArchiveIngestor(store, opener, config=config).ingest(ONE)

    assert excinfo.value.retryable
    car = await store.get("archives", "path", ONE.archive_id)
    assert car["completed"] is False


@pytest.mark.asyncio
async def test_foreign_task_error_is_wrapped(config):
    store = FailingBlockStore(RuntimeError("socket closed"))
    opener = FakeOpener({ONE.archive_id: FakeArchive([make_block(b"a", RAW, offset=0)])})

    with pytest.raises(SchedulerTaskError) as excinfo:
        await ArchiveIngestor(store, opener, config=config).ingest(ONE)

    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert excinfo.value.code is ErrorCode.SCHEDULER_TASK_FAILED


@pytest.mark.asyncio
async def test_open_failure_is_wrapped(store, config):
    ingestor = ArchiveIngestor(store, FakeOpener(), config=config)

    with pytest.raises(ArchiveOpenError) as excinfo:
        await ingestor.ingest(ONE)

    assert excinfo.value.details == {"archive": ONE.archive_id}
    assert await store.get("archives", "path", ONE.archive_id) is None


@pytest.mark.asyncio
async def test_stream_failure_leaves_archive_in_progress(store, config):
    blocks = [make_block(b"a", RAW, offset=0), make_block(b"b", RAW, offset=50)]
    archive = FakeArchive(blocks, fail_at=1)
    ingestor = ArchiveIngestor(store, FakeOpener({ONE.archive_id: archive}), config=config)

    with pytest.raises(OSError):
        await ingestor.ingest(ONE)

    assert await store.get("blocks", "cid", str(blocks[0].cid)) is not None
    car = await store.get("archives", "path", ONE.archive_id)
    assert car["completed"] is False
    assert archive.closed


@pytest.mark.asyncio
async def test_empty_archive_completes(store, config):
    ingestor = ArchiveIngestor(store, FakeOpener({ONE.archive_id: FakeArchive([])}), config=config)

    report = await ingestor.ingest(ONE)

    assert report.blocks == 0
    car = await store.get("archives", "path", ONE.archive_id)
    assert car["completed"] is True
    assert car["current_position"] == 0


@pytest.mark.asyncio
async def test_block_without_payload_is_never_decoded(store, config):
    block = Block(cid=make_cid(b"unknown", DAG_CBOR), payload=None, offset=0, length=10)
    ingestor = ArchiveIngestor(store, FakeOpener({ONE.archive_id: FakeArchive([block])}), config=config)

    await ingestor.ingest(ONE)

    record = await store.get("blocks", "cid", str(block.cid))
    assert record["kind"] == "raw"
