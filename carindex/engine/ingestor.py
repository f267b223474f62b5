# ============================================================================
# carindex/engine/ingestor.py
# Archive Ingestor - Per-Archive State Machine and Batch Driver
# ============================================================================
#
# PURPOSE:
# Walks the blocks of one archive into the block store and records the
# archive's progress so a failed batch can simply be run again.
#
# STATES (per archive record):
#   NOT_STARTED -> IN_PROGRESS -> COMPLETED
#
# - An archive whose record says completed=True is skipped without a single
#   store write.
# - Entering IN_PROGRESS overwrites the archive record with the metadata of the
#   freshly opened stream. Whatever an earlier failed run left there is gone.
# - Every block becomes one TaskScheduler task: look the CID up, append an
#   occurrence if known, otherwise decode and store it.
# - Tasks for the same CID within one archive run one at a time, so a block
#   repeated inside an archive is decoded once and keeps every occurrence.
# - The first failing block stops the archive. No further block is read or
#   started, in-flight blocks finish, and the error is raised to the caller.
#   The record stays completed=False.
# - COMPLETED is a partial update: completed, current_position, duration_time.
#
# BATCHES:
# Archives are processed one after the other. A failure in one archive aborts
# the rest of the batch.
#
# ============================================================================

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Optional,
    Protocol,
    Set,
    Tuple,
)

from carindex.base.config import IndexerConfig, get_config
from carindex.codecs.dispatch import CodecDispatch
from carindex.data.merger import BlockMerger, MergeOutcome
from carindex.data.models import ArchiveLocator, ArchiveRecord, Block, ContentID
from carindex.data.store import BlockStore
from carindex.engine.scheduler import TaskScheduler
from carindex.errors import ArchiveOpenError, IndexerError, SchedulerTaskError
from carindex.utils.clock import elapsed, monotonic_start, utc_now_iso

logger = logging.getLogger(__name__)

# Kind stored for blocks that arrive without a payload.
RAW_KIND = "raw"


class ArchiveStream(Protocol):
    """Lazy, single-pass reader over the blocks of one archive."""

    roots: Set[ContentID]
    version: int
    total_length: int
    position: int

    def __aiter__(self) -> AsyncIterator[Block]:
        ...


ArchiveOpener = Callable[[ArchiveLocator], Awaitable[ArchiveStream]]


class ArchiveState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    # Outcome only: the record already said completed=True.
    SKIPPED = "skipped"


@dataclass
class ArchiveReport:
    """What one ingest() call did."""

    archive_id: str
    state: ArchiveState = ArchiveState.NOT_STARTED
    new_blocks: int = 0
    appended_blocks: int = 0
    duration: float = 0.0

    @property
    def skipped(self) -> bool:
        return self.state is ArchiveState.SKIPPED

    @property
    def blocks(self) -> int:
        return self.new_blocks + self.appended_blocks


class CidLocks:
    """
    One asyncio.Lock per CID string. A lock is dropped as soon as nobody holds
    or waits on it, so the map only ever holds the CIDs currently in flight.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @contextlib.asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


class ArchiveIngestor:
    """Drives archives through CodecDispatch and BlockMerger."""

    def __init__(
        self,
        store: BlockStore,
        open_archive: ArchiveOpener,
        dispatch: Optional[CodecDispatch] = None,
        config: Optional[IndexerConfig] = None,
        clock: Callable[[], str] = utc_now_iso,
    ):
        cfg = config or get_config()
        self.store = store
        self.open_archive = open_archive
        self.dispatch = dispatch or CodecDispatch()
        self.merger = BlockMerger(store, cfg.storage, clock)
        self.archives_table = cfg.storage.archives_table
        self.archives_key = cfg.storage.archives_key
        self.block_concurrency = cfg.ingest.block_concurrency
        self.clock = clock

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def ingest_batch(self, locators: Iterable[ArchiveLocator]) -> None:
        """Ingest archives strictly in order. The first failure aborts the batch."""
        locators = list(locators)
        total = len(locators)
        start = monotonic_start()

        for index, locator in enumerate(locators, start=1):
            try:
                await self.ingest(locator, progress=(index, total))
            except IndexerError as e:
                logger.error(
                    f"[ArchiveIngestor] Aborting batch at archive {index} of {total} ({locator}): {e}. "
                    f"{total - index} archive(s) left unprocessed."
                )
                raise

        logger.info(f"[ArchiveIngestor] Batch of {total} archive(s) done in {elapsed(start)}s")

    # ------------------------------------------------------------------
    # Single archive
    # ------------------------------------------------------------------

    async def ingest(
        self,
        locator: ArchiveLocator,
        progress: Optional[Tuple[int, int]] = None,
    ) -> ArchiveReport:
        archive_id = locator.archive_id
        current, total = progress or (1, 1)
        report = ArchiveReport(archive_id=archive_id)

        existing = await self.store.get(self.archives_table, self.archives_key, archive_id)
        if existing is not None and existing.get("completed"):
            logger.debug(
                f"[ArchiveIngestor] Skipping archive {locator} ({current} of {total}), "
                f"as it has already been analyzed."
            )
            report.state = ArchiveState.SKIPPED
            return report

        logger.info(f"[ArchiveIngestor] Analyzing archive {current} of {total}: {locator}")
        start = monotonic_start()

        stream = await self._open(locator)
        try:
            await self._start(locator, stream)
            report.state = ArchiveState.IN_PROGRESS
            await self._ingest_blocks(archive_id, stream, report)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        report.duration = elapsed(start)
        await self.store.put(False, self.archives_table, self.archives_key, archive_id, {
            "current_position": stream.total_length,
            "completed": True,
            "duration_time": report.duration,
        })
        report.state = ArchiveState.COMPLETED

        logger.info(
            f"[ArchiveIngestor] Completed {locator} in {report.duration}s: "
            f"{report.new_blocks} new block(s), {report.appended_blocks} already known"
        )
        return report

    async def _open(self, locator: ArchiveLocator) -> ArchiveStream:
        try:
            return await self.open_archive(locator)
        except IndexerError:
            raise
        except Exception as e:
            raise ArchiveOpenError(locator.archive_id, str(e) or type(e).__name__) from e

    async def _start(self, locator: ArchiveLocator, stream: ArchiveStream) -> None:
        record = ArchiveRecord(
            path=locator.archive_id,
            bucket=locator.bucket,
            key=locator.key,
            created_at=self.clock(),
            roots={str(root) for root in stream.roots},
            version=stream.version,
            total_length=stream.total_length,
            current_position=0,
            completed=False,
        )
        await self.store.put(
            True,
            self.archives_table,
            self.archives_key,
            locator.archive_id,
            record.model_dump(exclude={"path"}),
        )

    async def _ingest_blocks(self, archive_id: str, stream: ArchiveStream, report: ArchiveReport) -> None:
        def tally(outcome: MergeOutcome) -> None:
            if outcome is MergeOutcome.NEW:
                report.new_blocks += 1
            else:
                report.appended_blocks += 1

        scheduler = TaskScheduler(
            concurrency=self.block_concurrency,
            on_task_complete=tally,
            name=f"archive:{archive_id}",
        )
        locks = CidLocks()

        try:
            async for block in stream:
                await scheduler.wait_for_slot()
                if scheduler.failed:
                    logger.warning(f"[ArchiveIngestor] Stopping {archive_id} at offset {block.offset}: a block failed")
                    break
                logger.debug(
                    f"[ArchiveIngestor] Analyzing CID {block.cid} "
                    f"(position {getattr(stream, 'position', block.offset)} of {stream.total_length})"
                )
                scheduler.submit(functools.partial(self._handle_block, archive_id, block, locks))
        finally:
            result = await scheduler.await_completion()

        if result.error is not None:
            error = result.error
            if isinstance(error, IndexerError):
                raise error
            raise SchedulerTaskError(error, context=f"while ingesting {archive_id}") from error

    async def _handle_block(self, archive_id: str, block: Block, locks: CidLocks) -> MergeOutcome:
        async with locks.hold(str(block.cid)):
            return await self.merger.merge(archive_id, block, functools.partial(self._decode, block))

    def _decode(self, block: Block) -> Tuple[str, Any]:
        if block.payload is None:
            return RAW_KIND, {}
        result = self.dispatch.decode(block)
        if not result.ok:
            raise result.error
        return result.kind, result.payload
