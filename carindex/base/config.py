# ============================================================================
# carindex/base/config.py
# Application Configuration Management
# ============================================================================
#
# PURPOSE:
# Defines every configuration setting of the indexer. Settings are read from
# CARINDEX_* environment variables so the same code runs locally, in tests and
# inside a batch worker without edits.
#
# KEY CONCEPTS:
# 1. Dataclasses: one frozen section per concern (storage, ingest, logging)
# 2. Environment Variables: e.g. CARINDEX_BLOCK_CONCURRENCY=4
# 3. Singleton Pattern: one global config shared across the application
#
# ============================================================================

from __future__ import annotations

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from carindex.errors import ErrorCode, IndexerError

logger = logging.getLogger(__name__)


STORE_BACKENDS = ("sqlite", "memory")


# ============================================================================
# Block Store Configuration
# ============================================================================
# Where blocks and archive progress records are persisted.

@dataclass(frozen=True)
class StorageConfig:
    # Which BlockStore implementation to build ("sqlite" or "memory")
    backend: str = "sqlite"

    # Base directory for the database and log files
    base_dir: Path = field(default_factory=lambda: Path.home() / ".carindex")

    # Name of the SQLite database file
    db_name: str = "carindex.db"

    # Logical table holding one BlockRecord per CID, and its key field
    blocks_table: str = "blocks"
    blocks_key: str = "cid"

    # Logical table holding one ArchiveRecord per archive, and its key field
    archives_table: str = "archives"
    archives_key: str = "path"

    @property
    def db_path(self) -> Path:
        return self.base_dir / self.db_name


# ============================================================================
# Ingestion Configuration
# ============================================================================

@dataclass(frozen=True)
class IngestConfig:
    # How many block tasks of one archive may touch the store at the same time.
    # 1 keeps block handling strictly sequential.
    block_concurrency: int = 1


# ============================================================================
# Logging Configuration
# ============================================================================

@dataclass(frozen=True)
class LogConfig:
    # DEBUG logs every block, INFO logs every archive
    level: str = "INFO"

    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    # Also write a rotating log file inside base_dir
    file_enabled: bool = False
    file_name: str = "carindex.log"
    max_file_size_mb: int = 10
    backup_count: int = 5


# ============================================================================
# Master Configuration Container
# ============================================================================

@dataclass
class IndexerConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    ingest: IngestConfig = field(default_factory=IngestConfig)
    log: LogConfig = field(default_factory=LogConfig)

    # Debug mode: forces DEBUG logging
    debug: bool = False

    def __post_init__(self):
        if self.ingest.block_concurrency < 1:
            raise IndexerError(
                ErrorCode.CONFIG_INVALID,
                "block_concurrency must be at least 1",
                details={"block_concurrency": self.ingest.block_concurrency},
            )
        if self.storage.backend not in STORE_BACKENDS:
            raise IndexerError(
                ErrorCode.CONFIG_INVALID,
                f"Unknown store backend {self.storage.backend!r}",
                details={"backend": self.storage.backend, "allowed": list(STORE_BACKENDS)},
            )

    @classmethod
    def from_env(cls) -> "IndexerConfig":
        base_dir = Path(os.getenv("CARINDEX_DATA_DIR", str(Path.home() / ".carindex")))
        storage = StorageConfig(
            backend=os.getenv("CARINDEX_STORE_BACKEND", "sqlite").lower(),
            base_dir=base_dir,
            db_name=os.getenv("CARINDEX_DB_NAME", "carindex.db"),
            blocks_table=os.getenv("CARINDEX_BLOCKS_TABLE", "blocks"),
            archives_table=os.getenv("CARINDEX_ARCHIVES_TABLE", "archives"),
        )

        try:
            block_concurrency = int(os.getenv("CARINDEX_BLOCK_CONCURRENCY", "1"))
        except ValueError as exc:
            raise IndexerError(
                ErrorCode.CONFIG_INVALID,
                f"CARINDEX_BLOCK_CONCURRENCY is not an integer: {exc}",
            ) from exc
        ingest = IngestConfig(block_concurrency=block_concurrency)

        log = LogConfig(
            level=os.getenv("CARINDEX_LOG_LEVEL", "INFO"),
            file_enabled=os.getenv("CARINDEX_LOG_FILE", "false").lower() == "true",
        )

        return cls(
            storage=storage,
            ingest=ingest,
            log=log,
            debug=os.getenv("CARINDEX_DEBUG", "false").lower() == "true",
        )


# ============================================================================
# Global Configuration Singleton
# ============================================================================

_config: Optional[IndexerConfig] = None


def get_config() -> IndexerConfig:
    """
    Get the global configuration instance.

    Only creates the config once (from the environment), then reuses it.
    """
    global _config
    if _config is None:
        _config = IndexerConfig.from_env()
    return _config


def set_config(config: Optional[IndexerConfig]) -> None:
    """
    Replace the global configuration (mainly used for testing).

    Passing None drops the cached config so the next get_config() re-reads
    the environment.
    """
    global _config
    _config = config


def setup_logging(config: Optional[IndexerConfig] = None) -> None:
    """
    Configure Python's logging system based on our settings.

    Sets up console logging and, when enabled, a rotating log file.
    Call this once at application startup.
    """
    cfg = config or get_config()

    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if cfg.log.file_enabled:
        from logging.handlers import RotatingFileHandler
        cfg.storage.base_dir.mkdir(parents=True, exist_ok=True)
        log_path = cfg.storage.base_dir / cfg.log.file_name
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=cfg.log.max_file_size_mb * 1024 * 1024,
            backupCount=cfg.log.backup_count,
        )
        handlers.append(file_handler)

    level = "DEBUG" if cfg.debug else cfg.log.level.upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=cfg.log.format,
        handlers=handlers,
        force=True,
    )
