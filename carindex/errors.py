"""Module errors: structured error taxonomy for the CAR block indexer."""
#
from enum import Enum
from typing import Dict, Any, Optional
# PURPOSE:
# Provides a structured error taxonomy for carindex with error codes,
# typed exceptions, and consistent error handling across the codebase.
#
# WHY STRUCTURED ERRORS:
# - The batch caller decides whether to retry, skip or alert, so every fatal
#   condition has to say what it is and whether a retry can help
# - Error codes are searchable in logs
#
# ERROR CODE FORMAT:
# - CODEC_XXX: Block decoding errors
# - STORE_XXX: Block store errors
# - SCHED_XXX: Task scheduler errors
# - ARCHIVE_XXX: Archive stream errors
# - CONFIG_XXX: Configuration errors
#
# USAGE:
#   from carindex.errors import IndexerError, ErrorCode
#
#   raise IndexerError(
#       ErrorCode.CONFIG_INVALID,
#       "block_concurrency must be at least 1",
#       details={"block_concurrency": 0}
#   )
#
class ErrorCode(Enum):
    # Codec Errors
    CODEC_UNSUPPORTED = "CODEC_001"
    CODEC_DECODE_FAILED = "CODEC_002"

    # Store Errors
    STORE_READ_FAILED = "STORE_001"
    STORE_WRITE_FAILED = "STORE_002"
    STORE_INIT_FAILED = "STORE_003"

    # Scheduler Errors
    SCHEDULER_TASK_FAILED = "SCHED_001"

    # Archive Errors
    ARCHIVE_OPEN_FAILED = "ARCHIVE_001"

    # Config Errors
    CONFIG_INVALID = "CONFIG_001"

    # System Errors
    SYSTEM_INTERNAL_ERROR = "SYSTEM_001"


class IndexerError(Exception):
    """
    Base exception class for carindex with structured error information.

    Attributes:
        code: ErrorCode enum value (e.g., "CODEC_001")
        message: Human-readable error message
        details: Optional dictionary with additional context
        retryable: Whether re-running the batch may succeed
    """

    # Failures caused by the environment rather than the archive contents.
    # Retrying is safe because archive ingestion is idempotent.
    RETRYABLE_CODES = frozenset({
        ErrorCode.STORE_READ_FAILED,
        ErrorCode.STORE_WRITE_FAILED,
        ErrorCode.STORE_INIT_FAILED,
        ErrorCode.ARCHIVE_OPEN_FAILED,
        ErrorCode.SCHEDULER_TASK_FAILED,
    })

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.retryable = code in self.RETRYABLE_CODES if retryable is None else retryable

        # Build exception message with code for easy debugging
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error to dictionary for JSON serialization.

        Returns:
            Dictionary with code, message, details, and retryable
        """
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable
        }

    def to_json(self) -> str:
        """Serialize error to JSON string."""
        import json
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IndexerError":
        """
        Deserialize error from dictionary.

        Args:
            data: Dictionary with code, message, details, retryable

        Returns:
            IndexerError instance
        """
        code = ErrorCode(data["code"])
        return cls(code, data["message"], data.get("details", {}), data.get("retryable"))


class UnsupportedCodecError(IndexerError):
    """A block declares a multicodec with no registered decoder."""

    def __init__(self, codec: int, offset: int):
        super().__init__(
            ErrorCode.CODEC_UNSUPPORTED,
            f"Unsupported codec {codec} in the block at offset {offset}",
            details={"codec": codec, "offset": offset},
        )


class CodecDecodeError(IndexerError):
    """A registered decoder rejected the block bytes."""

    def __init__(self, label: str, offset: int, reason: str):
        super().__init__(
            ErrorCode.CODEC_DECODE_FAILED,
            f"Cannot decode {label} block at offset {offset}: {reason}",
            details={"codec": label, "offset": offset},
        )


class StoreIOError(IndexerError):
    """Any failure reported by the block store."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(code, message, details, retryable)


class SchedulerTaskError(IndexerError):
    """First failure captured by a TaskScheduler, re-raised by its owner."""

    def __init__(self, cause: BaseException, context: Optional[str] = None):
        message = str(cause) or type(cause).__name__
        if context:
            message = f"{context}: {message}"
        super().__init__(
            ErrorCode.SCHEDULER_TASK_FAILED,
            message,
            details={"original_type": type(cause).__name__},
        )
        self.__cause__ = cause


class ArchiveOpenError(IndexerError):
    """The archive stream could not be opened."""

    def __init__(self, archive_id: str, reason: str):
        super().__init__(
            ErrorCode.ARCHIVE_OPEN_FAILED,
            f"Cannot open archive {archive_id}: {reason}",
            details={"archive": archive_id},
        )


# ============================================================================
# Convenience Functions
# ============================================================================

def handle_error(error: Exception, context: Optional[str] = None) -> IndexerError:
    """
    Convert a generic exception to an IndexerError.

    Args:
        error: The original exception
        context: Optional context string (e.g., "while ingesting bucket/key")

    Returns:
        IndexerError with appropriate code and message
    """
    if isinstance(error, IndexerError):
        return error

    error_type = type(error).__name__
    message = str(error)
    if context:
        message = f"{context}: {message}"

    return IndexerError(
        code=ErrorCode.SYSTEM_INTERNAL_ERROR,
        message=message,
        details={
            "original_type": error_type,
            "original_message": str(error)
        }
    )


# ============================================================================
# Module-Level Exports
# ============================================================================

__all__ = [
    "ErrorCode",
    "IndexerError",
    "UnsupportedCodecError",
    "CodecDecodeError",
    "StoreIOError",
    "SchedulerTaskError",
    "ArchiveOpenError",
    "handle_error",
]
