"""
Exceptions and error logging for memo.

Logs full stack traces for debugging while the CLI shows clean messages.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class MemoError(Exception):
    """Base class for memo errors."""


class ConfigurationError(MemoError):
    """A configuration file is missing or invalid."""


class ConfigurationResolutionError(MemoError):
    """A ``provider.service`` reference could not be resolved."""


class ProviderCallError(MemoError):
    """An embedding, rerank or completion call failed.

    Covers transport errors, timeouts, non-2xx responses and malformed
    payloads. The failing provider is named in ``provider``.
    """

    def __init__(self, message: str, provider: str = ""):
        super().__init__(message)
        self.provider = provider


class DimensionMismatchError(MemoError, ValueError):
    """A vector's length does not match the store dimension."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Embedding dimension mismatch: store expects {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class StorageError(MemoError):
    """The vector store backend failed."""


class MemoryNotFoundError(MemoError, KeyError):
    """No record with the requested id."""

    def __init__(self, id: str):
        super().__init__(f"Memory not found: {id}")
        self.id = id

    def __str__(self) -> str:
        return self.args[0]


class SearchCancelled(MemoError):
    """The caller cancelled an in-flight search."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting MEMO_HOME."""
    home = os.environ.get("MEMO_HOME")
    if home:
        return Path(home) / "memo-errors.log"
    return Path.home() / ".memo" / "memo-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Append an exception with full traceback to the error log.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}] {type(exc).__name__}")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(exc)))
    except OSError:
        pass  # Can't write error log; the caller still reports the error
    return log_path
