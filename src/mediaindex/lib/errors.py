"""Exception hierarchy for mediaindex.

Fatal errors abort a sync run (the orchestrator moves to ``Failed``).
Per-item errors are recorded on the run result and never escape it.
"""
from __future__ import annotations

from typing import Any, Optional


class MediaIndexError(Exception):
    """Base exception for mediaindex.

    Attributes:
        details: Optional structured information (paths, ids, counts).
        cause: Optional original exception that triggered this error.
    """

    def __init__(
        self,
        message: str,
        *,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.details = details or {}
        self.cause = cause


class SyncFatalError(MediaIndexError):
    """Raised when a run cannot continue; the run ends in ``Failed``."""


class LibraryUnavailable(SyncFatalError):
    """Raised when the library root or its items directory is unreachable."""


class IndexUnavailable(SyncFatalError):
    """Raised when the index store cannot be opened or queried at connect time."""


class FinalizeError(SyncFatalError):
    """Raised when the sync cursor / item count cannot be written."""


class ExtractionUnavailable(MediaIndexError):
    """Raised when an item's sidecar is missing, unreadable or malformed."""


class InvalidTransition(MediaIndexError):
    """Raised when the orchestrator is asked for a state change it does not allow."""
