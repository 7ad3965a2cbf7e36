"""
Card Sync — Sync Error Taxonomy

Per-source errors are caught by the orchestrator and converted into that
source's schedule update. Only CycleAbortedError escapes a cycle.

    SyncError
    ├── ConfigurationError      permanent; source disabled, operator action needed
    ├── TransientFetchError     network / upstream 5xx; retried via error backoff
    │   └── ScrapeTimeoutError  fetch or scrape job exceeded its deadline
    ├── DuplicateRecordError    store uniqueness violation; absorbed, counted as skipped
    ├── StoreWriteError         any other store write failure; logged and counted
    └── CycleAbortedError       cycle cannot start (e.g. policy unreadable)
"""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base class for market sync errors."""

    code = "sync_error"

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the cycle report / trigger response."""
        result: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message


class ConfigurationError(SyncError):
    """The source itself is unusable (e.g. unresolvable external_ref)."""

    code = "configuration"


class TransientFetchError(SyncError):
    """Fetching from the scraper service failed in a way worth retrying later."""

    code = "transient_fetch"


class ScrapeTimeoutError(TransientFetchError):
    """A fetch or an asynchronous scrape job did not finish in time."""

    code = "timeout"


class DuplicateRecordError(SyncError):
    """The store rejected a write on its uniqueness constraint."""

    code = "duplicate"


class StoreWriteError(SyncError):
    """Unexpected store failure while writing."""

    code = "store_write"


class CycleAbortedError(SyncError):
    """A cycle-level failure; reported to the trigger caller."""

    code = "cycle_aborted"
