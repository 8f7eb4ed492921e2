"""Failure taxonomy shared by the fetch, transcode, and commit stages."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for failures raised while synchronizing one place."""

    reason: str = "sync_error"

    def __init__(self, message: str = "", *, reason: str | None = None) -> None:
        super().__init__(message or self.reason)
        if reason is not None:
            self.reason = reason


class TransientError(SyncError):
    """Retryable failure: timeouts, connection resets, rate-limit responses."""

    reason = "transient"


class PermanentError(SyncError):
    """Non-retryable failure: malformed data, not found, rejected requests."""

    reason = "permanent"


class DecodeError(PermanentError):
    """Photo bytes could not be decoded or encoded into every variant."""

    reason = "decode_error"


class QuotaExhausted(SyncError):
    """The quota ledger denied admission; the item is deferred, not failed."""

    reason = "quota_exhausted"


class CommitFault(SyncError):
    """Staging or activation I/O failed; previously active data is untouched."""

    reason = "commit_fault"


class Cancelled(SyncError):
    """A cancel request was observed at a checkpoint before commit."""

    reason = "cancelled"


__all__ = [
    "Cancelled",
    "CommitFault",
    "DecodeError",
    "PermanentError",
    "QuotaExhausted",
    "SyncError",
    "TransientError",
]
