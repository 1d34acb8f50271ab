"""Error taxonomy shared across the indexing, session and scheduling layers."""

from __future__ import annotations

from typing import Literal

ProviderErrorKind = Literal["transport", "rate_limit", "timeout", "auth", "invalid_request"]

_RETRYABLE_KINDS = frozenset({"transport", "rate_limit", "timeout"})


class MnemoError(Exception):
    """Base class for all mnemo errors."""


class ConfigError(MnemoError):
    """Invalid configuration. Fatal at startup."""


class IndexStoreError(MnemoError):
    """Index storage corruption or a failed transaction.

    Fatal for the operation that raised it; the store stays usable for
    other files unless it was raised while opening.
    """


class WatchError(MnemoError):
    """Change notifications were lost. Triggers a full rescan."""


class CompactionError(MnemoError):
    """Summarization during compaction failed twice."""


class SchedulerTaskError(MnemoError):
    """A single heartbeat task could not be executed."""

    def __init__(self, task: str, message: str) -> None:
        super().__init__(f"{task}: {message}")
        self.task = task


class ProviderError(MnemoError):
    """Failure reported by an LLM provider."""

    def __init__(self, message: str, kind: ProviderErrorKind = "transport") -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE_KINDS
