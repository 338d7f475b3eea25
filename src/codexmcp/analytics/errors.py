"""Named failure classes for the analytics subsystem.

Load and save failures are recoverable: the store logs them and carries on
with defaults or the in-memory state.  Import failures reach the HTTP caller.
Recording failures never leave the facade.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class AnalyticsError(Exception):
    """Base class for analytics failures."""


class RecoverableLoadError(AnalyticsError):
    """The snapshot file could not be read or parsed."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Failed to load analytics from {path}: {reason}")
        self.path = path
        self.reason = reason


class RecoverableSaveError(AnalyticsError):
    """The snapshot could not be written to disk."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Failed to save analytics to {path}: {reason}")
        self.path = path
        self.reason = reason


class InvalidImportError(AnalyticsError):
    """A delta import payload was rejected."""

    def __init__(self, message: str, details: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class RecordingError(AnalyticsError):
    """Recording a request or tool call failed."""
