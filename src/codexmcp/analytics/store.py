"""File-based analytics persistence.

Stores an AnalyticsSnapshot as indented JSON in ``<data dir>/analytics.json``.
Uses atomic write (temp file + rename) to avoid corruption on crash.

``read()``/``write()`` raise the named recoverable errors; ``load()``/``save()``
log them, remember them in ``last_error`` and carry on.
"""

from __future__ import annotations

import contextlib
import json
import logging
import tempfile
from pathlib import Path

from codexmcp.analytics.errors import AnalyticsError, RecoverableLoadError, RecoverableSaveError
from codexmcp.analytics.models import LENIENT, AnalyticsSnapshot
from codexmcp.config import get_settings

logger = logging.getLogger(__name__)


class AnalyticsStore:
    """Read/write AnalyticsSnapshot to disk."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or get_settings().analytics_path
        self.last_error: AnalyticsError | None = None

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Best-effort API
    # ------------------------------------------------------------------

    def load(self) -> AnalyticsSnapshot:
        """Load the saved snapshot, or a fresh one if there is none.

        Never raises: an unreadable document yields defaults, a malformed
        field yields that field's default.
        """
        try:
            snap = self.read()
        except RecoverableLoadError as exc:
            self.last_error = exc
            logger.warning("%s; starting with fresh analytics", exc, exc_info=True)
            return AnalyticsSnapshot()

        self.last_error = None
        if snap is None:
            logger.info("No existing analytics file at %s, starting fresh", self._path)
            return AnalyticsSnapshot()
        logger.info(
            "Loaded analytics from %s (requests=%d, tool calls=%d)",
            self._path,
            snap.total_requests,
            snap.total_tool_calls,
        )
        return snap

    def save(self, snapshot: AnalyticsSnapshot) -> bool:
        """Persist a snapshot; return False (and log) on failure."""
        try:
            self.write(snapshot)
        except RecoverableSaveError as exc:
            self.last_error = exc
            logger.warning("%s", exc, exc_info=True)
            return False
        self.last_error = None
        return True

    def delete(self) -> None:
        """Remove the stored analytics file."""
        try:
            self._path.unlink(missing_ok=True)
        except OSError:
            logger.warning("Failed to delete analytics file %s", self._path, exc_info=True)

    # ------------------------------------------------------------------
    # Strict API
    # ------------------------------------------------------------------

    def read(self) -> AnalyticsSnapshot | None:
        """Parse the snapshot file. Returns None if it does not exist."""
        if not self._path.exists():
            return None
        try:
            raw = self._path.read_text(encoding="utf-8")
            data = json.loads(raw)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise RecoverableLoadError(self._path, str(exc)) from exc
        if not isinstance(data, dict):
            raise RecoverableLoadError(
                self._path, f"expected a JSON object, got {type(data).__name__}"
            )
        return AnalyticsSnapshot.model_validate(data, context={LENIENT: True})

    def write(self, snapshot: AnalyticsSnapshot) -> None:
        """Persist a snapshot atomically, raising RecoverableSaveError on failure."""
        data = snapshot.model_dump_json(by_alias=True, indent=2)
        parent = self._path.parent
        tmp: Path | None = None
        try:
            parent.mkdir(parents=True, exist_ok=True)
            # Atomic write: temp file in the same directory, then rename
            fd, tmp_name = tempfile.mkstemp(dir=parent, suffix=".tmp")
            tmp = Path(tmp_name)
            with open(fd, "w", encoding="utf-8") as f:
                f.write(data)
            tmp.replace(self._path)
        except OSError as exc:
            if tmp is not None:
                with contextlib.suppress(OSError):
                    tmp.unlink(missing_ok=True)
            raise RecoverableSaveError(self._path, str(exc)) from exc
        logger.debug("Analytics saved to %s", self._path)
