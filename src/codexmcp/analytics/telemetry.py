"""Telemetry facade consumed by the HTTP layer.

Owns the AnalyticsCollector, checkpoints it through AnalyticsStore every
``save_interval`` seconds from a background thread, and flushes once more on
shutdown.  Recording never raises into the caller's request path.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from codexmcp.analytics.collector import (
    MAX_RECENT_CALLS,
    SUMMARY_RECENT_CALLS,
    TOP_CLIENTS,
    AnalyticsCollector,
)
from codexmcp.analytics.errors import InvalidImportError, RecordingError
from codexmcp.analytics.models import (
    AnalyticsDelta,
    AnalyticsSummary,
    RequestContext,
    ToolUsageReport,
    utcnow,
)
from codexmcp.analytics.store import AnalyticsStore
from codexmcp.config import Settings

logger = logging.getLogger(__name__)

SAVE_INTERVAL_SECONDS = 60.0
DETAIL_RECENT_CALLS = 50


class Telemetry:
    """Records requests and tool calls and keeps them on disk.

    Usage::

        telemetry = Telemetry(AnalyticsStore(path))
        telemetry.initialize()
        telemetry.record_request(RequestContext(method="GET", endpoint="/health"))
        ...
        telemetry.shutdown()
    """

    def __init__(
        self,
        store: AnalyticsStore,
        *,
        save_interval: float = SAVE_INTERVAL_SECONDS,
        max_recent_calls: int = MAX_RECENT_CALLS,
        top_clients: int = TOP_CLIENTS,
        summary_calls: int = SUMMARY_RECENT_CALLS,
        detail_calls: int = DETAIL_RECENT_CALLS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._save_interval = save_interval
        self._top_clients = top_clients
        self._summary_calls = summary_calls
        self._detail_calls = detail_calls
        self._clock = clock
        self._collector = AnalyticsCollector(max_recent_calls=max_recent_calls)

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._shutdown_lock = threading.Lock()
        self._shut_down = False
        # Serializes snapshot + write so an older snapshot never lands last.
        self._save_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> Telemetry:
        """Build a Telemetry from the app settings."""
        return cls(
            AnalyticsStore(settings.analytics_path),
            save_interval=settings.analytics_save_interval,
            max_recent_calls=settings.analytics_max_recent_calls,
            top_clients=settings.analytics_top_clients,
            summary_calls=settings.analytics_summary_calls,
            detail_calls=settings.analytics_detail_calls,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Load the persisted snapshot and start the periodic saver."""
        self._collector.load_snapshot(self._store.load())
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._save_loop, daemon=True, name="AnalyticsSaver"
        )
        self._thread.start()
        logger.info(
            "Telemetry started (file=%s, save every %.0fs)", self._store.path, self._save_interval
        )

    def shutdown(self) -> None:
        """Stop the periodic saver and write one final snapshot."""
        with self._shutdown_lock:
            if self._shut_down:
                return
            self._shut_down = True

        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=10)
            if self._thread.is_alive():
                logger.warning("Analytics saver did not stop within timeout")
            self._thread = None

        if self.save_now():
            logger.info("Analytics saved to %s on shutdown", self._store.path)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def start_time(self) -> datetime:
        return self._collector.start_time

    def save_now(self) -> bool:
        """Write the current state to disk. Returns False if the write failed."""
        with self._save_lock:
            return self._store.save(self._collector.to_snapshot())

    def _save_loop(self) -> None:
        while not self._stop_event.wait(timeout=self._save_interval):
            self.save_now()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_request(self, ctx: RequestContext) -> None:
        """Count an inbound request. Failures are logged, never raised."""
        try:
            self._collector.record_request(
                ctx.method,
                ctx.endpoint,
                ctx.client_identity,
                ctx.user_agent,
                now=self._clock(),
            )
        except Exception as exc:
            endpoint = getattr(ctx, "endpoint", None)
            self._recording_failed(RecordingError(f"request to {endpoint!r}: {exc}"))

    def record_tool_call(self, tool_name: str, ctx: RequestContext) -> None:
        """Count a tool invocation. Failures are logged, never raised."""
        try:
            self._collector.record_tool_call(
                tool_name,
                ctx.client_identity,
                ctx.user_agent,
                now=self._clock(),
            )
        except Exception as exc:
            self._recording_failed(RecordingError(f"tool call {tool_name!r}: {exc}"))

    def _recording_failed(self, error: RecordingError) -> None:
        logger.warning("Failed to record analytics: %s", error, exc_info=True)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def summarize(self) -> AnalyticsSummary:
        return self._collector.summarize(
            now_fn=self._clock,
            top_clients=self._top_clients,
            recent_limit=self._summary_calls,
        )

    def recent_tool_usage(self, limit: int | None = None) -> ToolUsageReport:
        return self._collector.tool_usage(self._detail_calls if limit is None else limit)

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    def import_delta(self, payload: Any) -> dict[str, int]:
        """Add backup totals on top of the current ones and save immediately.

        Importing the same backup twice counts it twice; no dedup key is
        tracked.

        Raises:
            InvalidImportError: the payload is not an object, has neither
                ``totalRequests`` nor ``totalToolCalls``, or has a negative
                or non-integer count.
        """
        try:
            delta = AnalyticsDelta.model_validate(payload)
        except ValidationError as exc:
            raise InvalidImportError(
                "Invalid analytics import payload",
                details=exc.errors(include_url=False, include_context=False),
            ) from exc

        total_requests, total_tool_calls = self._collector.apply_delta(
            delta.total_requests or 0, delta.total_tool_calls or 0
        )
        self.save_now()
        totals = {"totalRequests": total_requests, "totalToolCalls": total_tool_calls}
        logger.info("Imported analytics delta, totals now %s", totals)
        return totals
