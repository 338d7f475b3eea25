"""Analytics counter store.

Holds cumulative totals, keyed tallies and a newest-first ring of recent tool
calls.  Every mutation and every read happens under one lock, so request
handlers running on different threads can record concurrently while the
periodic saver takes a consistent copy.  No I/O happens here; persistence is
handled by AnalyticsStore.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from datetime import datetime

from codexmcp.analytics.models import (
    UNKNOWN,
    UNKNOWN_METHOD,
    AnalyticsSnapshot,
    AnalyticsSummary,
    Breakdown,
    ClientBreakdown,
    SummaryTotals,
    ToolCallRecord,
    ToolUsage,
    ToolUsageReport,
    as_utc,
    user_agent_prefix,
    utcnow,
)

logger = logging.getLogger(__name__)

# Maximum number of recent tool calls kept in the ring buffer.
MAX_RECENT_CALLS = 100
TOP_CLIENTS = 20
HOURLY_WINDOW = 24
SUMMARY_RECENT_CALLS = 20


def hour_bucket(now: datetime) -> str:
    """``YYYY-MM-DDTHH`` in UTC, the key of the hourly request series."""
    return as_utc(now).strftime("%Y-%m-%dT%H")


def format_uptime(start: datetime, now: datetime) -> str:
    """Render elapsed time as ``1d 2h 3m``, ``2h 3m`` or ``3m``."""
    total_minutes = max(int((now - start).total_seconds() // 60), 0)
    days, rem = divmod(total_minutes, 24 * 60)
    hours, minutes = divmod(rem, 60)
    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def _sorted_desc(tally: dict[str, int], limit: int | None = None) -> dict[str, int]:
    ordered = sorted(tally.items(), key=lambda kv: kv[1], reverse=True)
    if limit is not None:
        ordered = ordered[:limit]
    return dict(ordered)


class AnalyticsCollector:
    """Collects and aggregates request and tool call analytics.

    Usage::

        collector = AnalyticsCollector()
        collector.record_request("POST", "/mcp", "10.0.0.1", "curl/8.0")
        collector.record_tool_call("codex", "10.0.0.1", "curl/8.0")
        summary = collector.summarize()
    """

    def __init__(
        self,
        snapshot: AnalyticsSnapshot | None = None,
        max_recent_calls: int = MAX_RECENT_CALLS,
    ) -> None:
        self._lock = threading.Lock()
        self._max_recent_calls = max_recent_calls
        self._install(snapshot or AnalyticsSnapshot())

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_request(
        self,
        method: str,
        endpoint: str,
        client_identity: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> None:
        """Count one inbound request against every request tally."""
        now = now or utcnow()
        method = method or UNKNOWN_METHOD
        endpoint = endpoint or UNKNOWN
        client = client_identity or UNKNOWN
        agent = user_agent_prefix(user_agent)
        hour = hour_bucket(now)

        with self._lock:
            self.total_requests += 1
            _bump(self._by_method, method)
            _bump(self._by_endpoint, endpoint)
            _bump(self._by_client_ip, client)
            _bump(self._by_user_agent, agent)
            _bump(self._by_hour, hour)

    def record_tool_call(
        self,
        tool_name: str,
        client_identity: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> None:
        """Count one tool invocation and push it onto the recent ring."""
        record = ToolCallRecord(
            tool_name=tool_name or UNKNOWN,
            timestamp=now or utcnow(),
            client_ip=client_identity or UNKNOWN,
            user_agent=user_agent_prefix(user_agent),
        )
        with self._lock:
            self.total_tool_calls += 1
            _bump(self._by_tool, record.tool_name)
            # maxlen evicts the oldest entry from the right
            self._recent_calls.appendleft(record)

    def apply_delta(
        self, total_requests_delta: int = 0, total_tool_calls_delta: int = 0
    ) -> tuple[int, int]:
        """Add imported counts to the cumulative totals only; return the new totals."""
        if total_requests_delta < 0 or total_tool_calls_delta < 0:
            raise ValueError("analytics deltas must be non-negative")
        with self._lock:
            self.total_requests += total_requests_delta
            self.total_tool_calls += total_tool_calls_delta
            return self.total_requests, self.total_tool_calls

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    @property
    def start_time(self) -> datetime:
        return self._start_time

    def summarize(
        self,
        now_fn: Callable[[], datetime] = utcnow,
        top_clients: int = TOP_CLIENTS,
        recent_limit: int = SUMMARY_RECENT_CALLS,
    ) -> AnalyticsSummary:
        """Build an AnalyticsSummary view without touching state."""
        with self._lock:
            by_tool = _sorted_desc(self._by_tool)
            by_ip = _sorted_desc(self._by_client_ip, top_clients)
            # ISO hour keys sort chronologically as strings
            last_hours = sorted(self._by_hour.items())[-HOURLY_WINDOW:]
            summary = AnalyticsSummary(
                uptime=format_uptime(self._start_time, now_fn()),
                server_start_time=self._start_time,
                summary=SummaryTotals(
                    total_requests=self.total_requests,
                    total_tool_calls=self.total_tool_calls,
                    unique_clients=len(self._by_client_ip),
                ),
                breakdown=Breakdown(
                    by_method=dict(self._by_method),
                    by_endpoint=dict(self._by_endpoint),
                    by_tool=by_tool,
                ),
                clients=ClientBreakdown(by_ip=by_ip, by_user_agent=dict(self._by_user_agent)),
                hourly_requests=dict(last_hours),
                recent_tool_calls=list(self._recent_calls)[:recent_limit],
            )
        return summary

    def tool_usage(self, limit: int = 50) -> ToolUsageReport:
        """Per-tool counts plus the newest ``limit`` tool calls."""
        with self._lock:
            return ToolUsageReport(
                total_tool_calls=self.total_tool_calls,
                tools=[
                    ToolUsage(name=name, count=count)
                    for name, count in _sorted_desc(self._by_tool).items()
                ],
                recent_calls=list(self._recent_calls)[:limit],
            )

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def to_snapshot(self) -> AnalyticsSnapshot:
        """Copy current state into a persistable snapshot."""
        with self._lock:
            return AnalyticsSnapshot(
                start_time=self._start_time,
                total_requests=self.total_requests,
                total_tool_calls=self.total_tool_calls,
                requests_by_method=dict(self._by_method),
                requests_by_endpoint=dict(self._by_endpoint),
                tool_calls_by_tool=dict(self._by_tool),
                recent_tool_calls=list(self._recent_calls),
                requests_by_client_ip=dict(self._by_client_ip),
                requests_by_user_agent=dict(self._by_user_agent),
                requests_by_hour=dict(self._by_hour),
                saved_at=utcnow(),
            )

    def load_snapshot(self, snap: AnalyticsSnapshot) -> None:
        """Replace current state with a persisted snapshot."""
        with self._lock:
            self._install(snap)

    def reset(self) -> None:
        """Clear all collected analytics data and restart the clock."""
        with self._lock:
            self._install(AnalyticsSnapshot())

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _install(self, snap: AnalyticsSnapshot) -> None:
        self._start_time: datetime = snap.start_time
        self.total_requests: int = snap.total_requests
        self.total_tool_calls: int = snap.total_tool_calls
        self._by_method: dict[str, int] = dict(snap.requests_by_method)
        self._by_endpoint: dict[str, int] = dict(snap.requests_by_endpoint)
        self._by_tool: dict[str, int] = dict(snap.tool_calls_by_tool)
        self._by_client_ip: dict[str, int] = dict(snap.requests_by_client_ip)
        self._by_user_agent: dict[str, int] = dict(snap.requests_by_user_agent)
        self._by_hour: dict[str, int] = dict(snap.requests_by_hour)
        # Newest first; keep the head when an oversized list is recovered.
        self._recent_calls: deque[ToolCallRecord] = deque(
            snap.recent_tool_calls[: self._max_recent_calls], maxlen=self._max_recent_calls
        )


def _bump(tally: dict[str, int], key: str) -> None:
    tally[key] = tally.get(key, 0) + 1
