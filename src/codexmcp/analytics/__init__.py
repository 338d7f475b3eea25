"""Request and tool usage analytics.

In-process counters for every HTTP request and MCP tool call, persisted to a
JSON snapshot so totals survive restarts.  The app factory owns a single
:class:`Telemetry` instance and hands it to request handlers.
"""

from codexmcp.analytics.collector import AnalyticsCollector
from codexmcp.analytics.errors import (
    AnalyticsError,
    InvalidImportError,
    RecordingError,
    RecoverableLoadError,
    RecoverableSaveError,
)
from codexmcp.analytics.models import AnalyticsSnapshot, RequestContext, ToolCallRecord
from codexmcp.analytics.store import AnalyticsStore
from codexmcp.analytics.telemetry import Telemetry

__all__ = [
    "AnalyticsCollector",
    "AnalyticsError",
    "AnalyticsSnapshot",
    "AnalyticsStore",
    "InvalidImportError",
    "RecordingError",
    "RecoverableLoadError",
    "RecoverableSaveError",
    "RequestContext",
    "Telemetry",
    "ToolCallRecord",
]
