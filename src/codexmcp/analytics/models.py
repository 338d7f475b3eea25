"""Pydantic models for analytics data.

Field aliases are the camelCase keys of the persisted ``analytics.json`` and
of the HTTP responses, so snapshots written by earlier server versions keep
loading.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeInt,
    ValidationError,
    ValidationInfo,
    ValidatorFunctionWrapHandler,
    field_validator,
    model_validator,
)

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"
UNKNOWN_METHOD = "UNKNOWN"
USER_AGENT_PREFIX_LEN = 50

# Validation context flag: malformed fields fall back to their defaults.
LENIENT = "lenient"

DeltaCount = Annotated[int, Field(strict=True, ge=0)]


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def user_agent_prefix(user_agent: str | None) -> str:
    """Truncate a user agent to the length used as a tally key."""
    return (user_agent or UNKNOWN)[:USER_AGENT_PREFIX_LEN]


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class _AliasedModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RequestContext(BaseModel):
    """What the HTTP layer knows about one inbound request."""

    method: str = UNKNOWN_METHOD
    endpoint: str = UNKNOWN
    forwarded_for: str | None = None  # raw X-Forwarded-For header
    peer_address: str | None = None
    user_agent: str | None = None

    @property
    def client_identity(self) -> str:
        """First forwarded address, else the peer address, else ``unknown``."""
        if self.forwarded_for:
            first = self.forwarded_for.split(",")[0].strip()
            if first:
                return first
        return self.peer_address or UNKNOWN


class ToolCallRecord(_AliasedModel):
    """A single recorded tool invocation."""

    tool_name: str = Field(alias="tool")
    timestamp: datetime
    client_ip: str = Field(default=UNKNOWN, alias="clientIp")
    user_agent: str = Field(default=UNKNOWN, alias="userAgent")

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class AnalyticsSnapshot(_AliasedModel):
    """Serializable snapshot for file-based persistence."""

    start_time: datetime = Field(default_factory=utcnow, alias="serverStartTime")
    total_requests: NonNegativeInt = Field(default=0, alias="totalRequests")
    total_tool_calls: NonNegativeInt = Field(default=0, alias="totalToolCalls")
    requests_by_method: dict[str, NonNegativeInt] = Field(
        default_factory=dict, alias="requestsByMethod"
    )
    requests_by_endpoint: dict[str, NonNegativeInt] = Field(
        default_factory=dict, alias="requestsByEndpoint"
    )
    tool_calls_by_tool: dict[str, NonNegativeInt] = Field(default_factory=dict, alias="toolCalls")
    recent_tool_calls: list[ToolCallRecord] = Field(default_factory=list, alias="recentToolCalls")
    requests_by_client_ip: dict[str, NonNegativeInt] = Field(
        default_factory=dict, alias="clientsByIp"
    )
    requests_by_user_agent: dict[str, NonNegativeInt] = Field(
        default_factory=dict, alias="clientsByUserAgent"
    )
    requests_by_hour: dict[str, NonNegativeInt] = Field(
        default_factory=dict, alias="hourlyRequests"
    )
    saved_at: datetime | None = Field(default=None, alias="savedAt")

    @field_validator("*", mode="wrap")
    @classmethod
    def _default_when_malformed(
        cls, value: Any, handler: ValidatorFunctionWrapHandler, info: ValidationInfo
    ) -> Any:
        """Under the lenient context a bad field is replaced by its default."""
        try:
            return handler(value)
        except ValidationError as exc:
            if not (info.context and info.context.get(LENIENT)):
                raise
            logger.warning(
                "Ignoring malformed analytics field %s (%d error(s)), using default",
                info.field_name,
                exc.error_count(),
            )
            return cls.model_fields[info.field_name].get_default(call_default_factory=True)

    @field_validator("start_time", "saved_at")
    @classmethod
    def _times_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None


# ---------------------------------------------------------------
# Read-only views
# ---------------------------------------------------------------


class SummaryTotals(_AliasedModel):
    total_requests: int = Field(default=0, alias="totalRequests")
    total_tool_calls: int = Field(default=0, alias="totalToolCalls")
    unique_clients: int = Field(default=0, alias="uniqueClients")


class Breakdown(_AliasedModel):
    by_method: dict[str, int] = Field(default_factory=dict, alias="byMethod")
    by_endpoint: dict[str, int] = Field(default_factory=dict, alias="byEndpoint")
    by_tool: dict[str, int] = Field(default_factory=dict, alias="byTool")


class ClientBreakdown(_AliasedModel):
    by_ip: dict[str, int] = Field(default_factory=dict, alias="byIp")
    by_user_agent: dict[str, int] = Field(default_factory=dict, alias="byUserAgent")


class AnalyticsSummary(_AliasedModel):
    """Top-level analytics summary returned by the API."""

    server: str = "Codex MCP Server"
    uptime: str = "0m"
    server_start_time: datetime = Field(alias="serverStartTime")
    summary: SummaryTotals = Field(default_factory=SummaryTotals)
    breakdown: Breakdown = Field(default_factory=Breakdown)
    clients: ClientBreakdown = Field(default_factory=ClientBreakdown)
    hourly_requests: dict[str, int] = Field(default_factory=dict, alias="hourlyRequests")
    recent_tool_calls: list[ToolCallRecord] = Field(default_factory=list, alias="recentToolCalls")


class ToolUsage(BaseModel):
    name: str
    count: int


class ToolUsageReport(_AliasedModel):
    """Per-tool detail view for the /analytics/tools endpoint."""

    total_tool_calls: int = Field(default=0, alias="totalToolCalls")
    tools: list[ToolUsage] = Field(default_factory=list)
    recent_calls: list[ToolCallRecord] = Field(default_factory=list, alias="recentCalls")


class AnalyticsDelta(_AliasedModel):
    """Counts from an external backup to add on top of the current totals."""

    total_requests: DeltaCount | None = Field(default=None, alias="totalRequests")
    total_tool_calls: DeltaCount | None = Field(default=None, alias="totalToolCalls")

    @model_validator(mode="after")
    def _require_a_count(self) -> AnalyticsDelta:
        if self.total_requests is None and self.total_tool_calls is None:
            raise ValueError("payload must contain totalRequests and/or totalToolCalls")
        return self
