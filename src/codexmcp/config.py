"""Configuration management for the Codex MCP server.

Settings come from ``CODEXMCP_*`` environment variables (or a ``.env``
file).  The bare ``PORT``, ``HOST`` and ``ANALYTICS_DATA_DIR`` variables are
still honoured so existing deployments keep working.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ANALYTICS_FILE_NAME = "analytics.json"


class Settings(BaseSettings):
    """Codex MCP server settings with env support."""

    model_config = SettingsConfigDict(
        env_prefix="CODEXMCP_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    # Web Server
    host: str = Field(
        default="0.0.0.0",
        validation_alias=AliasChoices("CODEXMCP_HOST", "HOST"),
        description="Interface the HTTP server binds to",
    )
    port: int = Field(
        default=8080,
        validation_alias=AliasChoices("CODEXMCP_PORT", "PORT"),
        description="HTTP server port",
    )

    # Analytics
    analytics_data_dir: Path = Field(
        default=Path("./data"),
        validation_alias=AliasChoices("CODEXMCP_ANALYTICS_DATA_DIR", "ANALYTICS_DATA_DIR"),
        description="Directory holding analytics.json",
    )
    analytics_save_interval: float = Field(
        default=60.0, gt=0, description="Seconds between periodic analytics saves"
    )
    analytics_max_recent_calls: int = Field(
        default=100, gt=0, description="Capacity of the recent tool call ring"
    )
    analytics_top_clients: int = Field(
        default=20, gt=0, description="Client IPs shown in the analytics summary"
    )
    analytics_summary_calls: int = Field(
        default=20, ge=0, description="Recent tool calls shown in the analytics summary"
    )
    analytics_detail_calls: int = Field(
        default=50, ge=0, description="Recent tool calls shown in the tool usage view"
    )

    @property
    def analytics_path(self) -> Path:
        """Full path of the persisted analytics snapshot."""
        return self.analytics_data_dir / ANALYTICS_FILE_NAME


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
