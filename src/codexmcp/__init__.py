"""Codex MCP server with built-in usage analytics."""

__version__ = "1.4.0"
