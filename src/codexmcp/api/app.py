"""FastAPI application for the Codex MCP server.

Serves the MCP endpoint plus health and analytics routes.  Every route counts
itself through the app's Telemetry; ``/mcp`` additionally records each
``tools/call`` it sees before handing the request to the MCP transport.

The transport itself is injected (``mcp_handler``) so this module has no
opinion on the protocol implementation.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from codexmcp import __version__
from codexmcp.analytics import InvalidImportError, Telemetry
from codexmcp.api.deps import request_context, track
from codexmcp.config import Settings, get_settings

logger = logging.getLogger(__name__)

SERVER_NAME = "Codex MCP Server"

McpHandler = Callable[[Request, Any], Awaitable[Response]]


def tool_calls_in(body: Any) -> list[str]:
    """Names of the tools invoked by a JSON-RPC request or batch."""
    messages = body if isinstance(body, list) else [body]
    names = []
    for message in messages:
        if not isinstance(message, dict) or message.get("method") != "tools/call":
            continue
        params = message.get("params")
        name = params.get("name") if isinstance(params, dict) else None
        if isinstance(name, str) and name:
            names.append(name)
    return names


async def _no_transport(request: Request, body: Any) -> Response:
    request_id = body.get("id") if isinstance(body, dict) else None
    return JSONResponse(
        status_code=503,
        content={
            "jsonrpc": "2.0",
            "error": {"code": -32603, "message": "MCP transport not configured"},
            "id": request_id,
        },
    )


def create_app(
    settings: Settings | None = None,
    *,
    telemetry: Telemetry | None = None,
    mcp_handler: McpHandler | None = None,
) -> FastAPI:
    """Build the app. The returned app owns ``telemetry`` for its lifetime."""
    settings = settings or get_settings()
    telemetry = telemetry or Telemetry.from_settings(settings)
    handler = mcp_handler or _no_transport

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        telemetry.initialize()
        try:
            yield
        finally:
            logger.info("Shutting down, flushing analytics")
            await asyncio.to_thread(telemetry.shutdown)

    app = FastAPI(title=SERVER_NAME, version=__version__, lifespan=lifespan)
    app.state.telemetry = telemetry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "Authorization", "Mcp-Session-Id"],
        expose_headers=["Mcp-Session-Id"],
    )

    @app.exception_handler(InvalidImportError)
    async def _invalid_import(request: Request, exc: InvalidImportError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={
                "error": "Failed to import analytics",
                "details": str(exc),
                "errors": jsonable_errors(exc.details),
            },
        )

    @app.get("/")
    async def root(_: Telemetry = Depends(track("/"))) -> dict:
        return {
            "name": SERVER_NAME,
            "version": __version__,
            "description": "MCP server wrapper for OpenAI Codex CLI",
            "transport": "streamable-http",
            "endpoints": {
                "mcp": "/mcp",
                "health": "/health",
                "analytics": "/analytics",
                "analyticsTools": "/analytics/tools",
            },
        }

    @app.get("/health")
    async def health(_: Telemetry = Depends(track("/health"))) -> dict:
        return {
            "status": "healthy",
            "server": SERVER_NAME,
            "version": __version__,
            "transport": "streamable-http",
            "timestamp": datetime.now(tz=UTC).isoformat(),
        }

    @app.get("/analytics")
    async def analytics(t: Telemetry = Depends(track("/analytics"))) -> dict:
        return t.summarize().model_dump(mode="json", by_alias=True)

    @app.get("/analytics/tools")
    async def analytics_tools(t: Telemetry = Depends(track("/analytics/tools"))) -> dict:
        return t.recent_tool_usage().model_dump(mode="json", by_alias=True)

    @app.post("/analytics/import")
    async def analytics_import(
        request: Request, t: Telemetry = Depends(track("/analytics/import"))
    ) -> dict:
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise InvalidImportError(f"Body is not valid JSON: {exc}") from exc
        totals = await asyncio.to_thread(t.import_delta, payload)
        return {"message": "Analytics imported successfully", "currentStats": totals}

    @app.api_route("/mcp", methods=["GET", "POST", "DELETE"])
    async def mcp(request: Request, t: Telemetry = Depends(track("/mcp"))) -> Response:
        body: Any = None
        if request.method == "POST":
            try:
                body = await request.json()
            except (json.JSONDecodeError, UnicodeDecodeError):
                body = None
            ctx = request_context(request, "/mcp")
            for name in tool_calls_in(body):
                t.record_tool_call(name, ctx)

        try:
            return await handler(request, body)
        except Exception:
            logger.exception("MCP request error")
            return JSONResponse(
                status_code=500,
                content={
                    "jsonrpc": "2.0",
                    "error": {"code": -32603, "message": "Internal server error"},
                    "id": None,
                },
            )

    return app


def jsonable_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Keep the JSON-safe parts of pydantic error dicts."""
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in errors
    ]
