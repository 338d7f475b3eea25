# Shared FastAPI dependencies for the API layer.

from __future__ import annotations

from fastapi import Depends, Request

from codexmcp.analytics import RequestContext, Telemetry


def get_telemetry(request: Request) -> Telemetry:
    """The Telemetry instance owned by the running app."""
    return request.app.state.telemetry


def request_context(request: Request, endpoint: str) -> RequestContext:
    """Describe an inbound request for analytics."""
    return RequestContext(
        method=request.method,
        endpoint=endpoint,
        forwarded_for=request.headers.get("x-forwarded-for"),
        peer_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def track(endpoint: str):
    """FastAPI dependency that counts the request under ``endpoint``.

    Usage::

        @app.get("/health")
        async def health(telemetry: Telemetry = Depends(track("/health"))): ...

    Resolves to the app's Telemetry so handlers can record tool calls or
    read summaries without a second dependency.
    """

    def _track(request: Request, telemetry: Telemetry = Depends(get_telemetry)) -> Telemetry:
        telemetry.record_request(request_context(request, endpoint))
        return telemetry

    return _track
