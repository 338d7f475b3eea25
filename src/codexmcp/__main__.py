"""Run the Codex MCP server over HTTP.

Usage::

    python -m codexmcp
    CODEXMCP_PORT=9000 ANALYTICS_DATA_DIR=/var/lib/codexmcp python -m codexmcp

uvicorn turns SIGINT/SIGTERM into the app's lifespan shutdown, which writes
the final analytics snapshot before the process exits.
"""

import logging

import uvicorn

from codexmcp.api import create_app
from codexmcp.config import get_settings

logger = logging.getLogger(__name__)


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = get_settings()
    app = create_app(settings)
    logger.info("Codex MCP server on http://%s:%d (MCP endpoint /mcp)", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
