"""Lethe HTTP Server -- Streamable HTTP transport for the MCP server.

Wraps the stdio MCP server in a Starlette ASGI app using the MCP SDK's
StreamableHTTPSessionManager. Authentication is a shared key taken from
LETHE_API_KEY, sent as `X-API-Key` or `Authorization: Bearer <key>`.
"""

import contextlib
import hmac
from collections.abc import AsyncIterator

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route
from starlette.types import Receive, Scope, Send

from mcp.server.streamable_http_manager import StreamableHTTPSessionManager


def _provided_key(request: Request) -> str | None:
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return request.headers.get("x-api-key")


def create_http_app(server, api_key: str | None = None) -> Starlette:
    """Create a Starlette ASGI app wrapping the MCP server.

    Args:
        server: The MCP Server instance from mcp_server.py.
        api_key: Optional API key for authentication. None disables auth.
    """
    session_manager = StreamableHTTPSessionManager(
        app=server,
        json_response=True,
        stateless=True,
    )

    async def mcp_asgi_app(scope: Scope, receive: Receive, send: Send) -> None:
        """ASGI app for the /mcp endpoint -- delegates to StreamableHTTPSessionManager."""
        if api_key:
            request = Request(scope, receive)
            provided = _provided_key(request) or ""
            if not hmac.compare_digest(provided.encode(), api_key.encode()):
                response = JSONResponse({"error": "Unauthorized"}, status_code=401)
                await response(scope, receive, send)
                return
        await session_manager.handle_request(scope, receive, send)

    async def health(request: Request):
        from lethe import __version__

        return JSONResponse({"status": "ok", "server": "lethe-memory", "version": __version__})

    async def server_card(request: Request):
        from lethe import __version__
        from lethe.server.tool_schemas import TOOL_SCHEMAS

        return JSONResponse({
            "name": "lethe-memory",
            "version": __version__,
            "description": "Persistent fact memory for AI agent personas",
            "transports": [
                {"type": "streamable-http", "url": "/mcp"},
                {"type": "stdio", "command": "lethe serve"},
            ],
            "tools": [s["name"] for s in TOOL_SCHEMAS],
        })

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with session_manager.run():
            yield

    app = Starlette(
        routes=[
            Mount("/mcp", app=mcp_asgi_app),
            Route("/health", endpoint=health),
            Route("/.well-known/mcp.json", endpoint=server_card),
        ],
        lifespan=lifespan,
    )
    return app


async def run_http(host: str, port: int, db_path=None, api_key: str | None = None) -> None:
    """Open the store, create the HTTP app, run uvicorn."""
    import uvicorn

    from lethe.server import handlers
    from lethe.server.mcp_server import open_memory, server

    memory = open_memory(db_path)
    key = api_key or memory.settings.api_key
    app = create_http_app(server, api_key=key)
    config = uvicorn.Config(app, host=host, port=port, log_level="info")
    srv = uvicorn.Server(config)
    try:
        await srv.serve()
    finally:
        handlers.reset_memory()
