"""Lethe MCP Server -- stdio-based MCP server exposing the fact store as tools."""

import asyncio
import dataclasses
import logging
import sys
from pathlib import Path

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from lethe.server import handlers
from lethe.server.handlers import HANDLERS
from lethe.server.tool_schemas import TOOL_SCHEMAS

logger = logging.getLogger("lethe.server")

server = Server("lethe-memory")


@server.list_tools()
async def list_tools() -> list[Tool]:
    """Return all Lethe tools."""
    return [
        Tool(
            name=schema["name"],
            description=schema["description"],
            inputSchema=schema["inputSchema"],
        )
        for schema in TOOL_SCHEMAS
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Dispatch tool call to the appropriate handler."""
    handler = HANDLERS.get(name)
    if not handler:
        return [TextContent(type="text", text=f"Unknown tool: {name}")]

    try:
        result = await handler(arguments or {})
        content_list = result.get("content", [{}])
        text = content_list[0].get("text", str(result)) if content_list else str(result)
        return [TextContent(type="text", text=text)]
    except Exception as e:
        logger.error("Tool %s failed: %s", name, e)
        return [TextContent(type="text", text=f"Error in {name}: {e}")]


def open_memory(db_path=None):
    """Build the Memory for this server's lifetime and hand it to the handlers."""
    from lethe.bridge import Memory
    from lethe.config import load_settings

    settings = load_settings()
    if db_path:
        settings = dataclasses.replace(settings, db_path=Path(db_path))
    memory = Memory.from_settings(settings)
    handlers.set_memory(memory)
    return memory


async def main(db_path=None):
    """Entry point for the Lethe MCP server."""
    logging.basicConfig(level=logging.WARNING, stream=sys.stderr)
    open_memory(db_path)
    logger.info("Starting Lethe MCP server...")
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:
        handlers.reset_memory()


if __name__ == "__main__":
    asyncio.run(main())
