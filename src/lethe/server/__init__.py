"""Lethe MCP server: tool schemas, handlers, stdio and HTTP transports."""
