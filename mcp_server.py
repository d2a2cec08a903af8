#!/usr/bin/env python3
"""
Synapse MCP Server

An MCP (Model Context Protocol) server that lets Claude Desktop, Cursor and
other MCP clients save into and search a running Synapse API.

Provides tools for:
- Saving content (text, URL, image) to Synapse
- Searching saved items in natural language

Usage:
    python mcp_server.py

Configuration (in the MCP client settings):
    {
        "mcpServers": {
            "synapse": {
                "command": "python",
                "args": ["/path/to/synapse/mcp_server.py"],
                "env": {"SYNAPSE_API_URL": "http://localhost:8000", "MCP_API_KEY": "..."}
            }
        }
    }
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from config import settings

logger = logging.getLogger(__name__)

# Initialize MCP server
app = Server("synapse")


def _client() -> httpx.AsyncClient:
    headers = {"Content-Type": "application/json"}
    if settings.mcp_api_key:
        headers["Authorization"] = f"Bearer {settings.mcp_api_key}"
    return httpx.AsyncClient(
        base_url=settings.synapse_api_url.rstrip("/"),
        headers=headers,
        timeout=httpx.Timeout(60.0, connect=10.0),
    )


def build_save_payload(args: Dict[str, Any]) -> Dict[str, Any]:
    """Map the MCP tool arguments onto the /api/save request body."""

    meta = args.get("metadata") or {}
    metadata = {
        "title": meta.get("title") or args.get("title"),
        "description": meta.get("description") or args.get("description"),
        "author": meta.get("author") or args.get("author"),
        "platform": meta.get("source") or args.get("source"),
        "price": meta.get("price"),
        "thumbnail": meta.get("imageUrl"),
        **meta,
    }
    return {
        "content": args.get("content") or "",
        "url": args.get("url"),
        "imageData": args.get("imageData"),
        "metadata": {k: v for k, v in metadata.items() if v is not None},
    }


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:300]
    return str(body.get("error") or body.get("detail") or body)


# ============================================================================
# MCP Tools
# ============================================================================

@app.list_tools()
async def list_tools() -> List[Tool]:
    """List all available tools"""
    return [
        Tool(
            name="save_to_synapse",
            description="Save content, a link or an image to Synapse. It is classified automatically.",
            inputSchema={
                "type": "object",
                "properties": {
                    "content": {"type": "string", "description": "Text content to save"},
                    "url": {"type": "string", "description": "URL to save"},
                    "imageData": {"type": "string", "description": "Base64 image data (optional)"},
                    "metadata": {
                        "type": "object",
                        "description": "Optional metadata: title, description, author, source, price, imageUrl",
                    },
                },
            },
        ),
        Tool(
            name="search_synapse",
            description="Search saved Synapse items in natural language, e.g. 'black shoes under $300'",
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Search query"},
                    "limit": {
                        "type": "number",
                        "description": "Maximum number of results (default: 10)",
                        "default": 10,
                    },
                },
                "required": ["query"],
            },
        ),
    ]


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> List[TextContent]:
    """Handle tool calls"""

    if name == "save_to_synapse":
        return await save_to_synapse_tool(arguments or {})
    elif name == "search_synapse":
        return await search_synapse_tool(arguments or {})
    else:
        return [TextContent(type="text", text=f"Unknown tool: {name}")]


# ============================================================================
# Tool Implementations
# ============================================================================

async def save_to_synapse_tool(args: Dict[str, Any], client: Optional[httpx.AsyncClient] = None) -> List[TextContent]:
    """Forward a save to POST /api/save"""
    if not args.get("content") and not args.get("url") and not args.get("imageData"):
        return [TextContent(type="text", text="Error: at least one of content, url, or imageData is required")]

    owns_client = client is None
    client = client or _client()
    try:
        response = await client.post("/api/save", json=build_save_payload(args))
        if response.status_code != 200:
            return [TextContent(
                type="text",
                text=f"Failed to save to Synapse ({response.status_code}): {_error_text(response)}",
            )]
        item = response.json().get("item") or {}
        output = "Content saved to Synapse successfully\n\n"
        output += f"**ID**: {item.get('id')}\n"
        output += f"**Type**: {item.get('type')}\n"
        return [TextContent(type="text", text=output)]
    except httpx.HTTPError as e:
        logger.error(f"Synapse API unreachable: {e}")
        return [TextContent(type="text", text=f"Error saving to Synapse: {e}")]
    finally:
        if owns_client:
            await client.aclose()


async def search_synapse_tool(args: Dict[str, Any], client: Optional[httpx.AsyncClient] = None) -> List[TextContent]:
    """Forward a query to POST /api/search"""
    query = (args.get("query") or "").strip()
    if not query:
        return [TextContent(type="text", text="Error: query is required")]
    limit = int(args.get("limit") or 10)

    owns_client = client is None
    client = client or _client()
    try:
        response = await client.post("/api/search", json={"query": query})
        if response.status_code != 200:
            return [TextContent(
                type="text",
                text=f"Search failed ({response.status_code}): {_error_text(response)}",
            )]
        results = (response.json().get("results") or [])[:limit]
        if not results:
            return [TextContent(type="text", text=f"No results found for '{query}'")]

        output = f"Found {len(results)} results for '{query}':\n\n"
        for i, item in enumerate(results, 1):
            metadata = item.get("metadata") or {}
            output += f"{i}. **{metadata.get('title') or 'Untitled'}** (ID: {item.get('id')})\n"
            output += f"   Type: {item.get('type') or 'note'}\n"
            if item.get("tags"):
                output += f"   Tags: {', '.join(item['tags'])}\n"
            if item.get("url"):
                output += f"   URL: {item['url']}\n"
            preview = (item.get("rawContent") or "")[:200]
            if preview:
                output += f"   Preview: {preview}\n"
            output += "\n"
        return [TextContent(type="text", text=output)]
    except httpx.HTTPError as e:
        logger.error(f"Synapse API unreachable: {e}")
        return [TextContent(type="text", text=f"Error searching Synapse: {e}")]
    finally:
        if owns_client:
            await client.aclose()


# ============================================================================
# Main
# ============================================================================

async def main():
    """Run the MCP server"""
    async with stdio_server() as (read_stream, write_stream):
        await app.run(
            read_stream,
            write_stream,
            app.create_initialization_options()
        )


if __name__ == "__main__":
    asyncio.run(main())
