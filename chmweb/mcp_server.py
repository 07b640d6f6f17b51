#!/usr/bin/env python3
"""
chmweb MCP Server: expose one CHM archive as MCP tools for AI agents.

Provides search, read, topics and info tools over a compiled help file via the
Model Context Protocol (stdio transport).

Usage:
  CHMWEB_FILE=/path/to/manual.chm python3 -m chmweb.mcp_server

Configuration:
  CHMWEB_FILE       Path to the .chm file to expose (required)
  CHMWEB_DATA_DIR   Where built search indexes are kept (default: ~/.chmweb)

Claude Code config (local):
  {
    "mcpServers": {
      "chmweb": {
        "command": "python3",
        "args": ["-m", "chmweb.mcp_server"],
        "env": { "CHMWEB_FILE": "/path/to/manual.chm" }
      }
    }
  }
"""

import os
import sys

from mcp.server.fastmcp import FastMCP

from chmweb import server as chmweb
from chmweb.tree import find_subtree_by_id

CHMWEB_FILE = os.environ.get("CHMWEB_FILE", "")

session = chmweb.ChmWebServer()

mcp = FastMCP("chmweb", instructions="Search and read pages of an offline compiled help (CHM) manual.")


def _require_archive():
    if session.archive is None:
        return "No CHM file loaded. Set CHMWEB_FILE to the path of a .chm file."
    return None


@mcp.tool()
def search(query: str, regex: bool = False, limit: int = 20) -> str:
    """Full-text search in the help file.

    Uses the archive's own index when present, otherwise chmweb's built index,
    otherwise scans every page. Regex queries always scan.

    Args:
        query: Search words (e.g. "install service"), or a regular expression if regex is set
        regex: Treat the query as a regular expression
        limit: Max results to return (default 20, max 300)
    """
    err = _require_archive()
    if err:
        return err
    limit = max(1, min(limit, chmweb.MAX_SEARCH_RESULTS))
    results = session.search(query, use_regex=regex, max_results=limit)
    if results is None:
        return f"Search failed for '{query}'."
    if not results:
        return f"No results found for '{query}'."

    lines = [f"Found {len(results)} results:\n"]
    for path, title in results.items():
        lines.append(f"- **{title}**")
        lines.append(f"  Path: {path}")
    return "\n".join(lines)


@mcp.tool()
def read(path: str, max_length: int = 8000) -> str:
    """Read a page from the help file as plain text.

    Use search() or topics() first to find pages, then read() to get the content.

    Args:
        path: Page path inside the archive (e.g. "/html/intro.htm")
        max_length: Max characters to return (default 8000, max 50000)
    """
    err = _require_archive()
    if err:
        return err
    max_length = max(100, min(max_length, 50000))
    if not path.startswith("/"):
        path = "/" + path
    result = session.read_page(path, max_length=max_length)
    if "error" in result:
        return f"Error: {result['error']}"

    header = f"# {result['title']}\nPath: {result['path']}"
    if result["truncated"]:
        header += f"\n(Showing {max_length} of {result['full_length']} chars)"
    return f"{header}\n\n{result['content']}"


@mcp.tool()
def topics(node_id: int = 0) -> str:
    """Browse the table of contents one level at a time.

    Args:
        node_id: Entry to expand (0 = top level). Entries with children show their id.
    """
    err = _require_archive()
    if err:
        return err
    tree, _max_level = session.get_topics_tree()
    if tree is None:
        return "This help file has no table of contents."
    node = find_subtree_by_id(tree, node_id) if node_id > 0 else tree
    if node is None:
        return f"No entry with id {node_id}."
    if not node.children:
        return f"'{node.title or 'untitled'}' has no sub-entries."

    lines = []
    for child in node.children:
        line = f"- {child.title or 'untitled'}"
        if child.path:
            line += f" → {child.path}"
        if child.children:
            line += f" (id {child.id}, {len(child.children)} entries)"
        lines.append(line)
    return "\n".join(lines)


@mcp.tool()
def info() -> str:
    """Show the help file's title, encoding, home page and search index state."""
    err = _require_archive()
    if err:
        return err
    data = session.info()
    lines = [
        f"**{data['title']}**",
        f"Encoding: {data['encoding']}",
        f"Home page: {data['homeFile']}",
        f"Built-in search index: {'yes' if data['hasIndex'] else 'no'}",
    ]
    if "buildIndexStep" in data:
        lines.append(f"chmweb index build step: {data['buildIndexStep']}")
    return "\n".join(lines)


if __name__ == "__main__":
    if not CHMWEB_FILE or not session.open_chm_file(CHMWEB_FILE):
        print("Set CHMWEB_FILE to a readable .chm file", file=sys.stderr)
        sys.exit(1)
    mcp.run(transport="stdio")
