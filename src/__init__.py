"""
lgrep - local semantic grep.

Offline semantic code search: find code by describing what it does, without
sending anything off the machine.

Stack:
- Python + numpy (HNSW vector index)
- SQLite (fragment manifest)
- watchdog (watch mode)
- FastMCP (MCP server surface)
"""

__version__ = "0.1.0"
