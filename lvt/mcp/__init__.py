"""MCP server exposing LVT snapshots to AI agents."""
