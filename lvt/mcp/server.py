"""LVT MCP Server -- live visual tree tools for AI agents.

Exposes the browser tab DOM (via a connected remote walker host) and
desktop walker snapshots delivered over a named pipe.
"""

from __future__ import annotations

import asyncio
import json
import logging

from mcp.server.fastmcp import FastMCP

from lvt.channel import ChannelClient, ChannelClosed, ChannelError, ChannelListener
from lvt.format import serialize_compact, trim_to_depth
from lvt.pipe import InvalidChannelName, PipeListener, PipeTimeout

logger = logging.getLogger(__name__)

HOST_WAIT_TIMEOUT = 30.0

mcp = FastMCP(
    name="lvt",
    instructions=(
        "LVT (Live Visual Tree) gives you structural snapshots of running UIs. "
        "Use get_dom_tree to see the DOM of the browser tab the user is looking "
        "at, with element geometry, visible text and hidden/disabled states. "
        "A browser-side host (python -m lvt host) must be connected; use "
        "ping_browser to check. Use receive_snapshot to wait for a desktop "
        "walker injected into another process to deliver its tree.\n\n"
        "Snapshots are point-in-time. Capture again after the UI changes."
    ),
)

# ---------------------------------------------------------------------------
# Session state (one per MCP server process)
# ---------------------------------------------------------------------------

_listener: ChannelListener | None = None
_client: ChannelClient | None = None


async def _get_client() -> ChannelClient:
    """The connected host, waiting for one if none is connected yet."""
    global _listener, _client
    if _listener is None:
        _listener = await ChannelListener().start()
    if _client is None or _client.closed:
        _client = await _listener.accept(timeout=HOST_WAIT_TIMEOUT)
    return _client


def _failure(error: str) -> str:
    return json.dumps({"success": False, "error": error})


def _render(nodes: list[dict], compact: bool, header: str) -> str:
    if compact:
        return serialize_compact(nodes, header=header)
    return json.dumps(nodes, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

@mcp.tool()
async def get_dom_tree(compact: bool = True, max_depth: int = 0) -> str:
    """Capture the DOM of the active browser tab.

    Each node carries its tag name, id, directly contained text (truncated
    to 200 characters), content-box size and offset, and hidden/disabled
    flags.  Compact output is one line per node:

        TAG #id "text" @x,y wxh {hidden,disabled}

    Indentation shows the element hierarchy.  Shadow roots and iframe
    documents appear after an element's regular children.

    Args:
        compact: Return indented text (default) instead of the JSON array.
        max_depth: Drop children below this depth (0 = unlimited).
    """
    try:
        client = await _get_client()
        reply = await client.request_dom(timeout=HOST_WAIT_TIMEOUT)
    except asyncio.TimeoutError:
        return _failure("No browser host answered within "
                        f"{HOST_WAIT_TIMEOUT:.0f}s. Start one with: python -m lvt host")
    except (ChannelError, ChannelClosed) as exc:
        return _failure(str(exc))

    tree = trim_to_depth(reply.get("tree", []), max_depth if max_depth > 0 else None)
    if not compact:
        return json.dumps({
            "success": True,
            "url": reply.get("url", ""),
            "title": reply.get("title", ""),
            "tree": tree,
        }, ensure_ascii=False)
    header = f"{reply.get('title', '')} | {reply.get('url', '')}"
    return _render(tree, True, header)


@mcp.tool()
async def ping_browser() -> str:
    """Check that a browser host is connected and responsive."""
    try:
        client = await _get_client()
        latency = await client.ping(timeout=5.0)
    except asyncio.TimeoutError:
        return _failure("No browser host answered")
    except ChannelClosed as exc:
        return _failure(str(exc))
    return json.dumps({"success": True, "latency_ms": round(latency * 1000, 1)})


@mcp.tool()
async def receive_snapshot(
    channel_name: str,
    timeout: float = 60.0,
    compact: bool = True,
    max_depth: int = 0,
) -> str:
    """Wait for a desktop walker to deliver one snapshot on a named pipe.

    The walker runs inside the target process (``lvt.collect_tree(name)``)
    and writes its whole tree to the pipe once.

    Args:
        channel_name: Pipe name, with or without the platform pipe prefix.
        timeout: Seconds to wait for the walker.
        compact: Return indented text (default) instead of the JSON array.
        max_depth: Drop children below this depth (0 = unlimited).
    """
    def receive() -> str:
        with PipeListener(channel_name) as listener:
            return listener.accept_document(timeout=timeout)

    try:
        text = await asyncio.to_thread(receive)
    except InvalidChannelName as exc:
        return _failure(str(exc))
    except PipeTimeout:
        return _failure(f"No snapshot arrived on {channel_name!r} within {timeout:.0f}s")

    nodes = trim_to_depth(json.loads(text), max_depth if max_depth > 0 else None)
    return _render(nodes, compact, channel_name)


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
