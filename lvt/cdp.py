"""
Chrome DevTools Protocol browser for the remote walker.

Connects to a Chromium-based browser started with --remote-debugging-port.
Each attached tab gets its own websocket; commands are sent one at a time
and matched to their response by message id.

Usage:
    # Launch Chrome with debugging enabled:
    chrome --remote-debugging-port=9222

    # Serve DOM snapshots to a controller:
    python -m lvt host --cdp-port 9222

Dependencies:
    pip install websockets
"""

from __future__ import annotations

import asyncio
import http.client
import itertools
import json
import logging
import os
from typing import Any
from urllib.parse import urlparse, urlunparse

import websockets

from lvt.remote import AlreadyAttachedError, Browser, Tab

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT = 30.0


class CDPError(RuntimeError):
    """The browser answered a command with an error."""


# ---------------------------------------------------------------------------
# Target discovery
# ---------------------------------------------------------------------------

def _get_targets(host: str, port: int) -> list[dict]:
    """Fetch the list of CDP targets via HTTP.

    Chromium lists page targets most recently activated first.
    """
    conn = http.client.HTTPConnection(host, port, timeout=5)
    try:
        conn.request("GET", "/json/list")
        resp = conn.getresponse()
        data = resp.read().decode("utf-8")
        return json.loads(data)
    finally:
        conn.close()


def _rewrite_host(ws_url: str, host: str) -> str:
    # ws://localhost:9222/devtools/... -> ws://127.0.0.1:9222/devtools/...
    parts = urlparse(ws_url)
    return urlunparse(parts._replace(netloc=f"{host}:{parts.port}"))


# ---------------------------------------------------------------------------
# Browser
# ---------------------------------------------------------------------------

class CDPBrowser(Browser):
    """``Browser`` backed by a DevTools endpoint.

    The DevTools HTTP endpoint has no notion of focused windows; the most
    recently activated page stands in for the active tab of the last
    focused window, and every page counts as an active tab otherwise.
    """

    def __init__(self, host: str | None = None, port: int | None = None) -> None:
        self.host = host or os.environ.get("LVT_CDP_HOST", "127.0.0.1")
        self.port = int(port or os.environ.get("LVT_CDP_PORT", "9222"))
        self._ws_urls: dict[str, str] = {}
        self._sessions: dict[str, Any] = {}
        self._ids = itertools.count(1)

    async def _page_targets(self) -> list[dict]:
        try:
            targets = await asyncio.to_thread(_get_targets, self.host, self.port)
        except OSError as exc:
            raise RuntimeError(
                f"Cannot connect to CDP at {self.host}:{self.port}. "
                f"Launch Chrome with: chrome --remote-debugging-port={self.port}\n"
                f"  Error: {exc}"
            ) from exc
        pages = [t for t in targets if t.get("type") == "page"]
        for t in pages:
            if t.get("webSocketDebuggerUrl"):
                self._ws_urls[t["id"]] = t["webSocketDebuggerUrl"]
        return pages

    async def query_tabs(self, *, last_focused_window: bool) -> list[Tab]:
        pages = await self._page_targets()
        if last_focused_window:
            pages = pages[:1]
        return [Tab(t.get("id"), t.get("url", ""), t.get("title", "")) for t in pages]

    async def attach(self, tab_id: Any) -> None:
        if tab_id in self._sessions:
            raise AlreadyAttachedError(f"Already attached to tab {tab_id}")
        ws_url = self._ws_urls.get(tab_id)
        if ws_url is None:
            await self._page_targets()
            ws_url = self._ws_urls.get(tab_id)
        if ws_url is None:
            raise RuntimeError(f"Tab {tab_id} has no debugger URL (another client may be attached)")
        self._sessions[tab_id] = await websockets.connect(
            _rewrite_host(ws_url, self.host), max_size=None,
        )
        logger.debug("Attached to tab %s", tab_id)

    async def detach(self, tab_id: Any) -> None:
        ws = self._sessions.pop(tab_id, None)
        if ws is not None:
            await ws.close()
            logger.debug("Detached from tab %s", tab_id)

    async def send_command(self, tab_id: Any, method: str, params: dict | None = None) -> dict:
        """Send a CDP command and wait for the matching response.

        Discards interleaved CDP event messages while waiting.
        """
        ws = self._sessions.get(tab_id)
        if ws is None:
            raise RuntimeError(f"Not attached to tab {tab_id}")

        msg_id = next(self._ids)
        message: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            message["params"] = params

        async def exchange() -> dict:
            await ws.send(json.dumps(message))
            while True:
                resp = json.loads(await ws.recv())
                if resp.get("id") == msg_id:
                    if "error" in resp:
                        err = resp["error"]
                        raise CDPError(f"CDP error {err.get('code')}: {err.get('message')}")
                    return resp.get("result", {})
                # else: event notification -- discard and keep waiting

        return await asyncio.wait_for(exchange(), COMMAND_TIMEOUT)

    async def close(self) -> None:
        for tab_id in list(self._sessions):
            await self.detach(tab_id)
