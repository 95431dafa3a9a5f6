"""
Remote walker: snapshot the DOM of the browser tab the user is looking at.

The walker talks to the browser only through the ``Browser`` interface
(tab query plus a debugger session speaking the DevTools protocol), so the
same conversion runs against a live Chromium (``lvt.cdp``) or a fake.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from lvt.channel import dom_tree_reply, error_reply
from lvt.format import build_node, truncate_text

logger = logging.getLogger(__name__)

# Box-model lookups stop below this depth to bound per-request cost.
MAX_GEOMETRY_DEPTH = 50

# URL schemes the debugger cannot attach to.
EXCLUDED_SCHEMES = ("chrome://", "edge://", "about:", "chrome-extension://")

ELEMENT_NODE = 1
TEXT_NODE = 3
DOCUMENT_NODE = 9
DOCUMENT_FRAGMENT_NODE = 11

_STRUCTURAL_NODE_TYPES = frozenset({ELEMENT_NODE, DOCUMENT_NODE, DOCUMENT_FRAGMENT_NODE})


class NoDebuggableTabError(RuntimeError):
    """No active tab qualifies for inspection."""


class AlreadyAttachedError(RuntimeError):
    """A debugger session is already attached to the tab."""


@dataclass(frozen=True)
class Tab:
    id: Any
    url: str = ""
    title: str = ""


class Browser(ABC):
    """Capabilities the remote walker needs from a browser."""

    @abstractmethod
    async def query_tabs(self, *, last_focused_window: bool) -> list[Tab]:
        """Active tabs, of the last focused window or of every window."""
        ...

    @abstractmethod
    async def attach(self, tab_id: Any) -> None:
        """Attach a debugger session.

        Raises:
            AlreadyAttachedError: if a session is already attached.
        """
        ...

    @abstractmethod
    async def detach(self, tab_id: Any) -> None:
        ...

    @abstractmethod
    async def send_command(self, tab_id: Any, method: str, params: dict | None = None) -> dict:
        """Send one protocol command and return its result object."""
        ...


# ---------------------------------------------------------------------------
# Tab selection and session scope
# ---------------------------------------------------------------------------

def is_debuggable(url: str | None) -> bool:
    return bool(url) and not url.startswith(EXCLUDED_SCHEMES)


async def select_tab(browser: Browser) -> Tab:
    """Pick the active tab of the last focused window, else any active tab.

    Raises:
        NoDebuggableTabError: if no active tab can be inspected.
    """
    tabs = [t for t in await browser.query_tabs(last_focused_window=True) if is_debuggable(t.url)]
    if not tabs:
        tabs = [t for t in await browser.query_tabs(last_focused_window=False) if is_debuggable(t.url)]
    if not tabs:
        raise NoDebuggableTabError(
            "No debuggable tab found (chrome:// and edge:// pages cannot be inspected)"
        )
    tab = tabs[0]
    if tab.id is None:
        raise NoDebuggableTabError("Active tab has no ID")
    return tab


@asynccontextmanager
async def debugger_session(browser: Browser, tab: Tab) -> AsyncIterator[Any]:
    """Attach to *tab* for the duration of the block, then always detach."""
    try:
        await browser.attach(tab.id)
    except AlreadyAttachedError:
        logger.debug("Debugger already attached to tab %s", tab.id)
    try:
        yield tab.id
    finally:
        try:
            await browser.detach(tab.id)
        except Exception as exc:
            logger.debug("Detach from tab %s failed: %s", tab.id, exc)


# ---------------------------------------------------------------------------
# DOM conversion
# ---------------------------------------------------------------------------

def _attributes(node: dict) -> dict[str, str]:
    flat = node.get("attributes") or []
    return {flat[i]: (flat[i + 1] if i + 1 < len(flat) else "") for i in range(0, len(flat), 2)}


def _folded_text(node: dict) -> str | None:
    parts = []
    for child in node.get("children") or ():
        if child.get("nodeType") == TEXT_NODE:
            value = (child.get("nodeValue") or "").strip()
            if value:
                parts.append(value)
    return truncate_text(" ".join(parts))


async def _box(browser: Browser, tab_id: Any, node_id: Any) -> tuple[tuple[float, float], tuple[float, float]] | None:
    """(size, offset) from the content quad, or None if it has no box."""
    try:
        result = await browser.send_command(tab_id, "DOM.getBoxModel", {"nodeId": node_id})
    except Exception as exc:
        logger.debug("No box model for node %s: %s", node_id, exc)
        return None
    quad = (result.get("model") or {}).get("content") or []
    if len(quad) < 8:
        return None
    # quad is x1,y1 (top-left), x2,y2, x3,y3, x4,y4 clockwise
    size = (quad[2] - quad[0], quad[5] - quad[1])
    return size, (quad[0], quad[1])


@dataclass
class _Frame:
    """A node whose children are still being converted."""

    node: dict
    depth: int
    size: tuple[float, float] | None
    offset: tuple[float, float] | None
    pending: list[dict]
    children: list[dict] = field(default_factory=list)

    def build(self) -> dict:
        attrs = _attributes(self.node)
        return build_node(
            self.node.get("nodeName") or "",
            name=attrs.get("id") or None,
            text=_folded_text(self.node),
            size=self.size,
            offset=self.offset,
            visible=False if "hidden" in attrs else None,
            enabled=False if "disabled" in attrs else None,
            children=self.children,
        )


async def _open_frame(browser: Browser, tab_id: Any, node: dict, depth: int) -> _Frame:
    size = offset = None
    if node.get("nodeType") == ELEMENT_NODE and depth < MAX_GEOMETRY_DEPTH:
        box = await _box(browser, tab_id, node.get("nodeId"))
        if box is not None:
            size, offset = box

    sources = list(node.get("children") or ())
    sources.extend(node.get("shadowRoots") or ())
    if node.get("contentDocument"):
        sources.append(node["contentDocument"])
    # Reversed so pop() yields sources in document order.
    sources = [s for s in reversed(sources) if s.get("nodeType") in _STRUCTURAL_NODE_TYPES]
    return _Frame(node, depth, size, offset, sources)


async def convert_dom_node(browser: Browser, tab_id: Any, node: dict, depth: int = 0) -> dict | None:
    """Convert one DevTools ``DOM.Node`` and its subtree.

    Text and comment nodes yield None; their text is folded into the
    parent.  Shadow roots and frame documents follow the regular children.
    Protocol calls are awaited one at a time, in document order.  The walk
    keeps its own stack, so arbitrarily deep documents convert in full.
    """
    if node.get("nodeType") not in _STRUCTURAL_NODE_TYPES:
        return None

    stack = [await _open_frame(browser, tab_id, node, depth)]
    while True:
        frame = stack[-1]
        if frame.pending:
            child = frame.pending.pop()
            stack.append(await _open_frame(browser, tab_id, child, frame.depth + 1))
            continue
        stack.pop()
        converted = frame.build()
        if not stack:
            return converted
        stack[-1].children.append(converted)


# ---------------------------------------------------------------------------
# Request handling
# ---------------------------------------------------------------------------

class RemoteWalker:
    """Answers ``getDOM`` requests for one browser."""

    def __init__(self, browser: Browser) -> None:
        self.browser = browser

    async def get_dom(self, request_id: Any) -> dict:
        """Return the ``domTree`` reply for the current tab.

        Raises whatever tab selection or the protocol raises; use
        ``handle`` for the never-raising variant.
        """
        tab = await select_tab(self.browser)
        async with debugger_session(self.browser, tab) as tab_id:
            await self.browser.send_command(tab_id, "DOM.enable")
            document = await self.browser.send_command(
                tab_id, "DOM.getDocument", {"depth": -1, "pierce": True},
            )
            root = await convert_dom_node(self.browser, tab_id, document.get("root") or {})
        logger.info("Captured DOM of %s", tab.url)
        return dom_tree_reply(request_id, tab.url or "", tab.title or "", [root] if root else [])

    async def handle(self, message: dict) -> dict:
        """Channel handler: exactly one reply, success or error."""
        request_id = message.get("requestId")
        try:
            return await self.get_dom(request_id)
        except Exception as exc:
            logger.warning("getDOM %s failed: %s", request_id, exc)
            return error_reply(request_id, str(exc) or type(exc).__name__)
