"""
Local walker: snapshot the UI of the process it runs in.

``collect_tree`` is the entry point a controller invokes inside the target
process.  It resolves the host framework, walks every top-level window on
the UI-owning thread, and delivers the JSON array over the pipe transport.
"""

from __future__ import annotations

import enum
import logging
from typing import TYPE_CHECKING, Any, Iterable

from lvt.format import build_node, error_tree, first_text, serialize_tree
from lvt.pipe import CONNECT_TIMEOUT, InvalidChannelName, send_document, strip_pipe_prefix

if TYPE_CHECKING:
    from lvt._base import ElementAccessor, LocalHost

logger = logging.getLogger(__name__)

# Upper bound on how long the caller blocks waiting for the UI thread.
DISPATCH_TIMEOUT = 60.0


class Status(enum.IntEnum):
    """Result codes returned by ``collect_tree``."""

    OK = 0
    NO_FRAMEWORK = 1
    NO_APPLICATION = 2
    NO_DISPATCHER = 3
    NO_WINDOWS = 4
    WALK_FAILED = 5
    NO_RESULT = 6
    UNEXPECTED = -1
    INVALID_CHANNEL = -2


# ---------------------------------------------------------------------------
# Traversal
# ---------------------------------------------------------------------------

def _read(capability, element: Any, what: str) -> Any:
    """Call one accessor capability; a failure means 'absent'."""
    try:
        return capability(element)
    except Exception as exc:
        logger.debug("%s lookup failed: %s", what, exc)
        return None


def _read_text(accessor: ElementAccessor, element: Any) -> str | None:
    try:
        return first_text(accessor.text_candidates(element))
    except Exception as exc:
        logger.debug("text lookup failed: %s", exc)
        return None


def convert_element(element: Any, accessor: ElementAccessor, max_depth: int | None = None) -> dict | None:
    """Convert one framework element (and its subtree) to a node dict.

    *element* sits at depth 0.  With *max_depth* set, nodes at that depth
    are still emitted but their children are not visited.

    Returns None if *element* is None or its type cannot be determined.
    """
    return _convert(element, accessor, 0, max_depth)


def _convert(element: Any, accessor: ElementAccessor, depth: int, max_depth: int | None) -> dict | None:
    if element is None:
        return None
    type_name = _read(accessor.type_name, element, "type")
    if not type_name:
        return None

    size = _read(accessor.size, element, "size")
    offset = None
    if size is not None and size[0] > 0 and size[1] > 0:
        offset = _read(accessor.screen_offset, element, "screen offset")

    children: list[dict] = []
    if max_depth is None or depth < max_depth:
        kids = _read(accessor.children, element, "children") or ()
        for child in kids:
            node = _convert(child, accessor, depth + 1, max_depth)
            if node is not None:
                children.append(node)

    return build_node(
        type_name,
        name=_read(accessor.name, element, "name"),
        text=_read_text(accessor, element),
        size=size,
        offset=offset,
        visible=_read(accessor.is_visible, element, "visible"),
        enabled=_read(accessor.is_enabled, element, "enabled"),
        children=children,
    )


def walk_windows(
    windows: Iterable[Any],
    accessor: ElementAccessor,
    max_depth: int | None = None,
) -> list[dict]:
    """Convert each window, depth-first pre-order, skipping null windows."""
    roots = []
    for window in windows:
        node = convert_element(window, accessor, max_depth)
        if node is not None:
            roots.append(node)
    return roots


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def snapshot(
    host: LocalHost,
    *,
    timeout: float | None = DISPATCH_TIMEOUT,
    max_depth: int | None = None,
) -> tuple[Status, str | None]:
    """Walk *host*'s windows on its UI thread.

    Returns (status, json_text).  ``json_text`` is None when a capability
    is missing, and an error tree when the walk itself raised.
    """
    app = host.resolve_application()
    if app is None:
        logger.warning("%s: no application instance", host.framework)
        return Status.NO_APPLICATION, None

    dispatcher = host.resolve_dispatcher(app)
    if dispatcher is None:
        logger.warning("%s: no UI dispatcher", host.framework)
        return Status.NO_DISPATCHER, None

    def walk() -> tuple[Status, str | None]:
        try:
            windows = host.resolve_windows(app)
            if windows is None:
                return Status.NO_WINDOWS, None
            return Status.OK, serialize_tree(walk_windows(windows, host.accessor, max_depth))
        except Exception as exc:
            logger.exception("%s: tree walk failed", host.framework)
            return Status.WALK_FAILED, serialize_tree(error_tree(str(exc) or type(exc).__name__))

    result = dispatcher.invoke(walk, timeout=timeout)
    if result is None:
        return Status.NO_RESULT, None
    status, json_text = result
    if status == Status.NO_WINDOWS:
        logger.warning("%s: window collection unavailable", host.framework)
    return status, json_text


def collect_tree(
    channel_name: str | bytes,
    host: LocalHost | None = None,
    *,
    timeout: float = CONNECT_TIMEOUT,
    max_depth: int | None = None,
) -> int:
    """Snapshot the current process's UI and send it to *channel_name*.

    Returns a ``Status`` value as a plain int: 0 on success, a small
    positive code naming the missing capability, -1 on an unexpected
    error, -2 for a malformed channel name.  *max_depth* bounds the walk
    as in ``convert_element``; None walks everything.
    """
    try:
        try:
            short_name = strip_pipe_prefix(channel_name)
        except InvalidChannelName as exc:
            logger.error("Rejected channel name: %s", exc)
            return int(Status.INVALID_CHANNEL)

        if host is None:
            from lvt._router import get_host

            host = get_host()
            if host is None:
                logger.warning("No supported UI framework loaded in this process")
                return int(Status.NO_FRAMEWORK)

        status, json_text = snapshot(host, max_depth=max_depth)
        if json_text is None:
            return int(status)

        send_document(short_name, json_text, timeout=timeout)
        logger.info("Sent %s snapshot to %s (status %d)", host.framework, short_name, status)
        return int(status)
    except Exception:
        logger.exception("Unexpected failure collecting tree")
        return int(Status.UNEXPECTED)
