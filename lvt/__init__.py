"""
LVT -- Live Visual Tree.

Structural snapshots of a running application's UI (element types, names,
geometry, text and visibility) in one JSON node shape, whether the UI is a
desktop toolkit inside the current process or a page in a browser tab.

Quick start::

    import lvt

    # Inside the target process: walk the loaded toolkit's windows and
    # send the JSON array to the controller's pipe.
    status = lvt.collect_tree("lvt_1234")

    # Controller side: wait for that document.
    with lvt.PipeListener("lvt_1234") as listener:
        nodes = json.loads(listener.accept_document(timeout=30))

    # Any object graph with XAML-style property names:
    nodes = lvt.walk_windows(windows, lvt.ObjectAccessor())
"""

from __future__ import annotations

from lvt.format import build_node, serialize_compact, serialize_tree, validate_tree
from lvt.pipe import PipeListener, send_document
from lvt.platforms.objects import ObjectAccessor
from lvt._router import detect_framework, get_host
from lvt.walker import Status, collect_tree, convert_element, snapshot, walk_windows

__all__ = [
    "collect_tree",
    "snapshot",
    "Status",
    "PipeListener",
    # Advanced / building blocks
    "convert_element",
    "walk_windows",
    "ObjectAccessor",
    "get_host",
    "detect_framework",
    "build_node",
    "send_document",
    "serialize_tree",
    "serialize_compact",
    "validate_tree",
]
