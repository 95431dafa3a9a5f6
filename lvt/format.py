"""
LVT format utilities: node builder, JSON and compact text serializers.

Shared by every walker so that all snapshots converge on one node shape.
"""

from __future__ import annotations

import json
import math
from typing import Any, Iterable

MAX_TEXT_LENGTH = 200

# Keys a node may carry, in serialization order.
NODE_KEYS = (
    "type", "name", "text", "width", "height",
    "offsetX", "offsetY", "visible", "enabled", "children",
)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def truncate_text(value: Any) -> str | None:
    """Return *value* cut to MAX_TEXT_LENGTH characters, or None if empty."""
    if not isinstance(value, str) or not value:
        return None
    return value[:MAX_TEXT_LENGTH]


def first_text(candidates: Iterable[Any]) -> str | None:
    """Return the first candidate that is a non-empty string, truncated."""
    for candidate in candidates:
        text = truncate_text(candidate)
        if text:
            return text
    return None


def _coord(value: float) -> float:
    return round(float(value), 1)


def _finite(pair: tuple[float, float] | None) -> bool:
    return pair is not None and all(math.isfinite(v) for v in pair)


def build_node(
    type_name: str,
    *,
    name: str | None = None,
    text: str | None = None,
    size: tuple[float, float] | None = None,
    offset: tuple[float, float] | None = None,
    visible: bool | None = None,
    enabled: bool | None = None,
    children: list[dict] | None = None,
) -> dict:
    """Assemble one node, omitting every field that carries no information.

    Geometry is kept only when both dimensions are finite and strictly
    positive, and the screen offset only when geometry is kept and finite.
    ``visible`` and ``enabled`` are written only when explicitly False.
    """
    node: dict[str, Any] = {"type": type_name}
    if name:
        node["name"] = name
    text = truncate_text(text)
    if text:
        node["text"] = text
    if _finite(size):
        w, h = size
        if w > 0 and h > 0:
            node["width"] = _coord(w)
            node["height"] = _coord(h)
            if _finite(offset):
                node["offsetX"] = _coord(offset[0])
                node["offsetY"] = _coord(offset[1])
    if visible is False:
        node["visible"] = False
    if enabled is False:
        node["enabled"] = False
    if children:
        node["children"] = children
    return node


def error_tree(message: str) -> list[dict]:
    """Single-node tree reported in place of a walk that blew up."""
    return [{"type": "Error", "name": message or "Error"}]


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------

def serialize_tree(nodes: list[dict]) -> str:
    """Serialize a list of root nodes to compact JSON text."""
    return json.dumps(nodes, ensure_ascii=False, separators=(",", ":"), allow_nan=False)


def count_nodes(nodes: list[dict]) -> int:
    """Count total nodes in a tree."""
    total = 0
    for node in nodes:
        total += 1
        total += count_nodes(node.get("children", []))
    return total


def tree_depth(nodes: list[dict]) -> int:
    """Depth of the deepest node (a single root is depth 1)."""
    if not nodes:
        return 0
    return 1 + max(tree_depth(node.get("children", [])) for node in nodes)


def trim_to_depth(nodes: list[dict], max_depth: int | None) -> list[dict]:
    """Copy of *nodes* with children dropped below *max_depth*.

    Roots are depth 0; a node at *max_depth* keeps everything except its
    children.  None returns *nodes* unchanged.
    """
    if max_depth is None:
        return nodes

    def trim(node: dict, depth: int) -> dict:
        copy = {k: v for k, v in node.items() if k != "children"}
        children = node.get("children")
        if children and depth < max_depth:
            copy["children"] = [trim(child, depth + 1) for child in children]
        return copy

    return [trim(node, 0) for node in nodes]


# ---------------------------------------------------------------------------
# Schema check
# ---------------------------------------------------------------------------

def _check_node(node: Any, path: str, problems: list[str]) -> None:
    if not isinstance(node, dict):
        problems.append(f"{path}: not an object")
        return

    if not isinstance(node.get("type"), str) or not node["type"]:
        problems.append(f"{path}: missing type")
    for key in node:
        if key not in NODE_KEYS:
            problems.append(f"{path}: unknown field {key!r}")
        elif node[key] is None:
            problems.append(f"{path}: {key} is null")

    if "name" in node and not node["name"]:
        problems.append(f"{path}: empty name")

    text = node.get("text")
    if text is not None and (not isinstance(text, str) or not text
                             or len(text) > MAX_TEXT_LENGTH):
        problems.append(f"{path}: bad text")

    for key in ("width", "height", "offsetX", "offsetY"):
        value = node.get(key)
        if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float))
                                  or not math.isfinite(value)):
            problems.append(f"{path}: {key} is not a finite number")

    has_w, has_h = "width" in node, "height" in node
    if has_w != has_h:
        problems.append(f"{path}: width and height must come together")
    elif has_w and not all(isinstance(node[k], (int, float)) and node[k] > 0
                           for k in ("width", "height")):
        problems.append(f"{path}: non-positive size")
    if ("offsetX" in node or "offsetY" in node) and not has_w:
        problems.append(f"{path}: offset without size")
    if ("offsetX" in node) != ("offsetY" in node):
        problems.append(f"{path}: offsetX and offsetY must come together")

    for flag in ("visible", "enabled"):
        if flag in node and node[flag] is not False:
            problems.append(f"{path}: {flag} may only be false")

    if "children" in node:
        children = node["children"]
        if not isinstance(children, list) or not children:
            problems.append(f"{path}: children must be a non-empty list")
        else:
            for i, child in enumerate(children):
                _check_node(child, f"{path}.{i}", problems)


def validate_tree(nodes: Any) -> list[str]:
    """Return schema violations for a snapshot (empty list if it conforms)."""
    if not isinstance(nodes, list):
        return ["tree: not an array"]
    problems: list[str] = []
    for i, node in enumerate(nodes):
        _check_node(node, str(i), problems)
    return problems


# ---------------------------------------------------------------------------
# Compact text serializer
# ---------------------------------------------------------------------------

def _short_type(type_name: str) -> str:
    return type_name.rsplit(".", 1)[-1]


def _format_line(node: dict) -> str:
    """Format a single node as a compact one-liner."""
    parts = [_short_type(node["type"])]

    name = node.get("name")
    if name:
        parts.append(f"#{name}")

    text = node.get("text")
    if text:
        truncated = text[:80] + ("..." if len(text) > 80 else "")
        truncated = truncated.replace("\\", "\\\\").replace('"', '\\"').replace("\n", " ")
        parts.append(f'"{truncated}"')

    if "width" in node:
        if "offsetX" in node:
            parts.append(
                f"@{node['offsetX']:g},{node['offsetY']:g} "
                f"{node['width']:g}x{node['height']:g}"
            )
        else:
            parts.append(f"{node['width']:g}x{node['height']:g}")

    flags = []
    if node.get("visible") is False:
        flags.append("hidden")
    if node.get("enabled") is False:
        flags.append("disabled")
    if flags:
        parts.append("{" + ",".join(flags) + "}")

    return " ".join(parts)


def _emit_compact(node: dict, depth: int, lines: list[str]) -> None:
    lines.append(f"{'  ' * depth}{_format_line(node)}")
    for child in node.get("children", []):
        _emit_compact(child, depth + 1, lines)


def serialize_compact(nodes: list[dict], *, header: str | None = None) -> str:
    """Render a tree as indented text, one node per line."""
    lines: list[str] = []
    for root in nodes:
        _emit_compact(root, 0, lines)

    header_lines = []
    if header:
        header_lines.append(f"# {header}")
    header_lines.append(f"# {count_nodes(nodes)} nodes, depth {tree_depth(nodes)}")
    header_lines.append("")

    return "\n".join(header_lines + lines) + "\n"
