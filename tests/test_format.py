"""Tests for LVT format utilities: node builder, JSON and compact serializers."""

from __future__ import annotations

import json

import pytest

from lvt.format import (
    MAX_TEXT_LENGTH,
    build_node,
    count_nodes,
    error_tree,
    first_text,
    serialize_compact,
    serialize_tree,
    tree_depth,
    trim_to_depth,
    truncate_text,
    validate_tree,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def _make_node(type_name: str, **kwargs) -> dict:
    """Create a minimal node for testing."""
    node = {"type": type_name}
    node.update(kwargs)
    return node


# ---------------------------------------------------------------------------
# build_node
# ---------------------------------------------------------------------------

class TestBuildNode:
    def test_type_only(self):
        assert build_node("demo.Panel") == {"type": "demo.Panel"}

    def test_full_node_key_order(self):
        node = build_node(
            "demo.Button",
            name="okButton",
            text="OK",
            size=(100, 30),
            offset=(10, 20),
            visible=False,
            enabled=False,
            children=[{"type": "demo.Label"}],
        )
        assert list(node) == [
            "type", "name", "text", "width", "height",
            "offsetX", "offsetY", "visible", "enabled", "children",
        ]

    def test_geometry_is_float(self):
        node = build_node("Button", size=(100, 30), offset=(10, 20))
        assert node["width"] == 100.0 and isinstance(node["width"], float)
        assert node["offsetX"] == 10.0 and isinstance(node["offsetX"], float)

    def test_zero_width_drops_geometry(self):
        node = build_node("Button", size=(0, 30), offset=(10, 20))
        assert "width" not in node
        assert "height" not in node
        assert "offsetX" not in node

    def test_negative_height_drops_geometry(self):
        node = build_node("Button", size=(10, -1))
        assert "width" not in node

    def test_offset_without_size_dropped(self):
        node = build_node("Button", offset=(10, 20))
        assert "offsetX" not in node
        assert "offsetY" not in node

    def test_size_without_offset(self):
        node = build_node("Button", size=(5, 5))
        assert node["width"] == 5.0
        assert "offsetX" not in node

    def test_true_flags_omitted(self):
        node = build_node("Button", visible=True, enabled=True)
        assert "visible" not in node
        assert "enabled" not in node

    def test_false_flags_kept(self):
        node = build_node("Button", visible=False, enabled=False)
        assert node["visible"] is False
        assert node["enabled"] is False

    def test_empty_name_and_text_omitted(self):
        node = build_node("Button", name="", text="")
        assert node == {"type": "Button"}

    def test_empty_children_omitted(self):
        assert "children" not in build_node("Panel", children=[])

    def test_text_truncated(self):
        node = build_node("TextBlock", text="x" * 500)
        assert node["text"] == "x" * MAX_TEXT_LENGTH


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

class TestText:
    def test_truncate_exact_prefix_no_marker(self):
        value = "".join(chr(ord("a") + i % 26) for i in range(300))
        assert truncate_text(value) == value[:200]

    def test_truncate_short_unchanged(self):
        assert truncate_text("hello") == "hello"

    def test_truncate_non_string(self):
        assert truncate_text(42) is None
        assert truncate_text(None) is None

    def test_first_text_skips_empty_and_non_strings(self):
        assert first_text([None, "", 3, "Title", "Later"]) == "Title"

    def test_first_text_none(self):
        assert first_text([None, ""]) is None

    def test_first_text_is_lazy(self):
        def candidates():
            yield "first"
            raise AssertionError("read past the first match")

        assert first_text(candidates()) == "first"


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------

class TestSerializeTree:
    def test_empty_tree(self):
        assert serialize_tree([]) == "[]"

    def test_compact_separators(self):
        text = serialize_tree([_make_node("Window", children=[_make_node("Button")])])
        assert text == '[{"type":"Window","children":[{"type":"Button"}]}]'

    def test_unicode_kept(self):
        text = serialize_tree([_make_node("Label", text="Grüße")])
        assert "Grüße" in text

    def test_escaping_after_truncation(self):
        raw = "x" * 199 + '"tail'
        node = build_node("Label", text=raw)
        parsed = json.loads(serialize_tree([node]))
        assert parsed[0]["text"] == 'x' * 199 + '"'

    def test_error_tree(self):
        assert error_tree("boom") == [{"type": "Error", "name": "boom"}]

    def test_error_tree_empty_message(self):
        assert error_tree("") == [{"type": "Error", "name": "Error"}]


class TestStats:
    def test_count_nodes(self):
        tree = [_make_node("A", children=[_make_node("B"), _make_node("C")]), _make_node("D")]
        assert count_nodes(tree) == 4

    def test_depth(self):
        tree = [_make_node("A", children=[_make_node("B", children=[_make_node("C")])])]
        assert tree_depth(tree) == 3
        assert tree_depth([]) == 0


# ---------------------------------------------------------------------------
# trim_to_depth
# ---------------------------------------------------------------------------

class TestTrimToDepth:
    def _tree(self):
        return [_make_node("A", name="a", children=[
            _make_node("B", children=[_make_node("C")]),
            _make_node("D"),
        ])]

    def test_roots_only(self):
        assert trim_to_depth(self._tree(), 0) == [{"type": "A", "name": "a"}]

    def test_bound_node_kept_without_children(self):
        trimmed = trim_to_depth(self._tree(), 1)
        assert trimmed[0]["children"] == [{"type": "B"}, {"type": "D"}]
        assert tree_depth(trimmed) == 2

    def test_bound_beyond_tree_is_noop(self):
        assert trim_to_depth(self._tree(), 10) == self._tree()

    def test_none_is_unlimited(self):
        tree = self._tree()
        assert trim_to_depth(tree, None) is tree

    def test_input_not_modified(self):
        tree = self._tree()
        trim_to_depth(tree, 0)
        assert count_nodes(tree) == 4


# ---------------------------------------------------------------------------
# validate_tree
# ---------------------------------------------------------------------------

class TestValidateTree:
    def test_built_nodes_conform(self):
        tree = [build_node("W", size=(1, 1), offset=(0, 0),
                           children=[build_node("B", visible=False)])]
        assert validate_tree(tree) == []

    def test_not_array(self):
        assert validate_tree({"type": "W"}) == ["tree: not an array"]

    def test_missing_type(self):
        assert "0: missing type" in validate_tree([{}])

    def test_null_field(self):
        problems = validate_tree([{"type": "W", "name": None}])
        assert "0: name is null" in problems

    def test_true_flag_rejected(self):
        problems = validate_tree([{"type": "W", "visible": True}])
        assert "0: visible may only be false" in problems

    def test_offset_without_size(self):
        problems = validate_tree([{"type": "W", "offsetX": 1.0, "offsetY": 1.0}])
        assert "0: offset without size" in problems

    def test_empty_children(self):
        problems = validate_tree([{"type": "W", "children": []}])
        assert "0: children must be a non-empty list" in problems

    def test_nested_path(self):
        problems = validate_tree([{"type": "W", "children": [{"type": "B", "bogus": 1}]}])
        assert problems == ["0.0: unknown field 'bogus'"]

    def test_long_text(self):
        problems = validate_tree([{"type": "W", "text": "x" * 201}])
        assert "0: bad text" in problems


# ---------------------------------------------------------------------------
# serialize_compact
# ---------------------------------------------------------------------------

class TestSerializeCompact:
    def test_header(self):
        text = serialize_compact([_make_node("Window")], header="Demo")
        lines = text.split("\n")
        assert lines[0] == "# Demo"
        assert lines[1] == "# 1 nodes, depth 1"
        assert lines[2] == ""

    def test_no_header(self):
        text = serialize_compact([])
        assert text.startswith("# 0 nodes, depth 0\n")

    def test_node_line(self):
        node = build_node("demo.controls.Button", name="ok", text="OK",
                          size=(100, 30), offset=(10, 20), enabled=False)
        text = serialize_compact([node])
        assert 'Button #ok "OK" @10,20 100x30 {disabled}' in text

    def test_short_type(self):
        text = serialize_compact([_make_node("a.b.c.Grid")])
        assert "\nGrid\n" in text

    def test_size_without_offset(self):
        text = serialize_compact([_make_node("Div", width=5.5, height=2.0)])
        assert "Div 5.5x2" in text

    def test_indentation(self):
        tree = [_make_node("Window", children=[_make_node("Panel", children=[_make_node("Button")])])]
        text = serialize_compact(tree)
        assert "\nWindow\n  Panel\n    Button\n" in text

    def test_text_quotes_escaped(self):
        text = serialize_compact([_make_node("Label", text='say "hi"')])
        assert 'Label "say \\"hi\\""' in text

    def test_long_text_shortened(self):
        text = serialize_compact([_make_node("Label", text="y" * 150)])
        assert '"' + "y" * 80 + '..."' in text

    def test_hidden_flag(self):
        text = serialize_compact([_make_node("Label", visible=False)])
        assert "Label {hidden}" in text


# ---------------------------------------------------------------------------
# Non-finite geometry
# ---------------------------------------------------------------------------

class TestNonFiniteGeometry:
    def test_infinite_size_dropped(self):
        node = build_node("Panel", size=(float("inf"), 30), offset=(0, 0))
        assert node == {"type": "Panel"}

    def test_nan_size_dropped(self):
        assert "width" not in build_node("Panel", size=(float("nan"), float("nan")))

    def test_nan_offset_dropped_size_kept(self):
        node = build_node("Panel", size=(10, 10), offset=(float("nan"), 5))
        assert node["width"] == 10.0
        assert "offsetX" not in node

    def test_serialize_refuses_nan(self):
        with pytest.raises(ValueError):
            serialize_tree([{"type": "Panel", "width": float("nan"), "height": 1.0}])

    def test_validate_flags_infinity(self):
        problems = validate_tree([{"type": "Panel", "width": float("inf"), "height": 1.0}])
        assert "0: width is not a finite number" in problems
