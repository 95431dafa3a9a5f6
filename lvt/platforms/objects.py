"""
Duck-typed accessor for arbitrary object models.

Looks elements up by the property names common to retained-mode XAML-style
toolkits (``Name``, ``ActualWidth``, ``Text``, ``Content``, ``Header``,
``Title``, ``Watermark`` ...) and their snake_case equivalents.  Any object
graph that exposes some of these can be walked without writing a host.
"""

from __future__ import annotations

from typing import Any, Iterable

from lvt._base import ElementAccessor

_MISSING = object()

# Tried in order; the first non-empty string wins.
TEXT_PROPERTIES = (
    "Text", "text",
    "Content", "content",
    "Header", "header",
    "Title", "title",
    "Watermark", "watermark",
    "Placeholder", "placeholder",
)

CHILDREN_PROPERTIES = ("VisualChildren", "visual_children", "Children", "children")


def _lookup(element: Any, *names: str) -> Any:
    for name in names:
        value = getattr(element, name, _MISSING)
        if value is not _MISSING:
            return value
    return _MISSING


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _point(value: Any) -> tuple[float, float] | None:
    if isinstance(value, tuple) and len(value) == 2:
        x, y = value
    else:
        x = _lookup(value, "X", "x")
        y = _lookup(value, "Y", "y")
    x, y = _number(x), _number(y)
    if x is None or y is None:
        return None
    return x, y


class ObjectAccessor(ElementAccessor):
    """Reads elements by attribute name; every lookup is optional."""

    def type_name(self, element: Any) -> str:
        cls = type(element)
        module = cls.__module__
        if module in (None, "builtins"):
            return cls.__qualname__
        return f"{module}.{cls.__qualname__}"

    def name(self, element: Any) -> str | None:
        value = _lookup(element, "Name", "name")
        return value if isinstance(value, str) else None

    def size(self, element: Any) -> tuple[float, float] | None:
        w = _lookup(element, "ActualWidth", "actual_width")
        h = _lookup(element, "ActualHeight", "actual_height")
        if w is _MISSING or h is _MISSING:
            bounds = _lookup(element, "Bounds", "bounds")
            if bounds is _MISSING or bounds is None:
                return None
            w = _lookup(bounds, "Width", "width")
            h = _lookup(bounds, "Height", "height")
        w, h = _number(w), _number(h)
        if w is None or h is None:
            return None
        return w, h

    def screen_offset(self, element: Any) -> tuple[float, float] | None:
        point_to_screen = _lookup(element, "PointToScreen", "point_to_screen")
        if callable(point_to_screen):
            result = point_to_screen((0.0, 0.0))
            return None if result is None else _point(result)
        screen = _lookup(element, "ScreenPosition", "screen_position")
        if screen is _MISSING or screen is None:
            return None
        return _point(screen)

    def text_candidates(self, element: Any) -> Iterable[Any]:
        for prop in TEXT_PROPERTIES:
            value = getattr(element, prop, None)
            # Content/Header may hold child elements; only strings count.
            if isinstance(value, str):
                yield value

    def is_visible(self, element: Any) -> bool | None:
        visible = _lookup(element, "IsVisible", "is_visible", "visible")
        if isinstance(visible, bool):
            return visible
        visibility = _lookup(element, "Visibility", "visibility")
        if visibility is _MISSING or visibility is None:
            return None
        # Enum members or plain strings: anything but "Visible" is hidden.
        label = getattr(visibility, "name", visibility)
        return str(label).lower() == "visible"

    def is_enabled(self, element: Any) -> bool | None:
        enabled = _lookup(element, "IsEnabled", "is_enabled", "enabled")
        return enabled if isinstance(enabled, bool) else None

    def children(self, element: Any) -> Iterable[Any]:
        kids = _lookup(element, *CHILDREN_PROPERTIES)
        if kids is _MISSING or kids is None or isinstance(kids, (str, bytes)):
            return ()
        if callable(kids):
            kids = kids()
        return list(kids)
