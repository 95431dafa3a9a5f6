"""
Tkinter host for the local walker.

Resolves the process's default Tk root through ``sys.modules`` (tkinter is
never imported here, so a process without Tk simply has no host).  Windows
are the root followed by every ``Toplevel`` below it; a widget's visual
children are its non-toplevel ``winfo_children()``.
"""

from __future__ import annotations

import sys
import threading
from typing import Any, Callable, Iterable

from lvt._base import ElementAccessor, LocalHost
from lvt.dispatch import Dispatcher


def _is_toplevel(widget: Any) -> bool:
    try:
        return widget.winfo_toplevel() is widget
    except Exception:
        return False


def _widget_value(get: Callable[..., Any]) -> Any:
    # Entry.get() takes no arguments, Text.get() needs an index range,
    # Listbox.get() needs an index and has no single value.
    try:
        return get()
    except TypeError:
        pass
    try:
        return get("1.0", "end-1c")
    except Exception:
        return None


class TkAccessor(ElementAccessor):

    def type_name(self, element: Any) -> str:
        cls = type(element)
        return f"{cls.__module__}.{cls.__qualname__}"

    def name(self, element: Any) -> str | None:
        # Tk invents names like "!button2" for unnamed widgets.
        name = element.winfo_name()
        if not name or name.startswith("!") or name == "tk":
            return None
        return name

    def size(self, element: Any) -> tuple[float, float] | None:
        # Unmapped widgets report a placeholder 1x1.
        if not element.winfo_ismapped():
            return None
        return float(element.winfo_width()), float(element.winfo_height())

    def screen_offset(self, element: Any) -> tuple[float, float] | None:
        if not element.winfo_ismapped():
            return None
        return float(element.winfo_rootx()), float(element.winfo_rooty())

    def text_candidates(self, element: Any) -> Iterable[Any]:
        keys = element.keys() if hasattr(element, "keys") else ()
        if "text" in keys:
            yield element.cget("text")
        get = getattr(element, "get", None)
        if callable(get):
            yield _widget_value(get)
        if _is_toplevel(element):
            yield element.title()
        if "placeholder" in keys:
            yield element.cget("placeholder")

    def is_visible(self, element: Any) -> bool | None:
        if _is_toplevel(element):
            return element.wm_state() != "withdrawn"
        # Widgets removed with pack_forget()/grid_remove() have no manager.
        return bool(element.winfo_manager())

    def is_enabled(self, element: Any) -> bool | None:
        instate = getattr(element, "instate", None)
        if callable(instate):
            return not instate(["disabled"])
        if "state" in element.keys():
            return str(element.cget("state")) != "disabled"
        return None

    def children(self, element: Any) -> Iterable[Any]:
        return [w for w in element.winfo_children() if not _is_toplevel(w)]


class TkDispatcher(Dispatcher):
    """Marshals callbacks onto the Tk mainloop via ``after(0, ...)``."""

    def __init__(self, root: Any, owner: threading.Thread | None = None) -> None:
        self._root = root
        self._owner = owner or threading.main_thread()

    def check_access(self) -> bool:
        return threading.current_thread() is self._owner

    def post(self, callback: Callable[[], None]) -> None:
        self._root.after(0, callback)


class TkHost(LocalHost):
    """Local walker host for Tkinter applications."""

    def __init__(self) -> None:
        self._accessor = TkAccessor()

    @property
    def framework(self) -> str:
        return "tk"

    @property
    def accessor(self) -> ElementAccessor:
        return self._accessor

    def resolve_application(self) -> Any | None:
        tkinter = sys.modules.get("tkinter")
        if tkinter is None:
            return None
        return getattr(tkinter, "_default_root", None)

    def resolve_dispatcher(self, app: Any) -> Dispatcher | None:
        if not callable(getattr(app, "after", None)):
            return None
        return TkDispatcher(app)

    def resolve_windows(self, app: Any) -> list[Any] | None:
        windows = [app]
        pending = list(app.winfo_children())
        while pending:
            widget = pending.pop(0)
            if _is_toplevel(widget):
                windows.append(widget)
            pending.extend(widget.winfo_children())
        return windows
