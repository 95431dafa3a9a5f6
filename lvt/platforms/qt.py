"""
Qt host for the local walker.

Works with whichever binding the application already loaded (PySide6,
PyQt6, PySide2 or PyQt5).  Everything is looked up through ``sys.modules``
and ``getattr`` so that a binding or API this module was not written
against shows up as a missing capability instead of an ImportError.
"""

from __future__ import annotations

import sys
from typing import Any, Callable, Iterable

from lvt._base import ElementAccessor, LocalHost
from lvt.dispatch import Dispatcher

BINDINGS = ("PySide6", "PyQt6", "PySide2", "PyQt5")


def loaded_binding() -> str | None:
    """Name of the first Qt binding whose QtWidgets module is loaded."""
    for binding in BINDINGS:
        if f"{binding}.QtWidgets" in sys.modules:
            return binding
    return None


def _call(element: Any, method: str) -> Any:
    func = getattr(element, method, None)
    if not callable(func):
        return None
    try:
        return func()
    except TypeError:
        # Overloads that need arguments (QTabBar.tabText etc.) have no
        # single value.
        return None


class QtAccessor(ElementAccessor):

    def __init__(self, qt_core: Any) -> None:
        self._core = qt_core

    def type_name(self, element: Any) -> str:
        cls = type(element)
        return f"{cls.__module__}.{cls.__qualname__}"

    def name(self, element: Any) -> str | None:
        return element.objectName() or None

    def size(self, element: Any) -> tuple[float, float] | None:
        return float(element.width()), float(element.height())

    def screen_offset(self, element: Any) -> tuple[float, float] | None:
        if not element.isVisible():
            return None
        pos = element.mapToGlobal(self._core.QPoint(0, 0))
        return float(pos.x()), float(pos.y())

    def text_candidates(self, element: Any) -> Iterable[Any]:
        yield _call(element, "text")
        yield _call(element, "toPlainText")
        yield _call(element, "currentText")
        yield _call(element, "title")
        if element.isWindow():
            yield element.windowTitle()
        yield _call(element, "placeholderText")

    def is_visible(self, element: Any) -> bool | None:
        return not element.isHidden()

    def is_enabled(self, element: Any) -> bool | None:
        return element.isEnabled()

    def children(self, element: Any) -> Iterable[Any]:
        return [
            c for c in element.children()
            if c.isWidgetType() and not c.isWindow()
        ]


def _make_invoker(qt_core: Any, app: Any) -> Any:
    """QObject living on the GUI thread that runs callables sent to it."""
    signal = getattr(qt_core, "Signal", None) or getattr(qt_core, "pyqtSignal")
    connection = getattr(qt_core.Qt, "ConnectionType", qt_core.Qt).QueuedConnection

    class _Invoker(qt_core.QObject):
        invoke = signal(object)

        def __init__(self) -> None:
            super().__init__()
            self.invoke.connect(self._run, connection)

        def _run(self, callback: Callable[[], None]) -> None:
            callback()

    invoker = _Invoker()
    invoker.moveToThread(app.thread())
    return invoker


class QtDispatcher(Dispatcher):
    """Queues callbacks onto the thread that owns the QApplication."""

    def __init__(self, qt_core: Any, app: Any) -> None:
        self._core = qt_core
        self._app = app
        self._invoker = _make_invoker(qt_core, app)

    def check_access(self) -> bool:
        return self._core.QThread.currentThread() == self._app.thread()

    def post(self, callback: Callable[[], None]) -> None:
        self._invoker.invoke.emit(callback)


class QtHost(LocalHost):
    """Local walker host for Qt Widgets applications."""

    def __init__(self, binding: str | None = None) -> None:
        self._binding = binding or loaded_binding()
        self._accessor: QtAccessor | None = None

    @property
    def framework(self) -> str:
        return "qt"

    def _module(self, name: str) -> Any | None:
        if self._binding is None:
            return None
        return sys.modules.get(f"{self._binding}.{name}")

    @property
    def accessor(self) -> ElementAccessor:
        if self._accessor is None:
            self._accessor = QtAccessor(self._module("QtCore"))
        return self._accessor

    def resolve_application(self) -> Any | None:
        widgets = self._module("QtWidgets")
        app_type = getattr(widgets, "QApplication", None)
        if app_type is None:
            return None
        return app_type.instance()

    def resolve_dispatcher(self, app: Any) -> Dispatcher | None:
        core = self._module("QtCore")
        if core is None or not hasattr(core, "QThread"):
            return None
        return QtDispatcher(core, app)

    def resolve_windows(self, app: Any) -> list[Any] | None:
        top_levels = getattr(app, "topLevelWidgets", None)
        if not callable(top_levels):
            return None
        return list(top_levels())
