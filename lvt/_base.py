"""Abstract bases for local walker hosts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Iterable

if TYPE_CHECKING:
    from lvt.dispatch import Dispatcher


class ElementAccessor(ABC):
    """Read-only view of one UI framework's element objects.

    Only ``type_name`` is mandatory.  Every other capability defaults to
    "absent" (``None``, or no children), so a host implements just what its
    framework exposes.  Any capability may also raise; the walker treats
    that the same as absent for that element.
    """

    @abstractmethod
    def type_name(self, element: Any) -> str:
        """Fully qualified type identity of *element*."""
        ...

    def name(self, element: Any) -> str | None:
        """Assigned logical name, if any."""
        return None

    def size(self, element: Any) -> tuple[float, float] | None:
        """(width, height) in device-independent units."""
        return None

    def screen_offset(self, element: Any) -> tuple[float, float] | None:
        """Screen position of the element's top-left corner.

        None when the element is not attached to a rendered surface.
        """
        return None

    def text_candidates(self, element: Any) -> Iterable[Any]:
        """Text-bearing values in priority order (text, content, header,
        title, placeholder).  Evaluated lazily; the walker stops at the
        first non-empty string.
        """
        return ()

    def is_visible(self, element: Any) -> bool | None:
        """False only when the element is explicitly hidden."""
        return None

    def is_enabled(self, element: Any) -> bool | None:
        """False only when the element is explicitly disabled."""
        return None

    def children(self, element: Any) -> Iterable[Any]:
        """Visual children in render order."""
        return ()


class LocalHost(ABC):
    """Interface each in-process UI framework host must implement.

    The resolve methods return None when the framework capability they
    look up is unavailable in this process; the walker reports a distinct
    status for each one.
    """

    # ---- identity --------------------------------------------------------

    @property
    @abstractmethod
    def framework(self) -> str:
        """Short framework identifier, e.g. 'tk' or 'qt'."""
        ...

    @property
    @abstractmethod
    def accessor(self) -> ElementAccessor:
        ...

    # ---- resolution ------------------------------------------------------

    @abstractmethod
    def resolve_application(self) -> Any | None:
        """Return the live application singleton."""
        ...

    @abstractmethod
    def resolve_dispatcher(self, app: Any) -> Dispatcher | None:
        """Return the dispatcher for the thread that owns *app*'s UI."""
        ...

    @abstractmethod
    def resolve_windows(self, app: Any) -> list[Any] | None:
        """Return the top-level windows.  Called on the UI thread."""
        ...
