"""UI framework auto-detection and host dispatch."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from lvt._base import LocalHost


def detect_framework() -> str | None:
    """Return the identifier of the UI toolkit loaded in this process.

    Qt wins over Tk when both are loaded, since Qt applications sometimes
    pull in tkinter indirectly (file dialogs, matplotlib backends).
    """
    from lvt.platforms.qt import loaded_binding

    if loaded_binding() is not None:
        return "qt"
    if "tkinter" in sys.modules:
        return "tk"
    return None


def get_host(framework: str | None = None) -> LocalHost | None:
    """Return a host for *framework*, or for the detected one.

    Returns None when no supported toolkit is loaded.

    Raises:
        RuntimeError: If *framework* names an unknown toolkit.
    """
    if framework is None:
        framework = detect_framework()
        if framework is None:
            return None

    if framework == "qt":
        from lvt.platforms.qt import QtHost
        return QtHost()
    elif framework == "tk":
        from lvt.platforms.tk import TkHost
        return TkHost()
    else:
        raise RuntimeError(
            f"No host available for framework '{framework}'. "
            f"Currently supported: qt, tk."
        )
