"""
Pipe transport: one-shot delivery of a single JSON document.

The controller names a local endpoint and waits on it; the walker connects
as a client, writes the UTF-8 document and closes.  There is no framing and
no acknowledgement: the reader consumes bytes until the writer closes.

Endpoints are Windows named pipes (``\\\\.\\pipe\\<name>``) on Windows and
Unix domain sockets in the temp directory (or ``LVT_PIPE_DIR``) elsewhere.
Channel names are accepted with or without that namespace prefix.
"""

from __future__ import annotations

import logging
import os
import socket
import sys
import tempfile
import time

logger = logging.getLogger(__name__)

PIPE_PREFIX = "\\\\.\\pipe\\"
CONNECT_TIMEOUT = 5.0

_POLL_INTERVAL = 0.05
_READ_CHUNK = 64 * 1024


class InvalidChannelName(ValueError):
    """The controller supplied a channel name that cannot name an endpoint."""


class PipeTimeout(TimeoutError):
    """The endpoint did not become connectable in time."""


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------

def pipe_directory() -> str:
    """Directory holding POSIX pipe endpoints."""
    return os.environ.get("LVT_PIPE_DIR") or tempfile.gettempdir()


def strip_pipe_prefix(name: str | bytes) -> str:
    """Reduce a channel name to its short form.

    ``\\\\.\\pipe\\lvt_1234``, ``<pipe dir>/lvt_1234`` (POSIX) and
    ``lvt_1234`` all yield ``lvt_1234``.

    Raises:
        InvalidChannelName: for empty, undecodable or path-like names.
    """
    if isinstance(name, bytes):
        try:
            name = name.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidChannelName(f"Channel name is not UTF-8: {exc}") from exc
    if not isinstance(name, str):
        raise InvalidChannelName(f"Channel name must be a string, not {type(name).__name__}")

    short = name
    if short.startswith(PIPE_PREFIX):
        short = short[len(PIPE_PREFIX):]
    elif sys.platform != "win32":
        prefix = os.path.join(pipe_directory(), "")
        if short.startswith(prefix):
            short = short[len(prefix):]

    if not short:
        raise InvalidChannelName("Channel name is empty")
    if "\0" in short or "/" in short or "\\" in short:
        raise InvalidChannelName(f"Malformed channel name: {name!r}")
    return short


def endpoint_path(short_name: str) -> str:
    """Platform path of the endpoint for an already-stripped name."""
    if sys.platform == "win32":
        return PIPE_PREFIX + short_name
    return os.path.join(pipe_directory(), short_name)


# ---------------------------------------------------------------------------
# Writer (walker side)
# ---------------------------------------------------------------------------

def send_document(name: str | bytes, document: str, timeout: float = CONNECT_TIMEOUT) -> None:
    """Connect to the endpoint *name*, write *document* in full and close.

    Raises:
        InvalidChannelName: if *name* is malformed.
        PipeTimeout: if nobody is listening within *timeout* seconds.
        OSError: for any other OS-level failure.
    """
    path = endpoint_path(strip_pipe_prefix(name))
    data = document.encode("utf-8")
    if sys.platform == "win32":
        _send_windows(path, data, timeout)
    else:
        _send_posix(path, data, timeout)
    logger.debug("Wrote %d bytes to %s", len(data), path)


def _send_posix(path: str, data: bytes, timeout: float) -> None:
    deadline = time.monotonic() + timeout
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise PipeTimeout(f"Timed out connecting to {path}")
            sock.settimeout(remaining)
            try:
                sock.connect(path)
                break
            except (FileNotFoundError, ConnectionRefusedError):
                # Listener not up yet; keep trying until the deadline.
                time.sleep(min(_POLL_INTERVAL, max(remaining, 0)))
            except socket.timeout as exc:
                raise PipeTimeout(f"Timed out connecting to {path}") from exc
        sock.settimeout(None)
        sock.sendall(data)
        sock.shutdown(socket.SHUT_WR)
    finally:
        sock.close()


# Win32 error codes
_ERROR_FILE_NOT_FOUND = 2
_ERROR_BROKEN_PIPE = 109
_ERROR_SEM_TIMEOUT = 121
_ERROR_PIPE_BUSY = 231
_ERROR_PIPE_CONNECTED = 535


def _kernel32():
    import ctypes
    import ctypes.wintypes as wt

    k32 = ctypes.WinDLL("kernel32", use_last_error=True)
    k32.WaitNamedPipeW.argtypes = [wt.LPCWSTR, wt.DWORD]
    k32.WaitNamedPipeW.restype = wt.BOOL
    k32.CreateNamedPipeW.argtypes = [
        wt.LPCWSTR, wt.DWORD, wt.DWORD, wt.DWORD,
        wt.DWORD, wt.DWORD, wt.DWORD, ctypes.c_void_p,
    ]
    k32.CreateNamedPipeW.restype = wt.HANDLE
    k32.ConnectNamedPipe.argtypes = [wt.HANDLE, ctypes.c_void_p]
    k32.ConnectNamedPipe.restype = wt.BOOL
    k32.ReadFile.argtypes = [
        wt.HANDLE, ctypes.c_void_p, wt.DWORD,
        ctypes.POINTER(wt.DWORD), ctypes.c_void_p,
    ]
    k32.ReadFile.restype = wt.BOOL
    k32.DisconnectNamedPipe.argtypes = [wt.HANDLE]
    k32.CloseHandle.argtypes = [wt.HANDLE]
    return k32


def _send_windows(path: str, data: bytes, timeout: float) -> None:
    import ctypes

    k32 = _kernel32()
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise PipeTimeout(f"Timed out connecting to {path}")
        if not k32.WaitNamedPipeW(path, max(1, int(remaining * 1000))):
            err = ctypes.get_last_error()
            if err == _ERROR_FILE_NOT_FOUND:
                time.sleep(_POLL_INTERVAL)
                continue
            if err == _ERROR_SEM_TIMEOUT:
                raise PipeTimeout(f"Timed out connecting to {path}")
            raise ctypes.WinError(err)
        try:
            with open(path, "wb") as pipe:
                pipe.write(data)
                pipe.flush()
            return
        except OSError as exc:
            # Another client grabbed the instance between wait and open.
            if getattr(exc, "winerror", None) != _ERROR_PIPE_BUSY:
                raise


# ---------------------------------------------------------------------------
# Reader (controller side)
# ---------------------------------------------------------------------------

class PipeListener:
    """Controller end of a pipe: waits for one walker and reads its document.

    Usage::

        with PipeListener("lvt_1234") as listener:
            start_walker(listener.name)
            json_text = listener.accept_document(timeout=30)
    """

    def __init__(self, name: str | bytes) -> None:
        self.short_name = strip_pipe_prefix(name)
        self.path = endpoint_path(self.short_name)
        self._sock: socket.socket | None = None
        self._handle = None
        if sys.platform == "win32":
            self._open_windows()
        else:
            self._open_posix()

    @property
    def name(self) -> str:
        """Fully prefixed channel name to hand to a walker."""
        if sys.platform == "win32":
            return self.path
        return self.short_name

    def __enter__(self) -> PipeListener:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def accept_document(self, timeout: float | None = None) -> str:
        """Wait for a writer, read until it closes, return the decoded text.

        Raises:
            PipeTimeout: if no writer connects within *timeout* seconds.
            RuntimeError: if the listener was closed.
        """
        if self._sock is None and self._handle is None:
            raise RuntimeError("listener closed")
        if sys.platform == "win32":
            data = self._accept_windows(timeout)
        else:
            data = self._accept_posix(timeout)
        logger.debug("Read %d bytes from %s", len(data), self.path)
        return data.decode("utf-8")

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None
            try:
                os.unlink(self.path)
            except FileNotFoundError:
                pass
        if self._handle is not None:
            _kernel32().CloseHandle(self._handle)
            self._handle = None

    # -- POSIX -------------------------------------------------------------

    def _open_posix(self) -> None:
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(self.path)
            sock.listen(1)
        except OSError:
            sock.close()
            raise
        self._sock = sock

    def _accept_posix(self, timeout: float | None) -> bytes:
        self._sock.settimeout(timeout)
        try:
            conn, _ = self._sock.accept()
        except socket.timeout as exc:
            raise PipeTimeout(f"No walker connected to {self.path}") from exc
        with conn:
            conn.settimeout(None)
            chunks = []
            while True:
                chunk = conn.recv(_READ_CHUNK)
                if not chunk:
                    break
                chunks.append(chunk)
        return b"".join(chunks)

    # -- Windows -----------------------------------------------------------

    def _open_windows(self) -> None:
        import ctypes

        k32 = _kernel32()
        pipe_access_inbound = 0x00000001
        pipe_type_byte_wait = 0x00000000
        handle = k32.CreateNamedPipeW(
            self.path, pipe_access_inbound, pipe_type_byte_wait,
            1, 0, 4 * 1024 * 1024, 0, None,
        )
        if handle is None or handle == ctypes.c_void_p(-1).value:
            raise ctypes.WinError(ctypes.get_last_error())
        self._handle = handle

    def _accept_windows(self, timeout: float | None) -> bytes:
        import ctypes
        import ctypes.wintypes as wt
        import threading

        k32 = _kernel32()
        connected = threading.Event()
        errors: list[int] = []

        def wait_for_client() -> None:
            if not k32.ConnectNamedPipe(self._handle, None):
                err = ctypes.get_last_error()
                if err != _ERROR_PIPE_CONNECTED:
                    errors.append(err)
            connected.set()

        waiter = threading.Thread(target=wait_for_client, daemon=True)
        waiter.start()
        if not connected.wait(timeout):
            # Unblock ConnectNamedPipe by connecting to ourselves.
            try:
                open(self.path, "wb").close()
            except OSError:
                pass
            waiter.join(1.0)
            k32.DisconnectNamedPipe(self._handle)
            raise PipeTimeout(f"No walker connected to {self.path}")
        if errors:
            raise ctypes.WinError(errors[0])

        chunks = []
        buf = ctypes.create_string_buffer(_READ_CHUNK)
        read = wt.DWORD(0)
        while True:
            ok = k32.ReadFile(self._handle, buf, _READ_CHUNK, ctypes.byref(read), None)
            if not ok:
                err = ctypes.get_last_error()
                if err == _ERROR_BROKEN_PIPE:
                    break
                raise ctypes.WinError(err)
            if read.value == 0:
                break
            chunks.append(buf.raw[:read.value])
        k32.DisconnectNamedPipe(self._handle)
        return b"".join(chunks)
