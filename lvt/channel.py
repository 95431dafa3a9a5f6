"""
Channel transport: persistent, framed, bidirectional messaging.

Each frame is a 4-byte little-endian length followed by that many bytes of
UTF-8 JSON (the browser native-messaging framing).  The remote walker host
connects to the controller and keeps reconnecting after a fixed delay
whenever the channel drops; the controller listens, sends ``getDOM``
requests and matches ``domTree`` / ``error`` replies by ``requestId``.

Message kinds::

    {"type": "getDOM", "requestId": "7"}
    {"type": "domTree", "requestId": "7", "url": ..., "title": ..., "tree": [...]}
    {"type": "error", "requestId": "7", "message": "..."}
    {"type": "ping"}  ->  {"type": "pong"}
    {"type": "ready"}                       (host, after each connect)
"""

from __future__ import annotations

import asyncio
import collections
import itertools
import json
import logging
import os
import struct
import time
from contextlib import suppress
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

MAX_MESSAGE_SIZE = 64 * 1024 * 1024
RECONNECT_DELAY = 5.0
DEFAULT_ADDRESS = "tcp:127.0.0.1:9333"

GET_DOM = "getDOM"
DOM_TREE = "domTree"
ERROR = "error"
PING = "ping"
PONG = "pong"
READY = "ready"

_HEADER = struct.Struct("<I")


class FrameError(ValueError):
    """A frame on the wire is malformed."""


class ChannelClosed(ConnectionError):
    """The channel went away before a reply arrived."""


class ChannelError(RuntimeError):
    """The host answered a request with an ``error`` message."""

    def __init__(self, message: str, request_id: str | None = None) -> None:
        super().__init__(message)
        self.request_id = request_id


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

def get_dom_request(request_id: str) -> dict:
    return {"type": GET_DOM, "requestId": request_id}


def dom_tree_reply(request_id: Any, url: str, title: str, tree: list[dict]) -> dict:
    return {
        "type": DOM_TREE,
        "requestId": request_id,
        "url": url,
        "title": title,
        "tree": tree,
    }


def error_reply(request_id: Any, message: str) -> dict:
    return {"type": ERROR, "requestId": request_id, "message": message}


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------

def encode_frame(message: dict) -> bytes:
    """Serialize *message* to one length-prefixed frame.

    Raises:
        FrameError: if the message is too large, too deeply nested, or
            holds values JSON cannot represent.
    """
    try:
        text = json.dumps(message, ensure_ascii=False, separators=(",", ":"), allow_nan=False)
    except (ValueError, RecursionError) as exc:
        raise FrameError(f"Message cannot be encoded: {exc}") from exc
    body = text.encode("utf-8")
    if len(body) > MAX_MESSAGE_SIZE:
        raise FrameError(f"Message of {len(body)} bytes exceeds {MAX_MESSAGE_SIZE}")
    return _HEADER.pack(len(body)) + body


def _check_length(length: int) -> int:
    if length == 0 or length > MAX_MESSAGE_SIZE:
        raise FrameError(f"Invalid frame length {length}")
    return length


async def read_frame(reader: asyncio.StreamReader) -> dict | None:
    """Read one message.  Returns None on a clean end of stream.

    Raises:
        FrameError: on a bad length, truncated frame, or non-object JSON.
    """
    try:
        header = await reader.readexactly(_HEADER.size)
    except asyncio.IncompleteReadError as exc:
        if not exc.partial:
            return None
        raise FrameError("Truncated frame header") from exc

    length = _check_length(_HEADER.unpack(header)[0])
    try:
        body = await reader.readexactly(length)
    except asyncio.IncompleteReadError as exc:
        raise FrameError(f"Truncated frame: got {len(exc.partial)} of {length} bytes") from exc

    try:
        message = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise FrameError(f"Frame is not valid JSON: {exc}") from exc
    if not isinstance(message, dict):
        raise FrameError("Frame is not a JSON object")
    return message


async def write_frame(writer: asyncio.StreamWriter, message: dict) -> None:
    writer.write(encode_frame(message))
    await writer.drain()


# ---------------------------------------------------------------------------
# Addresses
# ---------------------------------------------------------------------------

def default_address() -> str:
    return os.environ.get("LVT_CHANNEL", DEFAULT_ADDRESS)


def parse_address(address: str) -> tuple:
    """Split ``tcp:HOST:PORT`` or ``unix:PATH`` into its parts.

    Raises:
        ValueError: for anything else.
    """
    kind, _, rest = address.partition(":")
    if kind == "unix" and rest:
        return ("unix", rest)
    if kind == "tcp":
        host, _, port = rest.rpartition(":")
        if host and port.isdigit():
            return ("tcp", host, int(port))
    raise ValueError(f"Bad channel address {address!r} (expected tcp:HOST:PORT or unix:PATH)")


async def open_channel(address: str) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    parts = parse_address(address)
    if parts[0] == "unix":
        return await asyncio.open_unix_connection(parts[1])
    return await asyncio.open_connection(parts[1], parts[2])


async def start_channel_server(
    address: str,
    on_connect: Callable[[asyncio.StreamReader, asyncio.StreamWriter], Any],
) -> asyncio.AbstractServer:
    parts = parse_address(address)
    if parts[0] == "unix":
        with suppress(FileNotFoundError):
            os.unlink(parts[1])
        return await asyncio.start_unix_server(on_connect, path=parts[1])
    return await asyncio.start_server(on_connect, parts[1], parts[2])


async def _close_writer(writer: asyncio.StreamWriter) -> None:
    writer.close()
    with suppress(ConnectionError, OSError):
        await writer.wait_closed()


# ---------------------------------------------------------------------------
# Host side
# ---------------------------------------------------------------------------

Handler = Callable[[dict], Awaitable[dict]]


class ChannelHost:
    """Keeps a channel to the controller open and answers its requests.

    Messages are handled one at a time in arrival order.  Whenever the
    connection fails or drops, the host waits ``reconnect_delay`` seconds
    and tries again, indefinitely, until ``stop()`` is called.
    """

    def __init__(
        self,
        address: str,
        handler: Handler,
        *,
        reconnect_delay: float = RECONNECT_DELAY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        connect: Callable[[], Awaitable[tuple[asyncio.StreamReader, asyncio.StreamWriter]]] | None = None,
    ) -> None:
        self.address = address
        self._handler = handler
        self._reconnect_delay = reconnect_delay
        self._sleep = sleep
        self._connect = connect or (lambda: open_channel(address))
        self._running = False
        self._writer: asyncio.StreamWriter | None = None
        self.connect_attempts = 0

    async def run_forever(self) -> None:
        self._running = True
        while self._running:
            self.connect_attempts += 1
            try:
                reader, writer = await self._connect()
            except OSError as exc:
                logger.warning("Cannot reach controller at %s: %s", self.address, exc)
            else:
                logger.info("Connected to controller at %s", self.address)
                self._writer = writer
                try:
                    await self._serve(reader, writer)
                except (ConnectionError, FrameError) as exc:
                    logger.warning("Channel dropped: %s", exc)
                finally:
                    self._writer = None
                    await _close_writer(writer)
                logger.info("Disconnected from controller")

            if not self._running:
                break
            logger.debug("Reconnecting in %.1fs", self._reconnect_delay)
            await self._sleep(self._reconnect_delay)

    def stop(self) -> None:
        self._running = False
        if self._writer is not None:
            self._writer.close()

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await write_frame(writer, {"type": READY})
        while self._running:
            message = await read_frame(reader)
            if message is None:
                return
            reply = await self.dispatch(message)
            if reply is not None:
                writer.write(self._encode_reply(reply))
                await writer.drain()

    def _encode_reply(self, reply: dict) -> bytes:
        """Frame *reply*; an oversized request reply becomes an error reply."""
        try:
            return encode_frame(reply)
        except FrameError as exc:
            if "requestId" not in reply:
                raise
            request_id = reply["requestId"]
            logger.warning("Reply to %s not sendable: %s", request_id, exc)
            return encode_frame(error_reply(request_id, f"Reply not sendable: {exc}"))

    async def dispatch(self, message: dict) -> dict | None:
        """Produce the reply for one incoming message (None for no reply)."""
        kind = message.get("type")
        logger.debug("Received %s", kind)
        if kind == PING:
            return {"type": PONG}
        if kind == GET_DOM:
            request_id = message.get("requestId")
            try:
                return await self._handler(message)
            except Exception as exc:
                logger.exception("getDOM %s failed", request_id)
                return error_reply(request_id, str(exc) or type(exc).__name__)
        logger.warning("Ignoring message of unknown type %r", kind)
        return None


# ---------------------------------------------------------------------------
# Controller side
# ---------------------------------------------------------------------------

class ChannelClient:
    """Controller end of an established channel.

    Must be created inside a running event loop; a background task reads
    replies and resolves the matching pending requests.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        on_closed: Callable[[ChannelClient], None] | None = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._on_closed = on_closed
        self._ids = itertools.count(1)
        self._pending: dict[str, asyncio.Future] = {}
        self._pongs: collections.deque[asyncio.Future] = collections.deque()
        self._closed = False
        self.ready = asyncio.Event()
        self._read_task = asyncio.ensure_future(self._read_loop())

    @property
    def closed(self) -> bool:
        return self._closed

    async def _read_loop(self) -> None:
        try:
            while True:
                message = await read_frame(self._reader)
                if message is None:
                    break
                self._dispatch(message)
        except (ConnectionError, FrameError) as exc:
            logger.warning("Channel read failed: %s", exc)
        finally:
            self._closed = True
            self._fail_pending(ChannelClosed("Channel closed"))
            self._writer.close()
            if self._on_closed is not None:
                self._on_closed(self)

    def _dispatch(self, message: dict) -> None:
        kind = message.get("type")
        if kind == PONG:
            while self._pongs:
                waiter = self._pongs.popleft()
                if not waiter.done():
                    waiter.set_result(None)
                    break
        elif kind == READY:
            self.ready.set()
        elif kind in (DOM_TREE, ERROR):
            request_id = message.get("requestId")
            future = self._pending.pop(str(request_id), None)
            if future is None:
                logger.warning("Dropping %s reply for unknown request %r", kind, request_id)
            elif not future.done():
                if kind == ERROR:
                    future.set_exception(ChannelError(message.get("message", ""), request_id))
                else:
                    future.set_result(message)
        else:
            logger.debug("Ignoring message of type %r", kind)

    def _fail_pending(self, exc: Exception) -> None:
        for future in list(self._pending.values()) + list(self._pongs):
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()
        self._pongs.clear()

    async def request_dom(self, timeout: float | None = None) -> dict:
        """Ask the host for a DOM snapshot and return its ``domTree`` reply.

        Raises:
            ChannelError: if the host replied with an error.
            ChannelClosed: if the channel dropped first.
            asyncio.TimeoutError: if *timeout* elapsed.
        """
        if self._closed:
            raise ChannelClosed("Channel closed")
        request_id = str(next(self._ids))
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await write_frame(self._writer, get_dom_request(request_id))
            return await asyncio.wait_for(future, timeout)
        finally:
            self._pending.pop(request_id, None)

    async def ping(self, timeout: float = 5.0) -> float:
        """Round-trip a ping; returns the latency in seconds."""
        if self._closed:
            raise ChannelClosed("Channel closed")
        waiter = asyncio.get_running_loop().create_future()
        self._pongs.append(waiter)
        started = time.perf_counter()
        await write_frame(self._writer, {"type": PING})
        await asyncio.wait_for(waiter, timeout)
        return time.perf_counter() - started

    async def close(self) -> None:
        self._read_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._read_task
        self._closed = True
        self._fail_pending(ChannelClosed("Channel closed"))
        await _close_writer(self._writer)


class ChannelListener:
    """Accepts host connections on *address*.

    Usage::

        async with ChannelListener("tcp:127.0.0.1:9333") as listener:
            client = await listener.accept()
            reply = await client.request_dom()
    """

    def __init__(self, address: str | None = None) -> None:
        self.address = address or default_address()
        self._server: asyncio.AbstractServer | None = None
        self._clients: asyncio.Queue[ChannelClient] = asyncio.Queue()
        self._connections: list[ChannelClient] = []

    async def start(self) -> ChannelListener:
        self._server = await start_channel_server(self.address, self._on_connect)
        if parse_address(self.address)[0] == "tcp":
            # Resolve port 0 to the port actually bound.
            host, port = self._server.sockets[0].getsockname()[:2]
            self.address = f"tcp:{host}:{port}"
        logger.info("Listening for hosts on %s", self.address)
        return self

    def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        logger.info("Host connected")
        client = ChannelClient(reader, writer, on_closed=self._forget)
        self._connections.append(client)
        self._clients.put_nowait(client)

    def _forget(self, client: ChannelClient) -> None:
        with suppress(ValueError):
            self._connections.remove(client)

    async def accept(self, timeout: float | None = None) -> ChannelClient:
        """Wait for the next host connection that is still open."""
        async def next_open() -> ChannelClient:
            while True:
                client = await self._clients.get()
                if not client.closed:
                    return client
                logger.debug("Skipping host connection that already closed")

        return await asyncio.wait_for(next_open(), timeout)

    async def close(self) -> None:
        for client in list(self._connections):
            await client.close()
        self._connections.clear()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def __aenter__(self) -> ChannelListener:
        return await self.start()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
