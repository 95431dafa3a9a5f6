"""Tests for the channel transport: framing, host dispatch, reconnection."""

from __future__ import annotations

import asyncio
import struct
import sys

import pytest

from lvt.channel import (
    MAX_MESSAGE_SIZE,
    ChannelClosed,
    ChannelError,
    ChannelHost,
    ChannelListener,
    FrameError,
    default_address,
    dom_tree_reply,
    encode_frame,
    open_channel,
    parse_address,
    read_frame,
)


def run(coro, timeout: float = 10.0):
    return asyncio.run(asyncio.wait_for(coro, timeout))


async def _feed(data: bytes, eof: bool = True) -> dict | None:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return await read_frame(reader)


async def _dom_handler(message: dict) -> dict:
    return dom_tree_reply(message["requestId"], "https://example.test/", "Example",
                          [{"type": "HTML"}])


async def _stop(host: ChannelHost, task: asyncio.Task) -> None:
    host.stop()
    try:
        await asyncio.wait_for(task, 5)
    except asyncio.TimeoutError:
        pass


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------

class TestFraming:
    def test_little_endian_length_prefix(self):
        frame = encode_frame({"type": "ping"})
        body = b'{"type":"ping"}'
        assert frame == struct.pack("<I", len(body)) + body

    def test_utf8_body(self):
        frame = encode_frame({"type": "error", "message": "é"})
        assert frame[4:].decode("utf-8") == '{"type":"error","message":"é"}'

    def test_read_frame(self):
        assert run(_feed(encode_frame({"type": "pong"}))) == {"type": "pong"}

    def test_read_two_frames(self):
        async def go():
            reader = asyncio.StreamReader()
            reader.feed_data(encode_frame({"type": "ping"}) + encode_frame({"type": "ready"}))
            reader.feed_eof()
            return [await read_frame(reader), await read_frame(reader), await read_frame(reader)]

        assert run(go()) == [{"type": "ping"}, {"type": "ready"}, None]

    def test_clean_eof(self):
        assert run(_feed(b"")) is None

    def test_truncated_header(self):
        with pytest.raises(FrameError):
            run(_feed(b"\x05\x00"))

    def test_truncated_body(self):
        with pytest.raises(FrameError):
            run(_feed(struct.pack("<I", 10) + b"{}"))

    def test_zero_length(self):
        with pytest.raises(FrameError):
            run(_feed(struct.pack("<I", 0)))

    def test_oversized_length(self):
        with pytest.raises(FrameError):
            run(_feed(struct.pack("<I", MAX_MESSAGE_SIZE + 1), eof=False))

    def test_invalid_json(self):
        with pytest.raises(FrameError):
            run(_feed(struct.pack("<I", 3) + b"{x}"))

    def test_non_object(self):
        with pytest.raises(FrameError):
            run(_feed(struct.pack("<I", 2) + b"[]"))


# ---------------------------------------------------------------------------
# Addresses
# ---------------------------------------------------------------------------

class TestAddresses:
    def test_tcp(self):
        assert parse_address("tcp:127.0.0.1:9333") == ("tcp", "127.0.0.1", 9333)

    def test_unix(self):
        assert parse_address("unix:/tmp/lvt.sock") == ("unix", "/tmp/lvt.sock")

    @pytest.mark.parametrize("address", ["", "tcp:", "tcp:host", "tcp:host:port", "pipe:x", "unix:"])
    def test_bad(self, address):
        with pytest.raises(ValueError):
            parse_address(address)

    def test_default_from_env(self, monkeypatch):
        monkeypatch.setenv("LVT_CHANNEL", "unix:/tmp/other.sock")
        assert default_address() == "unix:/tmp/other.sock"

    def test_default(self, monkeypatch):
        monkeypatch.delenv("LVT_CHANNEL", raising=False)
        assert default_address() == "tcp:127.0.0.1:9333"


# ---------------------------------------------------------------------------
# Host dispatch
# ---------------------------------------------------------------------------

class TestDispatch:
    def _host(self, handler=_dom_handler) -> ChannelHost:
        return ChannelHost("tcp:127.0.0.1:1", handler)

    def test_ping(self):
        assert run(self._host().dispatch({"type": "ping"})) == {"type": "pong"}

    def test_get_dom(self):
        reply = run(self._host().dispatch({"type": "getDOM", "requestId": "7"}))
        assert reply["type"] == "domTree"
        assert reply["requestId"] == "7"
        assert reply["url"] == "https://example.test/"
        assert reply["tree"] == [{"type": "HTML"}]

    def test_handler_failure_becomes_error_reply(self):
        async def broken(message):
            raise RuntimeError("debugger gone")

        reply = run(self._host(broken).dispatch({"type": "getDOM", "requestId": "9"}))
        assert reply == {"type": "error", "requestId": "9", "message": "debugger gone"}

    def test_unknown_type(self):
        assert run(self._host().dispatch({"type": "bogus"})) is None


# ---------------------------------------------------------------------------
# Reconnection
# ---------------------------------------------------------------------------

class TestReconnect:
    def test_one_attempt_per_delay(self):
        delays = []

        async def refuse():
            raise ConnectionRefusedError("controller down")

        async def go():
            async def fake_sleep(delay):
                delays.append(delay)
                if len(delays) == 4:
                    host.stop()

            host = ChannelHost("tcp:127.0.0.1:1", _dom_handler, reconnect_delay=5.0,
                               sleep=fake_sleep, connect=refuse)
            await host.run_forever()
            return host.connect_attempts

        assert run(go()) == 4
        assert delays == [5.0, 5.0, 5.0, 5.0]

    def test_connects_after_failures(self):
        delays = []

        async def go():
            async with ChannelListener("tcp:127.0.0.1:0") as listener:
                attempts = 0

                async def flaky():
                    nonlocal attempts
                    attempts += 1
                    if attempts < 3:
                        raise ConnectionRefusedError("not yet")
                    return await open_channel(listener.address)

                async def fake_sleep(delay):
                    delays.append(delay)

                host = ChannelHost(listener.address, _dom_handler, reconnect_delay=2.0,
                                   sleep=fake_sleep, connect=flaky)
                task = asyncio.ensure_future(host.run_forever())
                client = await listener.accept(timeout=5)
                await asyncio.wait_for(client.ready.wait(), 5)
                reply = await client.request_dom(timeout=5)
                await _stop(host, task)
                return reply, host.connect_attempts

        reply, attempts = run(go())
        assert reply["type"] == "domTree"
        assert attempts == 3
        assert delays == [2.0, 2.0]

    def test_reconnects_after_drop(self):
        async def go():
            async with ChannelListener("tcp:127.0.0.1:0") as listener:
                host = ChannelHost(listener.address, _dom_handler, reconnect_delay=0.01)
                task = asyncio.ensure_future(host.run_forever())
                first = await listener.accept(timeout=5)
                await asyncio.wait_for(first.ready.wait(), 5)
                await first.close()
                second = await listener.accept(timeout=5)
                await asyncio.wait_for(second.ready.wait(), 5)
                reply = await second.request_dom(timeout=5)
                await _stop(host, task)
                return reply, host.connect_attempts

        reply, attempts = run(go())
        assert reply["requestId"] == "1"
        assert attempts == 2


# ---------------------------------------------------------------------------
# Controller end
# ---------------------------------------------------------------------------

class TestClient:
    def test_request_ids_correlate(self):
        seen = []

        async def handler(message):
            seen.append(message["requestId"])
            return await _dom_handler(message)

        async def go():
            async with ChannelListener("tcp:127.0.0.1:0") as listener:
                host = ChannelHost(listener.address, handler)
                task = asyncio.ensure_future(host.run_forever())
                client = await listener.accept(timeout=5)
                replies = await asyncio.gather(client.request_dom(5), client.request_dom(5))
                await _stop(host, task)
                return replies

        replies = run(go())
        assert [r["requestId"] for r in replies] == ["1", "2"]
        assert seen == ["1", "2"]

    def test_error_reply_raises(self):
        async def broken(message):
            raise LookupError("No debuggable tab found")

        async def go():
            async with ChannelListener("tcp:127.0.0.1:0") as listener:
                host = ChannelHost(listener.address, broken)
                task = asyncio.ensure_future(host.run_forever())
                client = await listener.accept(timeout=5)
                try:
                    await client.request_dom(5)
                finally:
                    await _stop(host, task)

        with pytest.raises(ChannelError, match="No debuggable tab found"):
            run(go())

    def test_ping(self):
        async def go():
            async with ChannelListener("tcp:127.0.0.1:0") as listener:
                host = ChannelHost(listener.address, _dom_handler)
                task = asyncio.ensure_future(host.run_forever())
                client = await listener.accept(timeout=5)
                latency = await client.ping(timeout=5)
                await _stop(host, task)
                return latency

        assert run(go()) >= 0

    def test_pending_request_fails_on_drop(self):
        async def stuck(message):
            await asyncio.Event().wait()

        async def go():
            async with ChannelListener("tcp:127.0.0.1:0") as listener:
                host = ChannelHost(listener.address, stuck)
                task = asyncio.ensure_future(host.run_forever())
                client = await listener.accept(timeout=5)
                request = asyncio.ensure_future(client.request_dom(5))
                await asyncio.sleep(0.05)
                host.stop()
                try:
                    await request
                finally:
                    task.cancel()
                    await asyncio.gather(task, return_exceptions=True)

        with pytest.raises(ChannelClosed):
            run(go())

    def test_request_timeout(self):
        async def stuck(message):
            await asyncio.Event().wait()

        async def go():
            async with ChannelListener("tcp:127.0.0.1:0") as listener:
                host = ChannelHost(listener.address, stuck)
                task = asyncio.ensure_future(host.run_forever())
                client = await listener.accept(timeout=5)
                try:
                    await client.request_dom(timeout=0.05)
                finally:
                    host.stop()
                    task.cancel()
                    await asyncio.gather(task, return_exceptions=True)

        with pytest.raises(asyncio.TimeoutError):
            run(go())

    def test_listener_resolves_port(self):
        async def go():
            async with ChannelListener("tcp:127.0.0.1:0") as listener:
                return parse_address(listener.address)

        kind, host, port = run(go())
        assert (kind, host) == ("tcp", "127.0.0.1")
        assert port > 0

    @pytest.mark.skipif(sys.platform == "win32", reason="unix sockets")
    def test_unix_address(self, tmp_path):
        async def go():
            async with ChannelListener(f"unix:{tmp_path}/lvt.sock") as listener:
                host = ChannelHost(listener.address, _dom_handler)
                task = asyncio.ensure_future(host.run_forever())
                client = await listener.accept(timeout=5)
                reply = await client.request_dom(5)
                await _stop(host, task)
                return reply

        assert run(go())["title"] == "Example"


# ---------------------------------------------------------------------------
# Unsendable replies
# ---------------------------------------------------------------------------

class TestUnsendableReply:
    def test_oversized_tree_gets_error_reply(self, monkeypatch):
        monkeypatch.setattr("lvt.channel.MAX_MESSAGE_SIZE", 200)

        async def big(message):
            return dom_tree_reply(message["requestId"], "https://example.test/", "Big",
                                  [{"type": "DIV", "text": "x" * 190}] * 3)

        async def go():
            async with ChannelListener("tcp:127.0.0.1:0") as listener:
                host = ChannelHost(listener.address, big)
                task = asyncio.ensure_future(host.run_forever())
                client = await listener.accept(timeout=5)
                with pytest.raises(ChannelError) as info:
                    await client.request_dom(5)
                error = info.value
                latency = await client.ping(timeout=5)
                await _stop(host, task)
                return error, latency, host.connect_attempts

        error, latency, attempts = run(go())
        assert error.request_id == "1"
        assert "exceeds 200" in str(error)
        assert latency >= 0
        assert attempts == 1

    def test_unencodable_tree_gets_error_reply(self):
        async def broken(message):
            return dom_tree_reply(message["requestId"], "", "", [{"type": "DIV", "width": float("nan")}])

        async def go():
            async with ChannelListener("tcp:127.0.0.1:0") as listener:
                host = ChannelHost(listener.address, broken)
                task = asyncio.ensure_future(host.run_forever())
                client = await listener.accept(timeout=5)
                try:
                    await client.request_dom(5)
                finally:
                    await _stop(host, task)

        with pytest.raises(ChannelError, match="cannot be encoded"):
            run(go())

    def test_encode_rejects_nan(self):
        with pytest.raises(FrameError):
            encode_frame({"type": "domTree", "tree": [{"width": float("inf")}]})


# ---------------------------------------------------------------------------
# Listener bookkeeping
# ---------------------------------------------------------------------------

class TestListenerConnections:
    def test_dropped_host_pruned_and_skipped(self):
        async def go():
            async with ChannelListener("tcp:127.0.0.1:0") as listener:
                _, writer = await open_channel(listener.address)
                writer.close()
                for _ in range(200):
                    if listener._clients.qsize() and not listener._connections:
                        break
                    await asyncio.sleep(0.01)
                queued, tracked = listener._clients.qsize(), len(listener._connections)

                host = ChannelHost(listener.address, _dom_handler)
                task = asyncio.ensure_future(host.run_forever())
                client = await listener.accept(timeout=5)
                reply = await client.request_dom(5)
                await _stop(host, task)
                return queued, tracked, reply

        queued, tracked, reply = run(go())
        assert (queued, tracked) == (1, 0)
        assert reply["type"] == "domTree"

    def test_closed_client_untracked(self):
        async def go():
            async with ChannelListener("tcp:127.0.0.1:0") as listener:
                host = ChannelHost(listener.address, _dom_handler)
                task = asyncio.ensure_future(host.run_forever())
                client = await listener.accept(timeout=5)
                tracked = len(listener._connections)
                host.stop()
                await client.close()
                remaining = len(listener._connections)
                await asyncio.wait_for(task, 5)
                return tracked, remaining

        assert run(go()) == (1, 0)
