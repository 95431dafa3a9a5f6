"""CLI for LVT snapshots: python -m lvt"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import tempfile
import time

from lvt.channel import (
    RECONNECT_DELAY,
    ChannelClosed,
    ChannelError,
    ChannelHost,
    ChannelListener,
    default_address,
)
from lvt.format import count_nodes, serialize_compact, tree_depth, trim_to_depth, validate_tree
from lvt.pipe import PipeListener, PipeTimeout


def _setup_logging(debug: bool) -> None:
    level = logging.DEBUG if debug or os.environ.get("LVT_DEBUG") else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def _max_depth(args: argparse.Namespace) -> int | None:
    return args.depth if args.depth > 0 else None


def _emit(nodes: list[dict], args: argparse.Namespace, header: str) -> int:
    """Print stats and write the requested outputs.  Returns an exit code."""
    nodes = trim_to_depth(nodes, _max_depth(args))
    print(f"{header}: {count_nodes(nodes)} nodes, depth {tree_depth(nodes)}")

    exit_code = 0
    if args.validate:
        problems = validate_tree(nodes)
        for problem in problems:
            print(f"  schema: {problem}")
        print(f"Schema: {'OK' if not problems else f'{len(problems)} problem(s)'}")
        exit_code = 1 if problems else 0

    if args.json_out:
        with open(args.json_out, "w", encoding="utf-8") as f:
            json.dump(nodes, f, indent=2, ensure_ascii=False)
        print(f"JSON written to {args.json_out}")

    if args.compact:
        print()
        print(serialize_compact(nodes, header=header), end="")
    elif not args.json_out:
        print(json.dumps(nodes, indent=2, ensure_ascii=False))
    return exit_code


# ---------------------------------------------------------------------------
# Local walker (pipe)
# ---------------------------------------------------------------------------

def _cmd_receive(args: argparse.Namespace) -> int:
    with PipeListener(args.name) as listener:
        print(f"Waiting on {listener.path} ...")
        t0 = time.perf_counter()
        try:
            text = listener.accept_document(timeout=args.timeout)
        except PipeTimeout as exc:
            print(exc)
            return 2
    elapsed = (time.perf_counter() - t0) * 1000
    return _emit(json.loads(text), args, f"{args.name} ({elapsed:.0f} ms)")


_INJECT_SCRIPT = """\
import lvt
lvt.collect_tree({name!r}, max_depth={max_depth!r})
"""

_DETECT_SCRIPT = """\
import json
import lvt
from lvt.platforms.qt import loaded_binding
lvt.send_document({name!r}, json.dumps({{
    "framework": lvt.detect_framework(),
    "qtBinding": loaded_binding(),
}}))
"""


def _inject(pid: int, source: str, timeout: float, **fields) -> str | None:
    """Run *source*, formatted with the pipe name and *fields*, in *pid*.

    Returns the document the script sends back, or None if nothing
    arrives within *timeout* seconds.
    """
    name = f"lvt_{os.getpid()}_{pid}"
    with PipeListener(name) as listener:
        fd, script = tempfile.mkstemp(prefix="lvt_", suffix=".py")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(source.format(name=listener.name, **fields))
            sys.remote_exec(pid, script)
            try:
                return listener.accept_document(timeout=timeout)
            except PipeTimeout:
                return None
        finally:
            os.unlink(script)


def _cmd_snapshot(args: argparse.Namespace) -> int:
    if not hasattr(sys, "remote_exec"):
        print("snapshot --pid needs Python 3.14+ (sys.remote_exec)")
        return 2

    t0 = time.perf_counter()
    text = _inject(args.pid, _INJECT_SCRIPT, args.timeout, max_depth=_max_depth(args))
    if text is None:
        print(f"Process {args.pid} sent nothing within {args.timeout}s "
              f"(is lvt importable there and a UI toolkit loaded?)")
        return 2
    elapsed = (time.perf_counter() - t0) * 1000
    return _emit(json.loads(text), args, f"pid {args.pid} ({elapsed:.0f} ms)")


def _cmd_frameworks(args: argparse.Namespace) -> int:
    if not hasattr(sys, "remote_exec"):
        print("frameworks --pid needs Python 3.14+ (sys.remote_exec)")
        return 2

    text = _inject(args.pid, _DETECT_SCRIPT, args.timeout)
    if text is None:
        print(f"Process {args.pid} sent nothing within {args.timeout}s "
              f"(is lvt importable there?)")
        return 2
    found = json.loads(text)
    if found["framework"] is None:
        print(f"pid {args.pid}: no supported UI toolkit loaded")
        return 1
    binding = f" ({found['qtBinding']})" if found.get("qtBinding") else ""
    print(f"pid {args.pid}: {found['framework']}{binding}")
    return 0


# ---------------------------------------------------------------------------
# Remote walker (channel)
# ---------------------------------------------------------------------------

def _cmd_host(args: argparse.Namespace) -> int:
    from lvt.cdp import CDPBrowser
    from lvt.remote import RemoteWalker

    browser = CDPBrowser(args.cdp_host, args.cdp_port)
    walker = RemoteWalker(browser)
    host = ChannelHost(args.channel, walker.handle, reconnect_delay=args.reconnect_delay)
    print(f"Serving DOM snapshots from CDP {browser.host}:{browser.port} to {args.channel}")
    try:
        asyncio.run(host.run_forever())
    except KeyboardInterrupt:
        pass
    return 0


async def _request_dom(args: argparse.Namespace) -> dict:
    async with ChannelListener(args.channel) as listener:
        print(f"Waiting for a host on {listener.address} ...")
        client = await listener.accept(timeout=args.timeout)
        return await client.request_dom(timeout=args.timeout)


def _cmd_dom(args: argparse.Namespace) -> int:
    t0 = time.perf_counter()
    try:
        reply = asyncio.run(_request_dom(args))
    except (ChannelError, ChannelClosed, asyncio.TimeoutError) as exc:
        print(f"getDOM failed: {exc or type(exc).__name__}")
        return 1
    elapsed = (time.perf_counter() - t0) * 1000
    print(f"URL: {reply.get('url', '')}")
    print(f"Title: {reply.get('title', '')}")
    return _emit(reply.get("tree", []), args, f"{reply.get('url', '')} ({elapsed:.0f} ms)")


async def _ping(args: argparse.Namespace) -> float:
    async with ChannelListener(args.channel) as listener:
        client = await listener.accept(timeout=args.timeout)
        return await client.ping(timeout=args.timeout)


def _cmd_ping(args: argparse.Namespace) -> int:
    latency = asyncio.run(_ping(args))
    print(f"pong in {latency * 1000:.1f} ms")
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _add_output_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--json-out", type=str, default=None,
                        help="Write the tree as indented JSON to file")
    parser.add_argument("--compact", action="store_true",
                        help="Print compact text instead of JSON")
    parser.add_argument("--validate", action="store_true",
                        help="Check the tree against the node schema")
    parser.add_argument("--depth", type=int, default=0,
                        help="Max tree depth (0 = unlimited)")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="LVT: capture live visual trees from desktop apps and browser tabs")
    parser.add_argument("--debug", action="store_true",
                        help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("receive", help="Wait on a pipe for one walker snapshot")
    p.add_argument("name", help="Channel name (with or without pipe prefix)")
    p.add_argument("--timeout", type=float, default=60.0)
    _add_output_args(p)
    p.set_defaults(func=_cmd_receive)

    p = sub.add_parser("snapshot", help="Inject the walker into a Python process")
    p.add_argument("--pid", type=int, required=True)
    p.add_argument("--timeout", type=float, default=30.0)
    _add_output_args(p)
    p.set_defaults(func=_cmd_snapshot)

    p = sub.add_parser("frameworks", help="List the UI toolkit loaded in a Python process")
    p.add_argument("--pid", type=int, required=True)
    p.add_argument("--timeout", type=float, default=30.0)
    p.set_defaults(func=_cmd_frameworks)

    p = sub.add_parser("host", help="Run the browser-side host")
    p.add_argument("--channel", type=str, default=default_address(),
                   help="Controller address (tcp:HOST:PORT or unix:PATH)")
    p.add_argument("--cdp-host", type=str, default=None,
                   help="CDP host (default: $LVT_CDP_HOST or 127.0.0.1)")
    p.add_argument("--cdp-port", type=int, default=None,
                   help="CDP port (default: $LVT_CDP_PORT or 9222)")
    p.add_argument("--reconnect-delay", type=float,
                   default=float(os.environ.get("LVT_RECONNECT_DELAY", RECONNECT_DELAY)))
    p.set_defaults(func=_cmd_host)

    p = sub.add_parser("dom", help="Request the active tab's DOM from a host")
    p.add_argument("--channel", type=str, default=default_address())
    p.add_argument("--timeout", type=float, default=60.0)
    _add_output_args(p)
    p.set_defaults(func=_cmd_dom)

    p = sub.add_parser("ping", help="Check that a host is alive")
    p.add_argument("--channel", type=str, default=default_address())
    p.add_argument("--timeout", type=float, default=30.0)
    p.set_defaults(func=_cmd_ping)

    args = parser.parse_args()
    _setup_logging(args.debug)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
