import argparse
import asyncio
import sys
import traceback
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .client import RelayClient
from .framing import MAX_PAYLOAD_SIZE, OP_TEXT
from .server import DEFAULT_INDEX, RelayServer

"""
run.py — single entry point for the relay and its little test client.

What you can do here:
- Server:   listen for browsers/clients and relay messages between them
- Client:   connect and print everything the relay sends us
- CLI:      one-shot helper (send a single message and hang up)

"""


# -------------------------
# Top-level fault logging
# -------------------------

def log_unhandled(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
    """Loop exception handler: print the fault and keep serving."""
    exc = context.get("exception")
    message = context.get("message", "unhandled error")
    if exc is None:
        print(f"an unhandled error: {message}", file=sys.stderr)
        return
    details = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    print(f"an unhandled error ({message}):\n{details}", file=sys.stderr)


# -------------------------
# Process runners (thin wrappers)
# -------------------------

async def run_server(args: argparse.Namespace) -> None:
    """Build the relay from CLI flags and serve forever on host:port."""
    asyncio.get_running_loop().set_exception_handler(log_unhandled)
    server = RelayServer(
        host=args.host,
        port=args.port,
        index_path=Path(args.index) if args.index else DEFAULT_INDEX,
        handshake_timeout=args.handshake_timeout,
        idle_timeout=args.idle_timeout,
        drain_timeout=args.drain_timeout,
        max_payload=args.max_payload,
    )
    await server.start()


async def run_client(addr: Tuple[str, int]) -> None:
    """Connect and print every message until the relay hangs up."""
    client = RelayClient(*addr)
    await client.connect()
    print(f"Client connected to relay {addr[0]}:{addr[1]}")

    while True:
        frame = await client.receive()
        if frame is None:
            print("Relay closed the connection")
            break
        if frame.opcode == OP_TEXT:
            print(frame.payload.decode("utf-8", errors="replace"))
        else:
            print(f"<opcode {frame.opcode}, {frame.length} bytes>")


async def run_cli(args: argparse.Namespace, addr: Tuple[str, int]) -> None:
    """One-shot `send`: push a single text message and hang up."""
    client = RelayClient(*addr)
    await client.connect()
    await client.send_text(args.message)
    print(f"Sent {len(args.message)} chars to {addr[0]}:{addr[1]}")
    await client.close()


# -------------------------
# Argument parsing
# -------------------------

def parse_addr(value: Optional[str]) -> Tuple[str, int]:
    if not value:
        raise SystemExit("--url HOST:PORT is required for this mode")
    host, sep, port = value.rpartition(":")
    if not sep or not port.isdigit():
        raise SystemExit(f"Expected HOST:PORT, got {value!r}")
    return host or "127.0.0.1", int(port)


def parse_args(argv=None) -> argparse.Namespace:
    """
    Parse modes and subcommands.

    Quick examples:
      Server:    python -m wsrelay.run --port 3000
      Client:    python -m wsrelay.run --mode client --url 127.0.0.1:3000
      CLI send:  python -m wsrelay.run --mode cli --url 127.0.0.1:3000 send hello world
    """
    p = argparse.ArgumentParser(prog="wsrelay")
    p.add_argument("--mode", choices=["server", "client", "cli"], default="server")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=3000)
    p.add_argument("--url", help="HOST:PORT of the relay (client/cli modes)")
    p.add_argument("--index", help="HTML file served on GET / (defaults to the bundled page)")
    p.add_argument("--handshake-timeout", type=float, default=10.0)
    p.add_argument("--idle-timeout", type=float, default=None)
    p.add_argument("--drain-timeout", type=float, default=None,
                   help="Drop peers that can't drain a broadcast within this many seconds")
    p.add_argument("--max-payload", type=int, default=MAX_PAYLOAD_SIZE)

    sub = p.add_subparsers(dest="command")
    sub.required = False

    sp = sub.add_parser("send")
    sp.add_argument("message", nargs=argparse.REMAINDER)

    return p.parse_args(argv)


# -------------------------
# Main entrypoint
# -------------------------

def main(argv=None) -> None:
    """Dispatch into the chosen mode; keep top-level code very small."""
    args = parse_args(argv)
    if args.mode == "server":
        asyncio.run(run_server(args))

    elif args.mode == "client":
        asyncio.run(run_client(parse_addr(args.url)))

    elif args.mode == "cli":
        if args.command != "send":
            raise SystemExit("cli mode needs a command (send)")
        args.message = " ".join(args.message or [])
        asyncio.run(run_cli(args, parse_addr(args.url)))


if __name__ == "__main__":
    main()
