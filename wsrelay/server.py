import asyncio
from pathlib import Path
from typing import Optional

from .framing import MAX_PAYLOAD_SIZE
from .registry import Connection, ConnectionRegistry
from .session import Session

"""
server.py — the relay: accept sockets, run a Session on each, share one registry.

The registry is owned here and handed to every session, so tests (or an
embedding app) can build a server and poke at exactly the set it uses.
"""

DEFAULT_INDEX = Path(__file__).parent / "static" / "index.html"


def load_index(path: Optional[Path]) -> Optional[bytes]:
    """Read the page served on `GET /`; None if there isn’t one."""
    if path is None or not path.is_file():
        return None
    with open(path, "rb") as f:
        return f.read()


class RelayServer:
    """
    WebSocket relay that:
      - Answers the Upgrade handshake itself (no HTTP framework underneath).
      - Rebroadcasts each text/binary message to every other open connection.
      - Serves one static page on `GET /` for browsers.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 3000,
        index_path: Optional[Path] = DEFAULT_INDEX,
        handshake_timeout: Optional[float] = 10.0,
        idle_timeout: Optional[float] = None,
        drain_timeout: Optional[float] = None,
        max_payload: int = MAX_PAYLOAD_SIZE,
    ) -> None:
        self.host = host
        self.port = port
        self.registry = ConnectionRegistry()
        self.index_page = load_index(index_path)
        self.handshake_timeout = handshake_timeout
        self.idle_timeout = idle_timeout
        self.drain_timeout = drain_timeout
        self.max_payload = max_payload

    async def listen(self) -> asyncio.AbstractServer:
        """Bind the socket and start accepting; returns the asyncio server."""
        server = await asyncio.start_server(self.handle_conn, self.host, self.port)
        addrs = ", ".join(str(sock.getsockname()) for sock in server.sockets or [])
        print(f"Relay listening on {addrs}")
        return server

    async def start(self) -> None:
        """Listen and serve forever."""
        server = await self.listen()
        async with server:
            await server.serve_forever()

    async def handle_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Per-connection entry point passed to asyncio.start_server."""
        conn = Connection(reader, writer, max_payload=self.max_payload)
        session = Session(
            conn,
            self.registry,
            index_page=self.index_page,
            handshake_timeout=self.handshake_timeout,
            idle_timeout=self.idle_timeout,
            drain_timeout=self.drain_timeout,
        )
        await session.run()
