import asyncio
from enum import Enum
from typing import Optional

from .framing import OP_CLOSE, OP_TEXT, Frame, ProtocolError, encode_frame
from .handshake import HEAD_TERMINATOR, HandshakeError, http_response, is_upgrade, parse_request, respond
from .registry import Connection, ConnectionRegistry

"""
session.py — one driver per accepted socket.

Lifecycle:
    HANDSHAKING → OPEN → CLOSED

- HANDSHAKING: read the HTTP head. Plain `GET /` gets the index page, an
  Upgrade request gets 101 (or 400 without a key), anything else is dropped.
- OPEN: read chunks, let the connection’s FrameParser cut them into frames,
  relay text/binary payloads to every *other* registered connection.
- CLOSED: reached on EOF, socket error, timeout, close frame or a protocol
  violation. close() runs once no matter how many of those fire.
"""

READ_CHUNK = 64 * 1024


class SessionState(Enum):
    HANDSHAKING = "handshaking"
    OPEN = "open"
    CLOSED = "closed"


class Session:
    def __init__(
        self,
        conn: Connection,
        registry: ConnectionRegistry,
        index_page: Optional[bytes] = None,
        handshake_timeout: Optional[float] = 10.0,
        idle_timeout: Optional[float] = None,
        drain_timeout: Optional[float] = None,
    ) -> None:
        self.conn = conn
        self.registry = registry
        self.index_page = index_page
        self.handshake_timeout = handshake_timeout
        self.idle_timeout = idle_timeout
        self.drain_timeout = drain_timeout
        self.state = SessionState.HANDSHAKING

    async def run(self) -> None:
        """Drive the connection until it closes. Stream faults end here; anything else propagates."""
        peer = self.conn.peer
        try:
            if not await self._handshake():
                return
            await self._read_loop()
        except ProtocolError as exc:
            print(f"Protocol violation from {peer}: {exc}")
            self.close(abort=True)
        except HandshakeError as exc:
            print(f"Bad request from {peer}: {exc}")
        except asyncio.TimeoutError:
            print(f"Timed out waiting on {peer} ({self.state.value})")
        except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, ConnectionError) as exc:
            print(f"Socket error from {peer}: {exc!r}")
        finally:
            self.close()
            try:
                await self.conn.writer.wait_closed()
            except ConnectionError:
                # Peer reset the socket while we were closing it.
                pass

    # -------------------------
    # HANDSHAKING
    # -------------------------

    async def _handshake(self) -> bool:
        head = await asyncio.wait_for(
            self.conn.reader.readuntil(HEAD_TERMINATOR), self.handshake_timeout
        )
        request = parse_request(head)

        if not is_upgrade(request):
            if request.method == "GET" and request.path == "/":
                await self._serve_index()
            return False

        reply = respond(request.headers)
        self.conn.writer.write(reply.raw)
        if not reply.accepted:
            print(f"Rejected upgrade from {self.conn.peer}: missing Sec-WebSocket-Key")
            await self.conn.writer.drain()
            return False

        # Admit before yielding so a client that saw the 101 is already listed.
        self.registry.add(self.conn)
        self.state = SessionState.OPEN
        print(f"Connection opened {self.conn.peer} ({len(self.registry)} total)")
        await self.conn.writer.drain()
        return True

    async def _serve_index(self) -> None:
        if self.index_page is None:
            response = http_response(404, "Not Found", b"404")
        else:
            response = http_response(200, "OK", self.index_page, "text/html; charset=utf-8")
        self.conn.writer.write(response)
        await self.conn.writer.drain()

    # -------------------------
    # OPEN
    # -------------------------

    async def _read_loop(self) -> None:
        while True:
            data = await asyncio.wait_for(self.conn.reader.read(READ_CHUNK), self.idle_timeout)
            if not data:
                print(f"Connection ended {self.conn.peer}")
                return
            for frame in self.conn.parser.feed(data):
                if frame.opcode == OP_CLOSE:
                    print(f"Close frame from {self.conn.peer}")
                    return
                await self._dispatch(frame)

    async def _dispatch(self, frame: Frame) -> None:
        # ping/pong/continuation are decoded but not answered.
        if not frame.is_data:
            return
        if frame.opcode == OP_TEXT:
            print(f"text from {self.conn.peer}: {frame.payload.decode('utf-8', errors='replace')}")
        await self.registry.broadcast(
            encode_frame(frame.payload), exclude=self.conn, drain_timeout=self.drain_timeout
        )

    # -------------------------
    # CLOSED
    # -------------------------

    def close(self, abort: bool = False) -> None:
        """Deregister and release the socket. Safe to call more than once."""
        if self.state is SessionState.CLOSED:
            return
        was_open = self.state is SessionState.OPEN
        self.state = SessionState.CLOSED
        self.registry.remove(self.conn)
        if abort:
            self.conn.abort()
        else:
            self.conn.writer.close()
        if was_open:
            print(f"Connection closed {self.conn.peer} ({len(self.registry)} total)")
