import asyncio
import base64
import os
from typing import Optional

from .framing import OP_CLOSE, OP_TEXT, Frame, FrameParser, encode_client_frame, encode_close
from .handshake import HEAD_TERMINATOR, upgrade_request, verify_accept

"""
client.py — bare-bones WebSocket client for poking at the relay.

What it does:
- Sends the Upgrade GET with a fresh random key and checks the accept token.
- Masks everything it sends (clients must), reads unmasked server frames.
- Nothing fancy: no reconnects, no ping handling, single-frame messages only.
"""


class RelayClient:
    def __init__(self, host: str, port: int) -> None:
        self.host = host
        self.port = port
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.parser = FrameParser(require_mask=False)
        self._frames: "asyncio.Queue[Frame]" = asyncio.Queue()

    async def connect(self) -> None:
        """Open the TCP connection and complete the handshake."""
        self.reader, self.writer = await asyncio.open_connection(self.host, self.port)
        key = base64.b64encode(os.urandom(16)).decode("ascii")
        self.writer.write(upgrade_request(f"{self.host}:{self.port}", key))
        await self.writer.drain()

        head = await self.reader.readuntil(HEAD_TERMINATOR)
        verify_accept(head, key)

    async def send(self, payload: bytes, opcode: int = OP_TEXT) -> None:
        if self.writer is None:
            raise RuntimeError("connect() first")
        self.writer.write(encode_client_frame(payload, opcode=opcode))
        await self.writer.drain()

    async def send_text(self, text: str) -> None:
        await self.send(text.encode("utf-8"))

    async def receive(self) -> Optional[Frame]:
        """Next frame from the server, or None once the server hangs up."""
        if self.reader is None:
            raise RuntimeError("connect() first")
        while self._frames.empty():
            data = await self.reader.read(64 * 1024)
            if not data:
                return None
            for frame in self.parser.feed(data):
                self._frames.put_nowait(frame)
        return self._frames.get_nowait()

    async def close(self) -> None:
        """Say goodbye with a close frame, then shut the socket."""
        if self.writer is None:
            return
        try:
            self.writer.write(encode_client_frame(encode_close(), opcode=OP_CLOSE))
            await self.writer.drain()
        except ConnectionError:
            # Server already gone; nothing left to tell it.
            pass
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except ConnectionError:
            pass
        self.writer = None
