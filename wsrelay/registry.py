import asyncio
from typing import Callable, Iterator, List, Optional, Set

from .framing import MAX_PAYLOAD_SIZE, FrameParser

"""
registry.py — live connections and fan-out to them.

Notes:
- Everything here runs on the one event loop thread, so there’s no lock.
  If you ever drive sessions from several threads, wrap add/remove/iterate.
- Broadcast is best-effort per peer: one broken socket must never stop the
  others from getting the frame.
"""


class Connection:
    """Reader/writer pair plus the per-peer read buffer."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        max_payload: int = MAX_PAYLOAD_SIZE,
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.parser = FrameParser(require_mask=True, max_payload=max_payload)
        self.peer = str(writer.get_extra_info("peername"))

    def __repr__(self) -> str:
        return f"Connection({self.peer})"

    @property
    def closed(self) -> bool:
        return self.writer.is_closing()

    def send(self, data: bytes) -> None:
        """Queue bytes on the transport. Raises if the socket is already going away."""
        if self.closed:
            raise ConnectionResetError(f"{self.peer} is closing")
        self.writer.write(data)

    async def drain(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self.writer.drain(), timeout)

    def abort(self) -> None:
        """Drop the connection without flushing anything (protocol violations)."""
        transport = self.writer.transport
        if transport is not None and not transport.is_closing():
            transport.abort()
        else:
            self.writer.close()


class ConnectionRegistry:
    """The set of currently upgraded connections."""

    def __init__(self) -> None:
        self._conns: Set[Connection] = set()

    def add(self, conn: Connection) -> None:
        self._conns.add(conn)

    def remove(self, conn: Connection) -> None:
        self._conns.discard(conn)

    def __contains__(self, conn: object) -> bool:
        return conn in self._conns

    def __len__(self) -> int:
        return len(self._conns)

    def __iter__(self) -> Iterator[Connection]:
        # Snapshot so callers may add/remove while iterating.
        return iter(list(self._conns))

    def for_each_except(self, exclude: Optional[Connection], fn: Callable[[Connection], None]) -> List[Connection]:
        """
        Call ``fn`` on every connection but ``exclude``.

        A failure on one target is printed and skipped. Returns the targets
        ``fn`` succeeded on.
        """
        done = []
        for conn in self:
            if conn is exclude:
                continue
            try:
                fn(conn)
            except Exception as exc:
                print(f"Write to {conn.peer} failed: {exc!r}")
                self.remove(conn)
                conn.abort()
                continue
            done.append(conn)
        return done

    async def broadcast(
        self,
        data: bytes,
        exclude: Optional[Connection] = None,
        drain_timeout: Optional[float] = None,
    ) -> int:
        """
        Write ``data`` to everyone but ``exclude`` and wait for the writes to drain.

        Peers that can't keep up (drain error or past ``drain_timeout``) are
        aborted and dropped from the registry. Returns how many peers got it.
        """
        targets = self.for_each_except(exclude, lambda conn: conn.send(data))
        if not targets:
            return 0

        results = await asyncio.gather(
            *(conn.drain(drain_timeout) for conn in targets),
            return_exceptions=True,
        )
        delivered = 0
        for conn, result in zip(targets, results):
            if isinstance(result, BaseException):
                print(f"Dropping slow or broken peer {conn.peer}: {result!r}")
                self.remove(conn)
                conn.abort()
            else:
                delivered += 1
        return delivered
