"""Connection Registry: membership and best-effort fan-out."""
import asyncio

import pytest

from wsrelay.registry import ConnectionRegistry


class FakeConn:
    """Stands in for registry.Connection; records what was written."""

    def __init__(self, name, fail_send=False, drain_delay=0.0):
        self.peer = name
        self.fail_send = fail_send
        self.drain_delay = drain_delay
        self.sent = []
        self.aborted = False

    def send(self, data):
        if self.fail_send:
            raise ConnectionResetError(f"{self.peer} is closing")
        self.sent.append(data)

    async def drain(self, timeout=None):
        await asyncio.wait_for(asyncio.sleep(self.drain_delay), timeout)

    def abort(self):
        self.aborted = True


def test_add_and_remove_are_idempotent():
    registry = ConnectionRegistry()
    a = FakeConn("a")

    registry.add(a)
    registry.add(a)
    assert len(registry) == 1
    assert a in registry

    registry.remove(a)
    registry.remove(a)
    assert len(registry) == 0
    assert a not in registry


def test_for_each_except_skips_the_sender():
    registry = ConnectionRegistry()
    a, b, c = FakeConn("a"), FakeConn("b"), FakeConn("c")
    for conn in (a, b, c):
        registry.add(conn)

    done = registry.for_each_except(a, lambda conn: conn.send(b"frame"))

    assert set(done) == {b, c}
    assert a.sent == []
    assert b.sent == [b"frame"]
    assert c.sent == [b"frame"]


def test_one_failing_target_does_not_stop_the_rest():
    registry = ConnectionRegistry()
    a, broken, c = FakeConn("a"), FakeConn("broken", fail_send=True), FakeConn("c")
    for conn in (a, broken, c):
        registry.add(conn)

    done = registry.for_each_except(None, lambda conn: conn.send(b"frame"))

    assert set(done) == {a, c}
    assert a.sent == [b"frame"] and c.sent == [b"frame"]
    assert broken.aborted
    assert broken not in registry


def test_iteration_is_a_snapshot():
    registry = ConnectionRegistry()
    a, b = FakeConn("a"), FakeConn("b")
    registry.add(a)
    registry.add(b)

    for conn in registry:
        registry.remove(conn)
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_broadcast_counts_deliveries():
    registry = ConnectionRegistry()
    a, b, c = FakeConn("a"), FakeConn("b"), FakeConn("c")
    for conn in (a, b, c):
        registry.add(conn)

    delivered = await registry.broadcast(b"frame", exclude=a)

    assert delivered == 2
    assert a.sent == []


@pytest.mark.asyncio
async def test_broadcast_with_no_other_peers():
    registry = ConnectionRegistry()
    a = FakeConn("a")
    registry.add(a)

    assert await registry.broadcast(b"frame", exclude=a) == 0


@pytest.mark.asyncio
async def test_slow_peer_is_dropped_after_drain_timeout():
    registry = ConnectionRegistry()
    fast, slow = FakeConn("fast"), FakeConn("slow", drain_delay=5)
    registry.add(fast)
    registry.add(slow)

    delivered = await registry.broadcast(b"frame", drain_timeout=0.05)

    assert delivered == 1
    assert slow.aborted
    assert slow not in registry
    assert fast in registry
