"""End-to-end: real sockets against a relay on an ephemeral port."""
import argparse
import asyncio
import base64
import contextlib
import os

import pytest

from wsrelay.client import RelayClient
from wsrelay.framing import OP_BINARY, OP_TEXT, encode_frame
from wsrelay.handshake import HEAD_TERMINATOR, upgrade_request, verify_accept
from wsrelay.run import run_cli
from wsrelay.server import RelayServer


@contextlib.asynccontextmanager
async def running(server):
    listener = await server.listen()
    port = listener.sockets[0].getsockname()[1]
    try:
        yield port
    finally:
        for conn in server.registry:
            conn.abort()
        listener.close()
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(listener.wait_closed(), 1.0)


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def read_all(reader):
    """Everything until EOF; a reset counts as EOF."""
    try:
        return await asyncio.wait_for(reader.read(), 2.0)
    except ConnectionResetError:
        return b""


async def connect_clients(port, n):
    clients = [RelayClient("127.0.0.1", port) for _ in range(n)]
    for client in clients:
        await client.connect()
    return clients


@pytest.mark.asyncio
async def test_text_frame_reaches_everyone_but_the_sender():
    server = RelayServer(host="127.0.0.1", port=0)
    async with running(server) as port:
        a, b, c = await connect_clients(port, 3)
        await wait_until(lambda: len(server.registry) == 3)

        await a.send_text("hello from a")

        for peer in (b, c):
            frame = await asyncio.wait_for(peer.receive(), 2.0)
            assert frame.opcode == OP_TEXT
            assert not frame.masked
            assert frame.payload == b"hello from a"

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(a.receive(), 0.2)

        for client in (a, b, c):
            await client.close()


@pytest.mark.asyncio
async def test_large_binary_payload_is_relayed_as_text():
    server = RelayServer(host="127.0.0.1", port=0)
    async with running(server) as port:
        a, b = await connect_clients(port, 2)
        payload = os.urandom(70000)

        await a.send(payload, opcode=OP_BINARY)

        frame = await asyncio.wait_for(b.receive(), 2.0)
        assert frame.opcode == OP_TEXT
        assert frame.payload == payload

        await a.close()
        await b.close()


@pytest.mark.asyncio
async def test_unmasked_frame_closes_connection_without_broadcast():
    server = RelayServer(host="127.0.0.1", port=0)
    async with running(server) as port:
        (listener,) = await connect_clients(port, 1)

        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        key = base64.b64encode(os.urandom(16)).decode("ascii")
        writer.write(upgrade_request(f"127.0.0.1:{port}", key))
        verify_accept(await reader.readuntil(HEAD_TERMINATOR), key)
        await wait_until(lambda: len(server.registry) == 2)

        writer.write(encode_frame(b"not masked"))
        await writer.drain()

        assert await read_all(reader) == b""
        await wait_until(lambda: len(server.registry) == 1)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(listener.receive(), 0.2)

        writer.close()
        await listener.close()


@pytest.mark.asyncio
async def test_upgrade_without_key_gets_400_and_no_admission():
    server = RelayServer(host="127.0.0.1", port=0)
    async with running(server) as port:
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(
            b"GET / HTTP/1.1\r\n"
            b"Host: localhost\r\n"
            b"Upgrade: websocket\r\n"
            b"Connection: Upgrade\r\n"
            b"\r\n"
        )
        await writer.drain()

        response = await read_all(reader)
        assert response.startswith(b"HTTP/1.1 400 Bad Request\r\n")
        assert len(server.registry) == 0
        writer.close()


@pytest.mark.asyncio
async def test_plain_get_serves_index_page(tmp_path):
    index = tmp_path / "index.html"
    index.write_bytes(b"<html>relay</html>")
    server = RelayServer(host="127.0.0.1", port=0, index_path=index)
    async with running(server) as port:
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n")
        await writer.drain()

        response = await read_all(reader)
        assert response.startswith(b"HTTP/1.1 200 OK\r\n")
        assert b"Content-Type: text/html; charset=utf-8\r\n" in response
        assert response.endswith(b"\r\n\r\n<html>relay</html>")
        assert len(server.registry) == 0
        writer.close()


@pytest.mark.asyncio
async def test_other_paths_get_no_response():
    server = RelayServer(host="127.0.0.1", port=0)
    async with running(server) as port:
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b"GET /elsewhere HTTP/1.1\r\nHost: localhost\r\n\r\n")
        await writer.drain()

        assert await read_all(reader) == b""
        writer.close()


@pytest.mark.asyncio
async def test_close_frame_deregisters():
    server = RelayServer(host="127.0.0.1", port=0)
    async with running(server) as port:
        a, b = await connect_clients(port, 2)
        await wait_until(lambda: len(server.registry) == 2)

        await a.close()
        await wait_until(lambda: len(server.registry) == 1)

        await b.close()
        await wait_until(lambda: len(server.registry) == 0)


@pytest.mark.asyncio
async def test_stalled_handshake_times_out():
    server = RelayServer(host="127.0.0.1", port=0, handshake_timeout=0.1)
    async with running(server) as port:
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b"GET / HTTP/1.1\r\n")
        await writer.drain()

        assert await read_all(reader) == b""
        assert len(server.registry) == 0
        writer.close()


@pytest.mark.asyncio
async def test_end_of_stream_deregisters():
    server = RelayServer(host="127.0.0.1", port=0)
    async with running(server) as port:
        a, b = await connect_clients(port, 2)
        await wait_until(lambda: len(server.registry) == 2)

        # Half-close without a close frame: the server just sees EOF.
        a.writer.write_eof()
        await wait_until(lambda: len(server.registry) == 1)

        b.writer.write_eof()
        await wait_until(lambda: len(server.registry) == 0)

        for client in (a, b):
            client.writer.close()


@pytest.mark.asyncio
async def test_cli_send_reaches_listener():
    server = RelayServer(host="127.0.0.1", port=0)
    async with running(server) as port:
        (listener,) = await connect_clients(port, 1)

        await run_cli(argparse.Namespace(message="one shot"), ("127.0.0.1", port))

        frame = await asyncio.wait_for(listener.receive(), 2.0)
        assert frame.payload == b"one shot"
        await listener.close()
