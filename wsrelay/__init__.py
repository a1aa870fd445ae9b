"""
wsrelay — a WebSocket broadcast relay written straight on asyncio streams.

- Handles the HTTP Upgrade handshake itself (Sec-WebSocket-Accept via SHA-1).
- Decodes masked client frames, re-encodes payloads as unmasked text frames.
- Every text/binary message goes to all *other* open connections.
- Unmasked client frames get the connection dropped immediately.

Run `python -m wsrelay.run --port 3000` and open http://127.0.0.1:3000/.
"""
__all__ = ["client", "framing", "handshake", "registry", "run", "server", "session"]
