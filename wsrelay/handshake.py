"""
handshake.py — the HTTP side of the protocol: request parsing + Upgrade reply.

Why this exists:
- Keep the one-time HTTP exchange in one place so the session code only sees
  "upgraded or not".
- The accept token is sha1(key + GUID) in Base64. We hash with the
  `cryptography` primitives, same as every other digest in this package.

Notes:
- Header names are case-insensitive on the wire, so we store them lower-cased.
- Sec-WebSocket-Key is echoed through the hash as-is; we don't check that it
  is valid Base64, and Sec-WebSocket-Version is not validated either.
"""

import base64
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from cryptography.hazmat.primitives import hashes

# https://developer.mozilla.org/en-US/docs/Web/API/WebSockets_API/Writing_WebSocket_servers#the_websocket_handshake
WS_GUID = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"

HEAD_TERMINATOR = b"\r\n\r\n"


class HandshakeError(ValueError):
    """Request head we can't make sense of, or a reply that doesn't check out."""


@dataclass
class Request:
    method: str
    path: str
    version: str
    headers: Dict[str, str] = field(default_factory=dict)

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)


@dataclass
class HandshakeReply:
    status: int
    raw: bytes

    @property
    def accepted(self) -> bool:
        return self.status == 101


# -----------------------------
# Parsing
# -----------------------------

def parse_headers(lines) -> Dict[str, str]:
    """`Name: value` lines → dict with lower-cased names. Repeats are comma-joined."""
    headers: Dict[str, str] = {}
    for line in lines:
        if not line:
            continue
        name, sep, value = line.partition(":")
        if not sep or not name.strip():
            raise HandshakeError(f"Malformed header line: {line!r}")
        key = name.strip().lower()
        value = value.strip()
        headers[key] = f"{headers[key]}, {value}" if key in headers else value
    return headers


def parse_request(head: bytes) -> Request:
    """
    Parse a request head (request line + headers, blank line optional).

    Raises:
        HandshakeError: the request line or a header line is off.
    """
    lines = head.decode("latin-1").split("\r\n")
    parts = lines[0].split(" ")
    if len(parts) != 3 or not parts[2].startswith("HTTP/"):
        raise HandshakeError(f"Malformed request line: {lines[0]!r}")
    method, path, version = parts
    return Request(method=method, path=path, version=version, headers=parse_headers(lines[1:]))


def is_upgrade(request: Request) -> bool:
    """Any Upgrade header routes the request down the WebSocket path."""
    return request.header("upgrade") is not None


# -----------------------------
# Accept token + replies
# -----------------------------

def compute_accept(key: str) -> str:
    """base64(sha1(key + GUID)), as the Sec-WebSocket-Accept header wants it."""
    digest = hashes.Hash(hashes.SHA1())
    digest.update((key + WS_GUID).encode("utf-8"))
    return base64.b64encode(digest.finalize()).decode("ascii")


BAD_REQUEST = b"HTTP/1.1 400 Bad Request\r\n\r\n"


def accept_response(key: str) -> bytes:
    return (
        "HTTP/1.1 101 Switching Protocols\r\n"
        "Upgrade: websocket\r\n"
        "Connection: Upgrade\r\n"
        f"Sec-WebSocket-Accept: {compute_accept(key)}\r\n"
        "\r\n"
    ).encode("ascii")


def respond(headers: Mapping[str, str]) -> HandshakeReply:
    """
    Answer an Upgrade request given its (lower-cased) header map.

    Returns a 101 reply when Sec-WebSocket-Key is present and non-empty,
    otherwise a bare 400.
    """
    key = (headers.get("sec-websocket-key") or "").strip()
    if not key:
        return HandshakeReply(400, BAD_REQUEST)
    return HandshakeReply(101, accept_response(key))


def http_response(status: int, reason: str, body: bytes = b"", content_type: str = "text/plain; charset=utf-8") -> bytes:
    """Plain one-shot HTTP/1.1 response; the connection is closed right after."""
    head = (
        f"HTTP/1.1 {status} {reason}\r\n"
        f"Content-Type: {content_type}\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n"
        "\r\n"
    )
    return head.encode("ascii") + body


# -----------------------------
# Client side
# -----------------------------

def upgrade_request(host: str, key: str, path: str = "/") -> bytes:
    """The GET a client sends to ask for an upgrade."""
    return (
        f"GET {path} HTTP/1.1\r\n"
        f"Host: {host}\r\n"
        "Upgrade: websocket\r\n"
        "Connection: Upgrade\r\n"
        f"Sec-WebSocket-Key: {key}\r\n"
        "Sec-WebSocket-Version: 13\r\n"
        "\r\n"
    ).encode("ascii")


def parse_status(head: bytes) -> int:
    line = head.split(b"\r\n", 1)[0].decode("latin-1")
    parts = line.split(" ", 2)
    if len(parts) < 2 or not parts[0].startswith("HTTP/") or not parts[1].isdigit():
        raise HandshakeError(f"Malformed status line: {line!r}")
    return int(parts[1])


def verify_accept(head: bytes, key: str) -> None:
    """
    Check a server reply against the key we sent.

    Raises:
        HandshakeError: not a 101, or the accept token doesn't match.
    """
    status = parse_status(head)
    if status != 101:
        raise HandshakeError(f"Server refused upgrade with status {status}")
    lines = head.decode("latin-1").split("\r\n")[1:]
    headers = parse_headers(lines)
    if headers.get("sec-websocket-accept") != compute_accept(key):
        raise HandshakeError("Sec-WebSocket-Accept does not match our key")
