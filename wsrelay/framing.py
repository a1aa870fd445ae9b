import os
import struct
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple

"""
framing.py — WebSocket data frames over raw asyncio byte streams.

Wire layout (network byte order, RFC 6455 section 5.2):
- byte 0: FIN bit + 4-bit opcode (the three RSV bits are ignored).
- byte 1: MASK bit + 7-bit length indicator.
- indicator <= 125 is the length; 126 means a 16-bit length follows,
  127 means a 64-bit length follows.
- 4-byte mask key when MASK is set, then the payload.

Rules we enforce:
- Client frames MUST be masked. An unmasked one is a protocol violation and
  the caller drops the connection on the floor.
- Server frames are never masked and always go out as a single text frame.
- Hard cap on the declared payload length so a buggy peer can’t make us
  buffer silly amounts of memory.
"""

# bitmasks
BM_FIN = 0b1000_0000
BM_OPCODE = 0b0000_1111
BM_MASKED = 0b1000_0000
BM_LEN = 0b0111_1111

# opcodes
OP_CONT = 0x0
OP_TEXT = 0x1
OP_BINARY = 0x2
OP_CLOSE = 0x8
OP_PING = 0x9
OP_PONG = 0xA

DATA_OPCODES = (OP_TEXT, OP_BINARY)

# length indicator values
LEN_7_BITS = 125
LEN_16_BITS = 126
LEN_64_BITS = 127

MAX_PAYLOAD_SIZE = 16 * 1024 * 1024  # 16 MiB hard limit
MAX_WIRE_LENGTH = 2 ** 64 - 1

U16 = struct.Struct("!H")
U64 = struct.Struct("!Q")


class ProtocolError(ValueError):
    """The peer sent bytes that break the framing rules."""


class UnmaskedFrameError(ProtocolError):
    pass


class FrameTooLargeError(ProtocolError):
    pass


@dataclass
class Frame:
    fin: bool
    opcode: int
    masked: bool
    payload: bytes
    mask: Optional[bytes] = None

    @property
    def length(self) -> int:
        return len(self.payload)

    @property
    def is_data(self) -> bool:
        return self.opcode in DATA_OPCODES


def apply_mask(data: bytes, mask: bytes) -> bytes:
    """XOR every byte with mask[i % 4]. Running it twice gives the input back."""
    if len(mask) != 4:
        raise ValueError(f"Mask must be 4 bytes, got {len(mask)}")
    if not data:
        return b""
    # Tile the key across the whole buffer and XOR as one big integer.
    repeats, rest = divmod(len(data), 4)
    key = mask * repeats + mask[:rest]
    mixed = int.from_bytes(data, "big") ^ int.from_bytes(key, "big")
    return mixed.to_bytes(len(data), "big")


# -----------------------------
# Decoding
# -----------------------------

def parse_frame(
    buf: bytes,
    require_mask: bool = True,
    max_payload: int = MAX_PAYLOAD_SIZE,
) -> Optional[Tuple[Frame, int]]:
    """
    Try to decode one frame from the front of ``buf``.

    Returns:
        (frame, consumed) when a whole frame is available, or None when more
        bytes are needed. Nothing is consumed in the None case.

    Raises:
        UnmaskedFrameError: MASK bit clear while ``require_mask`` is set.
        FrameTooLargeError: declared length exceeds ``max_payload``.
    """
    # 1) Two fixed header bytes.
    if len(buf) < 2:
        return None
    first, second = buf[0], buf[1]
    fin = bool(first & BM_FIN)
    opcode = first & BM_OPCODE
    masked = bool(second & BM_MASKED)

    # Checked before the rest arrives; no point buffering a frame we’ll reject.
    if require_mask and not masked:
        raise UnmaskedFrameError("Client frame is not masked")

    # 2) Payload length (7, 16 or 64 bit).
    indicator = second & BM_LEN
    offset = 2
    if indicator <= LEN_7_BITS:
        length = indicator
    elif indicator == LEN_16_BITS:
        if len(buf) < offset + U16.size:
            return None
        (length,) = U16.unpack_from(buf, offset)
        offset += U16.size
    elif indicator == LEN_64_BITS:
        if len(buf) < offset + U64.size:
            return None
        (length,) = U64.unpack_from(buf, offset)
        offset += U64.size
    else:
        raise RuntimeError(f"Length indicator is {indicator}, which 7 bits cannot hold")

    if length > max_payload:
        raise FrameTooLargeError(f"Frame too large: {length} > {max_payload}")

    # 3) Mask key.
    mask = None
    if masked:
        if len(buf) < offset + 4:
            return None
        mask = bytes(buf[offset:offset + 4])
        offset += 4

    # 4) Payload.
    end = offset + length
    if len(buf) < end:
        return None
    payload = bytes(buf[offset:end])
    if mask is not None:
        payload = apply_mask(payload, mask)

    return Frame(fin=fin, opcode=opcode, masked=masked, payload=payload, mask=mask), end


def decode_frame(
    data: bytes,
    require_mask: bool = True,
    max_payload: int = MAX_PAYLOAD_SIZE,
) -> Frame:
    """Decode a buffer that must hold (at least) one complete frame."""
    result = parse_frame(data, require_mask=require_mask, max_payload=max_payload)
    if result is None:
        raise ProtocolError(f"Truncated frame ({len(data)} bytes)")
    return result[0]


class FrameParser:
    """
    Accumulates stream chunks and hands back whole frames.

    Real transports deliver arbitrary slices, so a frame can span several
    reads and one read can carry several frames. Whatever doesn’t make a full
    frame yet stays in ``_buffer`` until the next ``feed``.
    """

    def __init__(self, require_mask: bool = True, max_payload: int = MAX_PAYLOAD_SIZE) -> None:
        self.require_mask = require_mask
        self.max_payload = max_payload
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> Iterator[Frame]:
        """Buffer ``data`` and yield every frame it completes, in order."""
        self._buffer.extend(data)
        while True:
            result = parse_frame(self._buffer, self.require_mask, self.max_payload)
            if result is None:
                return
            frame, consumed = result
            del self._buffer[:consumed]
            yield frame


# -----------------------------
# Encoding
# -----------------------------

def _encode_header(opcode: int, length: int, masked: bool) -> bytes:
    first = BM_FIN | (opcode & BM_OPCODE)
    mask_bit = BM_MASKED if masked else 0
    if length <= LEN_7_BITS:
        return bytes((first, mask_bit | length))
    if length <= 0xFFFF:
        return bytes((first, mask_bit | LEN_16_BITS)) + U16.pack(length)
    if length <= MAX_WIRE_LENGTH:
        return bytes((first, mask_bit | LEN_64_BITS)) + U64.pack(length)
    raise ValueError(f"Payload of {length} bytes does not fit a 64-bit length")


def encode_frame(payload: bytes) -> bytes:
    """Server → client: one unmasked, final text frame carrying ``payload``."""
    return _encode_header(OP_TEXT, len(payload), masked=False) + bytes(payload)


def encode_client_frame(payload: bytes, mask: Optional[bytes] = None, opcode: int = OP_TEXT) -> bytes:
    """Client → server: same layout but masked. A random key is drawn if none given."""
    if mask is None:
        mask = os.urandom(4)
    return _encode_header(opcode, len(payload), masked=True) + mask + apply_mask(payload, mask)


def encode_close(code: int = 1000) -> bytes:
    """Payload for a close frame: just the 2-byte status code."""
    return U16.pack(code)
