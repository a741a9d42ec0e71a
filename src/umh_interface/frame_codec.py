"""
Frame Codec
===========
Encoding, validation and stream reassembly for UMH serial frames.

Frame Format:
[0xAA][0x55][CODE][LEN][PAYLOAD...][CHECKSUM][0x0D][0x0A]

- HEADER: 2 bytes (0xAA, 0x55)
- CODE: 1 byte (CommandCode or ResponseCode)
- LEN: 1 byte (payload length, 0-255)
- PAYLOAD: LEN bytes
- CHECKSUM: 1 byte, (CODE + LEN + sum(PAYLOAD)) mod 256
- TAIL: 2 bytes (0x0D, 0x0A)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List

from loguru import logger

from .ring_buffer import RingBuffer


HEADER = b"\xAA\x55"
TAIL = b"\x0D\x0A"
OVERHEAD = 7  # HEADER(2) + CODE + LEN + CHECKSUM + TAIL(2)
MAX_PAYLOAD = 255


class FrameError(ValueError):
    """Raised when a byte string is not exactly one valid frame."""


def compute_checksum(code: int, payload: bytes = b"") -> int:
    """Additive checksum over code, length and payload bytes."""
    return (code + len(payload) + sum(payload)) & 0xFF


def encode_frame(code: int, payload: bytes = b"") -> bytes:
    """
    Build the wire bytes for one frame.

    Raises:
        ValueError: If the code does not fit a byte or the payload exceeds
            255 bytes.
    """
    payload = bytes(payload)
    if not 0 <= int(code) <= 0xFF:
        raise ValueError(f"Frame code out of range: {code}")
    if len(payload) > MAX_PAYLOAD:
        raise ValueError(f"Payload too long: {len(payload)} > {MAX_PAYLOAD} bytes")

    return (
        HEADER
        + bytes([int(code), len(payload)])
        + payload
        + bytes([compute_checksum(int(code), payload)])
        + TAIL
    )


@dataclass
class Frame:
    """One checksum-validated frame."""
    code: int
    payload: bytes = b""
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def checksum(self) -> int:
        return compute_checksum(self.code, self.payload)

    @property
    def total_length(self) -> int:
        return OVERHEAD + len(self.payload)

    def to_bytes(self) -> bytes:
        """Serialize frame to bytes for transmission."""
        return encode_frame(self.code, self.payload)


def decode_frame(raw: bytes) -> Frame:
    """
    Decode a byte string holding exactly one frame.

    Raises:
        FrameError: On any header, length, tail or checksum violation.
    """
    raw = bytes(raw)
    if len(raw) < OVERHEAD:
        raise FrameError(f"Frame too short: {len(raw)} bytes")
    if raw[:2] != HEADER:
        raise FrameError(f"Bad header: {raw[:2].hex()}")

    code, length = raw[2], raw[3]
    if len(raw) != OVERHEAD + length:
        raise FrameError(f"Length byte says {length} payload bytes, frame holds {len(raw) - OVERHEAD}")
    if raw[-2:] != TAIL:
        raise FrameError(f"Bad tail: {raw[-2:].hex()}")

    payload = raw[4:4 + length]
    checksum = raw[4 + length]
    if checksum != compute_checksum(code, payload):
        raise FrameError(f"Checksum mismatch: got 0x{checksum:02X}, expected 0x{compute_checksum(code, payload):02X}")

    return Frame(code=code, payload=payload)


class FrameParser:
    """
    Drains a ring buffer into validated frames.

    Misaligned or corrupted input is discarded one byte at a time until a
    header, tail and checksum line up again. An incomplete frame is left in
    the buffer for the next pass.
    """

    def __init__(self) -> None:
        self.frames_parsed = 0
        self.bytes_discarded = 0

    def parse(self, buffer: RingBuffer) -> List[Frame]:
        """
        Extract every complete frame currently in ``buffer``.

        Args:
            buffer: Source ring buffer; consumed bytes are removed from it.

        Returns:
            Frames in arrival order, possibly empty.
        """
        frames: List[Frame] = []

        while buffer.count >= OVERHEAD:
            if buffer.peek_byte(0) != HEADER[0] or buffer.peek_byte(1) != HEADER[1]:
                self._discard(buffer, "no header")
                continue

            length = buffer.peek_byte(3)
            total = OVERHEAD + length
            if buffer.count < total:
                break

            if buffer.peek_byte(total - 2) != TAIL[0] or buffer.peek_byte(total - 1) != TAIL[1]:
                self._discard(buffer, "bad tail")
                continue

            raw = buffer.peek(total)
            code = raw[2]
            payload = raw[4:4 + length]
            if raw[4 + length] != compute_checksum(code, payload):
                self._discard(buffer, "checksum mismatch")
                continue

            buffer.skip(total)
            self.frames_parsed += 1
            frames.append(Frame(code=code, payload=payload))

        return frames

    def _discard(self, buffer: RingBuffer, reason: str) -> None:
        buffer.skip(1)
        self.bytes_discarded += 1
        logger.trace(f"Resync: dropped 1 byte ({reason})")


def parse_frames(buffer: RingBuffer) -> List[Frame]:
    """Stateless convenience wrapper around :class:`FrameParser`."""
    return FrameParser().parse(buffer)
