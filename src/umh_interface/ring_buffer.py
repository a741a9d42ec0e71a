"""
Ring Buffer
===========
Fixed-capacity circular byte store between the serial reader and the
frame parser.

Overflow policy: a write that does not fit in the free space clears the
whole buffer before writing. The parser then resynchronises on the next
header instead of working on a stream with an unknown hole in it.
"""

from __future__ import annotations

import threading

from loguru import logger


class RingBuffer:
    """
    Thread-safe circular byte buffer.

    Every operation runs under a single lock, so one reader thread and any
    number of caller threads can share an instance.
    """

    def __init__(self, capacity: int = 8192):
        if capacity <= 0:
            raise ValueError(f"Capacity must be positive, got {capacity}")

        self._capacity = capacity
        self._buffer = bytearray(capacity)
        self._read_index = 0
        self._write_index = 0
        self._count = 0
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def count(self) -> int:
        """Number of buffered bytes."""
        with self._lock:
            return self._count

    @property
    def free(self) -> int:
        with self._lock:
            return self._capacity - self._count

    def __len__(self) -> int:
        return self.count

    def write(self, data: bytes) -> None:
        """
        Append bytes to the buffer.

        Args:
            data: Bytes to append. When they exceed the free space the buffer
                is cleared first; data larger than the capacity is dropped.
        """
        length = len(data)
        if length == 0:
            return

        with self._lock:
            if length > self._capacity - self._count:
                logger.debug(
                    f"Ring buffer overflow ({length} B into {self._capacity - self._count} B free), clearing"
                )
                self._clear_locked()

            if length > self._capacity:
                logger.warning(f"Dropped {length} B write larger than buffer capacity {self._capacity}")
                return

            first_chunk = min(length, self._capacity - self._write_index)
            self._buffer[self._write_index:self._write_index + first_chunk] = data[:first_chunk]
            second_chunk = length - first_chunk
            if second_chunk:
                self._buffer[0:second_chunk] = data[first_chunk:]

            self._write_index = (self._write_index + length) % self._capacity
            self._count += length

    def peek(self, count: int) -> bytes:
        """Return up to ``count`` bytes without consuming them."""
        with self._lock:
            return self._copy_out_locked(count)

    def peek_byte(self, offset: int) -> int:
        """
        Return the byte ``offset`` positions past the read cursor.

        Offsets outside the buffered range return 0.
        """
        with self._lock:
            if offset < 0 or offset >= self._count:
                return 0
            return self._buffer[(self._read_index + offset) % self._capacity]

    def read(self, count: int) -> bytes:
        """Consume and return up to ``count`` bytes."""
        with self._lock:
            data = self._copy_out_locked(count)
            self._advance_locked(len(data))
            return data

    def skip(self, count: int) -> None:
        """Consume up to ``count`` bytes without copying them."""
        with self._lock:
            self._advance_locked(min(max(count, 0), self._count))

    def clear(self) -> None:
        with self._lock:
            self._clear_locked()

    def _copy_out_locked(self, count: int) -> bytes:
        count = min(max(count, 0), self._count)
        if count == 0:
            return b""

        first_chunk = min(count, self._capacity - self._read_index)
        data = bytes(self._buffer[self._read_index:self._read_index + first_chunk])
        second_chunk = count - first_chunk
        if second_chunk:
            data += bytes(self._buffer[0:second_chunk])
        return data

    def _advance_locked(self, count: int) -> None:
        self._read_index = (self._read_index + count) % self._capacity
        self._count -= count

    def _clear_locked(self) -> None:
        self._read_index = 0
        self._write_index = 0
        self._count = 0
