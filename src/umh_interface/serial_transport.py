"""
Serial Transport
================
Owns one open serial connection to a UMH array.

Features:
- 8-N-1 port setup with bounded read and write timeouts
- One background reader thread per connection
- Ring-buffered frame reassembly with byte-level resync
- Async frame sending that reports failure as ``False``
"""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import serial
from loguru import logger

from .events import EventHook
from .frame_codec import FrameParser, encode_frame
from .models import SerialLinkConfig
from .ring_buffer import RingBuffer


class SerialTransport:
    """
    Serial link carrying UMH frames.

    Frames parsed by the reader thread are published through
    ``frame_received`` on that thread. Consumers that need a particular
    thread must hand the work over themselves.

    Usage:
        transport = SerialTransport(SerialLinkConfig())
        transport.frame_received.subscribe(handle_frame)
        if transport.connect("/dev/ttyACM0"):
            await transport.send_frame(CommandCode.GET_STATUS)
        transport.disconnect()
    """

    READ_CHUNK = 1024

    def __init__(
        self,
        config: Optional[SerialLinkConfig] = None,
        serial_factory: Callable[..., Any] = serial.Serial,
    ):
        """
        Initialize transport.

        Args:
            config: Serial link parameters
            serial_factory: Callable returning an open pyserial-compatible port
        """
        self.config = config or SerialLinkConfig()
        self._serial_factory = serial_factory

        self._serial: Optional[Any] = None
        self._reader_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._state_lock = threading.RLock()
        self._write_lock = threading.Lock()

        self._buffer = RingBuffer(self.config.ring_buffer_capacity)
        self._parser = FrameParser()

        self.port: Optional[str] = None
        self.baudrate: int = self.config.baudrate

        self.frame_received = EventHook("frame_received")
        self.connection_lost = EventHook("connection_lost")

        # Statistics
        self._bytes_received = 0
        self._bytes_sent = 0
        self._frames_received = 0
        self._frames_sent = 0
        self._last_frame_time: Optional[datetime] = None

    @property
    def is_connected(self) -> bool:
        ser = self._serial
        return ser is not None and bool(ser.is_open)

    @property
    def buffer(self) -> RingBuffer:
        return self._buffer

    @property
    def reader_alive(self) -> bool:
        thread = self._reader_thread
        return thread is not None and thread.is_alive()

    @property
    def statistics(self) -> Dict[str, Any]:
        """Get communication statistics."""
        return {
            "port": self.port,
            "connected": self.is_connected,
            "bytes_received": self._bytes_received,
            "bytes_sent": self._bytes_sent,
            "frames_received": self._frames_received,
            "frames_sent": self._frames_sent,
            "bytes_discarded": self._parser.bytes_discarded,
            "buffered_bytes": self._buffer.count,
            "last_frame_time": self._last_frame_time.isoformat() if self._last_frame_time else None,
        }

    def connect(self, port: str, baudrate: Optional[int] = None) -> bool:
        """
        Open ``port`` and start the reader thread.

        Any previous session on this transport is torn down first.

        Returns:
            True if the port was opened
        """
        self.disconnect()

        self.port = port
        self.baudrate = baudrate or self.config.baudrate

        try:
            ser = self._serial_factory(
                port=port,
                baudrate=self.baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=self.config.read_timeout_s,
                write_timeout=self.config.write_timeout_s,
            )
            ser.reset_input_buffer()
        except Exception as e:
            logger.debug(f"Could not open {port}: {e}")
            return False

        stop_event = threading.Event()
        thread = threading.Thread(
            target=self._read_loop,
            args=(ser, stop_event),
            name=f"umh-reader-{port}",
            daemon=True,
        )

        with self._state_lock:
            self._serial = ser
            self._stop_event = stop_event
            self._reader_thread = thread
        thread.start()

        logger.debug(f"Opened {port} at {self.baudrate} baud")
        return True

    def disconnect(self) -> None:
        """Stop the reader thread, close the port and clear buffered input."""
        with self._state_lock:
            ser = self._serial
            thread = self._reader_thread
            stop_event = self._stop_event
            self._serial = None
            self._reader_thread = None

        stop_event.set()

        own_thread = thread is threading.current_thread()
        if thread is not None and not own_thread:
            thread.join(timeout=self.config.join_timeout_s)

        if ser is not None:
            try:
                ser.close()
            except Exception as e:
                logger.warning(f"Error closing {self.port}: {e}")

        # A read blocked past the join deadline returns once the port is closed
        if thread is not None and not own_thread and thread.is_alive():
            logger.warning(f"Reader thread for {self.port} still running, waiting after port close")
            thread.join(timeout=self.config.join_timeout_s)

        self._buffer.clear()

        if ser is not None:
            logger.debug(f"Closed {self.port}")

    def send_frame_blocking(self, code: int, payload: bytes = b"") -> bool:
        """
        Encode and write one frame on the calling thread.

        Returns:
            True if the frame was written within the write timeout
        """
        ser = self._serial
        if ser is None or not ser.is_open:
            logger.warning("Cannot send frame: not connected")
            return False

        try:
            data = encode_frame(code, payload)
        except ValueError as e:
            logger.error(f"Failed to encode frame 0x{int(code):02X}: {e}")
            return False

        try:
            with self._write_lock:
                ser.write(data)
                ser.flush()
        except Exception as e:
            logger.error(f"Failed to send frame on {self.port}: {e}")
            self._handle_io_failure(ser)
            return False

        self._frames_sent += 1
        self._bytes_sent += len(data)
        logger.trace(f"Sent frame 0x{int(code):02X} ({len(payload)} B payload)")
        return True

    async def send_frame(self, code: int, payload: bytes = b"") -> bool:
        """
        Send one frame without blocking the event loop.

        Args:
            code: Command code
            payload: Up to 255 payload bytes

        Returns:
            True if sent successfully
        """
        return await asyncio.to_thread(self.send_frame_blocking, code, payload)

    def _read_loop(self, ser: Any, stop_event: threading.Event) -> None:
        """Background thread: port -> ring buffer -> parser -> listeners."""
        while not stop_event.is_set():
            try:
                data = ser.read(max(1, min(ser.in_waiting, self.READ_CHUNK)))
            except Exception as e:
                if stop_event.is_set():
                    break
                logger.error(f"Read error on {self.port}: {e}")
                self._handle_io_failure(ser)
                break

            if not data or stop_event.is_set():
                continue

            self._bytes_received += len(data)
            self._buffer.write(data)

            for frame in self._parser.parse(self._buffer):
                self._frames_received += 1
                self._last_frame_time = frame.timestamp
                logger.trace(f"Received frame 0x{frame.code:02X} ({len(frame.payload)} B payload)")
                self.frame_received.emit(frame)

    def _handle_io_failure(self, ser: Any) -> None:
        with self._state_lock:
            if self._serial is not ser:
                return
        self.disconnect()
        self.connection_lost.emit(self)

    def __enter__(self) -> SerialTransport:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.disconnect()
