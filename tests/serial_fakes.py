"""
Serial port fakes for testing without hardware.
"""

import sys
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

import serial

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
from umh_interface import (
    CommandCode,
    EventHook,
    FrameError,
    ResponseCode,
    decode_frame,
    encode_frame,
)


class FakeSerial:
    """Mock serial port with blocking, timed-out reads."""

    def __init__(self, port=None, baudrate=115200, timeout=None, write_timeout=None, **kwargs):
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self.write_timeout = write_timeout
        self.settings = kwargs

        self.is_open = True
        self.written: List[bytes] = []
        self.responder: Optional[Callable[["FakeSerial", bytes], None]] = None
        self.fail_reads = False
        self.fail_writes = False

        self._rx = bytearray()
        self._cond = threading.Condition()

    def inject(self, data: bytes) -> None:
        """Make ``data`` available to the next read."""
        with self._cond:
            self._rx.extend(data)
            self._cond.notify_all()

    @property
    def in_waiting(self) -> int:
        with self._cond:
            return len(self._rx)

    def read(self, size: int = 1) -> bytes:
        with self._cond:
            if not self.is_open:
                raise serial.SerialException("Port is closed")
            if not self._rx and not self.fail_reads:
                self._cond.wait(self.timeout)
            if not self.is_open:
                raise serial.SerialException("Port is closed")
            if self.fail_reads:
                raise serial.SerialException("Device disconnected")
            data = bytes(self._rx[:size])
            del self._rx[:size]
            return data

    def write(self, data: bytes) -> int:
        if not self.is_open:
            raise serial.SerialException("Port is closed")
        if self.fail_writes:
            raise serial.SerialTimeoutException("Write timeout")
        self.written.append(bytes(data))
        if self.responder is not None:
            self.responder(self, bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    def reset_input_buffer(self) -> None:
        with self._cond:
            self._rx.clear()

    def close(self) -> None:
        with self._cond:
            self.is_open = False
            self._cond.notify_all()

    def break_connection(self) -> None:
        with self._cond:
            self.fail_reads = True
            self._cond.notify_all()


def ping_responder(port: FakeSerial, data: bytes) -> None:
    """Answer PING frames the way a UMH array does."""
    try:
        frame = decode_frame(data)
    except FrameError:
        return
    if frame.code == CommandCode.PING:
        port.inject(encode_frame(ResponseCode.PING_ACK, frame.payload))


def wrong_nonce_responder(port: FakeSerial, data: bytes) -> None:
    """Answer PING frames with a nonce that does not match."""
    try:
        frame = decode_frame(data)
    except FrameError:
        return
    if frame.code == CommandCode.PING:
        port.inject(encode_frame(ResponseCode.PING_ACK, bytes([(frame.payload[0] + 1) & 0xFF])))


class FakePortRegistry:
    """
    serial_factory replacement serving a fixed set of fake ports.

    Behaviours: "device" answers pings, "silent" never answers,
    "wrong_nonce" answers with a bad nonce, "unopenable" fails to open.
    """

    def __init__(self, behaviours: Dict[str, str]):
        self.behaviours = behaviours
        self.opened: Dict[str, List[FakeSerial]] = {name: [] for name in behaviours}

    def port_names(self) -> List[str]:
        return list(self.behaviours)

    def __call__(self, port=None, **kwargs) -> FakeSerial:
        behaviour = self.behaviours.get(port)
        if behaviour is None or behaviour == "unopenable":
            raise serial.SerialException(f"could not open port {port}")

        fake = FakeSerial(port=port, **kwargs)
        if behaviour == "device":
            fake.responder = ping_responder
        elif behaviour == "wrong_nonce":
            fake.responder = wrong_nonce_responder
        self.opened[port].append(fake)
        return fake

    def open_ports(self) -> List[str]:
        return [name for name, fakes in self.opened.items() if any(f.is_open for f in fakes)]


class StubTransport:
    """Stands in for SerialTransport under a ProtocolHandler."""

    def __init__(self, send_result: bool = True):
        self.send_result = send_result
        self.sent: List[tuple] = []
        self.frame_received = EventHook("frame_received")
        self.connection_lost = EventHook("connection_lost")
        self.port = "STUB"

    @property
    def is_connected(self) -> bool:
        return True

    async def send_frame(self, code, payload: bytes = b"") -> bool:
        self.sent.append((code, bytes(payload)))
        return self.send_result


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()
