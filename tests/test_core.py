"""
Test Suite for UMH Host - Core
===============================
Ring buffer, frame codec, payload codecs and data models.
"""

import struct

import numpy as np
import pytest
from pydantic import ValidationError

# Import modules to test
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from umh_interface import (
    ArrayType,
    CircularStimulation,
    CommandCode,
    DeviceConfig,
    DeviceStatus,
    Frame,
    FrameError,
    FrameParser,
    LinearStimulation,
    MAX_PHASES,
    PayloadDecodeError,
    PhaseCountError,
    PointStimulation,
    ResponseCode,
    RingBuffer,
    SerialLinkConfig,
    StimulationType,
    UMHConfig,
    VibrationStimulation,
    compute_checksum,
    decode_device_config,
    decode_device_status,
    decode_frame,
    encode_frame,
    encode_phases,
    encode_stimulation,
    parse_frames,
    parse_stimulation,
)


def status_payload(
    vdda=3.30, v3v3=3.29, v5v0=5.01, temp=36.50,
    delta_time=1 / 30, loop_freq=30.0, stim_type=0, calib=1, phase_mode=0,
) -> bytes:
    return struct.pack("<ffffdfBii", vdda, v3v3, v5v0, temp, delta_time, loop_freq, stim_type, calib, phase_mode)


def config_payload(version=5, array_type=1, edge=10, count=60, size=0.01, spacing=0.0102) -> bytes:
    return struct.pack("<iBiiff", version, array_type, edge, count, size, spacing)


class TestRingBuffer:
    """Tests for the circular byte buffer."""

    def setup_method(self):
        self.buffer = RingBuffer(16)

    def test_fifo_order(self):
        """Writes read back in the order written."""
        self.buffer.write(b"abc")
        self.buffer.write(b"defg")

        assert self.buffer.read(2) == b"ab"
        assert self.buffer.read(5) == b"cdefg"
        assert self.buffer.count == 0

    def test_peek_does_not_consume(self):
        self.buffer.write(b"hello")

        assert self.buffer.peek(3) == b"hel"
        assert self.buffer.peek(3) == b"hel"
        assert self.buffer.count == 5

    def test_skip_matches_read(self):
        """skip(n) moves the cursor exactly like read(n)."""
        other = RingBuffer(16)
        for buf in (self.buffer, other):
            buf.write(b"0123456789")

        self.buffer.skip(4)
        other.read(4)

        assert self.buffer.count == other.count
        assert self.buffer.peek(10) == other.peek(10)

    def test_wraparound(self):
        """Data crossing the end of storage stays contiguous to readers."""
        self.buffer.write(b"x" * 12)
        self.buffer.skip(12)
        self.buffer.write(b"ABCDEFGH")

        assert self.buffer.peek_byte(0) == ord("A")
        assert self.buffer.peek_byte(7) == ord("H")
        assert self.buffer.read(8) == b"ABCDEFGH"

    def test_peek_byte_out_of_range_returns_zero(self):
        self.buffer.write(b"\x7F")

        assert self.buffer.peek_byte(0) == 0x7F
        assert self.buffer.peek_byte(1) == 0
        assert self.buffer.peek_byte(-1) == 0

    def test_reads_clamp_to_available(self):
        self.buffer.write(b"ab")

        assert self.buffer.read(10) == b"ab"
        assert self.buffer.read(1) == b""
        self.buffer.skip(5)
        assert self.buffer.count == 0

    def test_overflow_clears_buffer(self):
        """A write larger than the free space discards everything buffered."""
        self.buffer.write(b"0123456789")
        self.buffer.write(b"ABCDEFGH")

        assert self.buffer.count == 8
        assert self.buffer.read(8) == b"ABCDEFGH"

    def test_write_larger_than_capacity_is_dropped(self):
        self.buffer.write(b"abc")
        self.buffer.write(b"z" * 17)

        assert self.buffer.count == 0

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            RingBuffer(0)


class TestFrameCodec:
    """Tests for frame encoding and stream parsing."""

    def setup_method(self):
        self.buffer = RingBuffer(1024)
        self.parser = FrameParser()

    def test_encode_layout(self):
        frame = encode_frame(CommandCode.PING, b"\x2A")

        assert frame == bytes([0xAA, 0x55, 0x02, 0x01, 0x2A, 0x2D, 0x0D, 0x0A])

    def test_encode_empty_payload(self):
        frame = encode_frame(CommandCode.GET_STATUS)

        assert len(frame) == 7
        assert frame[3] == 0
        assert frame[4] == CommandCode.GET_STATUS

    def test_checksum_wraps_mod_256(self):
        payload = bytes([0xFF] * 4)
        assert compute_checksum(0x83, payload) == (0x83 + 4 + 4 * 0xFF) % 256

    def test_encode_rejects_oversized_payload(self):
        with pytest.raises(ValueError):
            encode_frame(CommandCode.SET_PHASES, bytes(256))

    @pytest.mark.parametrize("code,payload", [
        (CommandCode.GET_CONFIG, b""),
        (ResponseCode.ERROR, b"\x05"),
        (ResponseCode.RETURN_STATUS, bytes(range(37))),
        (CommandCode.SET_PHASES, bytes(range(255))),
    ])
    def test_decode_returns_code_and_payload(self, code, payload):
        frame = decode_frame(encode_frame(code, payload))

        assert frame.code == code
        assert frame.payload == payload
        assert frame.to_bytes() == encode_frame(code, payload)

    def test_single_byte_corruption_detected(self):
        raw = bytearray(encode_frame(ResponseCode.RETURN_CONFIG, config_payload()))
        raw[6] ^= 0x10

        with pytest.raises(FrameError):
            decode_frame(bytes(raw))

    def test_garbage_then_frame(self):
        """Leading noise is discarded and exactly one frame comes out."""
        valid = encode_frame(ResponseCode.PING_ACK, b"\x11")
        self.buffer.write(b"\x00\xAA\x13\xAA\x55\xFF\x01\x02" + valid)

        frames = self.parser.parse(self.buffer)

        assert len(frames) == 1
        assert frames[0].code == ResponseCode.PING_ACK
        assert frames[0].payload == b"\x11"
        assert self.buffer.count == 0
        assert self.parser.bytes_discarded == 8

    def test_split_frame_at_every_offset(self):
        """A frame split across two writes appears only once complete."""
        raw = encode_frame(ResponseCode.RETURN_STATUS, status_payload())

        for split in range(1, len(raw)):
            buffer = RingBuffer(1024)
            buffer.write(raw[:split])
            assert parse_frames(buffer) == []

            buffer.write(raw[split:])
            frames = parse_frames(buffer)
            assert len(frames) == 1, f"split at {split}"
            assert frames[0].payload == status_payload()

    def test_bad_checksum_frame_dropped(self):
        raw = bytearray(encode_frame(ResponseCode.ACK))
        raw[4] ^= 0xFF
        good = encode_frame(ResponseCode.SACK)
        self.buffer.write(bytes(raw) + good)

        frames = self.parser.parse(self.buffer)

        assert [f.code for f in frames] == [ResponseCode.SACK]

    def test_bad_tail_frame_dropped(self):
        raw = bytearray(encode_frame(ResponseCode.NACK))
        raw[-1] = 0x00
        self.buffer.write(bytes(raw) + encode_frame(ResponseCode.ACK))

        frames = self.parser.parse(self.buffer)

        assert [f.code for f in frames] == [ResponseCode.ACK]

    def test_back_to_back_frames(self):
        stream = encode_frame(ResponseCode.ACK) + encode_frame(ResponseCode.ERROR, b"\x03")
        self.buffer.write(stream)

        frames = self.parser.parse(self.buffer)

        assert [f.code for f in frames] == [ResponseCode.ACK, ResponseCode.ERROR]
        assert self.parser.frames_parsed == 2

    def test_short_input_waits(self):
        self.buffer.write(b"\xAA\x55\x80")

        assert self.parser.parse(self.buffer) == []
        assert self.buffer.count == 3

    def test_frame_dataclass(self):
        frame = Frame(code=ResponseCode.ERROR, payload=b"\x09")

        assert frame.total_length == 8
        assert frame.checksum == (0xFF + 1 + 9) % 256


class TestPayloadCodecs:
    """Tests for config/status decoding and command encoding."""

    def test_status_decode_known_values(self):
        status = decode_device_status(status_payload())

        assert status.voltage_vdda == pytest.approx(3.30, rel=1e-6)
        assert status.voltage_3v3 == pytest.approx(3.29, rel=1e-6)
        assert status.voltage_5v0 == pytest.approx(5.01, rel=1e-6)
        assert status.temperature == pytest.approx(36.50)
        assert status.refresh_delta_time == pytest.approx(1 / 30)
        assert status.loop_freq == pytest.approx(30.0)
        assert status.active_stimulation_type == StimulationType.POINT
        assert status.calibration_mode == 1
        assert status.phase_set_mode == 0
        assert status.refresh_rate_hz == pytest.approx(30.0)

    def test_status_payload_size(self):
        assert DeviceStatus.WIRE_FORMAT.size == 37
        assert len(status_payload()) == 37

    def test_status_short_payload(self):
        with pytest.raises(PayloadDecodeError):
            decode_device_status(status_payload()[:36])

    def test_status_unknown_stimulation_type_still_decodes(self):
        """A type byte this host does not know is kept as a raw int."""
        status = decode_device_status(status_payload(stim_type=9))

        assert status.active_stimulation_type == 9
        assert not isinstance(status.active_stimulation_type, StimulationType)
        assert status.active_stimulation_name == "UNKNOWN(9)"
        assert status.voltage_vdda == pytest.approx(3.30, rel=1e-6)

    def test_status_known_stimulation_type_is_enum(self):
        status = decode_device_status(status_payload(stim_type=3))

        assert status.active_stimulation_type is StimulationType.CIRCULAR
        assert status.active_stimulation_name == "CIRCULAR"

    def test_config_unknown_array_type_still_decodes(self):
        config = decode_device_config(config_payload(array_type=7))

        assert config.array_type == 7
        assert config.array_type_name == "UNKNOWN(7)"
        assert config.transducer_count == 60

    def test_config_decode(self):
        config = decode_device_config(config_payload())

        assert config.version == 5
        assert config.array_type == ArrayType.HEX
        assert config.array_edge_size == 10
        assert config.transducer_count == 60
        assert config.transducer_size == pytest.approx(0.01)
        assert config.transducer_spacing == pytest.approx(0.0102)

    def test_config_short_payload(self):
        with pytest.raises(PayloadDecodeError):
            decode_device_config(config_payload()[:20])

    def test_point_stimulation_swaps_axes(self):
        """Vectors go on the wire as (x, z, y)."""
        stim = PointStimulation(position=(0.01, 0.02, 0.15), strength=0.5, frequency=150.0)
        payload = encode_stimulation(stim)

        assert len(payload) == 1 + 12 + 8
        assert payload[0] == StimulationType.POINT
        assert struct.unpack("<fff", payload[1:13]) == pytest.approx((0.01, 0.15, 0.02))
        assert struct.unpack("<ff", payload[13:]) == pytest.approx((0.5, 150.0))

    @pytest.mark.parametrize("stim,data_size", [
        (VibrationStimulation(start_position=(0, 0, 0.1), end_position=(0.01, 0, 0.1)), 24),
        (LinearStimulation(start_position=(-0.02, 0, 0.1), end_position=(0.02, 0, 0.1)), 24),
        (CircularStimulation(center_position=(0, 0, 0.1), normal_vector=(0, 0, 1), radius=0.02), 28),
    ])
    def test_variant_payload_sizes(self, stim, data_size):
        payload = encode_stimulation(stim)

        assert payload[0] == stim.stimulation_type
        assert len(payload) == 1 + data_size + 8

    def test_circular_radius_after_vectors(self):
        stim = CircularStimulation(center_position=(0, 0, 0.1), normal_vector=(0, 1, 0), radius=0.04)
        payload = encode_stimulation(stim)

        assert struct.unpack("<fff", payload[13:25]) == pytest.approx((0.0, 0.0, 1.0))
        assert struct.unpack("<f", payload[25:29])[0] == pytest.approx(0.04)

    def test_encode_phases(self):
        phases = np.linspace(0, np.pi, MAX_PHASES)
        payload = encode_phases(phases)

        assert len(payload) == 252
        np.testing.assert_array_almost_equal(np.frombuffer(payload, dtype="<f4"), phases, decimal=6)

    def test_encode_phases_over_cap(self):
        with pytest.raises(PhaseCountError):
            encode_phases([0.0] * (MAX_PHASES + 1))


class TestDataModels:
    """Tests for Pydantic data models."""

    def test_parse_stimulation_selects_variant(self):
        stim = parse_stimulation({"type": "circular", "center_position": [0, 0, 0.1], "radius": 0.03})

        assert isinstance(stim, CircularStimulation)
        assert stim.radius == 0.03
        assert stim.strength == 1.0
        assert stim.frequency == 200.0

    def test_parse_stimulation_unknown_type(self):
        with pytest.raises(ValidationError):
            parse_stimulation({"type": "spiral"})

    def test_focus_position(self):
        stim = LinearStimulation(start_position=(-0.02, 0, 0.1), end_position=(0.02, 0, 0.1))

        np.testing.assert_array_almost_equal(stim.focus_position, [0.0, 0.0, 0.1])

    def test_device_config_defaults(self):
        config = DeviceConfig()
        assert config.array_type is ArrayType.RECT
        assert DeviceConfig(array_type=1).array_type is ArrayType.HEX

    def test_ring_buffer_must_hold_largest_frame(self):
        with pytest.raises(ValidationError):
            SerialLinkConfig(ring_buffer_capacity=261)

        assert SerialLinkConfig(ring_buffer_capacity=262).ring_buffer_capacity == 262

    def test_config_defaults_when_file_missing(self, tmp_path):
        config = UMHConfig.from_yaml(tmp_path / "missing.yaml")

        assert config.serial.port == "auto"
        assert config.serial.baudrate == 115200
        assert config.discovery.probe_timeout_s == pytest.approx(0.2)
        assert config.discovery.port_denylist == ["Bluetooth"]

    def test_config_from_yaml(self, tmp_path):
        path = tmp_path / "umh.yaml"
        path.write_text(
            "serial:\n"
            "  port: /dev/ttyACM0\n"
            "  baudrate: 921600\n"
            "polling:\n"
            "  status_refresh_hz: 10\n"
        )

        config = UMHConfig.from_yaml(path)

        assert config.serial.port == "/dev/ttyACM0"
        assert config.serial.baudrate == 921600
        assert config.polling.status_refresh_hz == 10
        assert config.serial.read_timeout_s == pytest.approx(0.1)

    def test_config_rejects_non_positive_rate(self):
        with pytest.raises(ValidationError):
            UMHConfig(polling={"status_refresh_hz": 0})

    def test_shipped_config_file_loads(self):
        path = Path(__file__).parent.parent / "config" / "umh_config.yaml"
        config = UMHConfig.from_yaml(path)

        assert config.serial.write_timeout_s == pytest.approx(0.5)
        assert config.serial.ring_buffer_capacity == 8192


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
