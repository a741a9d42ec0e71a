"""
UMH Interface Package
======================
Serial transport and protocol layer for UMH ultrasonic mid-air haptics
arrays:
- Ring-buffered frame reassembly with checksum resync
- Background serial reader per connection
- Concurrent port discovery by ping
- Typed encoding/decoding of device config, status and stimulation commands
"""

from .models import (
    CommandCode,
    ResponseCode,
    ConnectionState,
    ArrayType,
    StimulationType,
    DeviceConfig,
    DeviceStatus,
    DeviceSnapshot,
    StimulationBase,
    PointStimulation,
    VibrationStimulation,
    LinearStimulation,
    CircularStimulation,
    Stimulation,
    parse_stimulation,
    SerialLinkConfig,
    DiscoveryConfig,
    PollingConfig,
    UMHConfig,
)
from .ring_buffer import RingBuffer
from .frame_codec import (
    Frame,
    FrameError,
    FrameParser,
    compute_checksum,
    encode_frame,
    decode_frame,
    parse_frames,
)
from .events import EventHook
from .serial_transport import SerialTransport
from .connection_manager import ConnectionManager, list_serial_ports
from .protocol_handler import (
    MAX_PHASES,
    PayloadDecodeError,
    PhaseCountError,
    ProtocolHandler,
    encode_stimulation,
    encode_phases,
    validate_phases,
    decode_device_config,
    decode_device_status,
)

__all__ = [
    "CommandCode",
    "ResponseCode",
    "ConnectionState",
    "ArrayType",
    "StimulationType",
    "DeviceConfig",
    "DeviceStatus",
    "DeviceSnapshot",
    "StimulationBase",
    "PointStimulation",
    "VibrationStimulation",
    "LinearStimulation",
    "CircularStimulation",
    "Stimulation",
    "parse_stimulation",
    "SerialLinkConfig",
    "DiscoveryConfig",
    "PollingConfig",
    "UMHConfig",
    "RingBuffer",
    "Frame",
    "FrameError",
    "FrameParser",
    "compute_checksum",
    "encode_frame",
    "decode_frame",
    "parse_frames",
    "EventHook",
    "SerialTransport",
    "ConnectionManager",
    "list_serial_ports",
    "MAX_PHASES",
    "PayloadDecodeError",
    "PhaseCountError",
    "ProtocolHandler",
    "encode_stimulation",
    "encode_phases",
    "validate_phases",
    "decode_device_config",
    "decode_device_status",
]
