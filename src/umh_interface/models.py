"""
UMH Interface - Data Models
============================
Pydantic models and protocol enums for the UMH transducer array link.

These models describe the wire codes, the decoded device snapshots and the
stimulation commands sent to the array. All multi-byte fields travel
little-endian.
"""

from __future__ import annotations

import struct
from datetime import datetime
from enum import Enum, IntEnum
from pathlib import Path
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Tuple, Union

import numpy as np
import yaml
from loguru import logger
from pydantic import BaseModel, Field, TypeAdapter, field_validator

from .frame_codec import MAX_PAYLOAD, OVERHEAD


Vector3 = Tuple[float, float, float]


class CommandCode(IntEnum):
    """Host -> device command codes."""
    ENABLE_DISABLE = 0x01
    PING = 0x02
    GET_STATUS = 0x03
    SET_STIMULATION = 0x04
    SET_PHASES = 0x05
    GET_CONFIG = 0x06


class ResponseCode(IntEnum):
    """Device -> host response codes."""
    ACK = 0x80
    NACK = 0x81
    PING_ACK = 0x82
    RETURN_STATUS = 0x83
    SACK = 0x84
    RETURN_CONFIG = 0x85
    ERROR = 0xFF


class ConnectionState(str, Enum):
    """Connection manager lifecycle state."""
    DISCONNECTED = "disconnected"
    SCANNING = "scanning"
    CONNECTED = "connected"


class ArrayType(IntEnum):
    """Transducer array layout reported by the device."""
    RECT = 0
    HEX = 1


class StimulationType(IntEnum):
    """Focus trajectory shape, also the stimulation discriminant byte."""
    POINT = 0
    VIBRATION = 1
    LINEAR = 2
    CIRCULAR = 3


def _enum_or_raw(enum_cls, value: Any) -> Any:
    """Map a wire byte onto ``enum_cls``, keeping unknown values as plain ints."""
    try:
        return enum_cls(value)
    except ValueError:
        return value


def _enum_name(value: Union[IntEnum, int]) -> str:
    if isinstance(value, IntEnum):
        return value.name
    return f"UNKNOWN({value})"


# =============================================================================
# DEVICE SNAPSHOTS
# =============================================================================

class DeviceConfig(BaseModel):
    """
    Static array configuration returned by ``RETURN_CONFIG``.

    Payload layout: version(i32) | array_type(u8) | array_edge_size(i32) |
    transducer_count(i32) | transducer_size(f32) | transducer_spacing(f32)

    An ``array_type`` byte newer than this host knows is kept as a raw int.
    """
    version: int = 0
    array_type: Union[ArrayType, int] = ArrayType.RECT
    array_edge_size: int = 0
    transducer_count: int = Field(0, ge=0)
    transducer_size: float = Field(0.0, description="Transducer diameter (m)")
    transducer_spacing: float = Field(0.0, description="Centre-to-centre pitch (m)")

    WIRE_FORMAT: ClassVar[struct.Struct] = struct.Struct("<iBiiff")

    @field_validator("array_type", mode="before")
    @classmethod
    def _known_array_type(cls, value: Any) -> Any:
        return _enum_or_raw(ArrayType, value)

    @property
    def array_type_name(self) -> str:
        return _enum_name(self.array_type)


class DeviceStatus(BaseModel):
    """
    Live telemetry returned by ``RETURN_STATUS``.

    Payload layout (37 bytes): voltage_vdda, voltage_3v3, voltage_5v0,
    temperature (f32 each) | refresh_delta_time (f64) | loop_freq (f32) |
    active_stimulation_type (u8) | calibration_mode (i32) | phase_set_mode (i32)
    """
    received_at: datetime = Field(default_factory=datetime.now)

    voltage_vdda: float = 0.0
    voltage_3v3: float = 0.0
    voltage_5v0: float = 0.0
    temperature: float = Field(0.0, description="Board temperature (C)")

    refresh_delta_time: float = Field(0.0, description="Stimulation refresh period (s)")
    loop_freq: float = Field(0.0, description="Firmware main loop frequency (Hz)")

    # Raw int when the firmware reports a type this host does not know
    active_stimulation_type: Union[StimulationType, int] = StimulationType.POINT
    calibration_mode: int = 0
    phase_set_mode: int = 0

    WIRE_FORMAT: ClassVar[struct.Struct] = struct.Struct("<ffffdfBii")

    @field_validator("active_stimulation_type", mode="before")
    @classmethod
    def _known_stimulation_type(cls, value: Any) -> Any:
        return _enum_or_raw(StimulationType, value)

    @property
    def active_stimulation_name(self) -> str:
        return _enum_name(self.active_stimulation_type)

    @property
    def refresh_rate_hz(self) -> Optional[float]:
        """Stimulation refresh rate derived from the reported delta time."""
        if self.refresh_delta_time > 0:
            return 1.0 / self.refresh_delta_time
        return None


# =============================================================================
# STIMULATION COMMANDS
# =============================================================================

def _pack_vector(vector: Vector3) -> bytes:
    # Wire axis order is (x, z, y). Device-side convention has not been
    # confirmed, keep the swap until it is.
    x, y, z = vector
    return struct.pack("<fff", x, z, y)


class StimulationBase(BaseModel):
    """Fields shared by every stimulation variant."""
    strength: float = Field(1.0, description="Focus strength")
    frequency: float = Field(200.0, description="Modulation frequency (Hz)")

    @property
    def stimulation_type(self) -> StimulationType:
        raise NotImplementedError

    def data_bytes(self) -> bytes:
        """Variant-specific payload, placed between type byte and strength."""
        raise NotImplementedError

    @property
    def focus_position(self) -> np.ndarray:
        """Representative focus position in host (x, y, z) coordinates."""
        raise NotImplementedError


class PointStimulation(StimulationBase):
    """Static focus point."""
    type: Literal["point"] = "point"
    position: Vector3 = (0.0, 0.0, 0.0)

    @property
    def stimulation_type(self) -> StimulationType:
        return StimulationType.POINT

    def data_bytes(self) -> bytes:
        return _pack_vector(self.position)

    @property
    def focus_position(self) -> np.ndarray:
        return np.array(self.position)


class VibrationStimulation(StimulationBase):
    """Focus oscillating between two positions."""
    type: Literal["vibration"] = "vibration"
    start_position: Vector3 = (0.0, 0.0, 0.0)
    end_position: Vector3 = (0.0, 0.0, 0.0)

    @property
    def stimulation_type(self) -> StimulationType:
        return StimulationType.VIBRATION

    def data_bytes(self) -> bytes:
        return _pack_vector(self.start_position) + _pack_vector(self.end_position)

    @property
    def focus_position(self) -> np.ndarray:
        return (np.array(self.start_position) + np.array(self.end_position)) / 2


class LinearStimulation(StimulationBase):
    """Focus swept along a line segment (linear STM)."""
    type: Literal["linear"] = "linear"
    start_position: Vector3 = (0.0, 0.0, 0.0)
    end_position: Vector3 = (0.0, 0.0, 0.0)

    @property
    def stimulation_type(self) -> StimulationType:
        return StimulationType.LINEAR

    def data_bytes(self) -> bytes:
        return _pack_vector(self.start_position) + _pack_vector(self.end_position)

    @property
    def focus_position(self) -> np.ndarray:
        return (np.array(self.start_position) + np.array(self.end_position)) / 2


class CircularStimulation(StimulationBase):
    """Focus swept around a circle (circular STM)."""
    type: Literal["circular"] = "circular"
    center_position: Vector3 = (0.0, 0.0, 0.0)
    normal_vector: Vector3 = (0.0, 0.0, 1.0)
    radius: float = Field(0.0, ge=0, description="Circle radius (m)")

    @property
    def stimulation_type(self) -> StimulationType:
        return StimulationType.CIRCULAR

    def data_bytes(self) -> bytes:
        return (
            _pack_vector(self.center_position)
            + _pack_vector(self.normal_vector)
            + struct.pack("<f", self.radius)
        )

    @property
    def focus_position(self) -> np.ndarray:
        return np.array(self.center_position)


Stimulation = Annotated[
    Union[PointStimulation, VibrationStimulation, LinearStimulation, CircularStimulation],
    Field(discriminator="type"),
]

STIMULATION_ADAPTER: TypeAdapter = TypeAdapter(Stimulation)


def parse_stimulation(data: Dict[str, Any]) -> StimulationBase:
    """
    Build a stimulation variant from a plain dictionary.

    The ``type`` key selects the variant ("point", "vibration", "linear",
    "circular").
    """
    return STIMULATION_ADAPTER.validate_python(data)


# =============================================================================
# CONFIGURATION MODELS
# =============================================================================

class SerialLinkConfig(BaseModel):
    """Serial port parameters for one transport."""
    port: str = "auto"
    baudrate: int = Field(115200, gt=0)

    read_timeout_s: float = Field(0.1, gt=0)
    write_timeout_s: float = Field(0.5, gt=0)
    join_timeout_s: float = Field(0.2, gt=0)

    ring_buffer_capacity: int = Field(8192, ge=OVERHEAD + MAX_PAYLOAD)


class DiscoveryConfig(BaseModel):
    """Port discovery settings."""
    probe_timeout_s: float = Field(0.2, gt=0)
    port_denylist: List[str] = Field(default_factory=lambda: ["Bluetooth"])


class PollingConfig(BaseModel):
    """Periodic device queries."""
    status_refresh_hz: float = Field(30.0, gt=0)
    request_config_on_connect: bool = True


class UMHConfig(BaseModel):
    """Top-level application configuration."""
    serial: SerialLinkConfig = Field(default_factory=SerialLinkConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> UMHConfig:
        """Load configuration from a YAML file, falling back to defaults."""
        path = Path(path)
        if not path.exists():
            logger.warning(f"Config file not found: {path}")
            return cls()

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        logger.info(f"Configuration loaded from {path}")
        return cls(**data)


# =============================================================================
# AGGREGATE DATA MODELS
# =============================================================================

class DeviceSnapshot(BaseModel):
    """
    Host-side view of the connected array at a point in time.

    Built from decoded device events; this is what UI collaborators read.
    """
    timestamp: datetime = Field(default_factory=datetime.now)

    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    port: Optional[str] = None

    config: Optional[DeviceConfig] = None
    status: Optional[DeviceStatus] = None

    # Last stimulation handed to the transport
    last_stimulation: Optional[Stimulation] = None
    focus_position: Vector3 = (0.0, 0.0, 0.0)

    # Device-reported problems
    last_error_code: Optional[int] = None
    error_count: int = 0
    nack_count: int = 0

    @property
    def is_connected(self) -> bool:
        return self.connection_state == ConnectionState.CONNECTED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return self.model_dump()
