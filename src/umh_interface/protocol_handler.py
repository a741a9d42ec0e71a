"""
Protocol Handler
================
Maps application requests onto UMH frames and decodes device responses
into typed events.

Outbound commands report whether the frame was transmitted, never whether
the device acted on it. Inbound decoding failures are logged and reported
through ``decode_failed``; the last good snapshot is kept.
"""

from __future__ import annotations

import struct
from typing import Optional, Sequence

import numpy as np
from loguru import logger

from .events import EventHook
from .frame_codec import MAX_PAYLOAD, Frame
from .models import (
    ArrayType,
    CommandCode,
    DeviceConfig,
    DeviceStatus,
    ResponseCode,
    StimulationBase,
    StimulationType,
)
from .serial_transport import SerialTransport


PHASE_SIZE = 4
MAX_PHASES = MAX_PAYLOAD // PHASE_SIZE


class PayloadDecodeError(ValueError):
    """Raised when a response payload does not match its schema."""


class PhaseCountError(ValueError):
    """Raised when a phase array does not fit in one frame."""


# =============================================================================
# PAYLOAD CODECS
# =============================================================================

def encode_stimulation(stimulation: StimulationBase) -> bytes:
    """
    Serialize a stimulation command payload.

    Layout: type(u8) | variant data | strength(f32) | frequency(f32)
    """
    return (
        bytes([int(stimulation.stimulation_type)])
        + stimulation.data_bytes()
        + struct.pack("<ff", stimulation.strength, stimulation.frequency)
    )


def validate_phases(phases: Sequence[float]) -> None:
    """
    Raises:
        PhaseCountError: If more than ``MAX_PHASES`` phases are given
    """
    if len(phases) > MAX_PHASES:
        raise PhaseCountError(
            f"Too many phases ({len(phases)}), protocol supports at most {MAX_PHASES} per frame"
        )


def encode_phases(phases: Sequence[float]) -> bytes:
    """Pack phases as consecutive little-endian float32 values."""
    validate_phases(phases)
    return np.asarray(phases, dtype="<f4").tobytes()


def decode_device_config(payload: bytes) -> DeviceConfig:
    """Decode a ``RETURN_CONFIG`` payload."""
    fmt = DeviceConfig.WIRE_FORMAT
    if len(payload) < fmt.size:
        raise PayloadDecodeError(f"Config payload too short: {len(payload)} < {fmt.size} bytes")

    version, array_type, edge_size, count, size, spacing = fmt.unpack_from(payload)
    try:
        config = DeviceConfig(
            version=version,
            array_type=array_type,
            array_edge_size=edge_size,
            transducer_count=count,
            transducer_size=size,
            transducer_spacing=spacing,
        )
    except ValueError as e:
        raise PayloadDecodeError(f"Invalid config payload: {e}") from e
    if not isinstance(config.array_type, ArrayType):
        logger.warning(f"Unknown array type {array_type} in device config")
    return config


def decode_device_status(payload: bytes) -> DeviceStatus:
    """Decode a 37-byte ``RETURN_STATUS`` payload."""
    fmt = DeviceStatus.WIRE_FORMAT
    if len(payload) < fmt.size:
        raise PayloadDecodeError(f"Status payload too short: {len(payload)} < {fmt.size} bytes")

    vdda, v3v3, v5v0, temp, delta_time, loop_freq, stim_type, calib, phase_mode = fmt.unpack_from(payload)
    try:
        status = DeviceStatus(
            voltage_vdda=vdda,
            voltage_3v3=v3v3,
            voltage_5v0=v5v0,
            temperature=temp,
            refresh_delta_time=delta_time,
            loop_freq=loop_freq,
            active_stimulation_type=stim_type,
            calibration_mode=calib,
            phase_set_mode=phase_mode,
        )
    except ValueError as e:
        raise PayloadDecodeError(f"Invalid status payload: {e}") from e
    if not isinstance(status.active_stimulation_type, StimulationType):
        logger.warning(f"Unknown stimulation type {stim_type} in device status")
    return status


# =============================================================================
# HANDLER
# =============================================================================

class ProtocolHandler:
    """
    Command/response layer on top of a :class:`SerialTransport`.

    Events:
        config_received(DeviceConfig)
        status_received(DeviceStatus)
        stimulation_sent(StimulationBase)
        error_received(int)
        ack_received(ResponseCode)      ACK, NACK, SACK, PING_ACK
        frame_received(bytes)           every inbound frame, raw
        decode_failed(ResponseCode, str)

    Listeners run on the transport reader thread for inbound events and on
    the caller's event loop for ``stimulation_sent``.
    """

    def __init__(self, transport: Optional[SerialTransport] = None):
        self._transport: Optional[SerialTransport] = None

        self.config_received = EventHook("config_received")
        self.status_received = EventHook("status_received")
        self.stimulation_sent = EventHook("stimulation_sent")
        self.error_received = EventHook("error_received")
        self.ack_received = EventHook("ack_received")
        self.frame_received = EventHook("frame_received")
        self.decode_failed = EventHook("decode_failed")

        self.last_config: Optional[DeviceConfig] = None
        self.last_status: Optional[DeviceStatus] = None

        if transport is not None:
            self.attach(transport)

    @property
    def transport(self) -> Optional[SerialTransport]:
        return self._transport

    def attach(self, transport: SerialTransport) -> None:
        """Start handling frames from ``transport``, replacing any previous one."""
        if transport is self._transport:
            return
        self.detach()
        self._transport = transport
        transport.frame_received.subscribe(self.handle_frame)

    def detach(self) -> None:
        if self._transport is not None:
            self._transport.frame_received.unsubscribe(self.handle_frame)
            self._transport = None

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    async def _send(self, code: CommandCode, payload: bytes = b"") -> bool:
        transport = self._transport
        if transport is None:
            logger.warning(f"Cannot send {code.name}: no transport attached")
            return False
        return await transport.send_frame(code, payload)

    async def ping(self, nonce: int) -> bool:
        return await self._send(CommandCode.PING, bytes([nonce & 0xFF]))

    async def set_enable(self, enable: bool) -> bool:
        """Enable or disable the array output."""
        return await self._send(CommandCode.ENABLE_DISABLE, b"\x01" if enable else b"\x00")

    async def get_config(self) -> bool:
        return await self._send(CommandCode.GET_CONFIG)

    async def get_status(self) -> bool:
        return await self._send(CommandCode.GET_STATUS)

    async def set_stimulation(self, stimulation: StimulationBase) -> bool:
        """
        Send a stimulation command.

        ``stimulation_sent`` fires once the frame is written; the device
        acknowledgement (SACK) is not awaited.

        Returns:
            True if the frame was transmitted
        """
        sent = await self._send(CommandCode.SET_STIMULATION, encode_stimulation(stimulation))
        if sent:
            self.stimulation_sent.emit(stimulation)
        return sent

    async def set_phases(self, phases: Sequence[float]) -> bool:
        """
        Send raw transducer phases.

        Raises:
            PhaseCountError: More than 63 phases; nothing is sent

        Returns:
            True if the frame was transmitted
        """
        if len(phases) == 0:
            logger.warning("set_phases called with no phases, nothing sent")
            return False

        try:
            payload = encode_phases(phases)
        except PhaseCountError as e:
            logger.error(f"set_phases rejected: {e}")
            raise

        return await self._send(CommandCode.SET_PHASES, payload)

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    def handle_frame(self, frame: Frame) -> None:
        """Decode one inbound frame and publish the matching event."""
        self.frame_received.emit(frame.to_bytes())

        try:
            code = ResponseCode(frame.code)
        except ValueError:
            logger.warning(f"Unknown response code 0x{frame.code:02X}")
            return

        if code == ResponseCode.RETURN_CONFIG:
            self._handle_config(frame.payload)
        elif code == ResponseCode.RETURN_STATUS:
            self._handle_status(frame.payload)
        elif code == ResponseCode.ERROR:
            if frame.payload:
                logger.error(f"Device error received: code 0x{frame.payload[0]:02X}")
                self.error_received.emit(frame.payload[0])
            else:
                logger.warning("Device error frame without error code")
        else:
            if code == ResponseCode.NACK:
                logger.warning("Command not acknowledged (NACK)")
            else:
                logger.trace(f"{code.name} received")
            self.ack_received.emit(code)

    def _handle_config(self, payload: bytes) -> None:
        try:
            config = decode_device_config(payload)
        except PayloadDecodeError as e:
            logger.warning(f"Error parsing config: {e}")
            self.decode_failed.emit(ResponseCode.RETURN_CONFIG, str(e))
            return

        self.last_config = config
        logger.info(
            f"Device config: v{config.version}, {config.array_type_name} array, "
            f"{config.transducer_count} transducers"
        )
        self.config_received.emit(config)

    def _handle_status(self, payload: bytes) -> None:
        try:
            status = decode_device_status(payload)
        except PayloadDecodeError as e:
            logger.warning(f"Error parsing status: {e}")
            self.decode_failed.emit(ResponseCode.RETURN_STATUS, str(e))
            return

        self.last_status = status
        self.status_received.emit(status)
