"""
Connection Manager
==================
Finds the serial port hosting the UMH array and owns the active transport.

Discovery pings every candidate port concurrently; the first port that
echoes the ping nonce wins. Losing probes are not interrupted, they finish
within the probe timeout and are then closed.
"""

from __future__ import annotations

import asyncio
import random
import threading
from typing import Callable, List, Optional

import serial.tools.list_ports
from loguru import logger

from .events import EventHook
from .frame_codec import Frame
from .models import (
    CommandCode,
    ConnectionState,
    DiscoveryConfig,
    ResponseCode,
    SerialLinkConfig,
)
from .serial_transport import SerialTransport


def list_serial_ports() -> List[str]:
    """Device names of every serial port the OS reports."""
    return [port.device for port in serial.tools.list_ports.comports()]


class ConnectionManager:
    """
    Single active UMH connection.

    State transitions:
        DISCONNECTED -> SCANNING      scan_and_connect()
        SCANNING     -> CONNECTED     a probe answered
        SCANNING     -> DISCONNECTED  no probe answered, or disconnect() during the scan
        CONNECTED    -> DISCONNECTED  disconnect() or I/O failure
        CONNECTED    -> SCANNING      reconnect()

    Events:
        connected(transport), disconnected()
    """

    def __init__(
        self,
        serial_config: Optional[SerialLinkConfig] = None,
        discovery_config: Optional[DiscoveryConfig] = None,
        transport_factory: Optional[Callable[[], SerialTransport]] = None,
        port_lister: Callable[[], List[str]] = list_serial_ports,
    ):
        """
        Initialize connection manager.

        Args:
            serial_config: Parameters for every transport created
            discovery_config: Probe timeout and port denylist
            transport_factory: Builds a fresh, unconnected transport
            port_lister: Returns the candidate port names
        """
        self.serial_config = serial_config or SerialLinkConfig()
        self.discovery_config = discovery_config or DiscoveryConfig()
        self._transport_factory = transport_factory or (lambda: SerialTransport(self.serial_config))
        self._port_lister = port_lister

        self._transport: Optional[SerialTransport] = None
        self._state = ConnectionState.DISCONNECTED
        self._lock = threading.RLock()

        # Bumped by disconnect(); a scan started under an older value discards its winner
        self._generation = 0
        self._scan_finished: Optional[asyncio.Event] = None

        self.connected = EventHook("connected")
        self.disconnected = EventHook("disconnected")

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def transport(self) -> Optional[SerialTransport]:
        return self._transport

    @property
    def is_connected(self) -> bool:
        transport = self._transport
        return transport is not None and transport.is_connected

    def is_denylisted(self, port: str) -> bool:
        name = port.lower()
        return any(entry.lower() in name for entry in self.discovery_config.port_denylist)

    def candidate_ports(self) -> List[str]:
        """Enumerated ports minus the denylisted ones."""
        candidates = []
        for port in self._port_lister():
            if self.is_denylisted(port):
                logger.debug(f"Skipping denylisted port {port}")
                continue
            candidates.append(port)
        return candidates

    async def scan_and_connect(self) -> bool:
        """
        Probe every candidate port and connect to the one that answers.

        Returns:
            True if a device was found (or already connected)
        """
        with self._lock:
            if self._state == ConnectionState.SCANNING:
                logger.debug("Scan already in progress")
                return False
            if self.is_connected:
                return True
            self._state = ConnectionState.SCANNING
            generation = self._generation
            finished = asyncio.Event()
            self._scan_finished = finished

        installed = False
        try:
            try:
                ports = self.candidate_ports()
            except Exception as e:
                logger.error(f"Port enumeration failed: {e}")
                return False

            if not ports:
                logger.warning("No serial ports to scan")
                return False

            logger.info(f"Scanning ports: {', '.join(ports)}")

            winner: List[SerialTransport] = []

            async def run_probe(port: str) -> None:
                transport = await self._probe_port(port)
                if transport is None:
                    return
                if not winner:
                    winner.append(transport)
                else:
                    logger.debug(f"{port} answered after another port won, closing")
                    await asyncio.to_thread(transport.disconnect)

            await asyncio.gather(*(run_probe(port) for port in ports))

            if not winner:
                logger.warning("No UMH device responded to ping")
                return False

            if generation != self._generation:
                logger.info(f"Scan cancelled by disconnect, closing {winner[0].port}")
                await asyncio.to_thread(winner[0].disconnect)
                return False

            await self._install(winner[0])
            installed = True
            logger.success(f"UMH device connected on {winner[0].port}")
            return True
        finally:
            with self._lock:
                if not installed:
                    self._state = ConnectionState.DISCONNECTED
                self._scan_finished = None
            finished.set()

    async def manual_connect(self, port: str, baudrate: Optional[int] = None) -> bool:
        """
        Open ``port`` directly, without ping verification.

        The connection reports connected as soon as the port opens, even if
        no UMH device is listening on it.
        """
        await self.disconnect()

        transport = self._transport_factory()
        if not await asyncio.to_thread(transport.connect, port, baudrate):
            logger.error(f"Manual connection to {port} failed")
            return False

        await self._install(transport)
        logger.info(f"Manually connected to {port}")
        return True

    async def disconnect(self) -> None:
        """
        Tear down the active transport, if any.

        A scan in progress is cancelled; this returns once it has finished
        and closed every port it opened.
        """
        with self._lock:
            self._generation += 1
            scan_finished = self._scan_finished

        if scan_finished is not None:
            logger.debug("Waiting for in-flight scan to finish")
            await scan_finished.wait()

        with self._lock:
            transport = self._transport
            self._transport = None
            was_connected = self._state == ConnectionState.CONNECTED
            self._state = ConnectionState.DISCONNECTED

        if transport is None:
            return

        transport.connection_lost.unsubscribe(self._on_connection_lost)
        await asyncio.to_thread(transport.disconnect)
        logger.info("Serial connection closed")

        if was_connected:
            self.disconnected.emit()

    async def reconnect(self) -> bool:
        """Full teardown followed by a fresh scan."""
        await self.disconnect()
        return await self.scan_and_connect()

    async def _probe_port(self, port: str) -> Optional[SerialTransport]:
        """
        Ping ``port`` once.

        Returns:
            The connected transport if the nonce came back, else None
        """
        transport = self._transport_factory()
        verified = False
        try:
            if not await asyncio.to_thread(transport.connect, port, self.serial_config.baudrate):
                return None

            nonce = random.randint(0, 255)
            answered = threading.Event()

            def on_frame(frame: Frame) -> None:
                if frame.code == ResponseCode.PING_ACK and frame.payload[:1] == bytes([nonce]):
                    answered.set()

            transport.frame_received.subscribe(on_frame)
            try:
                if await transport.send_frame(CommandCode.PING, bytes([nonce])):
                    verified = await asyncio.to_thread(answered.wait, self.discovery_config.probe_timeout_s)
            finally:
                transport.frame_received.unsubscribe(on_frame)
        except Exception as e:
            logger.error(f"Error scanning port {port}: {e}")
        finally:
            if not verified:
                await asyncio.to_thread(transport.disconnect)

        if not verified:
            logger.debug(f"No ping reply on {port}")
            return None

        logger.debug(f"Ping reply on {port}")
        return transport

    async def _install(self, transport: SerialTransport) -> None:
        with self._lock:
            previous = self._transport
            self._transport = transport
            self._state = ConnectionState.CONNECTED

        if previous is not None and previous is not transport:
            previous.connection_lost.unsubscribe(self._on_connection_lost)
            await asyncio.to_thread(previous.disconnect)

        transport.connection_lost.subscribe(self._on_connection_lost)
        self.connected.emit(transport)

    def _on_connection_lost(self, transport: SerialTransport) -> None:
        with self._lock:
            if transport is not self._transport:
                return
            self._transport = None
            self._state = ConnectionState.DISCONNECTED

        transport.connection_lost.unsubscribe(self._on_connection_lost)
        logger.error(f"Connection to {transport.port} lost")
        self.disconnected.emit()
