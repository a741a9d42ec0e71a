"""
UMH Host - Application Entry Point
===================================
Host-side service for UMH ultrasonic mid-air haptics arrays.

Wires together:
- Port discovery and the active serial connection
- Protocol handling (config, status, stimulation, phases)
- Host-side device state updated on the application's own loop
- Periodic status polling
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger

from umh_interface import (
    ConnectionManager,
    PointStimulation,
    ProtocolHandler,
    SerialTransport,
    StimulationBase,
    UMHConfig,
    list_serial_ports,
)
from umh_pipeline import DeviceStateManager, MainThreadDispatcher, StatusPoller

SRC_DIR = Path(__file__).parent
PROJECT_ROOT = SRC_DIR.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config" / "umh_config.yaml"


class UMHApplication:
    """
    Explicitly constructed UMH service.

    One instance owns the connection, the protocol handler and the device
    state. Consumers receive the instance instead of reaching for a global.
    """

    VERSION = "1.0.0"

    def __init__(self, config: Optional[UMHConfig] = None, connection_manager: Optional[ConnectionManager] = None):
        """
        Initialize UMH application.

        Args:
            config: Application configuration (defaults if omitted)
            connection_manager: Pre-built manager, mainly for tests
        """
        self.config = config or UMHConfig()

        self.connection_manager = connection_manager or ConnectionManager(
            serial_config=self.config.serial,
            discovery_config=self.config.discovery,
        )
        self.handler = ProtocolHandler()
        self.dispatcher = MainThreadDispatcher()
        self.state_manager = DeviceStateManager()
        self.poller = StatusPoller(self.handler, self.connection_manager, self.config.polling)

        self.connection_manager.connected.subscribe(self._on_connected)
        self.connection_manager.disconnected.subscribe(self._on_disconnected)
        self.state_manager.bind(self.handler, self.connection_manager, self.dispatcher)

        self._running = False
        self._shutdown_event = asyncio.Event()

        logger.info(f"UMH Host v{self.VERSION} initialized")

    @property
    def is_connected(self) -> bool:
        return self.connection_manager.is_connected

    def _on_connected(self, transport: SerialTransport) -> None:
        self.handler.attach(transport)

    def _on_disconnected(self) -> None:
        self.handler.detach()

    async def start(self) -> bool:
        """
        Connect and start polling.

        Returns:
            True if a device connection was established
        """
        logger.info("Starting UMH Host")
        connected = await self.connect()
        await self.poller.start()
        self._running = True
        return connected

    async def connect(self, port: Optional[str] = None, baudrate: Optional[int] = None) -> bool:
        """
        Connect to the array.

        Args:
            port: Explicit port; ``None`` uses the configured port, and
                ``"auto"`` scans every port
            baudrate: Overrides the configured baudrate for a manual connect
        """
        port = port or self.config.serial.port
        if port == "auto":
            connected = await self.connection_manager.scan_and_connect()
        else:
            connected = await self.connection_manager.manual_connect(port, baudrate or self.config.serial.baudrate)

        if connected and self.config.polling.request_config_on_connect:
            await self.handler.get_config()
        return connected

    async def reconnect(self) -> bool:
        connected = await self.connection_manager.reconnect()
        if connected and self.config.polling.request_config_on_connect:
            await self.handler.get_config()
        return connected

    async def set_stimulation(self, stimulation: StimulationBase) -> bool:
        return await self.handler.set_stimulation(stimulation)

    async def set_phases(self, phases: Sequence[float]) -> bool:
        return await self.handler.set_phases(phases)

    async def set_enable(self, enable: bool) -> bool:
        return await self.handler.set_enable(enable)

    def update(self) -> int:
        """Apply pending device events on the calling thread."""
        return self.dispatcher.drain()

    async def run(self, duration_s: Optional[float] = None, tick_hz: float = 30.0) -> None:
        """
        Drain device events until shutdown (or ``duration_s`` elapses).
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration_s if duration_s else None

        while not self._shutdown_event.is_set():
            self.update()
            if deadline is not None and loop.time() >= deadline:
                break
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=1.0 / tick_hz)
            except asyncio.TimeoutError:
                continue
        self.update()

    async def stop(self) -> None:
        """Stop polling and close the connection."""
        logger.info("Shutting down UMH Host...")
        self._running = False

        await self.poller.stop()
        await self.connection_manager.disconnect()
        self.handler.detach()
        self.update()

        logger.info("UMH Host stopped")

    def request_shutdown(self) -> None:
        """Request application shutdown."""
        self._shutdown_event.set()

    def print_status(self) -> None:
        """Print current device state."""
        snapshot = self.state_manager.snapshot
        print("\n" + "=" * 60)
        print(f"  UMH Host v{self.VERSION}")
        print("=" * 60)
        print(f"  Connection: {snapshot.connection_state.value} {snapshot.port or ''}")
        if snapshot.config:
            cfg = snapshot.config
            print(f"  Array:      v{cfg.version} {cfg.array_type_name}, {cfg.transducer_count} transducers")
        if snapshot.status:
            st = snapshot.status
            print(f"  Voltages:   VDDA {st.voltage_vdda:.2f} V | 3V3 {st.voltage_3v3:.2f} V | 5V0 {st.voltage_5v0:.2f} V")
            print(f"  Temp:       {st.temperature:.1f} C | loop {st.loop_freq:.1f} Hz")
        if snapshot.last_error_code is not None:
            print(f"  Last error: 0x{snapshot.last_error_code:02X} ({snapshot.error_count} total)")
        print("=" * 60 + "\n")


def setup_logging(verbose: bool = False, log_dir: Optional[Path] = None) -> None:
    """Configure logging."""
    logger.remove()

    level = "DEBUG" if verbose else "INFO"

    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True
    )

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_dir / "umh_host_{time}.log",
            rotation="10 MB",
            retention="7 days",
            level="DEBUG"
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="UMH Host - serial control of UMH mid-air haptics arrays"
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to configuration file"
    )
    parser.add_argument(
        "--port", "-p",
        default=None,
        help="Serial port, or 'auto' to scan (default: from config)"
    )
    parser.add_argument(
        "--baud", "-b",
        type=int,
        default=None,
        help="Baudrate for a manual connection"
    )
    parser.add_argument(
        "--list-ports",
        action="store_true",
        help="List serial ports and exit"
    )
    parser.add_argument(
        "--point",
        type=float,
        nargs=3,
        metavar=("X", "Y", "Z"),
        default=None,
        help="Send a point stimulation at X Y Z metres after connecting"
    )
    parser.add_argument(
        "--strength",
        type=float,
        default=1.0,
        help="Stimulation strength"
    )
    parser.add_argument(
        "--frequency",
        type=float,
        default=200.0,
        help="Stimulation frequency in Hz"
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Run for this many seconds, then exit"
    )
    parser.add_argument(
        "--log-dir",
        type=Path,
        default=None,
        help="Also write debug logs to this directory"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )
    return parser


async def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    setup_logging(args.verbose, args.log_dir)

    if args.list_ports:
        for port in list_serial_ports():
            print(port)
        return 0

    config = UMHConfig.from_yaml(args.config)
    app = UMHApplication(config)

    def signal_handler(sig, frame):
        logger.info("Received shutdown signal")
        app.request_shutdown()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        if args.port:
            connected = await app.connect(args.port, args.baud)
            await app.poller.start()
        else:
            connected = await app.start()

        if not connected:
            logger.error("No UMH device connected")
            return 1

        if args.point is not None:
            stimulation = PointStimulation(
                position=tuple(args.point),
                strength=args.strength,
                frequency=args.frequency,
            )
            await app.set_stimulation(stimulation)

        print("UMH Host is running. Press Ctrl+C to stop.")
        await app.run(duration_s=args.duration)
        app.print_status()

    finally:
        await app.stop()

    return 0


def run() -> None:
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
