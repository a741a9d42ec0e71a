"""
UMH Pipeline - Device State Manager
====================================
Host-side state fed by decoded device events.

Responsibilities:
- Hand reader-thread events over to one application-owned thread
- Keep the latest device config, status and sent stimulation
- Poll device status at a fixed refresh rate while connected
"""

from __future__ import annotations

import asyncio
import queue
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from umh_interface import (
    ConnectionManager,
    ConnectionState,
    DeviceConfig,
    DeviceSnapshot,
    DeviceStatus,
    EventHook,
    PollingConfig,
    ProtocolHandler,
    ResponseCode,
    SerialTransport,
    StimulationBase,
)


class MainThreadDispatcher:
    """
    Queue of work posted from any thread and run by a single owner.

    Reader threads call :meth:`post` (or a callable made by :meth:`wrap`);
    the owning thread calls :meth:`drain` once per iteration of its loop.
    """

    def __init__(self) -> None:
        self._queue: "queue.SimpleQueue[Tuple[Callable[..., Any], Tuple[Any, ...]]]" = queue.SimpleQueue()
        self._executed = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def post(self, callback: Callable[..., Any], *args: Any) -> None:
        self._queue.put((callback, args))

    def wrap(self, callback: Callable[..., Any]) -> Callable[..., None]:
        """Return a callable that posts ``callback`` instead of running it."""
        def posted(*args: Any) -> None:
            self.post(callback, *args)
        return posted

    def drain(self, max_items: Optional[int] = None) -> int:
        """
        Run queued callbacks in posting order.

        Args:
            max_items: Stop after this many callbacks (None = until empty)

        Returns:
            Number of callbacks run
        """
        executed = 0
        while max_items is None or executed < max_items:
            try:
                callback, args = self._queue.get_nowait()
            except queue.Empty:
                break

            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Dispatched callback error: {e}")
            executed += 1

        self._executed += executed
        return executed

    def get_statistics(self) -> Dict[str, Any]:
        """Get dispatcher statistics."""
        return {
            "pending": self.pending,
            "executed": self._executed,
        }


class DeviceStateManager:
    """
    Thread-safe holder of the latest :class:`DeviceSnapshot`.

    A decode failure upstream produces no event, so the previous status and
    config stay in place.
    """

    def __init__(self) -> None:
        self._snapshot = DeviceSnapshot()
        self._lock = threading.RLock()

        self._subscribers: List[Callable[[DeviceSnapshot], None]] = []
        self._bindings: List[Tuple[EventHook, Callable[..., Any]]] = []

        self._update_count = 0
        self._status_count = 0
        self._last_update_time: Optional[datetime] = None

        logger.info("DeviceStateManager initialized")

    @property
    def snapshot(self) -> DeviceSnapshot:
        """Copy of the current state."""
        with self._lock:
            return self._snapshot.model_copy()

    @property
    def config(self) -> Optional[DeviceConfig]:
        with self._lock:
            return self._snapshot.config

    @property
    def status(self) -> Optional[DeviceStatus]:
        with self._lock:
            return self._snapshot.status

    def bind(
        self,
        handler: ProtocolHandler,
        connection_manager: Optional[ConnectionManager] = None,
        dispatcher: Optional[MainThreadDispatcher] = None,
    ) -> None:
        """
        Subscribe to a protocol handler's (and connection manager's) events.

        Args:
            handler: Source of decoded device events
            connection_manager: Source of connect/disconnect events
            dispatcher: When given, updates run on the dispatcher's thread
        """
        def route(callback: Callable[..., Any]) -> Callable[..., Any]:
            return dispatcher.wrap(callback) if dispatcher is not None else callback

        hooks: List[Tuple[EventHook, Callable[..., Any]]] = [
            (handler.config_received, route(self.update_from_config)),
            (handler.status_received, route(self.update_from_status)),
            (handler.stimulation_sent, route(self.update_from_stimulation)),
            (handler.error_received, route(self.update_from_error)),
            (handler.ack_received, route(self.update_from_ack)),
        ]
        if connection_manager is not None:
            hooks.append((connection_manager.connected, route(self.update_from_connected)))
            hooks.append((connection_manager.disconnected, route(self.update_from_disconnected)))

        for hook, callback in hooks:
            hook.subscribe(callback)
        self._bindings.extend(hooks)

    def unbind(self) -> None:
        for hook, callback in self._bindings:
            hook.unsubscribe(callback)
        self._bindings.clear()

    def update_state(self, **kwargs: Any) -> None:
        """
        Update current state with new values.

        Args:
            **kwargs: Snapshot attributes to update
        """
        with self._lock:
            self._snapshot.timestamp = datetime.now()
            for key, value in kwargs.items():
                if hasattr(self._snapshot, key):
                    setattr(self._snapshot, key, value)
                else:
                    logger.warning(f"Unknown snapshot field: {key}")

            self._update_count += 1
            self._last_update_time = self._snapshot.timestamp

        self._notify_subscribers()

    def update_from_config(self, config: DeviceConfig) -> None:
        self.update_state(config=config)

    def update_from_status(self, status: DeviceStatus) -> None:
        with self._lock:
            self._status_count += 1
        self.update_state(status=status)

    def update_from_stimulation(self, stimulation: StimulationBase) -> None:
        position = tuple(float(v) for v in stimulation.focus_position)
        self.update_state(last_stimulation=stimulation, focus_position=position)

    def update_from_error(self, error_code: int) -> None:
        with self._lock:
            count = self._snapshot.error_count + 1
        self.update_state(last_error_code=error_code, error_count=count)

    def update_from_ack(self, code: ResponseCode) -> None:
        if code != ResponseCode.NACK:
            return
        with self._lock:
            count = self._snapshot.nack_count + 1
        self.update_state(nack_count=count)

    def update_from_connected(self, transport: SerialTransport) -> None:
        self.update_state(connection_state=ConnectionState.CONNECTED, port=transport.port)

    def update_from_disconnected(self) -> None:
        self.update_state(connection_state=ConnectionState.DISCONNECTED, port=None)

    def subscribe(self, callback: Callable[[DeviceSnapshot], None]) -> None:
        """
        Subscribe to state updates.

        Args:
            callback: Function called with a snapshot copy on every update
        """
        self._subscribers.append(callback)
        logger.debug(f"Added state subscriber, total: {len(self._subscribers)}")

    def unsubscribe(self, callback: Callable) -> None:
        """Remove a subscriber."""
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def _notify_subscribers(self) -> None:
        snapshot = self.snapshot
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"Subscriber callback error: {e}")

    def get_statistics(self) -> Dict[str, Any]:
        """Get state manager statistics."""
        return {
            "update_count": self._update_count,
            "status_count": self._status_count,
            "subscriber_count": len(self._subscribers),
            "last_update": self._last_update_time.isoformat() if self._last_update_time else None,
        }


class StatusPoller:
    """
    Requests device status at a fixed rate while a device is connected.
    """

    def __init__(
        self,
        handler: ProtocolHandler,
        connection_manager: ConnectionManager,
        config: Optional[PollingConfig] = None,
    ):
        self.handler = handler
        self.connection_manager = connection_manager
        self.config = config or PollingConfig()

        self._refresh_hz = self.config.status_refresh_hz
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._requests_sent = 0

    @property
    def refresh_hz(self) -> float:
        return self._refresh_hz

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def requests_sent(self) -> int:
        return self._requests_sent

    def set_refresh_rate(self, refresh_hz: float) -> None:
        """
        Raises:
            ValueError: If ``refresh_hz`` is not positive
        """
        if refresh_hz <= 0:
            raise ValueError(f"Refresh rate must be greater than 0, got {refresh_hz}")
        self._refresh_hz = refresh_hz
        logger.debug(f"Status refresh rate set to {refresh_hz} Hz")

    async def start(self) -> None:
        if self._running:
            logger.warning("Status poller already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"Status polling started at {self._refresh_hz} Hz")

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("Status polling stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                if self.connection_manager.is_connected:
                    if await self.handler.get_status():
                        self._requests_sent += 1
                await asyncio.sleep(1.0 / self._refresh_hz)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Status poll error: {e}")
                await asyncio.sleep(1.0 / self._refresh_hz)
