"""
UMH Pipeline Package
=====================
Host-side device state, cross-thread event delivery and status polling.
"""

from .state_manager import (
    MainThreadDispatcher,
    DeviceStateManager,
    StatusPoller,
)

__all__ = [
    "MainThreadDispatcher",
    "DeviceStateManager",
    "StatusPoller",
]
