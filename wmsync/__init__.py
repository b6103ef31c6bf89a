"""Synchronization barrier between a test process and an i3-compatible WM."""

from .barrier import Barrier, BarrierWindow, create_barrier_window, sync_barrier
from .client import SyncClient, find_socket_path
from .errors import (
    MalformedReplyError,
    PayloadMismatchError,
    PreflightError,
    SyncCancelledError,
    SyncError,
    SyncRejectedError,
    SyncTimeoutError,
    TransportError,
)
from .listener import CompletionListener, wait_for
from .protocol import (
    CompletionNotification,
    SyncRequest,
    SyncResponse,
    TokenSource,
    new_token,
)
from .session import DisplaySession

__version__ = "0.1.0"

__all__ = [
    "Barrier",
    "BarrierWindow",
    "CompletionListener",
    "CompletionNotification",
    "DisplaySession",
    "MalformedReplyError",
    "PayloadMismatchError",
    "PreflightError",
    "SyncCancelledError",
    "SyncClient",
    "SyncError",
    "SyncRejectedError",
    "SyncRequest",
    "SyncResponse",
    "SyncTimeoutError",
    "TokenSource",
    "TransportError",
    "create_barrier_window",
    "find_socket_path",
    "new_token",
    "sync_barrier",
    "wait_for",
]
