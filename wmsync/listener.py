"""
Completion listener: wait for the WM's sync ClientMessage.

Everything on the event stream that is not the awaited notification is
noise and is skipped. The only protocol failure is a notification that
reaches the barrier window with the wrong [window, token] payload.
"""

import sys
import threading
import time
from typing import Any, Optional

from Xlib import X

from .errors import PayloadMismatchError, SyncCancelledError, SyncError, SyncTimeoutError
from .protocol import CompletionNotification, SyncRequest

# Upper bound on a single blocking read, so cancellation is noticed promptly.
POLL_SLICE = 0.1

DEFAULT_TIMEOUT = 5.0


def check_bounded(timeout: Optional[float], cancel: Optional[threading.Event]) -> None:
    """A wait needs a deadline, a cancel event, or both."""
    if timeout is None and cancel is None:
        raise ValueError("timeout=None needs a cancel event")


def _resource_id(value: Any) -> int:
    return getattr(value, "id", value)


def as_notification(event: Any) -> Optional[CompletionNotification]:
    """Convert a format-32 ClientMessage into a CompletionNotification.

    Returns None for every other event.
    """
    if getattr(event, "type", None) != X.ClientMessage:
        return None
    fmt, data = event.data
    if fmt != 32:
        return None
    return CompletionNotification(
        window=_resource_id(event.window),
        data=tuple(data),
        message_type=getattr(event, "client_type", None),
    )


class CompletionListener:
    """Wait for the completion of exactly one SyncRequest.

    A listener resolves at most once; waiting on it again raises SyncError.
    """

    def __init__(self, session, expected: SyncRequest,
                 message_type: Optional[int] = None, verbose: bool = False):
        self.session = session
        self.expected = expected
        self.message_type = message_type
        self.verbose = verbose
        self.resolved = False
        self.skipped = 0

    def _log(self, msg: str) -> None:
        if self.verbose:
            print(f"  [listener] {msg}", file=sys.stderr)

    def _skip(self, msg: str) -> None:
        self.skipped += 1
        self._log(msg)

    def handle(self, event: Any) -> bool:
        """Classify one event. True when it resolves the request."""
        note = as_notification(event)
        if note is None:
            self._skip(f"ignoring non-ClientMessage {type(event).__name__}")
            return False
        if self.message_type is not None and note.message_type != self.message_type:
            self._skip(f"ignoring ClientMessage of type {note.message_type}")
            return False
        if note.window != self.expected.window:
            self._skip(f"ignoring sync ClientMessage for window 0x{note.window:x}")
            return False
        if not note.matches(self.expected):
            raise PayloadMismatchError(self.expected, note)
        return True

    def wait(self, timeout: Optional[float] = DEFAULT_TIMEOUT,
             cancel: Optional[threading.Event] = None) -> bool:
        """Block until the matching notification arrives.

        Raises SyncTimeoutError once *timeout* seconds pass, and
        SyncCancelledError as soon as *cancel* is set. Events already
        buffered are still examined after the deadline, so timeout=0 polls.
        timeout=None is only accepted together with *cancel*.
        """
        check_bounded(timeout, cancel)
        if self.resolved:
            raise SyncError(
                f"sync for window 0x{self.expected.window:x} "
                f"(rnd=0x{self.expected.token:08x}) already completed"
            )
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if cancel is not None and cancel.is_set():
                raise SyncCancelledError(
                    f"wait for sync on window 0x{self.expected.window:x} cancelled"
                )
            slice_ = POLL_SLICE if cancel is not None else None
            expired = False
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    remaining = 0.0
                    expired = True
                slice_ = remaining if slice_ is None else min(slice_, remaining)

            event = self.session.next_event(slice_)
            if event is None:
                if expired:
                    raise SyncTimeoutError(self.expected, timeout)
                continue
            if self.handle(event):
                self.resolved = True
                self._log(f"sync completed after skipping {self.skipped} event(s)")
                return True


def wait_for(session, expected: SyncRequest, timeout: Optional[float] = DEFAULT_TIMEOUT,
             cancel: Optional[threading.Event] = None,
             message_type: Optional[int] = None, verbose: bool = False) -> bool:
    """Wait for the completion notification of *expected* on *session*."""
    listener = CompletionListener(session, expected, message_type=message_type, verbose=verbose)
    return listener.wait(timeout=timeout, cancel=cancel)
