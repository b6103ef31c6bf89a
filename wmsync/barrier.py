"""
Barrier windows and the full synchronization handshake.

Order matters: the barrier window is created (checked) before the request
is sent, so the WM's notification cannot be emitted before the window
exists on the server.
"""

import sys
import threading
from dataclasses import dataclass
from typing import Optional

from Xlib import X

from .client import SyncClient
from .errors import SyncError, SyncRejectedError
from .listener import DEFAULT_TIMEOUT, CompletionListener, check_bounded
from .protocol import SYNC_ATOM_NAME, SyncRequest, TokenSource

BARRIER_EVENT_MASK = X.StructureNotifyMask | X.KeyPressMask | X.KeyReleaseMask
BARRIER_BACKGROUND = 0xFFFFFFFF


@dataclass(frozen=True)
class BarrierWindow:
    """A 1x1 unmapped window that only serves as the notification target."""
    window: int
    event_mask: int

    def destroy(self, session) -> None:
        session.destroy_window(self.window)


def create_barrier_window(session, event_mask: int = BARRIER_EVENT_MASK) -> BarrierWindow:
    wid = session.create_window(0, 0, 1, 1, BARRIER_BACKGROUND, event_mask)
    return BarrierWindow(window=wid, event_mask=event_mask)


class Barrier:
    """Sequential barriers on one session, sharing one barrier window.

    Each call uses a fresh token, and at most one request is outstanding on
    the window at any time.
    """

    def __init__(self, session, client: Optional[SyncClient] = None,
                 tokens: Optional[TokenSource] = None, verbose: bool = False):
        self.session = session
        self.client = client if client is not None else SyncClient(session=session)
        self.tokens = tokens if tokens is not None else TokenSource()
        self.verbose = verbose
        self.window: Optional[BarrierWindow] = None
        self._message_type: Optional[int] = None
        self._lock = threading.Lock()

    def _ensure_window(self) -> BarrierWindow:
        if self.window is None:
            self.window = create_barrier_window(self.session)
            self._message_type = self.session.intern_atom(SYNC_ATOM_NAME)
            if self.verbose:
                print(f"  [barrier] window 0x{self.window.window:x}", file=sys.stderr)
        return self.window

    def sync(self, timeout: Optional[float] = DEFAULT_TIMEOUT,
             cancel: Optional[threading.Event] = None) -> SyncRequest:
        """Run one barrier; return the request once the WM has completed it."""
        check_bounded(timeout, cancel)
        if not self._lock.acquire(blocking=False):
            raise SyncError("a sync is already outstanding on this barrier window")
        try:
            window = self._ensure_window()
            request = SyncRequest(token=self.tokens.next(), window=window.window)
            response = self.client.send(request)
            if not response.success:
                raise SyncRejectedError(response, request)
            if self.verbose:
                print(f"  [barrier] sent rnd=0x{request.token:08x}", file=sys.stderr)
            listener = CompletionListener(
                self.session, request,
                message_type=self._message_type, verbose=self.verbose,
            )
            listener.wait(timeout=timeout, cancel=cancel)
            return request
        finally:
            self._lock.release()

    def close(self) -> None:
        if self.window is not None:
            self.window.destroy(self.session)
            self.window = None

    def __enter__(self) -> "Barrier":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
            return
        # The first failure is what the scenario reports.
        try:
            self.close()
        except SyncError:
            pass


def sync_barrier(session, client: Optional[SyncClient] = None, *,
                 timeout: Optional[float] = DEFAULT_TIMEOUT,
                 cancel: Optional[threading.Event] = None,
                 tokens: Optional[TokenSource] = None,
                 verbose: bool = False) -> SyncRequest:
    """One complete handshake on a throwaway barrier window."""
    with Barrier(session, client=client, tokens=tokens, verbose=verbose) as barrier:
        return barrier.sync(timeout=timeout, cancel=cancel)
