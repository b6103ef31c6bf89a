"""
Scenario-scoped X connection.

A DisplaySession is always a *fresh* connection owned by exactly one
scenario, so no events from harness setup can already be buffered on it.
It is passed explicitly to everything that needs it; there is no
process-wide connection.
"""

import os
import select
import time
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from Xlib import X
from Xlib import display as xdisplay
from Xlib import error as xerror

from .errors import TransportError


@contextmanager
def _connection_guard() -> Iterator[None]:
    # python-xlib raises the stored socket error on every request once the
    # server is gone.
    try:
        yield
    except xerror.ConnectionClosedError as exc:
        raise TransportError(f"X connection closed: {exc}") from exc


class DisplaySession:
    """Own one python-xlib connection for the lifetime of a scenario."""

    def __init__(self, display: "xdisplay.Display"):
        self.display = display
        self._closed = False

    @classmethod
    def open(cls, display_name: Optional[str] = None) -> "DisplaySession":
        """Connect to *display_name* (defaults to $DISPLAY)."""
        name = display_name if display_name is not None else os.environ.get("DISPLAY", "")
        try:
            conn = xdisplay.Display(display_name)
        except (xerror.DisplayError, xerror.ConnectionClosedError, OSError) as exc:
            raise TransportError(f"cannot open X display {name!r}: {exc}") from exc
        return cls(conn)

    @property
    def name(self) -> str:
        return self.display.get_display_name()

    @property
    def screen(self):
        return self.display.screen()

    @property
    def root(self):
        return self.screen.root

    def intern_atom(self, name: str, only_if_exists: bool = False) -> int:
        with _connection_guard():
            return self.display.intern_atom(name, only_if_exists)

    def root_property_text(self, atom_name: str) -> Optional[str]:
        """Read a string property from the root window, or None if unset."""
        atom = self.intern_atom(atom_name, only_if_exists=True)
        if atom == X.NONE:
            return None
        with _connection_guard():
            prop = self.root.get_full_property(atom, X.AnyPropertyType)
        if prop is None:
            return None
        value = prop.value
        if isinstance(value, bytes):
            value = value.decode("utf-8", "replace")
        value = str(value).rstrip("\0")
        return value or None

    def create_window(self, x: int, y: int, width: int, height: int,
                      background_pixel: int, event_mask: int) -> int:
        """Create an unmapped child of the root window and return its id.

        The request is checked: a round trip is made before returning so
        the window is known to the server (and to the WM) afterwards.
        """
        screen = self.screen
        catcher = xerror.CatchError()
        with _connection_guard():
            window = screen.root.create_window(
                x, y, width, height, 0,
                screen.root_depth,
                X.InputOutput,
                screen.root_visual,
                background_pixel=background_pixel,
                event_mask=event_mask,
                onerror=catcher,
            )
        self.sync()
        err = catcher.get_error()
        if err:
            raise TransportError(f"CreateWindow failed: {err}")
        return window.id

    def destroy_window(self, window_id: int) -> None:
        with _connection_guard():
            window = self.display.create_resource_object("window", window_id)
            window.destroy()
        self.flush()

    def flush(self) -> None:
        with _connection_guard():
            self.display.flush()

    def sync(self) -> None:
        with _connection_guard():
            self.display.sync()

    def next_event(self, timeout: Optional[float] = None) -> Optional[Any]:
        """Block for the next event.

        Returns None when *timeout* seconds pass without one. With
        timeout=None this blocks until an event arrives.
        """
        deadline = None if timeout is None else time.monotonic() + max(0.0, timeout)
        while True:
            with _connection_guard():
                if self.display.pending_events():
                    return self.display.next_event()

            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
            try:
                readable, _, _ = select.select([self.display.fileno()], [], [], remaining)
            except (OSError, ValueError) as exc:
                raise TransportError(f"X connection unusable: {exc}") from exc
            if not readable and deadline is not None and time.monotonic() >= deadline:
                return None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.display.close()
        except xerror.ConnectionClosedError:
            pass

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "DisplaySession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
