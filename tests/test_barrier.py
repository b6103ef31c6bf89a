import threading
from unittest.mock import MagicMock

import pytest
from Xlib import X
from Xlib import error as xerror

from fakes import FakeSession, client_message, configure_notify
from wmsync.barrier import (
    BARRIER_BACKGROUND,
    BARRIER_EVENT_MASK,
    Barrier,
    create_barrier_window,
    sync_barrier,
)
from wmsync.client import SyncClient
from wmsync.errors import SyncError, SyncRejectedError, SyncTimeoutError, TransportError
from wmsync.session import DisplaySession


def test_barrier_window_is_minimal_and_watched():
    session = FakeSession()
    window = create_barrier_window(session)
    assert window.window == 0x1234
    (wid, geometry, background, mask), = session.created
    assert geometry == (0, 0, 1, 1)
    assert background == BARRIER_BACKGROUND
    assert mask & X.StructureNotifyMask
    assert window.event_mask == BARRIER_EVENT_MASK


def test_sync_barrier_round_trip(wm):
    request = sync_barrier(wm.session, SyncClient(wm.socket_path), timeout=1.0)
    assert request.window == 0x1234
    assert wm.server.requests[0][1] == {"rnd": request.token, "window": 0x1234}
    assert wm.session.destroyed == [0x1234]


def test_window_created_before_request_is_sent(wm):
    seen = []
    original = wm.server.on_sync

    def on_sync(payload):
        seen.append(list(wm.session.created))
        return original(payload)

    wm.server.on_sync = on_sync
    sync_barrier(wm.session, SyncClient(wm.socket_path), timeout=1.0)
    assert seen and seen[0], "request reached the WM before the window existed"


def test_noise_before_completion_is_skipped(wm):
    original = wm.server.on_sync

    def on_sync(payload):
        wm.session.push(configure_notify(payload["window"]),
                        client_message(0x9999, [0x9999, payload["rnd"]]))
        return original(payload)

    wm.server.on_sync = on_sync
    sync_barrier(wm.session, SyncClient(wm.socket_path), timeout=1.0)
    assert not wm.session.events


def test_rejection_is_fatal_and_skips_the_wait(wm):
    wm.server.on_sync = lambda payload: {"success": False, "error": "unknown window"}
    with pytest.raises(SyncRejectedError, match="unknown window") as exc_info:
        sync_barrier(wm.session, SyncClient(wm.socket_path), timeout=1.0)
    assert not exc_info.value.response.success
    assert wm.session.waits == []
    assert len(wm.server.requests) == 1


def test_transport_failure_skips_the_wait(dead_socket):
    session = FakeSession()
    with pytest.raises(TransportError):
        sync_barrier(session, SyncClient(dead_socket), timeout=1.0)
    assert session.waits == []
    assert session.destroyed == [0x1234]


def test_accepted_but_never_completed_times_out(i3_server):
    session = FakeSession()
    with pytest.raises(SyncTimeoutError):
        sync_barrier(session, SyncClient(i3_server.path), timeout=0.2)


def test_sequential_barriers_reuse_window_with_fresh_tokens(wm):
    with Barrier(wm.session, client=SyncClient(wm.socket_path)) as barrier:
        first = barrier.sync(timeout=1.0)
        second = barrier.sync(timeout=1.0)
    assert first.window == second.window
    assert first.token != second.token
    assert len(wm.session.created) == 1
    assert wm.session.destroyed == [first.window]


def test_stale_completion_from_previous_barrier_fails_loudly(wm):
    with Barrier(wm.session, client=SyncClient(wm.socket_path)) as barrier:
        first = barrier.sync(timeout=1.0)
        # A duplicate of the first completion shows up before the second one.
        original = wm.server.on_sync

        def on_sync(payload):
            wm.session.push(client_message(first.window, [first.window, first.token]))
            return original(payload)

        wm.server.on_sync = on_sync
        with pytest.raises(SyncError):
            barrier.sync(timeout=1.0)


def test_one_outstanding_request_per_window(wm):
    entered = threading.Event()
    release = threading.Event()
    original = wm.server.on_sync

    def on_sync(payload):
        entered.set()
        release.wait(2.0)
        return original(payload)

    wm.server.on_sync = on_sync
    barrier = Barrier(wm.session, client=SyncClient(wm.socket_path))
    errors = []
    worker = threading.Thread(target=lambda: barrier.sync(timeout=2.0))
    worker.start()
    try:
        assert entered.wait(2.0)
        try:
            barrier.sync(timeout=1.0)
        except SyncError as exc:
            errors.append(exc)
    finally:
        release.set()
        worker.join(5.0)
    assert errors and "outstanding" in str(errors[0])


def test_cancel_is_passed_to_the_listener(i3_server):
    cancel = threading.Event()
    cancel.set()
    session = FakeSession()
    with pytest.raises(SyncError):
        sync_barrier(session, SyncClient(i3_server.path), timeout=None, cancel=cancel)


def test_teardown_keeps_the_first_transport_error(i3_server):
    # The X server dies while the listener waits; destroying the barrier
    # window on the dead connection must not replace the listener's error.
    display = MagicMock()
    display.screen.return_value.root.create_window.return_value = MagicMock(id=0x400001)
    display.intern_atom.return_value = 301
    read_lost = xerror.ConnectionClosedError("server")
    display.pending_events.side_effect = read_lost
    display.create_resource_object.return_value.destroy.side_effect = \
        xerror.ConnectionClosedError("server")
    session = DisplaySession(display)

    with pytest.raises(TransportError, match="closed") as exc_info:
        sync_barrier(session, SyncClient(i3_server.path), timeout=1.0)
    assert exc_info.value.__cause__ is read_lost
    display.create_resource_object.return_value.destroy.assert_called_once()


def test_unbounded_sync_is_refused_before_sending(i3_server):
    session = FakeSession()
    with pytest.raises(ValueError):
        sync_barrier(session, SyncClient(i3_server.path), timeout=None)
    assert i3_server.requests == []
