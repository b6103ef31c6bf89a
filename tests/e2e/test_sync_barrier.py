#!/usr/bin/env python3
"""
End-to-end synchronization barrier test against a real i3 on Xvfb.

Starts a virtual X server and i3 with the bundled test config, then:

1. runs sequential barriers in an isolated child process (fresh X
   connection, environment reduced to DISPLAY and PATH);
2. runs barriers in-process on a fresh DisplaySession;
3. kills i3 while a listener is waiting and checks that the wait ends
   through cancellation instead of hanging.

Runs under pytest (skipped when Xvfb or i3 is missing) or as a script.
"""

import os
import shutil
import sys
import threading

import pytest

from wmsync import (
    Barrier,
    DisplaySession,
    SyncClient,
    SyncRequest,
    TokenSource,
    create_barrier_window,
)
from wmsync.config import HarnessConfig
from wmsync.errors import PreflightError, SyncCancelledError, SyncError
from wmsync.framework import Harness, run_isolated
from wmsync.listener import CompletionListener

pytestmark = pytest.mark.skipif(
    shutil.which("Xvfb") is None or shutil.which("i3") is None,
    reason="needs Xvfb and i3",
)


def _child_env():
    pythonpath = os.environ.get("PYTHONPATH")
    return {"PYTHONPATH": pythonpath} if pythonpath else None


def check_isolated_child(harness: Harness, count: int = 3) -> int:
    argv = [sys.executable, "-m", "wmsync", "barrier",
            "--count", str(count), "--timeout", str(harness.config.sync_timeout)]
    return run_isolated(argv, harness.display, timeout=60, extra_env=_child_env())


def check_in_process(harness: Harness, count: int = 3):
    with DisplaySession.open(harness.display) as session:
        client = SyncClient(socket_path=harness.wm.socket_path)
        with Barrier(session, client=client) as barrier:
            return [barrier.sync(timeout=harness.config.sync_timeout, cancel=harness.cancel)
                    for _ in range(count)]


def check_wm_killed(harness: Harness) -> bool:
    """True when the listener ended through cancellation after i3 died."""
    with DisplaySession.open(harness.display) as session:
        window = create_barrier_window(session)
        # Nothing is sent: the only way out is the WM watchdog.
        request = SyncRequest(token=TokenSource().next(), window=window.window)
        listener = CompletionListener(session, request)
        threading.Timer(0.5, harness.wm.kill).start()
        try:
            listener.wait(timeout=30.0, cancel=harness.cancel)
        except SyncCancelledError:
            return True
        return False


@pytest.fixture
def harness(tmp_path):
    config = HarnessConfig.from_env().with_overrides(artifacts_dir=tmp_path)
    with Harness(config) as h:
        yield h


def test_barrier_in_isolated_child(harness):
    assert check_isolated_child(harness) == 0


def test_barrier_in_process(harness):
    requests = check_in_process(harness)
    assert len({r.token for r in requests}) == len(requests)
    assert len({r.window for r in requests}) == 1


def test_wait_ends_when_wm_is_killed(harness):
    assert check_wm_killed(harness)


def main():
    print("=" * 70)
    print("WM Sync Barrier E2E Test")
    print("=" * 70)

    try:
        with Harness(HarnessConfig.from_env(), verbose=True) as harness:
            print("\n[1/3] Barriers in an isolated child...")
            if check_isolated_child(harness) != 0:
                print("✗ FAIL: isolated child failed")
                return 1
            print("✓ Isolated child passed")

            print("\n[2/3] Barriers in-process...")
            requests = check_in_process(harness)
            print(f"✓ {len(requests)} barriers completed")

            print("\n[3/3] Killing the WM during a wait...")
            if not check_wm_killed(harness):
                print("✗ FAIL: wait did not end after the WM died")
                return 1
            print("✓ Wait cancelled after the WM died")
            print(f"\nLogs: {harness.artifacts.logs_dir}")
    except PreflightError as e:
        print(f"✗ FAIL: {e}")
        return 1
    except SyncError as e:
        print(f"\n✗ FAIL: {e}")
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130

    print("\n✓ SUCCESS")
    return 0


if __name__ == '__main__':
    sys.exit(main())
