"""
Command line entry points.

  wmsync run        start Xvfb + WM, run barriers in an isolated child
  wmsync barrier    run barriers against the WM on $DISPLAY (child mode)
  wmsync preflight  check that the required binaries are installed
"""

import argparse
import os
import subprocess
import sys
import time
from pathlib import Path
from typing import List, Optional

from .barrier import Barrier
from .client import SyncClient
from .config import HarnessConfig
from .errors import PreflightError, SyncError
from .framework import Harness, preflight_check, run_isolated
from .session import DisplaySession


def _seconds(value: str) -> float:
    seconds = float(value)
    if seconds <= 0:
        raise argparse.ArgumentTypeError(f"must be positive, got {value}")
    return seconds


def cmd_barrier(args: argparse.Namespace) -> int:
    try:
        with DisplaySession.open(args.display) as session:
            client = SyncClient(socket_path=args.socket, session=session)
            with Barrier(session, client=client, verbose=args.verbose) as barrier:
                for i in range(args.count):
                    start = time.monotonic()
                    request = barrier.sync(timeout=args.timeout)
                    elapsed_ms = (time.monotonic() - start) * 1000.0
                    print(f"✓ sync {i + 1}/{args.count}: window=0x{request.window:x} "
                          f"rnd=0x{request.token:08x} ({elapsed_ms:.1f} ms)")
    except SyncError as e:
        print(f"✗ FAIL: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130
    return 0


def _child_argv(args: argparse.Namespace, timeout: float) -> List[str]:
    argv = [sys.executable, '-m', 'wmsync', 'barrier',
            '--count', str(args.count), '--timeout', str(timeout)]
    if args.verbose:
        argv.append('--verbose')
    return argv


def cmd_run(args: argparse.Namespace) -> int:
    config = args.base_config.with_overrides(
        display=args.display,
        wm_config=Path(args.wm_config).resolve() if args.wm_config else None,
        sync_timeout=args.timeout,
    )

    print("=" * 70)
    print("WM Sync Barrier")
    print("=" * 70)

    try:
        with Harness(config, verbose=args.verbose) as harness:
            print(f"\nRunning {args.count} barrier(s) in an isolated child on {harness.display}...")
            extra = {}
            if os.environ.get('PYTHONPATH'):
                extra['PYTHONPATH'] = os.environ['PYTHONPATH']
            # Child gets the sync timeout per barrier plus headroom to start.
            child_timeout = config.sync_timeout * args.count + config.startup_timeout
            code = run_isolated(
                _child_argv(args, config.sync_timeout),
                harness.display,
                timeout=child_timeout,
                extra_env=extra,
            )
            if not harness.wm.is_alive():
                print("⚠ Window manager exited during the run", file=sys.stderr)
            print(f"\nLogs: {harness.artifacts.logs_dir}")
    except PreflightError as e:
        print(f"✗ FAIL: {e}", file=sys.stderr)
        return 1
    except subprocess.TimeoutExpired as e:
        print(f"✗ FAIL: barrier child timed out after {e.timeout:.0f}s", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130

    if code == 0:
        print("\n✓ SUCCESS: all barriers completed")
    else:
        print(f"\n✗ FAIL: barrier child exited with status {code}")
    return 0 if code == 0 else 1


def cmd_preflight(args: argparse.Namespace) -> int:
    try:
        preflight_check(args.base_config, verbose=True)
    except PreflightError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1
    print("✓ Preflight passed")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="wmsync", description="Synchronization barrier for WM tests")
    subparsers = parser.add_subparsers(dest="command", required=True)

    barrier_parser = subparsers.add_parser("barrier", help="Sync with the WM on $DISPLAY")
    barrier_parser.add_argument("--display", default=None, help="X display (default: $DISPLAY)")
    barrier_parser.add_argument("--socket", default=None, help="WM IPC socket path")
    barrier_parser.add_argument("--count", type=int, default=1, help="Sequential barriers to run")
    barrier_parser.add_argument("--timeout", type=_seconds, default=None, help="Seconds to wait per barrier")
    barrier_parser.add_argument("--verbose", action="store_true", help="Log skipped events")
    barrier_parser.set_defaults(func=cmd_barrier)

    run_parser = subparsers.add_parser("run", help="Start Xvfb + WM and run barriers")
    run_parser.add_argument("--display", type=int, default=None, help="Display number (default: auto)")
    run_parser.add_argument("--wm-config", default=None, help="WM config file")
    run_parser.add_argument("--count", type=int, default=1, help="Sequential barriers to run")
    run_parser.add_argument("--timeout", type=_seconds, default=None, help="Seconds to wait per barrier")
    run_parser.add_argument("--verbose", action="store_true", help="Verbose output")
    run_parser.set_defaults(func=cmd_run)

    preflight_parser = subparsers.add_parser("preflight", help="Check required binaries")
    preflight_parser.set_defaults(func=cmd_preflight)

    args = parser.parse_args(argv)
    try:
        args.base_config = HarnessConfig.from_env()
    except ValueError as e:
        parser.error(str(e))
    if getattr(args, "count", 1) < 1:
        parser.error("--count must be at least 1")
    if args.command == "barrier" and args.timeout is None:
        args.timeout = args.base_config.sync_timeout
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
