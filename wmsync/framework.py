"""
Harness for running barrier scenarios against a real WM.

Provides:
- Virtual X server lifecycle (Xvfb)
- WM lifecycle (i3 with a test config)
- Process group tracking and cleanup
- Environment preflight checks
- Artifact directory management
- Re-executing a command in an isolated environment, so the barrier runs
  on a fresh X connection with nothing buffered from setup
"""

import os
import select
import shutil
import signal
import subprocess
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .config import HarnessConfig
from .errors import PreflightError, TransportError
from .protocol import SOCKET_PATH_ATOM_NAME
from .session import DisplaySession


class ProcessTracker:
    """Track all processes we start for safe cleanup."""

    def __init__(self):
        self.processes: Dict[str, subprocess.Popen] = {}
        self.pgids: Dict[str, int] = {}

    def register(self, name: str, proc: subprocess.Popen):
        """Register a process we own."""
        self.processes[name] = proc
        try:
            self.pgids[name] = os.getpgid(proc.pid)
        except ProcessLookupError:
            pass  # Process already exited

    def cleanup(self, name: str, timeout: float = 5.0):
        """Terminate a process group: SIGTERM, then SIGKILL after *timeout*."""
        proc = self.processes.get(name)
        if proc is None or proc.poll() is not None:
            return

        pgid = self.pgids.get(name)
        if pgid:
            try:
                os.killpg(pgid, signal.SIGTERM)
                try:
                    proc.wait(timeout=timeout)
                except subprocess.TimeoutExpired:
                    os.killpg(pgid, signal.SIGKILL)
                    proc.wait(timeout=1.0)
            except ProcessLookupError:
                pass  # Already gone
        else:
            proc.terminate()
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait(timeout=1.0)

    def cleanup_all(self):
        """Clean up all tracked processes, newest first."""
        for name in reversed(list(self.processes.keys())):
            self.cleanup(name)


def check_binary(name: str, required: bool = True) -> Optional[str]:
    """Check if a binary exists in PATH."""
    path = shutil.which(name)
    if required and path is None:
        raise PreflightError(f"Required binary not found: {name}")
    return path


def preflight_check(config: HarnessConfig, verbose: bool = False) -> Dict[str, str]:
    """
    Check that the X server and the WM can be started.

    Returns dict of binary paths.
    Raises PreflightError if something required is missing.
    """
    binaries = {}
    required = [
        (config.xserver, 'Virtual X server (install xvfb)'),
        (config.wm, 'Window manager under test (install i3)'),
    ]

    missing = []
    for binary, description in required:
        path = check_binary(binary, required=False)
        if path is None:
            missing.append(f"  - {binary}: {description}")
            continue
        binaries[binary] = path
        if verbose:
            print(f"✓ Found {binary}: {path}")

    if not Path(config.wm_config).is_file():
        missing.append(f"  - WM config file not found: {config.wm_config}")

    if missing:
        raise PreflightError("Missing requirements:\n" + "\n".join(missing))
    return binaries


def check_display_available(display: int) -> bool:
    """Check if an X display number is free.

    A display counts as taken if either its UNIX socket or its lock file
    exists.
    """
    socket_path = Path(f"/tmp/.X11-unix/X{display}")
    lock_path = Path(f"/tmp/.X{display}-lock")
    return not socket_path.exists() and not lock_path.exists()


def wait_for_x_display(display: int, timeout: float = 10.0,
                       proc: Optional[subprocess.Popen] = None) -> bool:
    """Wait for the X display socket to appear."""
    socket_path = Path(f"/tmp/.X11-unix/X{display}")
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if socket_path.exists():
            return True
        if proc is not None and proc.poll() is not None:
            return False
        time.sleep(0.1)
    return False


def read_display_fd(fd: int, timeout: float) -> Optional[int]:
    """Read the display number an X server writes to its -displayfd."""
    buf = b""
    deadline = time.monotonic() + timeout
    while not buf.endswith(b"\n"):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None
        readable, _, _ = select.select([fd], [], [], remaining)
        if not readable:
            return None
        chunk = os.read(fd, 64)
        if not chunk:
            break  # server exited
        buf += chunk
    try:
        return int(buf.strip())
    except ValueError:
        return None


def isolated_env(display: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Minimal environment for processes attached to the test display."""
    env = {
        'DISPLAY': display,
        'PATH': os.environ.get('PATH', os.defpath),
    }
    if extra:
        env.update(extra)
    return env


def run_isolated(argv: Sequence[str], display: str, timeout: Optional[float] = None,
                 extra_env: Optional[Dict[str, str]] = None) -> int:
    """Run *argv* in a child process that sees only the test display.

    The child opens its own X connection, so no events from harness setup
    are buffered on it. On timeout the child is killed and
    subprocess.TimeoutExpired propagates.
    """
    result = subprocess.run(
        list(argv),
        env=isolated_env(display, extra_env),
        timeout=timeout,
        check=False,
    )
    return result.returncode


class ArtifactManager:
    """Manage test artifact directories."""

    def __init__(self, base: Path):
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.base_dir = Path(base) / timestamp
        self.logs_dir = self.base_dir / "logs"

    def create(self):
        """Create artifact directory structure."""
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def log_path(self, role: str) -> Path:
        return self.logs_dir / f"{role}.log"


class XServer:
    """Manage a virtual X server."""

    def __init__(self, config: HarnessConfig, artifacts: ArtifactManager,
                 tracker: ProcessTracker):
        self.config = config
        self.artifacts = artifacts
        self.tracker = tracker
        self.display: Optional[int] = config.display
        self.proc: Optional[subprocess.Popen] = None

    @property
    def display_name(self) -> str:
        if self.display is None:
            raise RuntimeError("X server not started")
        return f":{self.display}"

    def start(self) -> bool:
        """Start the X server and wait until it accepts connections."""
        if self.display is not None and not check_display_available(self.display):
            print(f"ERROR: Display :{self.display} already in use", file=sys.stderr)
            return False

        cmd = [self.config.xserver]
        read_fd = write_fd = None
        if self.display is None:
            read_fd, write_fd = os.pipe()
            cmd += ['-displayfd', str(write_fd)]
        else:
            cmd.append(f':{self.display}')
        cmd += ['-screen', '0', self.config.geometry, '-nolisten', 'tcp']

        print(f"Starting {os.path.basename(self.config.xserver)}...")
        with open(self.artifacts.log_path("xserver"), 'w') as log_file:
            self.proc = subprocess.Popen(
                cmd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                preexec_fn=os.setpgrp,
                pass_fds=(write_fd,) if write_fd is not None else (),
            )
        self.tracker.register("xserver", self.proc)

        if read_fd is not None:
            os.close(write_fd)
            try:
                self.display = read_display_fd(read_fd, self.config.startup_timeout)
            finally:
                os.close(read_fd)
            if self.display is None:
                print("ERROR: X server did not report a display number", file=sys.stderr)
                return False
        elif not wait_for_x_display(self.display, self.config.startup_timeout, self.proc):
            print(f"ERROR: X display :{self.display} did not start", file=sys.stderr)
            return False

        print(f"✓ X server {self.display_name} ready")
        return True

    def is_alive(self) -> bool:
        return self.proc is not None and self.proc.poll() is None

    def stop(self):
        if self.proc:
            self.tracker.cleanup("xserver")


class WindowManager:
    """Manage the WM under test, attached to an XServer."""

    def __init__(self, config: HarnessConfig, server: XServer,
                 artifacts: ArtifactManager, tracker: ProcessTracker):
        self.config = config
        self.server = server
        self.artifacts = artifacts
        self.tracker = tracker
        self.proc: Optional[subprocess.Popen] = None
        self.socket_path: Optional[str] = None

    def command(self) -> List[str]:
        return [
            self.config.wm,
            '-c', str(Path(self.config.wm_config).resolve()),
            '-d', 'all',
            f'--shmlog-size={self.config.wm_shmlog_size}',
        ]

    def start(self) -> bool:
        """Start the WM and wait until its IPC socket is advertised."""
        print(f"Starting window manager ({self.config.wm}) on {self.server.display_name}...")
        with open(self.artifacts.log_path("wm"), 'w') as log_file:
            self.proc = subprocess.Popen(
                self.command(),
                stdout=log_file,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                preexec_fn=os.setpgrp,
                env=isolated_env(self.server.display_name),
            )
        self.tracker.register("wm", self.proc)

        self.socket_path = self.wait_for_socket(self.config.startup_timeout)
        if self.socket_path is None:
            print("ERROR: Window manager failed to start", file=sys.stderr)
            return False
        print(f"✓ Window manager ready (ipc: {self.socket_path})")
        return True

    def wait_for_socket(self, timeout: float) -> Optional[str]:
        """Poll the root window until the WM publishes a live IPC socket."""
        deadline = time.monotonic() + timeout
        try:
            session = DisplaySession.open(self.server.display_name)
        except TransportError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return None
        with session:
            while time.monotonic() < deadline:
                if not self.is_alive():
                    return None
                path = session.root_property_text(SOCKET_PATH_ATOM_NAME)
                if path and os.path.exists(path):
                    return path
                time.sleep(0.1)
        return None

    def is_alive(self) -> bool:
        return self.proc is not None and self.proc.poll() is None

    def watch(self, cancel: threading.Event, interval: float = 0.1) -> threading.Thread:
        """Set *cancel* as soon as the WM process exits."""
        def _watch():
            while not cancel.is_set():
                if not self.is_alive():
                    cancel.set()
                    return
                time.sleep(interval)

        thread = threading.Thread(target=_watch, name="wm-watchdog", daemon=True)
        thread.start()
        return thread

    def kill(self):
        """Kill the WM abruptly (no graceful shutdown)."""
        if self.is_alive():
            pgid = self.tracker.pgids.get("wm")
            try:
                if pgid:
                    os.killpg(pgid, signal.SIGKILL)
                else:
                    self.proc.kill()
            except ProcessLookupError:
                pass
            self.proc.wait(timeout=5.0)

    def stop(self):
        if self.proc:
            self.tracker.cleanup("wm")


class Harness:
    """X server + WM for one scenario; everything is torn down on exit.

    `cancel` is set on teardown and when the WM dies, so a listener waiting
    with it never outlives the processes it depends on.
    """

    def __init__(self, config: Optional[HarnessConfig] = None, verbose: bool = False):
        self.config = config if config is not None else HarnessConfig.from_env()
        self.verbose = verbose
        self.tracker = ProcessTracker()
        self.artifacts = ArtifactManager(self.config.artifacts_dir)
        self.server = XServer(self.config, self.artifacts, self.tracker)
        self.wm = WindowManager(self.config, self.server, self.artifacts, self.tracker)
        self.cancel = threading.Event()

    @property
    def display(self) -> str:
        return self.server.display_name

    def start(self) -> "Harness":
        preflight_check(self.config, verbose=self.verbose)
        self.artifacts.create()
        if self.verbose:
            print(f"Artifacts will be saved to: {self.artifacts.base_dir}")
        try:
            if not self.server.start():
                raise PreflightError(f"X server failed, see {self.artifacts.log_path('xserver')}")
            if not self.wm.start():
                raise PreflightError(f"Window manager failed, see {self.artifacts.log_path('wm')}")
        except BaseException:
            self.stop()
            raise
        self.wm.watch(self.cancel)
        return self

    def stop(self):
        self.cancel.set()
        self.tracker.cleanup_all()

    def __enter__(self) -> "Harness":
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.stop()
