"""
Sync client: send one SYNC request on the WM's i3 IPC socket.

The reply only says whether the WM accepted the request. Completion is
signalled separately on the X connection (see listener.py).
"""

import os
import socket
import subprocess
from typing import Optional

from .errors import MalformedReplyError, TransportError
from .protocol import (
    IPC_HEADER_SIZE,
    SOCKET_PATH_ATOM_NAME,
    SYNC_MESSAGE_TYPE,
    SyncRequest,
    SyncResponse,
    decode_payload,
    unpack_header,
)


def find_socket_path(session=None, wm_binary: str = "i3") -> str:
    """Locate the WM's IPC socket.

    Tried in order: $I3SOCK, the I3_SOCKET_PATH property on the root window
    of *session*, and `<wm_binary> --get-socketpath`.
    """
    path = os.environ.get("I3SOCK")
    if path:
        return path

    if session is not None:
        path = session.root_property_text(SOCKET_PATH_ATOM_NAME)
        if path:
            return path

    try:
        result = subprocess.run(
            [wm_binary, "--get-socketpath"],
            capture_output=True,
            text=True,
            timeout=5.0,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise TransportError(f"cannot locate WM IPC socket: {exc}") from exc
    path = result.stdout.strip()
    if result.returncode != 0 or not path:
        raise TransportError("cannot locate WM IPC socket: is the WM running?")
    return path


def _recv_exactly(sock: socket.socket, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = sock.recv(remaining)
        if not chunk:
            raise TransportError(
                f"WM closed the IPC connection after {size - remaining} of {size} bytes"
            )
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


class SyncClient:
    """Issue SYNC requests to the WM. One IPC connection per request."""

    def __init__(self, socket_path: Optional[str] = None, timeout: float = 5.0,
                 session=None):
        self._socket_path = socket_path
        self._session = session
        self.timeout = timeout

    @property
    def socket_path(self) -> str:
        if self._socket_path is None:
            self._socket_path = find_socket_path(self._session)
        return self._socket_path

    def send(self, request: SyncRequest) -> SyncResponse:
        """Send *request* and return the WM's acknowledgement.

        A refusal is returned as SyncResponse(success=False); it is up to the
        caller to end the scenario. Transport problems raise TransportError.
        """
        path = self.socket_path
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
                sock.settimeout(self.timeout)
                sock.connect(path)
                sock.sendall(request.encode())
                length, reply_type = unpack_header(_recv_exactly(sock, IPC_HEADER_SIZE))
                if reply_type != SYNC_MESSAGE_TYPE:
                    raise MalformedReplyError(
                        f"unexpected i3 IPC reply type {reply_type}, want {SYNC_MESSAGE_TYPE}"
                    )
                body = _recv_exactly(sock, length)
        except socket.timeout as exc:
            raise TransportError(f"no reply on WM IPC socket {path} within {self.timeout}s") from exc
        except OSError as exc:
            raise TransportError(f"WM IPC socket {path} unreachable: {exc}") from exc
        return SyncResponse.from_payload(decode_payload(body))
