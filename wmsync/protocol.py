"""
Data model and wire format for the WM synchronization barrier.

A barrier is one SYNC request on the i3 IPC control channel:

    "i3-ipc" <payload length: u32> <message type: u32> <JSON payload>

with payload {"rnd": <token>, "window": <window id>}. The WM replies with
{"success": true|false} once it has *accepted* the request. Completion is
signalled later by a ClientMessage sent to the window, of type I3_SYNC and
format 32, whose first two data words are [window, rnd].
"""

import json
import random
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set, Tuple

from .errors import MalformedReplyError

IPC_MAGIC = b"i3-ipc"
# Length and type are sent in the host's native byte order.
IPC_HEADER = struct.Struct("=II")
IPC_HEADER_SIZE = len(IPC_MAGIC) + IPC_HEADER.size

SYNC_MESSAGE_TYPE = 11

SYNC_ATOM_NAME = "I3_SYNC"
SOCKET_PATH_ATOM_NAME = "I3_SOCKET_PATH"

TOKEN_MAX = 0xFFFFFFFF


def _check_u32(name: str, value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an int, got {type(value).__name__}")
    if not 0 <= value <= TOKEN_MAX:
        raise ValueError(f"{name} out of 32-bit range: {value}")
    return value


def new_token(rng: Optional[random.Random] = None) -> int:
    """Draw a fresh 32-bit token.

    Tokens only need to avoid accidental collision within one run, so the
    non-cryptographic generator is enough.
    """
    source = rng if rng is not None else random
    return source.getrandbits(32)


class TokenSource:
    """Hands out tokens that never repeat within the lifetime of the source.

    A token that already resolved a barrier therefore can never be mistaken
    for the token of a later request.

    Every issued token is remembered (4 bytes of payload plus set overhead
    each), so memory grows with the number of barriers. Scope a source to
    one test run or one session rather than keeping it for the life of a
    long-running process.
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng if rng is not None else random.Random()
        self._issued: Set[int] = set()

    def next(self) -> int:
        while True:
            token = new_token(self._rng)
            if token not in self._issued:
                self._issued.add(token)
                return token

    def __contains__(self, token: int) -> bool:
        return token in self._issued

    def __len__(self) -> int:
        return len(self._issued)


@dataclass(frozen=True)
class SyncRequest:
    """One barrier request. Immutable once created."""
    token: int
    window: int

    def __post_init__(self):
        _check_u32("token", self.token)
        _check_u32("window", self.window)

    def to_payload(self) -> Dict[str, int]:
        return {"rnd": self.token, "window": self.window}

    def encode(self) -> bytes:
        return pack_message(SYNC_MESSAGE_TYPE, self.to_payload())

    @property
    def expected_data(self) -> Tuple[int, int]:
        """Data words the completion notification must carry, in order."""
        return (self.window, self.token)


@dataclass(frozen=True)
class SyncResponse:
    """The WM's acknowledgement that it accepted (or refused) a request."""
    success: bool
    error: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "SyncResponse":
        if not isinstance(payload, dict):
            raise MalformedReplyError(f"sync reply is not an object: {payload!r}")
        success = payload.get("success")
        if not isinstance(success, bool):
            raise MalformedReplyError(f"sync reply has no boolean 'success': {payload!r}")
        error = payload.get("error")
        return cls(success=success, error=str(error) if error is not None else None)


@dataclass(frozen=True)
class CompletionNotification:
    """A ClientMessage observed on the barrier session's event stream."""
    window: int
    data: Tuple[int, ...] = field(default_factory=tuple)
    message_type: Optional[int] = None

    def matches(self, request: SyncRequest) -> bool:
        return tuple(self.data[:2]) == request.expected_data


def pack_message(message_type: int, payload: Any) -> bytes:
    """Frame a JSON payload as one i3 IPC message."""
    body = json.dumps(payload).encode("utf-8")
    return IPC_MAGIC + IPC_HEADER.pack(len(body), message_type) + body


def unpack_header(header: bytes) -> Tuple[int, int]:
    """Return (payload length, message type) from a raw reply header."""
    if len(header) != IPC_HEADER_SIZE:
        raise MalformedReplyError(
            f"short i3 IPC header: {len(header)} of {IPC_HEADER_SIZE} bytes"
        )
    if not header.startswith(IPC_MAGIC):
        raise MalformedReplyError(f"bad i3 IPC magic: {header[:len(IPC_MAGIC)]!r}")
    return IPC_HEADER.unpack(header[len(IPC_MAGIC):])


def decode_payload(body: bytes) -> Any:
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedReplyError(f"invalid JSON in i3 IPC reply: {exc}") from exc
