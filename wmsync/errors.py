"""
Exception hierarchy for the synchronization barrier.

Every failure terminates the current scenario; nothing here is retried.
"""


class SyncError(Exception):
    """Base class for all barrier failures."""
    pass


class TransportError(SyncError):
    """Control channel or X connection unreachable, refused or closed."""
    pass


class MalformedReplyError(TransportError):
    """The WM answered with something that is not a valid SYNC reply."""
    pass


class SyncRejectedError(SyncError):
    """The WM refused the request (success=false)."""

    def __init__(self, response, request=None):
        self.response = response
        self.request = request
        msg = "WM rejected sync request"
        if request is not None:
            msg += f" (window=0x{request.window:x}, rnd=0x{request.token:08x})"
        if response.error:
            msg += f": {response.error}"
        super().__init__(msg)


class PayloadMismatchError(SyncError):
    """A notification reached the barrier window carrying the wrong payload.

    This means two barriers on the same window interleaved, or the WM sent
    a corrupt notification.
    """

    def __init__(self, expected, notification):
        self.expected = expected
        self.notification = notification
        got = ", ".join(f"0x{word:x}" for word in notification.data[:2])
        super().__init__(
            f"sync ClientMessage on window 0x{expected.window:x}: "
            f"got [{got}], want [0x{expected.window:x}, 0x{expected.token:x}]"
        )


class SyncTimeoutError(SyncError):
    """The request was accepted but no completion arrived in time."""

    def __init__(self, expected, timeout: float):
        self.expected = expected
        self.timeout = timeout
        super().__init__(
            f"no sync notification for window 0x{expected.window:x} "
            f"(rnd=0x{expected.token:08x}) within {timeout:.1f}s"
        )


class SyncCancelledError(SyncError):
    """The wait was cancelled before the completion arrived."""
    pass


class PreflightError(Exception):
    """Raised when preflight checks fail."""
    pass
