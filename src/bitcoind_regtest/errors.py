"""Exceptions raised by the harness.

Insufficient funds is never an error: the generators return ``None`` and the
preload pool simply waits for the next trigger.
"""


class BitcoindError(Exception):
    """Base class for harness errors."""


class RpcError(BitcoindError):
    """The node answered a JSON-RPC call with an error object."""

    def __init__(self, code: int, message: str, method: str | None = None):
        self.code = code
        self.message = message
        self.method = method
        super().__init__(f"{method or 'rpc'} failed ({code}): {message}")


class BroadcastMismatchError(BitcoindError):
    """The node reported a different txid than the one computed locally."""

    def __init__(self, expected: str, actual):
        self.expected = expected
        self.actual = actual
        super().__init__(f"broadcast returned {actual!r}, expected {expected}")


class LifecycleError(BitcoindError):
    """Operation is not valid in the instance's current state."""


class NodeExitedError(LifecycleError):
    def __init__(self, code: int | None, signal: str | None):
        self.code = code
        self.signal = signal
        super().__init__(f"Exit with code = {code} on signal = {signal}")


class ProtocolError(BitcoindError):
    """Malformed P2P message."""
