from bitcoind_regtest.bitcoind import Bitcoind
from bitcoind_regtest.constants import EventKind, NodeState
from bitcoind_regtest.errors import (
    BitcoindError,
    BroadcastMismatchError,
    LifecycleError,
    NodeExitedError,
    ProtocolError,
    RpcError,
)
from bitcoind_regtest.options import Options
from bitcoind_regtest.wallet import Preload

__all__ = [
    "Bitcoind",
    "BitcoindError",
    "BroadcastMismatchError",
    "EventKind",
    "LifecycleError",
    "NodeExitedError",
    "NodeState",
    "Options",
    "Preload",
    "ProtocolError",
    "RpcError",
]
