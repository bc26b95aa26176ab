from typing import Final
from enum import StrEnum

COIN: Final = 100_000_000

# Every preload is a single output of exactly this many satoshi
PRELOAD_AMOUNT: Final = 10 * COIN
# Flat fee of a generated transaction
TX_FEE: Final = 10_000
# Generated transactions below this (after fee) are not worth sending
DUST_FLOOR: Final = 10_000_000
# Outputs below this are rejected by the node's relay policy
DUST_LIMIT: Final = 546
FEE_PER_KB: Final = 10_000

PRELOAD_POLL_INTERVAL = 0.05
FORK_POLL_INTERVAL = 0.5
DISCONNECT_POLL_INTERVAL = 0.1
STARTUP_POLL_INTERVAL = 0.1
STARTUP_TIMEOUT = 60.0
TERMINATE_TIMEOUT = 30.0
RPC_TIMEOUT = 30.0
PEER_HANDSHAKE_TIMEOUT = 10.0
# Pause after a background iteration could not even read its interval
LOOP_ERROR_BACKOFF = 0.5

# RPC error codes returned by bitcoind
RPC_IN_WARMUP: Final = -28
RPC_WALLET_INVALID_LABEL_NAME: Final = -11
RPC_WALLET_NOT_FOUND: Final = -18

EVENTS_MAXLEN = 5000


class NodeState(StrEnum):
    CREATED     = "CREATED"
    STARTING    = "STARTING"
    READY       = "READY"
    TERMINATING = "TERMINATING"
    TERMINATED  = "TERMINATED"


class EventKind(StrEnum):
    BLOCK = "block"
    TX    = "tx"
    ERROR = "error"
    DATA  = "data"
    EXIT  = "exit"
    READY = "ready"


__all__ = [
    "COIN",
    "DUST_FLOOR",
    "DUST_LIMIT",
    "FEE_PER_KB",
    "PRELOAD_AMOUNT",
    "TX_FEE",

    ######
    "EventKind",
    "NodeState",
]
