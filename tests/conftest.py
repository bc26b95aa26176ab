import itertools
import logging

import pytest

from fakes import FakeBitcoind, FakeNetwork

# Well away from the default 20000-30000 range so a fork never collides
_ports = itertools.count(40000)


@pytest.fixture(autouse=True)
def _propagate_logs():
    # setup_logging() stops propagation; caplog listens on the root logger
    logging.getLogger("bitcoind_regtest").propagate = True


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def node_cls(network):
    return type("NetworkFakeBitcoind", (FakeBitcoind,), {"network": network})


@pytest.fixture
def fast_options():
    """Small pools, no background generation, nothing scheduled within a test's lifetime."""
    return {
        "wallet": {
            "preloads_pool_size": 3,
            "keys_pool_size": 6,
            "new_key_timeout": 3600.0,
            "inputs_count": 2,
            "outputs_count": 3,
        },
        "generate": {
            "txs": {"background": False, "timeout": 3600.0, "min_in_block": 0},
            "blocks": {"background": False, "timeout": 3600.0},
        },
        "bitcoind": {
            "path": "bitcoind-not-needed",
            "port": lambda: next(_ports),
            "rpcport": lambda: next(_ports),
        },
    }
