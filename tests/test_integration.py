"""Scenarios against a real bitcoind binary.

Set ``BITCOIND_PATH`` to a bitcoind built with legacy wallet support to run
them; otherwise the whole module is skipped.
"""
import asyncio
import os

import pytest

from bitcoind_regtest import Bitcoind, NodeState
from bitcoind_regtest.constants import PRELOAD_AMOUNT, EventKind

BITCOIND_PATH = os.environ.get("BITCOIND_PATH")

pytestmark = [
    pytest.mark.asyncio,
    pytest.mark.skipif(not BITCOIND_PATH, reason="BITCOIND_PATH not set"),
]


def _options(**generate):
    return {
        "bitcoind": {"path": BITCOIND_PATH},
        "wallet": {"preloads_pool_size": 3, "keys_pool_size": 10},
        "generate": {
            "txs": {"background": False, "min_in_block": 0, **generate.get("txs", {})},
            "blocks": {"background": False, **generate.get("blocks", {})},
        },
    }


async def _collect(stream, count, timeout=30):
    items = []
    async with asyncio.timeout(timeout):
        while len(items) < count:
            items.append(await stream.get())
    return items


async def test_start_and_stop():
    node = await Bitcoind(_options()).start()
    assert node.state == NodeState.READY
    await node.terminate()
    assert node.state == NodeState.TERMINATED


async def test_rpc_info():
    async with Bitcoind(_options()) as node:
        info = await node.rpc.call("getblockchaininfo")
        assert info["chain"] == "regtest"


async def test_blocks_and_block_events():
    async with Bitcoind(_options()) as node:
        with node.events.stream(EventKind.BLOCK) as blocks:
            hashes = await node.generate_blocks(10)
            assert await _collect(blocks, 10) == hashes


async def test_tx_events():
    async with Bitcoind(_options()) as node:
        await node.generate_blocks(102)
        with node.events.stream(EventKind.TX) as txs:
            txids = [t for t in await node.generate_txs(5) if t]
            assert txids
            seen = set()
            async with asyncio.timeout(30):
                while not set(txids) <= seen:
                    seen.add(await txs.get())


async def test_preload():
    async with Bitcoind(_options()) as node:
        await node.generate_blocks(101)
        preload = await asyncio.wait_for(node.get_preload(), 60)
        assert preload.value == PRELOAD_AMOUNT
        out = await node.rpc.call("gettxout", preload.txid, preload.out_index)
        assert out["scriptPubKey"]["hex"] == preload.script.hex()


async def test_background_blocks_follow_options():
    async with Bitcoind(_options(blocks={"timeout": 0.5})) as node:
        await asyncio.sleep(1.5)
        assert await node.rpc.call("getblockcount") == 0
        node.set_option("generate.blocks.background", True)
        await asyncio.sleep(2)
        assert await node.rpc.call("getblockcount") > 0


async def test_background_txs_fill_mempool():
    async with Bitcoind(_options(txs={"background": True, "timeout": 0.2})) as node:
        await node.generate_blocks(101)
        await asyncio.sleep(3)
        assert (await node.rpc.call("getmempoolinfo"))["size"] > 0


async def test_fork():
    async with Bitcoind(_options()) as node:
        await node.generate_blocks(5)
        fork = await node.fork()
        try:
            assert await fork.rpc.call("getbestblockhash") == await node.rpc.call("getbestblockhash")
            assert fork.port != node.port
        finally:
            await fork.terminate()


async def test_simple_reorg():
    async with Bitcoind(_options()) as node:
        await node.generate_blocks(5)
        fork = await node.fork(connected=False)
        try:
            [abandoned] = await node.generate_blocks(1)
            await fork.generate_blocks(3)
            tip = await fork.rpc.call("getbestblockhash")

            await node.connect(fork)
            async with asyncio.timeout(30):
                while await node.rpc.call("getbestblockhash") != tip:
                    await asyncio.sleep(0.1)
            header = await node.rpc.call("getblockheader", abandoned)
            assert header["confirmations"] == -1
        finally:
            await fork.terminate()
