"""Handle for one regtest bitcoind: process, RPC, inventory peer and wallet.

    async with Bitcoind({"generate": {"blocks": {"background": False}}}) as node:
        await node.generate_blocks(101)
        preload = await node.get_preload()

Instances move through ``NodeState``: operations on a node that was never
started (or is gone) raise ``LifecycleError``; operations issued while it is
starting wait for it to become ready.
"""
import asyncio
import itertools
import logging
import tempfile
from collections.abc import Coroutine, Mapping
from typing import Any

import httpx

from bitcoind_regtest.constants import (
    DISCONNECT_POLL_INTERVAL,
    FORK_POLL_INTERVAL,
    RPC_IN_WARMUP,
    STARTUP_POLL_INTERVAL,
    STARTUP_TIMEOUT,
    EventKind,
    NodeState,
)
from bitcoind_regtest.errors import LifecycleError, NodeExitedError, RpcError
from bitcoind_regtest.events import EventHub
from bitcoind_regtest.lock import MutatingLock, serialized
from bitcoind_regtest.options import Options, Supplier
from bitcoind_regtest.peer import Inventory, InventoryPeer
from bitcoind_regtest.process import NodeProcess, exit_status
from bitcoind_regtest.rpc import RpcClient
from bitcoind_regtest.scheduler import background_loop
from bitcoind_regtest.wallet import Preload, Wallet

log = logging.getLogger("bitcoind_regtest.bitcoind")

LOCALHOST = "127.0.0.1"
BACKGROUND_OPTIONS = ("generate.txs.background", "generate.blocks.background")
# Options a fork must not share with its source
FRESH_OPTIONS = ("bitcoind.datadir", "bitcoind.port", "bitcoind.rpcport")

_ids = itertools.count(1)


def _port_of(addr: str | None) -> int | None:
    if not addr or ":" not in addr:
        return None
    try:
        return int(addr.rsplit(":", 1)[1])
    except ValueError:
        return None


class Bitcoind:
    def __init__(self, options: Options | Mapping | None = None, *, name: str | None = None):
        self.options = options if isinstance(options, Options) else Options(options)
        self.name = name or f"bitcoind-{next(_ids)}"
        self.events = EventHub(self.name)
        self.lock = MutatingLock(f"{self.name}-rpc")
        self.state = NodeState.CREATED

        self.rpc: RpcClient | None = None
        self.process: NodeProcess | None = None
        self.peer: InventoryPeer | None = None
        self.wallet: Wallet | None = None
        self.port: int | None = None
        self.rpcport: int | None = None
        self.datadir: str | None = None

        self._ready = asyncio.Event()
        self._startup_error: BaseException | None = None
        self._stop = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()
        self._tmpdir: tempfile.TemporaryDirectory | None = None

    def __repr__(self) -> str:
        return f"<Bitcoind {self.name} {self.state} port={self.port} rpcport={self.rpcport}>"

    async def __aenter__(self) -> "Bitcoind":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self.state not in (NodeState.TERMINATING, NodeState.TERMINATED):
            await self.terminate()

    # ---------------- options ----------------

    def get_option(self, path: str) -> Supplier:
        return self.options.get(path)

    def set_option(self, path: str, value: Any) -> None:
        self.options.set(path, value)

    # ---------------- lifecycle ----------------

    async def start(self) -> "Bitcoind":
        if self.state != NodeState.CREATED:
            raise LifecycleError(f"{self.name} cannot be started from {self.state}")
        self.state = NodeState.STARTING
        try:
            await self._start()
        except BaseException as exc:
            log.error("[%s] startup failed: %r", self.name, exc)
            self._startup_error = exc
            await self._release()
            self.state = NodeState.TERMINATED
            self._ready.set()
            raise
        self.state = NodeState.READY
        self._ready.set()
        log.info("[%s] ready (port=%s rpcport=%s datadir=%s)", self.name, self.port, self.rpcport, self.datadir)
        self.events.emit(EventKind.READY)
        self._start_background()
        return self

    async def _start(self) -> None:
        opts = self.options
        self.port = opts.value("bitcoind.port")
        self.rpcport = opts.value("bitcoind.rpcport")
        rpcuser = opts.value("bitcoind.rpcuser")
        rpcpassword = opts.value("bitcoind.rpcpassword")
        self.datadir = opts.value("bitcoind.datadir")
        if self.datadir is None:
            self._tmpdir = tempfile.TemporaryDirectory(prefix="bitcoind-regtest-", ignore_cleanup_errors=True)
            self.datadir = self._tmpdir.name

        args = [
            "-regtest",
            "-server",
            "-txindex=1",
            "-printtoconsole",
            f"-datadir={self.datadir}",
            f"-port={self.port}",
            f"-rpcport={self.rpcport}",
            f"-rpcuser={rpcuser}",
            f"-rpcpassword={rpcpassword}",
            "-listen=1",
            "-dnsseed=0",
            "-discover=0",
            "-listenonion=0",
            *opts.value("bitcoind.args"),
        ]
        self.process = await self._launch_process(opts.value("bitcoind.path"), args)
        self.rpc = self._open_rpc(rpcuser, rpcpassword)
        await self._wait_for_rpc()

        self.wallet = Wallet(self.rpc, self.lock, self.options, self.events, name=f"{self.name}-wallet")
        await self.wallet.ensure_loaded()
        await self.wallet.init_key_pool()
        self.peer = await self._connect_peer()

    async def _launch_process(self, path: str, args: list[str]) -> NodeProcess:
        process = NodeProcess(
            path, args, cwd=self.datadir, on_output=self._on_output, on_exit=self._on_exit, name=self.name
        )
        await process.start()
        return process

    def _open_rpc(self, user: str, password: str) -> RpcClient:
        return RpcClient(LOCALHOST, self.rpcport, user, password)

    async def _connect_peer(self) -> InventoryPeer:
        peer = InventoryPeer(LOCALHOST, self.port, self._on_inventory, on_close=self._on_peer_close, name=f"{self.name}-peer")
        await peer.connect()
        return peer

    async def _wait_for_rpc(self) -> None:
        async with asyncio.timeout(STARTUP_TIMEOUT):
            while True:
                if not self.process.running:
                    raise NodeExitedError(*await self.process.wait())
                try:
                    await self.rpc.call("getblockchaininfo")
                    return
                except RpcError as e:
                    if e.code != RPC_IN_WARMUP:
                        raise
                except httpx.TransportError:
                    pass
                await asyncio.sleep(STARTUP_POLL_INTERVAL)

    def _start_background(self) -> None:
        self._spawn(
            background_loop(
                f"{self.name}-txs",
                interval=lambda: self.get_option("generate.txs.timeout")(),
                enabled=lambda: self.get_option("generate.txs.background")(),
                unit=lambda: self.generate_txs(1),
                stop=self._stop,
                on_error=self._report,
            ),
            "txs",
        )
        self._spawn(
            background_loop(
                f"{self.name}-blocks",
                interval=lambda: self.get_option("generate.blocks.timeout")(),
                enabled=lambda: self.get_option("generate.blocks.background")(),
                unit=lambda: self.generate_blocks(1),
                stop=self._stop,
                on_error=self._report,
            ),
            "blocks",
        )
        self.wallet.start()

    def _spawn(self, coro: Coroutine, label: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{self.name}-{label}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _ensure_ready(self) -> None:
        if self.state == NodeState.CREATED:
            raise LifecycleError(f"{self.name} has not been started")
        if self.state == NodeState.STARTING:
            await self._ready.wait()
            if self._startup_error is not None:
                raise LifecycleError(f"{self.name} failed to start") from self._startup_error
        if self.state != NodeState.READY:
            raise LifecycleError(f"{self.name} is {self.state}")
        if self.process is not None and not self.process.running:
            raise NodeExitedError(*exit_status(self.process.returncode))

    @serialized
    async def terminate(self) -> None:
        if self.state == NodeState.CREATED:
            raise LifecycleError(f"{self.name} has not been started")
        if self.state == NodeState.STARTING:
            await self._ready.wait()
        if self.state != NodeState.READY:
            raise LifecycleError(f"{self.name} already terminated")

        log.info("[%s] terminating", self.name)
        self.state = NodeState.TERMINATING
        code, sig = await self._release()
        self.state = NodeState.TERMINATED
        if code != 0 or sig is not None:
            raise NodeExitedError(code, sig)

    async def _release(self) -> tuple[int | None, str | None]:
        """Stop background work, drop subscribers, stop the process and free resources."""
        self._stop.set()
        if self.wallet is not None:
            await self.wallet.close()
        tasks = [t for t in self._tasks if t is not asyncio.current_task()]
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self.peer is not None:
            await self.peer.close()
        self.events.clear()

        status: tuple[int | None, str | None] = (None, None)
        try:
            if self.process is not None:
                status = await self.process.terminate()
        finally:
            if self.rpc is not None:
                await self.rpc.aclose()
            if self._tmpdir is not None:
                self._tmpdir.cleanup()
                self._tmpdir = None
        return status

    # ---------------- event plumbing ----------------

    def _report(self, exc: Exception) -> None:
        self.events.emit(EventKind.ERROR, exc)

    def _on_output(self, line: str) -> None:
        self.events.emit(EventKind.DATA, line)

    def _on_exit(self, code: int | None, sig: str | None) -> None:
        self.events.emit(EventKind.EXIT, code, sig)
        if self.state == NodeState.READY:
            log.error("[%s] exited unexpectedly (code=%s signal=%s)", self.name, code, sig)
            self._report(NodeExitedError(code, sig))
            # stop the generators and release preload waiters
            self._stop.set()
            if self.wallet is not None:
                self._spawn(self.wallet.close(), "wallet-close")

    def _on_inventory(self, item: Inventory) -> None:
        if item.kind == "BLOCK":
            self.events.emit(EventKind.BLOCK, item.hash)
        elif item.kind == "TX":
            self.events.emit(EventKind.TX, item.hash)

    def _on_peer_close(self, error: Exception | None) -> None:
        if self.state == NodeState.READY:
            self._report(error or ConnectionError(f"{self.name} closed the inventory connection"))

    # ---------------- generation ----------------

    async def get_preload(self) -> Preload:
        await self._ensure_ready()
        return await self.wallet.get_preload()

    async def generate_txs(self, count: int) -> list[str | None]:
        await self._ensure_ready()
        return list(await asyncio.gather(*(self.wallet.generate_tx() for _ in range(count))))

    @serialized
    async def generate_blocks(self, count: int = 1) -> list[str]:
        """Mine ``count`` blocks one at a time, topping up the mempool to ``min_in_block`` first."""
        await self._ensure_ready()
        hashes = []
        for _ in range(count):
            min_in_block = self.get_option("generate.txs.min_in_block")()
            mempool = await self.rpc.call("getmempoolinfo")
            if (deficit := min_in_block - mempool["size"]) > 0:
                await self.generate_txs(deficit)
            async with self.lock:
                [address] = await self.wallet.sample_addresses(1)
                [block_hash] = await self.rpc.call("generatetoaddress", 1, address)
            hashes.append(block_hash)
        return hashes

    # ---------------- topology ----------------

    async def connect(self, other: "Bitcoind") -> None:
        await self._ensure_ready()
        await other._ensure_ready()
        await self.rpc.call("addnode", f"{LOCALHOST}:{other.port}", "onetry")

    async def _link_peer_ids(self, other: "Bitcoind") -> tuple[list[int], list[int]]:
        mine, theirs = await asyncio.gather(self.rpc.call("getpeerinfo"), other.rpc.call("getpeerinfo"))
        # the dialling side sees the listener's port; the listening side sees the dialler's bind address
        my_binds = {p.get("addrbind") for p in mine if _port_of(p.get("addr")) == other.port}
        their_binds = {p.get("addrbind") for p in theirs if _port_of(p.get("addr")) == self.port}
        my_ids = [p["id"] for p in mine if _port_of(p.get("addr")) == other.port or p.get("addr") in their_binds]
        their_ids = [p["id"] for p in theirs if _port_of(p.get("addr")) == self.port or p.get("addr") in my_binds]
        return my_ids, their_ids

    async def disconnect(self, other: "Bitcoind") -> None:
        await self._ensure_ready()
        await other._ensure_ready()
        my_ids, their_ids = await self._link_peer_ids(other)
        for node, ids in ((self, my_ids), (other, their_ids)):
            for peer_id in ids:
                try:
                    await node.rpc.call("disconnectnode", "", peer_id)
                except RpcError as e:
                    # already gone because the other side hung up first
                    log.debug("[%s] disconnectnode %s: %s", node.name, peer_id, e)
        while any(await self._link_peer_ids(other)):
            await asyncio.sleep(DISCONNECT_POLL_INTERVAL)

    async def _wait_same_tip(self, other: "Bitcoind") -> str:
        while True:
            mine, theirs = await asyncio.gather(
                self.rpc.call("getbestblockhash"), other.rpc.call("getbestblockhash")
            )
            if mine == theirs:
                return mine
            await asyncio.sleep(FORK_POLL_INTERVAL)

    async def fork(self, connected: bool = True) -> "Bitcoind":
        """Start a new node that shares this node's chain.

        The fork gets its own datadir and ports and starts with background
        generation off; once it has caught up it takes this node's background
        settings. The caller owns the returned node and must terminate it.
        """
        await self._ensure_ready()
        options = self.options.clone()
        defaults = Options()
        for path in FRESH_OPTIONS:
            options.set(path, defaults.get(path))
        for path in BACKGROUND_OPTIONS:
            options.set(path, False)

        fork = type(self)(options, name=f"{self.name}-fork")
        try:
            await fork.start()
            await fork.connect(self)
            if await self.rpc.call("getblockcount") > 0:
                await fork.generate_blocks(1)
                await self._wait_same_tip(fork)
            for path in BACKGROUND_OPTIONS:
                fork.set_option(path, self.get_option(path))
            if not connected:
                await fork.disconnect(self)
        except BaseException:
            if fork.state == NodeState.READY:
                try:
                    await fork.terminate()
                except Exception:
                    log.exception("[%s] failed to terminate %s after a failed fork", self.name, fork.name)
            raise
        log.info("[%s] forked %s (connected=%s)", self.name, fork.name, connected)
        return fork
