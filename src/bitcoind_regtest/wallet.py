"""Wallet-side state of a node: address pool, preload pool and transaction generator.

Every operation that spends the node's UTXOs runs under the node's
``MutatingLock`` so two of them never select the same output.
"""
import asyncio
import logging
import random
from collections import deque
from collections.abc import Coroutine
from dataclasses import dataclass

from bitcoind_regtest import keys, txn_factory
from bitcoind_regtest.constants import (
    DUST_FLOOR,
    DUST_LIMIT,
    PRELOAD_AMOUNT,
    PRELOAD_POLL_INTERVAL,
    RPC_WALLET_INVALID_LABEL_NAME,
    TX_FEE,
    EventKind,
)
from bitcoind_regtest.errors import BroadcastMismatchError, LifecycleError, RpcError
from bitcoind_regtest.events import EventHub
from bitcoind_regtest.lock import MutatingLock, serialized
from bitcoind_regtest.options import Options
from bitcoind_regtest.rpc import RpcClient
from bitcoind_regtest.scheduler import background_loop
from bitcoind_regtest.tx import Transaction, TxOut

log = logging.getLogger("bitcoind_regtest.wallet")


@dataclass(frozen=True)
class Preload:
    """A confirmed-or-pending output of ``PRELOAD_AMOUNT`` that only the holder can spend."""

    txid: str
    out_index: int
    value: int
    script: bytes
    private_key: keys.PrivateKey

    @property
    def address(self) -> str:
        return self.private_key.address


class Wallet:
    def __init__(
        self,
        rpc: RpcClient,
        lock: MutatingLock,
        options: Options,
        events: EventHub,
        *,
        name: str = "wallet",
    ):
        self.rpc = rpc
        self.lock = lock
        self.options = options
        self.events = events
        self.name = name
        self.preloads: deque[Preload] = deque()
        self._stop = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe = None

    # ---------------- lifecycle ----------------

    async def ensure_loaded(self) -> None:
        """Make sure the node has a loaded legacy wallet (newer nodes start without one)."""
        if await self.rpc.call("listwallets"):
            return
        log.info("[%s] creating legacy wallet", self.name)
        # name, disable_private_keys, blank, passphrase, avoid_reuse, descriptors
        await self.rpc.call("createwallet", "", False, False, "", False, False)

    async def init_key_pool(self) -> None:
        have = await self.address_count()
        want = self.options.value("wallet.keys_pool_size")
        if have < want:
            log.info("[%s] creating %d addresses (%d present)", self.name, want - have, have)
            await self.rpc.batch([("getnewaddress", [])] * (want - have))

    def start(self) -> None:
        """Start key rotation and preload replenishment. Called once the node is ready."""
        self._unsubscribe = self.events.subscribe(EventKind.BLOCK, self._on_block)
        self._spawn(
            background_loop(
                f"{self.name}-keys",
                interval=lambda: self.options.value("wallet.new_key_timeout"),
                enabled=lambda: True,
                unit=lambda: self.rpc.call("getnewaddress"),
                stop=self._stop,
                on_error=self._report,
            ),
            "keys",
        )
        self.schedule_update()

    async def close(self) -> None:
        self._stop.set()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def closed(self) -> bool:
        return self._stop.is_set()

    def _spawn(self, coro: Coroutine, label: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{self.name}-{label}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _report(self, exc: Exception) -> None:
        self.events.emit(EventKind.ERROR, exc)

    def _on_block(self, block_hash: str) -> None:
        self.schedule_update()

    # ---------------- addresses ----------------

    async def addresses(self) -> list[str]:
        return list(await self.rpc.call("getaddressesbylabel", ""))

    async def address_count(self) -> int:
        try:
            return len(await self.addresses())
        except RpcError as e:
            # a wallet without any labelled address reports the label as invalid
            if e.code == RPC_WALLET_INVALID_LABEL_NAME:
                return 0
            raise

    async def sample_addresses(self, count: int) -> list[str]:
        addresses = await self.addresses()
        return random.sample(addresses, min(count, len(addresses)))

    # ---------------- preloads ----------------

    @serialized
    async def get_preload(self) -> Preload:
        while not self.preloads:
            if self.closed:
                raise LifecycleError(f"{self.name} is closed")
            await asyncio.sleep(PRELOAD_POLL_INTERVAL)
        preload = self.preloads.popleft()
        self.schedule_update()
        return preload

    def schedule_update(self) -> None:
        if not self.closed:
            self._spawn(self._update_preloads(), "preloads")

    async def _update_preloads(self) -> None:
        try:
            async with self.lock:
                added = await self._add_preload()
        except Exception as exc:
            log.warning("[%s] preload replenishment failed: %r", self.name, exc)
            self._report(exc)
            return
        if added:
            self.schedule_update()

    async def _add_preload(self) -> bool:
        if len(self.preloads) >= self.options.value("wallet.preloads_pool_size"):
            return False

        rows = txn_factory.p2pkh_rows(await self.rpc.call("listunspent", 0))
        selected, total = txn_factory.select_largest_first(rows, PRELOAD_AMOUNT, n_outputs=2)
        fee = txn_factory.fee_for(len(selected), 2)
        if total < PRELOAD_AMOUNT + fee:
            log.debug("[%s] not enough funds for a preload (%d sat)", self.name, total)
            return False

        key = keys.PrivateKey.generate()
        outputs = [TxOut(PRELOAD_AMOUNT, key.script)]
        change = total - PRELOAD_AMOUNT - fee
        if change >= DUST_LIMIT:
            [change_address] = await self.sample_addresses(1)
            outputs.append(TxOut(change, keys.address_to_script(change_address)))

        tx = await self._sign(selected, outputs)
        txid = await self._broadcast(tx)
        self.preloads.append(Preload(txid, 0, PRELOAD_AMOUNT, key.script, key))
        log.debug("[%s] preload %s added (%d in pool)", self.name, txid, len(self.preloads))
        return True

    # ---------------- transactions ----------------

    async def generate_tx(self) -> str | None:
        """Spend a few random wallet outputs to a few wallet addresses.

        Returns the txid, or ``None`` if the sampled outputs are not worth
        spending.
        """
        async with self.lock:
            return await self._create_tx()

    async def _create_tx(self) -> str | None:
        rows = txn_factory.p2pkh_rows(await self.rpc.call("listunspent", 0))
        selected = random.sample(rows, min(self.options.value("wallet.inputs_count"), len(rows)))
        spendable = txn_factory.total_value(selected) - TX_FEE
        if not selected or spendable < DUST_FLOOR:
            return None

        addresses = await self.sample_addresses(self.options.value("wallet.outputs_count"))
        shares = txn_factory.split_amount(spendable, len(addresses))
        outputs = [
            TxOut(share, keys.address_to_script(address))
            for address, share in zip(addresses, shares)
            if share >= DUST_LIMIT
        ]
        tx = await self._sign(selected, outputs)
        return await self._broadcast(tx)

    async def _sign(self, rows: list[dict], outputs: list[TxOut]) -> Transaction:
        wifs = await self.rpc.batch([("dumpprivkey", [row["address"]]) for row in rows])
        private_keys = [keys.PrivateKey.from_wif(wif) for wif in wifs]
        return txn_factory.build_transaction(rows, outputs, private_keys)

    async def _broadcast(self, tx: Transaction) -> str:
        txid = await self.rpc.call("sendrawtransaction", tx.to_hex())
        if txid != tx.txid:
            raise BroadcastMismatchError(tx.txid, txid)
        return txid
