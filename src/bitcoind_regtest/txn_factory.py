"""Turn ``listunspent`` rows into signed transactions.

Rows are the node's JSON objects (``txid``, ``vout``, ``address``,
``scriptPubKey``, ``amount``, ...) with ``amount`` parsed as ``Decimal``.
Everything returned from here is in satoshi.
"""
import random
from collections.abc import Iterable, Sequence
from decimal import ROUND_DOWN, Decimal

from bitcoind_regtest import keys
from bitcoind_regtest.constants import COIN, FEE_PER_KB
from bitcoind_regtest.tx import OutPoint, Transaction, TxIn, TxOut

# Upper bounds for a compressed-key P2PKH input and a P2PKH output
INPUT_SIZE = 148
OUTPUT_SIZE = 34
TX_OVERHEAD = 10


def to_satoshi(amount) -> int:
    return int((Decimal(str(amount)) * COIN).to_integral_value(rounding=ROUND_DOWN))


def p2pkh_rows(rows: Iterable[dict]) -> list[dict]:
    """Spendable rows locked by a plain P2PKH script."""
    return [
        row
        for row in rows
        if row.get("spendable", True) and keys.is_p2pkh(bytes.fromhex(row["scriptPubKey"]))
    ]


def total_value(rows: Iterable[dict]) -> int:
    return sum(to_satoshi(row["amount"]) for row in rows)


def select_largest_first(
    rows: Iterable[dict],
    target: int,
    n_outputs: int | None = None,
    fee_per_kb: int = FEE_PER_KB,
) -> tuple[list[dict], int]:
    """Take the biggest rows until ``target`` is reached.

    With ``n_outputs`` the target also covers the fee of spending the
    selection into that many outputs.
    """
    selected: list[dict] = []
    total = 0
    for row in sorted(rows, key=lambda r: to_satoshi(r["amount"]), reverse=True):
        fee = 0 if n_outputs is None else fee_for(len(selected), n_outputs, fee_per_kb)
        if total >= target + fee:
            break
        selected.append(row)
        total += to_satoshi(row["amount"])
    return selected, total


def estimate_size(n_inputs: int, n_outputs: int) -> int:
    return TX_OVERHEAD + INPUT_SIZE * n_inputs + OUTPUT_SIZE * n_outputs


def fee_for(n_inputs: int, n_outputs: int, fee_per_kb: int = FEE_PER_KB) -> int:
    """``fee_per_kb`` for every started kilobyte."""
    size = estimate_size(n_inputs, n_outputs)
    return -(-size // 1000) * fee_per_kb


def split_amount(total: int, parts: int, rng: random.Random | None = None) -> list[int]:
    """Split ``total`` by random weights. Shares are floored so they never sum past ``total``."""
    rng = rng or random
    weights = [rng.random() for _ in range(parts)]
    weight_sum = sum(weights)
    if weight_sum == 0:
        weights, weight_sum = [1.0] * parts, float(parts)
    return [int(total * w / weight_sum) for w in weights]


def build_transaction(
    rows: Sequence[dict],
    outputs: Sequence[TxOut],
    private_keys: Sequence[keys.PrivateKey],
) -> Transaction:
    """Spend ``rows`` into ``outputs``, signing input ``i`` with ``private_keys[i]``."""
    tx = Transaction(
        inputs=[TxIn(OutPoint(row["txid"], row["vout"])) for row in rows],
        outputs=list(outputs),
    )
    for index, (row, key) in enumerate(zip(rows, private_keys, strict=True)):
        tx.sign_input(index, key, bytes.fromhex(row["scriptPubKey"]))
    return tx
