import random
from decimal import Decimal

import pytest

from bitcoind_regtest import keys, txn_factory
from bitcoind_regtest.constants import COIN
from bitcoind_regtest.tx import TxOut, parse_pushes


def _row(key, amount, txid="ab" * 32, vout=0):
    return {
        "txid": txid,
        "vout": vout,
        "address": key.address,
        "scriptPubKey": key.script.hex(),
        "amount": Decimal(amount),
        "spendable": True,
    }


@pytest.mark.parametrize(
    "amount, sats",
    [(Decimal("50"), 50 * COIN), (Decimal("0.00000546"), 546), (Decimal("12.34567891"), 1234567891), ("0.1", 10_000_000)],
)
def test_to_satoshi(amount, sats):
    assert txn_factory.to_satoshi(amount) == sats


def test_p2pkh_rows_filters_other_scripts():
    key = keys.PrivateKey.generate()
    p2pkh = _row(key, "1")
    p2sh = dict(p2pkh, scriptPubKey=keys.p2sh_script(bytes(20)).hex())
    locked = dict(p2pkh, spendable=False)
    assert txn_factory.p2pkh_rows([p2pkh, p2sh, locked]) == [p2pkh]


def test_select_largest_first_stops_at_target():
    key = keys.PrivateKey.generate()
    rows = [_row(key, a, vout=i) for i, a in enumerate(["3", "8", "1", "5"])]
    selected, total = txn_factory.select_largest_first(rows, 10 * COIN)
    assert [r["amount"] for r in selected] == [Decimal("8"), Decimal("5")]
    assert total == 13 * COIN

    selected, total = txn_factory.select_largest_first(rows, 100 * COIN)
    assert len(selected) == 4
    assert total == 17 * COIN


def test_select_largest_first_covers_fee_for_outputs():
    key = keys.PrivateKey.generate()
    rows = [_row(key, "10", vout=0), _row(key, "1", vout=1)]
    selected, _ = txn_factory.select_largest_first(rows, 10 * COIN)
    assert len(selected) == 1

    selected, total = txn_factory.select_largest_first(rows, 10 * COIN, n_outputs=2)
    assert len(selected) == 2
    assert total == 11 * COIN


def test_fee_is_per_started_kilobyte():
    assert txn_factory.estimate_size(1, 2) == 226
    assert txn_factory.fee_for(1, 2) == 10_000
    assert txn_factory.fee_for(7, 2) == 20_000
    assert txn_factory.fee_for(1, 2, fee_per_kb=3) == 3


def test_split_amount_never_exceeds_total():
    rng = random.Random(7)
    for parts in range(1, 6):
        shares = txn_factory.split_amount(123_456_789, parts, rng)
        assert len(shares) == parts
        assert all(s >= 0 for s in shares)
        assert 123_456_789 - parts < sum(shares) <= 123_456_789


def test_build_transaction_signs_every_input():
    k1, k2 = keys.PrivateKey.generate(), keys.PrivateKey.generate()
    rows = [_row(k1, "2", txid="01" * 32), _row(k2, "3", txid="02" * 32, vout=1)]
    outputs = [TxOut(4 * COIN, keys.PrivateKey.generate().script)]
    tx = txn_factory.build_transaction(rows, outputs, [k1, k2])

    assert [i.prevout.txid for i in tx.inputs] == ["01" * 32, "02" * 32]
    assert tx.inputs[1].prevout.index == 1
    for i, (row, key) in enumerate(zip(rows, [k1, k2])):
        sig, pubkey = parse_pushes(tx.inputs[i].script_sig)
        assert pubkey == key.public_key
        digest = tx.signature_hash(i, bytes.fromhex(row["scriptPubKey"]))
        assert keys.verify(pubkey, sig[:-1], digest)


def test_build_transaction_needs_one_key_per_row():
    key = keys.PrivateKey.generate()
    with pytest.raises(ValueError):
        txn_factory.build_transaction([_row(key, "1")], [TxOut(1000, key.script)], [])
