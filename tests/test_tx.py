from io import BytesIO

import pytest

from bitcoind_regtest import keys
from bitcoind_regtest.tx import (
    OutPoint,
    Transaction,
    TxIn,
    TxOut,
    parse_pushes,
    push_data,
    read_compact_size,
    ser_compact_size,
)

GENESIS_COINBASE = (
    "01000000010000000000000000000000000000000000000000000000000000000000000000ffffffff4d04ffff001d"
    "0104455468652054696d65732030332f4a616e2f32303039204368616e63656c6c6f72206f6e206272696e6b206f66"
    "207365636f6e64206261696c6f757420666f722062616e6b73ffffffff0100f2052a01000000434104678afdb0fe55"
    "48271967f1a67130b7105cd6a828e03909a67962e0ea1f61deb649f6bc3f4cef38c4f35504e51ec112de5c384df7ba"
    "0b8d578a4c702b6bf11d5fac00000000"
)
GENESIS_COINBASE_TXID = "4a5e1e4baab89f3a32518a88c31bc87f618f76673e2cc77ab2127b7afdeda33b"


def test_genesis_coinbase():
    tx = Transaction.from_hex(GENESIS_COINBASE)
    assert tx.txid == GENESIS_COINBASE_TXID
    assert tx.to_hex() == GENESIS_COINBASE
    assert tx.outputs[0].value == 50 * 100_000_000
    assert tx.inputs[0].prevout == OutPoint("00" * 32, 0xFFFFFFFF)


@pytest.mark.parametrize(
    "n, encoded",
    [(0, "00"), (0xFC, "fc"), (0xFD, "fdfd00"), (0xFFFF, "fdffff"), (0x10000, "fe00000100"), (2**32, "ff0000000001000000")],
)
def test_compact_size(n, encoded):
    assert ser_compact_size(n).hex() == encoded
    assert read_compact_size(BytesIO(bytes.fromhex(encoded))) == n


def test_push_data_and_parse():
    items = [b"\x01" * 10, b"\x02" * 75, b"\x03" * 76, b"\x04" * 300]
    script = b"".join(push_data(i) for i in items)
    assert script[11] == 75
    assert script[87] == 0x4C
    assert parse_pushes(script) == items
    with pytest.raises(ValueError):
        parse_pushes(b"\x76")


def test_rejects_malformed_hex():
    with pytest.raises(ValueError):
        Transaction.from_hex(GENESIS_COINBASE[:-2])
    with pytest.raises(ValueError):
        Transaction.from_hex(GENESIS_COINBASE + "00")
    with pytest.raises(ValueError):
        Transaction.from_hex("0100000000010000")


def _spend(key):
    prev_script = key.script
    tx = Transaction(
        inputs=[TxIn(OutPoint("11" * 32, 0)), TxIn(OutPoint("22" * 32, 3))],
        outputs=[TxOut(5000, keys.p2sh_script(bytes(20))), TxOut(7000, prev_script)],
    )
    return tx, prev_script


def test_signature_hash_commits_to_outputs_not_other_scriptsigs():
    key = keys.PrivateKey.generate()
    tx, script = _spend(key)
    digest = tx.signature_hash(0, script)
    tx.inputs[1].script_sig = b"\x51"
    assert tx.signature_hash(0, script) == digest
    tx.outputs[0].value += 1
    assert tx.signature_hash(0, script) != digest
    assert tx.signature_hash(1, script) != tx.signature_hash(0, script)
    with pytest.raises(IndexError):
        tx.signature_hash(2, script)
    with pytest.raises(ValueError):
        tx.signature_hash(0, script, hashtype=2)


def test_sign_input_produces_verifiable_p2pkh_scriptsig():
    key = keys.PrivateKey.generate()
    tx, script = _spend(key)
    for i in range(len(tx.inputs)):
        tx.sign_input(i, key, script)

    for i, txin in enumerate(tx.inputs):
        sig, pubkey = parse_pushes(txin.script_sig)
        assert pubkey == key.public_key
        assert sig[-1] == 0x01
        assert keys.verify(pubkey, sig[:-1], tx.signature_hash(i, script))

    parsed = Transaction.from_hex(tx.to_hex())
    assert parsed == tx
    assert parsed.txid == tx.txid
