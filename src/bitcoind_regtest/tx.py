"""Legacy (non-witness) transaction serialization and signature hashing."""
import struct
from dataclasses import dataclass, field, replace
from io import BytesIO

from bitcoind_regtest.keys import PrivateKey, sha256d

SIGHASH_ALL = 1

OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E


def ser_compact_size(n: int) -> bytes:
    if n < 0xFD:
        return struct.pack("<B", n)
    if n <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", n)
    if n <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", n)
    return b"\xff" + struct.pack("<Q", n)


def _read(f: BytesIO, n: int) -> bytes:
    data = f.read(n)
    if len(data) != n:
        raise ValueError(f"Truncated data: wanted {n} bytes, got {len(data)}")
    return data


def read_compact_size(f: BytesIO) -> int:
    first = _read(f, 1)[0]
    if first < 0xFD:
        return first
    if first == 0xFD:
        return struct.unpack("<H", _read(f, 2))[0]
    if first == 0xFE:
        return struct.unpack("<I", _read(f, 4))[0]
    return struct.unpack("<Q", _read(f, 8))[0]


def push_data(data: bytes) -> bytes:
    n = len(data)
    if n < OP_PUSHDATA1:
        return bytes([n]) + data
    if n <= 0xFF:
        return bytes([OP_PUSHDATA1, n]) + data
    if n <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + struct.pack("<H", n) + data
    return bytes([OP_PUSHDATA4]) + struct.pack("<I", n) + data


def parse_pushes(script: bytes) -> list[bytes]:
    """Split a push-only script (e.g. a P2PKH scriptSig) into its items."""
    f = BytesIO(script)
    items = []
    while (op := f.read(1)):
        op = op[0]
        if 0 < op < OP_PUSHDATA1:
            n = op
        elif op == OP_PUSHDATA1:
            n = _read(f, 1)[0]
        elif op == OP_PUSHDATA2:
            n = struct.unpack("<H", _read(f, 2))[0]
        elif op == OP_PUSHDATA4:
            n = struct.unpack("<I", _read(f, 4))[0]
        else:
            raise ValueError(f"Non-push opcode 0x{op:02x} in script")
        items.append(_read(f, n))
    return items


@dataclass(slots=True)
class OutPoint:
    txid: str
    index: int

    def serialize(self) -> bytes:
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.index)


@dataclass(slots=True)
class TxIn:
    prevout: OutPoint
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF

    def serialize(self) -> bytes:
        return (
            self.prevout.serialize()
            + ser_compact_size(len(self.script_sig))
            + self.script_sig
            + struct.pack("<I", self.sequence)
        )


@dataclass(slots=True)
class TxOut:
    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return struct.pack("<q", self.value) + ser_compact_size(len(self.script_pubkey)) + self.script_pubkey


@dataclass(slots=True)
class Transaction:
    inputs: list[TxIn] = field(default_factory=list)
    outputs: list[TxOut] = field(default_factory=list)
    version: int = 1
    locktime: int = 0

    def serialize(self) -> bytes:
        parts = [struct.pack("<i", self.version), ser_compact_size(len(self.inputs))]
        parts.extend(i.serialize() for i in self.inputs)
        parts.append(ser_compact_size(len(self.outputs)))
        parts.extend(o.serialize() for o in self.outputs)
        parts.append(struct.pack("<I", self.locktime))
        return b"".join(parts)

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        return sha256d(self.serialize())[::-1].hex()

    @classmethod
    def deserialize(cls, f: BytesIO) -> "Transaction":
        version = struct.unpack("<i", _read(f, 4))[0]
        n_in = read_compact_size(f)
        if n_in == 0:
            raise ValueError("Witness transactions are not supported")
        inputs = []
        for _ in range(n_in):
            txid = _read(f, 32)[::-1].hex()
            index = struct.unpack("<I", _read(f, 4))[0]
            script_sig = _read(f, read_compact_size(f))
            sequence = struct.unpack("<I", _read(f, 4))[0]
            inputs.append(TxIn(OutPoint(txid, index), script_sig, sequence))
        outputs = []
        for _ in range(read_compact_size(f)):
            value = struct.unpack("<q", _read(f, 8))[0]
            outputs.append(TxOut(value, _read(f, read_compact_size(f))))
        locktime = struct.unpack("<I", _read(f, 4))[0]
        return cls(inputs, outputs, version, locktime)

    @classmethod
    def from_hex(cls, raw: str) -> "Transaction":
        f = BytesIO(bytes.fromhex(raw))
        tx = cls.deserialize(f)
        if f.read(1):
            raise ValueError("Trailing data after transaction")
        return tx

    def signature_hash(self, index: int, script_code: bytes, hashtype: int = SIGHASH_ALL) -> bytes:
        """Legacy SIGHASH_ALL digest for input ``index``."""
        if hashtype != SIGHASH_ALL:
            raise ValueError(f"Unsupported sighash type {hashtype}")
        if not 0 <= index < len(self.inputs):
            raise IndexError(f"Input {index} out of range")
        inputs = [
            replace(txin, script_sig=script_code if i == index else b"")
            for i, txin in enumerate(self.inputs)
        ]
        stripped = Transaction(inputs, list(self.outputs), self.version, self.locktime)
        return sha256d(stripped.serialize() + struct.pack("<I", hashtype))

    def sign_input(self, index: int, key: PrivateKey, script_pubkey: bytes) -> None:
        sig = key.sign(self.signature_hash(index, script_pubkey)) + bytes([SIGHASH_ALL])
        self.inputs[index].script_sig = push_data(sig) + push_data(key.public_key)
