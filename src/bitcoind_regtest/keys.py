"""secp256k1 keys, base58check addresses and P2PKH scripts for regtest."""
import hashlib

import base58
from Cryptodome.Hash import RIPEMD160
from ecdsa import BadSignatureError, SECP256k1, SigningKey, VerifyingKey
from ecdsa.der import UnexpectedDER
from ecdsa.util import sigdecode_der, sigencode_der_canonize

# regtest shares testnet's version bytes
PUBKEY_ADDRESS_VERSION = 111
SCRIPT_ADDRESS_VERSION = 196
SECRET_KEY_VERSION = 239

OP_DUP = 0x76
OP_HASH160 = 0xA9
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_CHECKSIG = 0xAC


def sha256d(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


def p2pkh_script(h160: bytes) -> bytes:
    return bytes([OP_DUP, OP_HASH160, 20]) + h160 + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def p2sh_script(h160: bytes) -> bytes:
    return bytes([OP_HASH160, 20]) + h160 + bytes([OP_EQUAL])


def is_p2pkh(script: bytes) -> bool:
    return (
        len(script) == 25
        and script[:3] == bytes([OP_DUP, OP_HASH160, 20])
        and script[23:] == bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    )


def encode_address(h160: bytes, version: int = PUBKEY_ADDRESS_VERSION) -> str:
    return base58.b58encode_check(bytes([version]) + h160).decode()


def address_to_script(address: str) -> bytes:
    """scriptPubKey paying a base58 regtest address (P2PKH or P2SH)."""
    raw = base58.b58decode_check(address)
    version, h160 = raw[0], raw[1:]
    if len(h160) != 20:
        raise ValueError(f"Address {address} does not carry a 20-byte hash")
    if version == PUBKEY_ADDRESS_VERSION:
        return p2pkh_script(h160)
    if version == SCRIPT_ADDRESS_VERSION:
        return p2sh_script(h160)
    raise ValueError(f"Unsupported address version {version} for {address}")


def script_to_address(script: bytes) -> str | None:
    if is_p2pkh(script):
        return encode_address(script[3:23])
    if len(script) == 23 and script[:2] == bytes([OP_HASH160, 20]) and script[22] == OP_EQUAL:
        return encode_address(script[2:22], SCRIPT_ADDRESS_VERSION)
    return None


class PrivateKey:
    def __init__(self, secret: bytes, compressed: bool = True):
        if len(secret) != 32:
            raise ValueError(f"Private key must be 32 bytes, got {len(secret)}")
        self._sk = SigningKey.from_string(secret, curve=SECP256k1)
        self.compressed = compressed

    @classmethod
    def generate(cls) -> "PrivateKey":
        return cls(SigningKey.generate(curve=SECP256k1).to_string())

    @classmethod
    def from_wif(cls, wif: str) -> "PrivateKey":
        raw = base58.b58decode_check(wif)
        if raw[0] != SECRET_KEY_VERSION:
            raise ValueError(f"Not a regtest private key (version {raw[0]})")
        body = raw[1:]
        if len(body) == 33 and body[32] == 0x01:
            return cls(body[:32], compressed=True)
        if len(body) == 32:
            return cls(body, compressed=False)
        raise ValueError("Malformed WIF payload")

    @property
    def secret(self) -> bytes:
        return self._sk.to_string()

    def to_wif(self) -> str:
        suffix = b"\x01" if self.compressed else b""
        return base58.b58encode_check(bytes([SECRET_KEY_VERSION]) + self.secret + suffix).decode()

    @property
    def public_key(self) -> bytes:
        encoding = "compressed" if self.compressed else "uncompressed"
        return self._sk.get_verifying_key().to_string(encoding)

    @property
    def address(self) -> str:
        return encode_address(hash160(self.public_key))

    @property
    def script(self) -> bytes:
        return p2pkh_script(hash160(self.public_key))

    def sign(self, digest: bytes) -> bytes:
        """Deterministic (RFC 6979) low-S DER signature of a 32-byte digest."""
        return self._sk.sign_digest_deterministic(
            digest, hashfunc=hashlib.sha256, sigencode=sigencode_der_canonize
        )

    def __eq__(self, other) -> bool:
        if not isinstance(other, PrivateKey):
            return NotImplemented
        return self.secret == other.secret and self.compressed == other.compressed

    def __hash__(self) -> int:
        return hash((self.secret, self.compressed))

    def __repr__(self) -> str:
        return f"PrivateKey(address={self.address})"


def verify(public_key: bytes, signature: bytes, digest: bytes) -> bool:
    vk = VerifyingKey.from_string(public_key, curve=SECP256k1)
    try:
        return vk.verify_digest(signature, digest, sigdecode=sigdecode_der)
    except (BadSignatureError, UnexpectedDER):
        return False
