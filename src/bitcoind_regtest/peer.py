"""Minimal P2P peer that watches a node's inventory announcements.

The peer advertises protocol 70002: old enough that the node announces new
blocks with ``inv`` rather than ``headers``, new enough that the relay flag
in ``version`` is honoured and transactions are announced too.
"""
import asyncio
import contextlib
import logging
import secrets
import struct
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import IntEnum
from io import BytesIO

from bitcoind_regtest.constants import PEER_HANDSHAKE_TIMEOUT
from bitcoind_regtest.errors import ProtocolError
from bitcoind_regtest.keys import sha256d
from bitcoind_regtest.tx import read_compact_size, ser_compact_size

log = logging.getLogger("bitcoind_regtest.peer")

REGTEST_MAGIC = bytes.fromhex("fabfb5da")
PROTOCOL_VERSION = 70002
USER_AGENT = b"/bitcoind-regtest:0.1.0/"
MAX_PAYLOAD = 32 * 1024 * 1024

HEADER = struct.Struct("<4s12sI4s")


class InvType(IntEnum):
    ERROR = 0
    TX = 1
    BLOCK = 2
    FILTERED_BLOCK = 3


@dataclass(frozen=True, slots=True)
class Inventory:
    kind: str
    hash: str


def encode_message(command: str, payload: bytes = b"", magic: bytes = REGTEST_MAGIC) -> bytes:
    name = command.encode("ascii")
    if len(name) > 12:
        raise ValueError(f"Command {command!r} is longer than 12 bytes")
    return HEADER.pack(magic, name.ljust(12, b"\x00"), len(payload), sha256d(payload)[:4]) + payload


async def read_message(reader: asyncio.StreamReader, magic: bytes = REGTEST_MAGIC) -> tuple[str, bytes]:
    header = await reader.readexactly(HEADER.size)
    got_magic, raw_command, length, checksum = HEADER.unpack(header)
    if got_magic != magic:
        raise ProtocolError(f"Bad magic {got_magic.hex()}")
    if length > MAX_PAYLOAD:
        raise ProtocolError(f"Payload of {length} bytes exceeds limit")
    payload = await reader.readexactly(length)
    command = raw_command.rstrip(b"\x00").decode("ascii", errors="replace")
    if sha256d(payload)[:4] != checksum:
        raise ProtocolError(f"Checksum mismatch for {command!r}")
    return command, payload


def _net_addr(services: int = 0, port: int = 0) -> bytes:
    # IPv4-mapped 0.0.0.0, port in network byte order
    return struct.pack("<Q", services) + bytes(10) + b"\xff\xff" + bytes(4) + struct.pack(">H", port)


def version_payload(
    *,
    version: int = PROTOCOL_VERSION,
    start_height: int = 0,
    relay: bool = True,
    nonce: int | None = None,
) -> bytes:
    return b"".join(
        [
            struct.pack("<iQq", version, 0, int(time.time())),
            _net_addr(),
            _net_addr(),
            struct.pack("<Q", nonce if nonce is not None else secrets.randbits(64)),
            ser_compact_size(len(USER_AGENT)) + USER_AGENT,
            struct.pack("<i?", start_height, relay),
        ]
    )


def parse_inv(payload: bytes) -> list[Inventory]:
    f = BytesIO(payload)
    try:
        count = read_compact_size(f)
    except ValueError as e:
        raise ProtocolError(f"Truncated inv: {e}") from e
    items = []
    for _ in range(count):
        raw = f.read(36)
        if len(raw) != 36:
            raise ProtocolError("Truncated inv entry")
        (kind,) = struct.unpack("<I", raw[:4])
        try:
            name = InvType(kind).name
        except ValueError:
            name = str(kind)
        items.append(Inventory(name, raw[4:][::-1].hex()))
    return items


class InventoryPeer:
    def __init__(
        self,
        host: str,
        port: int,
        on_inventory: Callable[[Inventory], None],
        *,
        on_close: Callable[[Exception | None], None] | None = None,
        magic: bytes = REGTEST_MAGIC,
        name: str = "peer",
    ):
        self.host = host
        self.port = port
        self.magic = magic
        self.name = name
        self._on_inventory = on_inventory
        self._on_close = on_close
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._task: asyncio.Task | None = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._task is not None and not self._task.done()

    def _send(self, command: str, payload: bytes = b"") -> None:
        self._writer.write(encode_message(command, payload, self.magic))

    async def connect(self, timeout: float = PEER_HANDSHAKE_TIMEOUT) -> None:
        """Open the connection and complete the version/verack handshake."""
        self._reader, self._writer = await asyncio.open_connection(self.host, self.port)
        try:
            async with asyncio.timeout(timeout):
                self._send("version", version_payload())
                await self._writer.drain()
                got_version = got_verack = False
                while not (got_version and got_verack):
                    command, payload = await read_message(self._reader, self.magic)
                    if command == "version":
                        got_version = True
                        self._send("verack")
                    elif command == "verack":
                        got_verack = True
                    elif command == "ping":
                        self._send("pong", payload)
                    await self._writer.drain()
        except BaseException:
            self._writer.close()
            raise
        log.debug("[%s] handshake with %s:%s complete", self.name, self.host, self.port)
        self._task = asyncio.create_task(self._run(), name=f"{self.name}-reader")

    async def _run(self) -> None:
        error: Exception | None = None
        try:
            while True:
                command, payload = await read_message(self._reader, self.magic)
                await self._handle(command, payload)
        except asyncio.IncompleteReadError:
            log.debug("[%s] connection closed by node", self.name)
        except (ProtocolError, OSError) as e:
            log.warning("[%s] peer connection failed: %r", self.name, e)
            error = e
        finally:
            self._writer.close()
        if not self._closing and self._on_close is not None:
            self._on_close(error)

    async def _handle(self, command: str, payload: bytes) -> None:
        if command == "ping":
            self._send("pong", payload)
            await self._writer.drain()
        elif command == "inv":
            for item in parse_inv(payload):
                self._on_inventory(item)

    async def close(self) -> None:
        self._closing = True
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._writer is not None:
            self._writer.close()
            with contextlib.suppress(OSError):
                await self._writer.wait_closed()
