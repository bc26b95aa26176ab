import asyncio
import contextlib
import logging
import signal
from collections.abc import Callable, Sequence

from bitcoind_regtest.constants import TERMINATE_TIMEOUT

log = logging.getLogger("bitcoind_regtest.process")
output_log = logging.getLogger("bitcoind_regtest.process.output")


def exit_status(returncode: int) -> tuple[int | None, str | None]:
    """Split a returncode into (code, signal name); negative means killed by a signal."""
    if returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, str(-returncode)


class NodeProcess:
    """A child process whose output lines and exit are reported through callbacks."""

    def __init__(
        self,
        path: str,
        args: Sequence[str],
        *,
        cwd: str | None = None,
        on_output: Callable[[str], None] | None = None,
        on_exit: Callable[[int | None, str | None], None] | None = None,
        name: str = "bitcoind",
    ):
        self.path = path
        self.args = list(args)
        self.cwd = cwd
        self.name = name
        self._on_output = on_output
        self._on_exit = on_exit
        self._proc: asyncio.subprocess.Process | None = None
        self._pumps: list[asyncio.Task] = []
        self._waiter: asyncio.Task | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc else None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self) -> None:
        log.info("[%s] starting %s", self.name, self.path)
        log.debug("[%s] args: %s", self.name, " ".join(self.args))
        self._proc = await asyncio.create_subprocess_exec(
            self.path,
            *self.args,
            cwd=self.cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._pumps = [
            asyncio.create_task(self._pump(self._proc.stdout), name=f"{self.name}-stdout"),
            asyncio.create_task(self._pump(self._proc.stderr), name=f"{self.name}-stderr"),
        ]
        self._waiter = asyncio.create_task(self._wait(), name=f"{self.name}-wait")

    async def _pump(self, stream: asyncio.StreamReader) -> None:
        async for raw in stream:
            line = raw.decode(errors="replace").rstrip()
            output_log.debug("[%s] %s", self.name, line)
            if self._on_output is not None:
                try:
                    self._on_output(line)
                except Exception:
                    log.exception("[%s] output callback failed", self.name)

    async def _wait(self) -> tuple[int | None, str | None]:
        returncode = await self._proc.wait()
        await asyncio.gather(*self._pumps, return_exceptions=True)
        code, sig = exit_status(returncode)
        log.info("[%s] exited with code=%s signal=%s", self.name, code, sig)
        if self._on_exit is not None:
            self._on_exit(code, sig)
        return code, sig

    async def wait(self) -> tuple[int | None, str | None]:
        if self._waiter is None:
            raise RuntimeError(f"{self.name} was never started")
        return await asyncio.shield(self._waiter)

    def send_signal(self, sig: int) -> None:
        if self.running:
            with contextlib.suppress(ProcessLookupError):
                self._proc.send_signal(sig)

    async def terminate(
        self, sig: int = signal.SIGTERM, timeout: float = TERMINATE_TIMEOUT
    ) -> tuple[int | None, str | None]:
        """Signal the process and wait for it; kill it if it outlives ``timeout``."""
        self.send_signal(sig)
        try:
            async with asyncio.timeout(timeout):
                return await self.wait()
        except TimeoutError:
            log.warning("[%s] still running %.0fs after %s, killing", self.name, timeout, signal.Signals(sig).name)
            self.send_signal(signal.SIGKILL)
            return await self.wait()
