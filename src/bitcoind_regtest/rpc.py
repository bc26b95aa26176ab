"""JSON-RPC client for bitcoind.

bitcoind speaks JSON-RPC 1.0 over HTTP with basic auth. Errors come back as an
``error`` object, usually with HTTP 500, so the body is inspected before the
status code. Floats are decoded as ``Decimal`` so BTC amounts stay exact.
"""
import itertools
import logging
from collections.abc import Iterable, Sequence
from decimal import Decimal
from typing import Any

import httpx

from bitcoind_regtest.constants import RPC_TIMEOUT
from bitcoind_regtest.errors import RpcError

log = logging.getLogger("bitcoind_regtest.rpc")


class RpcClient:
    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        *,
        timeout: float = RPC_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.host = host
        self.port = port
        self.url = f"http://{host}:{port}"
        self._ids = itertools.count(1)
        self._http = httpx.AsyncClient(
            base_url=self.url,
            auth=(user, password),
            timeout=timeout,
            transport=transport,
        )

    def _request(self, method: str, params: Sequence[Any]) -> dict:
        return {"jsonrpc": "1.0", "id": next(self._ids), "method": method, "params": list(params)}

    async def _post(self, payload) -> tuple[httpx.Response, Any]:
        r = await self._http.post("/", json=payload)
        try:
            body = r.json(parse_float=Decimal)
        except ValueError:
            # non-JSON body: auth failure, work queue exceeded, ...
            r.raise_for_status()
            raise
        return r, body

    @staticmethod
    def _unwrap(method: str, reply: dict) -> Any:
        if (err := reply.get("error")) is not None:
            raise RpcError(err.get("code"), err.get("message"), method)
        return reply.get("result")

    async def call(self, method: str, *params: Any) -> Any:
        req = self._request(method, params)
        log.debug("-> %s %s", method, req["params"])
        r, body = await self._post(req)
        if not isinstance(body, dict):
            r.raise_for_status()
            raise RpcError(None, f"unexpected reply {body!r}", method)
        if body.get("error") is None:
            r.raise_for_status()
        return self._unwrap(method, body)

    async def batch(self, calls: Iterable[tuple[str, Sequence[Any]]]) -> list[Any]:
        """Send several calls in one request. Results come back in request order.

        The first failing call (in request order) raises ``RpcError``.
        """
        reqs = [self._request(method, params) for method, params in calls]
        if not reqs:
            return []
        log.debug("-> batch of %d (%s)", len(reqs), reqs[0]["method"])
        r, body = await self._post(reqs)
        if not isinstance(body, list):
            if isinstance(body, dict) and body.get("error") is not None:
                raise RpcError(body["error"].get("code"), body["error"].get("message"), "batch")
            r.raise_for_status()
            raise RpcError(None, f"unexpected batch reply {body!r}", "batch")
        by_id = {reply.get("id"): reply for reply in body}
        results = []
        for req in reqs:
            reply = by_id.get(req["id"])
            if reply is None:
                raise RpcError(None, f"no reply for request {req['id']}", req["method"])
            results.append(self._unwrap(req["method"], reply))
        return results

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "RpcClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
