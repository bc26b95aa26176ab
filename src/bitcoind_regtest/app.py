import logging
import time
from collections import Counter, deque
from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, PositiveInt

from bitcoind_regtest.bitcoind import Bitcoind
from bitcoind_regtest.config import cfg
from bitcoind_regtest.constants import EventKind, NodeState
from bitcoind_regtest.errors import LifecycleError, RpcError
from bitcoind_regtest.logging_config import setup_logging

setup_logging()
log = logging.getLogger("bitcoind_regtest.app")

RECORDED_EVENTS = (EventKind.BLOCK, EventKind.TX, EventKind.ERROR)


def _record_events(node: Bitcoind, recent: deque) -> None:
    def recorder(kind: str):
        def record(*args):
            data = args[0] if args else None
            if isinstance(data, BaseException):
                data = repr(data)
            recent.append({"kind": kind, "node": node.name, "at": time.time(), "data": data})
        return record

    for kind in RECORDED_EVENTS:
        node.events.subscribe(kind, recorder(kind))


async def _shutdown(node: Bitcoind) -> None:
    if node.state != NodeState.READY:
        return
    try:
        await node.terminate()
    except Exception:
        log.exception("Failed to terminate %s", node.name)


@asynccontextmanager
async def lifespan(app: FastAPI):
    node: Bitcoind = app.state.node_factory()
    app.state.node = node
    app.state.forks = {}
    app.state.recent_events = deque(maxlen=cfg["app"]["events_maxlen"])
    _record_events(node, app.state.recent_events)

    log.info("Starting %s...", node.name)
    await node.start()
    log.info("%s ready on port %s (rpc %s). Ready to accept requests!", node.name, node.port, node.rpcport)
    try:
        yield
    finally:
        log.info("Shutting down...")
        for fork in list(app.state.forks.values()):
            await _shutdown(fork)
        app.state.forks.clear()
        await _shutdown(node)
        log.info("Shutdown complete")


class CountReq(BaseModel):
    count: PositiveInt = 1


class OptionReq(BaseModel):
    value: Any


class ForkReq(BaseModel):
    connected: bool = True


r_state = APIRouter(prefix="/state", tags=["State"])
r_generate = APIRouter(tags=["Generate"])
r_options = APIRouter(prefix="/options", tags=["Options"])
r_forks = APIRouter(prefix="/forks", tags=["Forks"])


def _node(request: Request) -> Bitcoind:
    return request.app.state.node


def _describe(node: Bitcoind) -> dict:
    return {"name": node.name, "state": node.state, "port": node.port, "rpcport": node.rpcport}


@r_state.get("/summary")
async def state_summary(request: Request):
    node = _node(request)
    recent = request.app.state.recent_events
    summary = _describe(node) | {
        "datadir": node.datadir,
        "forks": sorted(request.app.state.forks),
        "events": dict(Counter(e["kind"] for e in recent)),
    }
    if node.state == NodeState.READY:
        summary["height"] = await node.rpc.call("getblockcount")
        summary["mempool_size"] = (await node.rpc.call("getmempoolinfo"))["size"]
        summary["preloads"] = len(node.wallet.preloads)
    return summary


@r_state.get("/events")
async def state_events(request: Request, limit: int = 100):
    recent = request.app.state.recent_events
    return list(recent)[-limit:] if limit > 0 else []


@r_generate.post("/blocks")
async def generate_blocks(request: Request, req: CountReq):
    return {"hashes": await _node(request).generate_blocks(req.count)}


@r_generate.post("/transactions")
async def generate_transactions(request: Request, req: CountReq):
    return {"txids": await _node(request).generate_txs(req.count)}


@r_generate.get("/preload")
async def preload(request: Request):
    """Hand out one pre-funded output together with the key that spends it."""
    p = await _node(request).get_preload()
    return {
        "txid": p.txid,
        "out_index": p.out_index,
        "value": p.value,
        "script": p.script.hex(),
        "address": p.address,
        "wif": p.private_key.to_wif(),
    }


@r_options.get("")
async def options_snapshot(request: Request):
    return _node(request).options.snapshot()


@r_options.put("/{path}")
async def options_set(request: Request, path: str, req: OptionReq):
    node = _node(request)
    try:
        node.set_option(path, req.value)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown option {path}")
    log.info("Option %s set to %r", path, req.value)
    return {"path": path, "value": req.value}


@r_forks.post("")
async def forks_create(request: Request, req: ForkReq | None = None):
    req = req or ForkReq()
    fork = await _node(request).fork(connected=req.connected)
    _record_events(fork, request.app.state.recent_events)
    request.app.state.forks[fork.port] = fork
    return _describe(fork)


@r_forks.get("")
async def forks_list(request: Request):
    return [_describe(f) for f in request.app.state.forks.values()]


@r_forks.delete("/{port}")
async def forks_delete(request: Request, port: int):
    fork = request.app.state.forks.pop(port, None)
    if fork is None:
        raise HTTPException(status_code=404, detail=f"No fork on port {port}")
    await fork.terminate()
    return _describe(fork)


async def _lifecycle_error(request: Request, exc: LifecycleError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


async def _rpc_error(request: Request, exc: RpcError):
    return JSONResponse(status_code=502, content={"detail": str(exc), "code": exc.code, "method": exc.method})


def create_app(node_factory: Callable[[], Bitcoind] = Bitcoind) -> FastAPI:
    app = FastAPI(
        title="bitcoind regtest harness",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "State", "description": "Node state and recent events"},
            {"name": "Generate", "description": "Blocks, transactions and preloads"},
            {"name": "Options", "description": "Read and replace generation options"},
            {"name": "Forks", "description": "Nodes sharing the chain"},
        ],
    )
    app.state.node_factory = node_factory

    @app.get("/health")
    def health(request: Request):
        node = getattr(request.app.state, "node", None)
        return {"status": "ok", "state": node.state if node else None}

    app.add_exception_handler(LifecycleError, _lifecycle_error)
    app.add_exception_handler(RpcError, _rpc_error)
    app.include_router(r_state)
    app.include_router(r_generate)
    app.include_router(r_options)
    app.include_router(r_forks)
    return app


app = create_app()
