"""Generation options.

Every leaf is a zero-argument supplier that is called each time the value is
needed, so a supplier can return a fresh random value per use and replacing a
leaf at runtime takes effect on the next read::

    opts = Options({"generate": {"txs": {"background": False}}})
    opts.get("generate.txs.timeout")()      # e.g. 7.31
    opts.set("generate.txs.timeout", 1e9)   # pause the loop
"""
import random
import secrets
from collections.abc import Callable, Mapping
from typing import Any

from bitcoind_regtest.config import cfg

Supplier = Callable[[], Any]


def constant(value: Any) -> Supplier:
    return lambda: value


def supplier_from(value: Any) -> Supplier:
    """Turn a config value into a supplier.

    A two-number list is a random range (``randint`` for ints, ``uniform`` for
    floats); callables are used as they are; anything else is a constant.
    """
    if callable(value):
        return value
    if (
        isinstance(value, (list, tuple))
        and len(value) == 2
        and all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in value)
    ):
        lo, hi = value
        if isinstance(lo, int) and isinstance(hi, int):
            return lambda: random.randint(lo, hi)
        return lambda: random.uniform(lo, hi)
    if isinstance(value, list):
        value = tuple(value)
    return constant(value)


def default_tree(conf: Mapping | None = None) -> dict:
    conf = conf if conf is not None else cfg
    w = conf["wallet"]
    txs = conf["generate"]["txs"]
    blocks = conf["generate"]["blocks"]
    bd = conf["bitcoind"]
    return {
        "wallet": {
            "preloads_pool_size": supplier_from(w["preloads_pool_size"]),
            "keys_pool_size": supplier_from(w["keys_pool_size"]),
            "new_key_timeout": supplier_from(w["new_key_timeout"]),
            "inputs_count": supplier_from(w["inputs_count"]),
            "outputs_count": supplier_from(w["outputs_count"]),
        },
        "generate": {
            "txs": {
                "background": supplier_from(txs["background"]),
                "timeout": supplier_from(txs["timeout"]),
                "min_in_block": supplier_from(txs["min_in_block"]),
            },
            "blocks": {
                "background": supplier_from(blocks["background"]),
                "timeout": supplier_from(blocks["timeout"]),
            },
        },
        "bitcoind": {
            "path": supplier_from(bd["path"]),
            "datadir": supplier_from(bd.get("datadir")),
            "port": supplier_from(bd["port"]),
            "rpcport": supplier_from(bd["rpcport"]),
            "rpcuser": lambda: secrets.token_hex(10),
            "rpcpassword": lambda: secrets.token_hex(10),
            "args": supplier_from(bd.get("args", [])),
        },
    }


def _copy_tree(tree: dict) -> dict:
    return {k: _copy_tree(v) if isinstance(v, dict) else v for k, v in tree.items()}


def _merge(base: dict, override: Mapping, prefix: str = "") -> None:
    for key, value in override.items():
        path = f"{prefix}{key}"
        if key not in base:
            raise KeyError(f"Unknown option {path!r}")
        if isinstance(base[key], dict):
            if not isinstance(value, Mapping):
                raise TypeError(f"Option {path!r} is a section, got {type(value).__name__}")
            _merge(base[key], value, prefix=f"{path}.")
        else:
            base[key] = value if callable(value) else constant(value)


class Options:
    def __init__(self, overrides: Mapping | None = None, *, defaults: dict | None = None):
        self._tree = _copy_tree(defaults) if defaults is not None else default_tree()
        if overrides:
            _merge(self._tree, overrides)

    def _locate(self, path: str) -> tuple[dict, str]:
        *parents, leaf = path.split(".")
        node = self._tree
        for part in parents:
            node = node.get(part)
            if not isinstance(node, dict):
                raise KeyError(f"Unknown option {path!r}")
        if leaf not in node or isinstance(node[leaf], dict):
            raise KeyError(f"Unknown option {path!r}")
        return node, leaf

    def get(self, path: str) -> Supplier:
        node, leaf = self._locate(path)
        return node[leaf]

    def value(self, path: str) -> Any:
        return self.get(path)()

    def set(self, path: str, value: Any) -> None:
        node, leaf = self._locate(path)
        node[leaf] = value if callable(value) else constant(value)

    def clone(self) -> "Options":
        return Options(defaults=self._tree)

    def paths(self) -> list[str]:
        out: list[str] = []

        def walk(node: dict, prefix: str) -> None:
            for key, value in node.items():
                if isinstance(value, dict):
                    walk(value, f"{prefix}{key}.")
                else:
                    out.append(f"{prefix}{key}")

        walk(self._tree, "")
        return out

    def snapshot(self) -> dict[str, Any]:
        """Evaluate every leaf once. Suppliers with side effects will see a call."""
        return {path: self.value(path) for path in self.paths()}
