import os
import tomllib
from pathlib import Path

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"

cfg = tomllib.loads(config_file.read_text())

bd = cfg["bitcoind"]
bd["path"] = os.getenv("BITCOIND_PATH", bd.get("path", "bitcoind"))
if extra := os.getenv("BITCOIND_EXTRA_ARGS"):
    bd["args"] = [*bd.get("args", []), *extra.split()]
