"""
id_nodes Configuration

One explicitly constructed Settings value is passed to every component
that needs it. Nothing here is read at import time.

Sources, in order of use:
  - Settings.from_env()          IDN_* and FALKORDB_* environment variables
  - Settings.from_file(path)     a JSON document with the same keys
  - find_config_file()           'config.json' in the working directory or above
"""

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class Settings:
    backend: str = "memory"                 # "memory" or "falkordb"
    falkordb_host: str = "localhost"
    falkordb_port: int = 6379
    falkordb_password: str = ""
    falkordb_graph: str = "id_nodes"
    lock_backend: str = "local"             # "local" or "redis"
    redis_url: str = "redis://localhost:6379/0"
    lock_timeout_s: float = 5.0
    storage_retries: int = 3
    storage_retry_delay_s: float = 0.05
    notify_webhook_url: str = ""
    notify_timeout_s: float = 2.0
    catalog_path: str = ""

    def __post_init__(self):
        if self.backend not in ("memory", "falkordb"):
            raise ValueError(f"Unknown storage backend: {self.backend}")
        if self.lock_backend not in ("local", "redis"):
            raise ValueError(f"Unknown lock backend: {self.lock_backend}")
        if self.storage_retries < 1:
            raise ValueError("storage_retries must be at least 1")

    @classmethod
    def from_mapping(cls, data: dict) -> "Settings":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - set(known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")
        values = {}
        for name, raw in data.items():
            default = getattr(cls, name)
            if isinstance(default, int):
                values[name] = int(raw)
            elif isinstance(default, float):
                values[name] = float(raw)
            else:
                values[name] = str(raw)
        return cls(**values)

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "Settings":
        env = os.environ if environ is None else environ
        data = {}
        for f in fields(cls):
            key = f"IDN_{f.name.upper()}"
            if key in env:
                data[f.name] = env[key]
        # The FalkorDB variables are shared with other tooling.
        for name, key in (("falkordb_host", "FALKORDB_HOST"),
                          ("falkordb_port", "FALKORDB_PORT"),
                          ("falkordb_password", "FALKORDB_PASSWORD"),
                          ("falkordb_graph", "FALKORDB_GRAPH")):
            if key in env and name not in data:
                data[name] = env[key]
        return cls.from_mapping(data)

    @classmethod
    def from_file(cls, path) -> "Settings":
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ValueError(f"Cannot read the configuration file {path}: {e}") from e
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"{path}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"{path}: configuration must be a JSON object")
        return cls.from_mapping(data)


def find_config_file(start=None, name: str = "config.json") -> Optional[Path]:
    """Look for `name` in `start` (default: cwd) and each parent directory."""
    here = Path(start or os.getcwd()).resolve()
    for directory in (here, *here.parents):
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


def load_settings(path=None) -> Settings:
    """Explicit path wins, then a discovered config.json, then the environment."""
    if path:
        return Settings.from_file(path)
    found = find_config_file()
    if found is not None:
        return Settings.from_file(found)
    return Settings.from_env()
