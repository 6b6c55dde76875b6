"""
goal: configuration loader for ProcWarden. loads settings from data/config.json and environment
      variables (a .env file is read first through python-dotenv), with sensible defaults.
      handles PyInstaller frozen executables by detecting the base directory correctly. returns a
      frozen Config dataclass with every path and setting the scanner, console and dashboard need.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

log = logging.getLogger("procwarden.config")


# figure out where the app is running from (handles PyInstaller bundles)
def _resolve_base_dir() -> Path:
    import sys

    # if we are frozen (PyInstaller), use the executable's directory
    if getattr(sys, "frozen", False):
        return Path(sys.executable).parent
    # otherwise, go up one level from this file (dashboard/config.py -> project root)
    return Path(__file__).resolve().parents[1]


# frozen dataclass to hold all config values (immutable once created)
@dataclass(frozen=True)
class Config:
    base_dir: Path  # root directory of the project
    rules_path: Path  # path to rules JSON file
    state_path: Path  # where the last known process table is persisted
    history_path: Path  # append-only JSON lines history
    history_per_process: int  # history rows kept in memory per process
    scan_interval_sec: float  # seconds between scan cycle starts
    max_workers: int  # parallel enrichment tasks per cycle
    lookup_timeout_sec: float  # timeout for a single enrichment lookup
    buffer_max: int  # max number of events in the dashboard ring buffer
    host: str  # web server host address
    port: int  # web server port number
    log_level: str  # root logging level name
    max_tree_roots: int  # max root processes to show in process tree
    max_tree_children: int  # max child processes per parent in tree


# get a config value with priority: environment variable > JSON file > default
def _get(obj: dict, key: str, default):
    # check for environment variable first (PROCWARDEN_* prefix)
    env = os.getenv(f"PROCWARDEN_{key.upper()}")
    if env is not None:
        # try to coerce to int/float when default is numeric
        if isinstance(default, int):
            try:
                return int(env)
            except ValueError:
                log.warning(
                    "PROCWARDEN_%s=%r is not an integer, using %r", key.upper(), env, default
                )
                return default
        if isinstance(default, float):
            try:
                return float(env)
            except ValueError:
                log.warning("PROCWARDEN_%s=%r is not a number, using %r", key.upper(), env, default)
                return default
        # for strings, just return the env var as-is
        return env
    # fall back to JSON file value, or default if not found
    return obj.get(key, default)


# load configuration from JSON file and environment variables
def load_config(dotenv: bool = True) -> Config:
    if dotenv:
        # .env is looked up from the working directory; real environment variables win
        load_dotenv(find_dotenv(usecwd=True), override=False)
    # base directory can be overridden by env var, otherwise auto-detect
    base = Path(os.getenv("PROCWARDEN_BASE_DIR") or _resolve_base_dir())
    # config file lives in data/config.json
    cfg_file = base / "data" / "config.json"
    obj = {}
    # try to load the JSON config file if it exists
    if cfg_file.exists():
        try:
            obj = json.loads(cfg_file.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError) as exc:
            # if JSON is broken, just use empty dict (all defaults)
            log.warning("ignoring unreadable config %s: %s", cfg_file, exc)
            obj = {}
        if not isinstance(obj, dict):
            obj = {}

    # build the Config object with all paths and settings
    # each value checks: env var > JSON file > default
    return Config(
        base_dir=base,
        rules_path=base / _get(obj, "rules_path", "data/rules.json"),
        state_path=base / _get(obj, "state_path", "data/state.json"),
        history_path=base / _get(obj, "history_path", "data/history.jsonl"),
        history_per_process=_get(obj, "history_per_process", 200),
        scan_interval_sec=_get(obj, "scan_interval_sec", 5.0),
        max_workers=_get(obj, "max_workers", 8),
        lookup_timeout_sec=_get(obj, "lookup_timeout_sec", 2.0),
        buffer_max=_get(obj, "buffer_max", 1200),
        host=_get(obj, "host", "127.0.0.1"),
        port=_get(obj, "port", 8765),
        log_level=str(_get(obj, "log_level", "INFO")).upper(),
        max_tree_roots=_get(obj, "max_tree_roots", 100),
        max_tree_children=_get(obj, "max_tree_children", 100),
    )
