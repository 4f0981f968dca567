"""
User configuration file support.

Reads/writes ``~/.rmbt-client/config.json``.

Supported keys::

    host = ""                  # measurement server
    port = 443
    token = ""
    encryption = false         # TLS to the measurement server
    threads = 3                # parallel connections
    duration = 7               # seconds per timed phase
    pretest_duration = 2.0     # seconds per calibration loop
    control_server = ""        # request parameters from this control server
    store_results = 20         # samples kept per phase and connection
    min_diff_time_ms = 100     # samples closer than this overwrite each other
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict

from .constants import (
    DEFAULT_DURATION,
    DEFAULT_MIN_DIFF_TIME,
    DEFAULT_PORT,
    DEFAULT_PRETEST_DURATION,
    DEFAULT_STORE_RESULTS,
    DEFAULT_THREADS,
)

_CONFIG_DIR = os.path.join(Path.home(), ".rmbt-client")
_CONFIG_FILE = "config.json"


def _config_path() -> str:
    return os.path.join(_CONFIG_DIR, _CONFIG_FILE)


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULTS: Dict[str, Any] = {
    "host": "",
    "port": DEFAULT_PORT,
    "token": "",
    "encryption": False,
    "threads": DEFAULT_THREADS,
    "duration": DEFAULT_DURATION,
    "pretest_duration": DEFAULT_PRETEST_DURATION,
    "control_server": "",
    "store_results": DEFAULT_STORE_RESULTS,
    "min_diff_time_ms": DEFAULT_MIN_DIFF_TIME // 1_000_000,
}


# ---------------------------------------------------------------------------
# Read / Write
# ---------------------------------------------------------------------------

def load_config() -> Dict[str, Any]:
    """Load config from disk, returning defaults for missing keys."""
    path = _config_path()
    config = dict(DEFAULTS)

    if not os.path.isfile(path):
        return config

    try:
        with open(path, encoding="utf-8") as fh:
            user = json.load(fh)
        if isinstance(user, dict):
            config.update({k: v for k, v in user.items() if k in DEFAULTS})
    except (json.JSONDecodeError, OSError):
        pass  # corrupt file; use defaults

    return config


def save_config(config: Dict[str, Any]) -> str:
    """Write *config* to disk.  Returns the file path."""
    path = _config_path()
    os.makedirs(os.path.dirname(path), exist_ok=True)

    with open(path, "w", encoding="utf-8") as fh:
        json.dump(config, fh, indent=2, ensure_ascii=False)

    return path


def get_config_value(key: str) -> Any:
    return load_config().get(key, DEFAULTS.get(key))


def set_config_value(key: str, value: Any) -> str:
    """Set a single config value and persist.  Returns file path."""
    if key not in DEFAULTS:
        raise KeyError(f"unknown config key: {key}")
    config = load_config()
    config[key] = value
    return save_config(config)


def config_path() -> str:
    return _config_path()
