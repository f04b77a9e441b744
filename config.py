from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

"""Config loader and validator.

Provides `load_config` which accepts either a path to a YAML file,
a dictionary or None and returns a normalized configuration dict
using DEFAULTS for missing values.
"""


DEFAULTS: dict[str, Any] = {
    "program": "challenge.bin",
    "mem_cells": 32768,
    "logfile": "vm.log",
    "debug": False,
    "lenient_log": False,
    "input_script": None,
    "halt_on_empty_ret": False,
}

MAX_MEM_CELLS = 32768  # 15-bit address space


class ConfigError(ValueError):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def _as_bool(key: str, v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if isinstance(v, int) and v in (0, 1):
        return bool(v)
    if isinstance(v, str) and v.lower() in ("true", "yes", "on", "1", "false", "no", "off", "0"):
        return v.lower() in ("true", "yes", "on", "1")
    msg = f"{key} must be boolean, got {v!r}"
    raise ConfigError(msg)


def _convert_types(cfg: dict[str, Any]) -> None:
    """Normalize types for configuration values in-place.

    Raises ConfigError on conversion failure.
    """
    try:
        # program / logfile are paths kept as strings
        cfg["program"] = str(cfg.get("program", DEFAULTS["program"]))
        cfg["logfile"] = str(cfg.get("logfile", DEFAULTS["logfile"]))

        # input_script
        v = cfg.get("input_script")
        cfg["input_script"] = None if v is None else str(v)

        cfg["mem_cells"] = int(cfg.get("mem_cells", DEFAULTS["mem_cells"]))
    except (TypeError, ValueError) as e:
        msg = f"Bad types in config: {e}"
        raise ConfigError(msg) from e

    for key in ("debug", "lenient_log", "halt_on_empty_ret"):
        cfg[key] = _as_bool(key, cfg.get(key, DEFAULTS[key]))


def _validate_cfg(cfg: dict[str, Any]) -> None:
    """Perform semantic validation on normalized config dict.

    Raises ConfigError on invalid values.
    """
    if not 0 < cfg["mem_cells"] <= MAX_MEM_CELLS:
        msg = f"mem_cells must be in range 1..{MAX_MEM_CELLS}"
        raise ConfigError(msg)

    if not cfg["program"]:
        msg = "program must be a non-empty path"
        raise ConfigError(msg)

    if not cfg["logfile"]:
        msg = "logfile must be a non-empty path"
        raise ConfigError(msg)

    unknown = sorted(set(cfg) - set(DEFAULTS))
    if unknown:
        msg = f"Unknown config keys: {', '.join(unknown)}"
        raise ConfigError(msg)


def load_config(path_or_dict: str | dict[str, Any] | None = None) -> dict[str, Any]:
    """Load and normalize configuration.

    Accepts:
      - None -> returns DEFAULTS copy
      - dict -> overlay DEFAULTS with provided dict
      - str (path) -> load YAML and overlay DEFAULTS

    Returns a normalized dict or raises ConfigError.
    """
    if path_or_dict is None:
        cfg: dict[str, Any] = dict(DEFAULTS)
    elif isinstance(path_or_dict, dict):
        cfg = dict(DEFAULTS)
        cfg.update(path_or_dict)
    elif isinstance(path_or_dict, str):
        p = Path(path_or_dict)
        if not p.exists():
            msg = f"Config file not found: {path_or_dict}"
            raise ConfigError(msg)
        try:
            with p.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            msg = f"Failed to load config file {path_or_dict}: {e}"
            raise ConfigError(msg) from e
        if not isinstance(data, dict):
            msg = f"Config file {path_or_dict} does not contain a mapping"
            raise ConfigError(msg)
        cfg = dict(DEFAULTS)
        cfg.update(data)
    else:
        msg = "Unsupported config input"
        raise ConfigError(msg)

    # convert types and validate semantics
    _convert_types(cfg)
    _validate_cfg(cfg)

    return cfg
