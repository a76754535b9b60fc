"""
Configuration for the gvips engine.

Defaults live in the module constants below. A YAML file (named by the
`GVIPS_CONFIG` environment variable, or passed explicitly) overrides them,
and environment variables override the file:

  GVIPS_GC_INTERVAL      writes between full collections (countdown mode)
  GVIPS_GENERATIONAL_GC  "auto", "1"/"true" or "0"/"false"
  GVIPS_DEBUG            any non-empty value enables debug logging
"""

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

lib_logger = logging.getLogger("gvips")
lib_logger.addHandler(logging.NullHandler())

# =============================================================================
# DEFAULTS
# =============================================================================

# Number of writes between forced full collections when the collector is
# not generational.
DEFAULT_GC_INTERVAL: int = 100

# None means detect from the running interpreter.
DEFAULT_GENERATIONAL_GC: Optional[bool] = None

DEFAULT_DEBUG: bool = False

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


@dataclass
class Config:
    gc_interval: int = DEFAULT_GC_INTERVAL
    generational_gc: Optional[bool] = DEFAULT_GENERATIONAL_GC
    debug: bool = DEFAULT_DEBUG


def _parse_bool(value: Any, key: str) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("", "auto"):
        return None
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"{key}: expected a boolean or 'auto', got {value!r}")


def _parse_interval(value: Any, key: str) -> int:
    try:
        interval = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{key}: expected an integer, got {value!r}") from None
    if interval < 1:
        raise ValueError(f"{key}: must be at least 1, got {interval}")
    return interval


def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> Config:
    """Build a Config from defaults, an optional YAML file and the environment."""
    env = os.environ if environ is None else environ
    config = Config()

    path = path or env.get("GVIPS_CONFIG")
    if path:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping at the top level")
        if "gc_interval" in data:
            config.gc_interval = _parse_interval(data["gc_interval"], "gc_interval")
        if "generational_gc" in data:
            config.generational_gc = _parse_bool(data["generational_gc"], "generational_gc")
        if "debug" in data:
            config.debug = bool(_parse_bool(data["debug"], "debug"))

    if env.get("GVIPS_GC_INTERVAL"):
        config.gc_interval = _parse_interval(env["GVIPS_GC_INTERVAL"], "GVIPS_GC_INTERVAL")
    if "GVIPS_GENERATIONAL_GC" in env:
        config.generational_gc = _parse_bool(env["GVIPS_GENERATIONAL_GC"], "GVIPS_GENERATIONAL_GC")
    if env.get("GVIPS_DEBUG"):
        config.debug = True

    return config


def configure_logging(debug: bool) -> None:
    """Send library debug output to stderr when debug is on."""
    if not debug:
        return
    if not any(getattr(h, "_gvips_debug", False) for h in lib_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("[gvips] %(levelname)s %(message)s"))
        handler._gvips_debug = True
        lib_logger.addHandler(handler)
    lib_logger.setLevel(logging.DEBUG)
