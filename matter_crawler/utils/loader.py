from __future__ import annotations

import importlib
from typing import Any

from ..errors import ConfigError


def load_symbol(dotted: str) -> Any:
    """
    Resolve the fetcher/exporter named in the config.
    Accepts "package.module:ClassName" or "package.module.ClassName".
    """
    if ":" in dotted:
        module_name, _, symbol_name = dotted.partition(":")
    elif "." in dotted:
        module_name, _, symbol_name = dotted.rpartition(".")
    else:
        raise ConfigError(f"Not a dotted path: {dotted!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Cannot import {module_name!r} for {dotted!r}: {exc}") from exc
    try:
        return getattr(module, symbol_name)
    except AttributeError as exc:
        raise ConfigError(f"{module_name!r} has no attribute {symbol_name!r}") from exc
