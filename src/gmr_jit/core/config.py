# Copyright (c) 2025.
# This file is part of GMR-JIT, released under the MIT License.
"""
JSON configuration helpers.

Every configurable component (matchers, scan registration, loop-closure
services, the refinement pipeline) reads a flat JSON object. These helpers
centralise reading, key validation and relative-path resolution so that a
malformed file always surfaces as a :class:`ConfigurationError`.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from gmr_jit.core.errors import ConfigurationError

PathLike = Union[str, Path]
ConfigSource = Union[None, PathLike, Mapping[str, Any]]


def read_json(config_path: PathLike) -> Dict[str, Any]:
    path = Path(config_path)
    try:
        with path.open("r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Unable to read config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config {path} must contain a JSON object")
    return data


def validate_keys(required: Iterable[str], j: Mapping[str, Any], context: str = "config") -> None:
    missing = [k for k in required if k not in j]
    if missing:
        raise ConfigurationError(f"Missing required keys in {context}: {missing}")


def resolve_path(relative: str, base_dir: Optional[PathLike]) -> str:
    """Resolve ``relative`` against ``base_dir``; empty stays empty."""
    if not relative:
        return ""
    p = Path(relative)
    if p.is_absolute() or base_dir is None:
        return str(p)
    return str(Path(base_dir) / p)


def load_config(source: ConfigSource) -> Dict[str, Any]:
    """
    Normalise a config source to a dict.

    ``None`` or ``""`` gives an empty dict (component defaults), a mapping is
    copied, anything else is treated as a path to a JSON file.
    """
    if source is None or source == "":
        return {}
    if isinstance(source, Mapping):
        return dict(source)
    return read_json(source)
