# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valnet/config/loader.py

import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from ..errors import ConfigError
from .models import NodeConfig
from .resolver import resolve_node_config

log = logging.getLogger("valnet")


def _deep_merge(base: dict, override: Mapping) -> dict:
    """
    Recursively merge *override* into *base* (mutates base).
    Only overwrites when the override value is non-empty.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            _deep_merge(base[key], value)
        else:
            if value not in (None, ""):
                base[key] = value
    return base


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    raw = path.read_text()
    expanded = os.path.expandvars(raw)
    data = yaml.safe_load(expanded) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping of node arguments")
    return data


def load_node_args(path: str | Path) -> dict:
    """
    Read raw node arguments from a YAML file.

    Keys are the raw field names accepted by ``resolve_node_config``
    (``deploy_method``, ``role``, ``entrypoint_ip``, ...). ``${ENV_VAR}``
    placeholders are resolved with ``os.path.expandvars`` at load time, so
    an orchestrator can template one file for every machine.
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"node args file {path} does not exist")
    log.debug("Loading node args from %s", path)
    return _load_yaml(path)


def load_node_config(
    path: Optional[str | Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> NodeConfig:
    """
    Merge file arguments with CLI overrides (non-empty overrides win), then
    resolve them into a NodeConfig.
    """
    data: dict = load_node_args(path) if path else {}
    if overrides:
        _deep_merge(data, overrides)
    return resolve_node_config(data)
