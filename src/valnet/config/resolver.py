# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valnet/config/resolver.py

from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Any, Iterable, Mapping, Tuple

import yaml
from pydantic import ValidationError

from ..errors import ConfigError
from .models import DeployMethod, DeployRecord, GpuCapability, GpuMode, NodeConfig, NodeRole

log = logging.getLogger("valnet")

# Checked in this order; the first empty one is reported.
REQUIRED_FIELDS: Tuple[str, ...] = (
    "deploy_method",
    "role",
    "entrypoint_ip",
    "num_nodes",
    "skip_setup",
    "fail_on_validator_bootup_failure",
)

# Raw keys whose value may be a single shell-quoted string.
_ARG_LIST_FIELDS = (
    "bench_tps_extra_args",
    "bench_exchange_extra_args",
    "genesis_options",
    "extra_args",
)

_TRUE = {"1", "true", "yes", "on", "y"}
_FALSE = {"0", "false", "no", "off", "n"}


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _as_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigError(f"{name} must be true or false, got {value!r}")


def _as_args(value: Any) -> Tuple[str, ...]:
    if _is_empty(value):
        return ()
    if isinstance(value, str):
        return tuple(shlex.split(value))
    if isinstance(value, Iterable):
        return tuple(str(v) for v in value)
    raise ConfigError(f"cannot interpret {value!r} as an argument list")


def parse_gpu_mode(value: Any) -> GpuCapability:
    raw = "auto" if _is_empty(value) else str(value).strip()
    try:
        mode = GpuMode(raw)
    except ValueError:
        raise ConfigError(f'Unexpected gpuMode: "{raw}"') from None
    return GpuCapability.from_mode(mode)


def resolve_node_config(raw: Mapping[str, Any]) -> NodeConfig:
    """
    Validate raw CLI/file arguments into an immutable NodeConfig.

    Fails with ConfigError naming the first missing or invalid field; a
    partially filled config is never returned.
    """
    for name in REQUIRED_FIELDS:
        if _is_empty(raw.get(name)):
            raise ConfigError(f"{name} not specified")

    try:
        deploy_method = DeployMethod(str(raw["deploy_method"]).strip())
    except ValueError:
        raise ConfigError(f"Unknown deployment method: {raw['deploy_method']}") from None

    try:
        role = NodeRole(str(raw["role"]).strip())
    except ValueError:
        raise ConfigError(f"unknown node type: {raw['role']}") from None

    data: dict[str, Any] = {
        k: v for k, v in raw.items()
        if not _is_empty(v) and k not in ("gpu_mode", "disable_airdrops")
    }
    data["deploy_method"] = deploy_method
    data["role"] = role
    data["skip_setup"] = _as_bool("skip_setup", raw["skip_setup"])
    data["fail_on_validator_bootup_failure"] = _as_bool(
        "fail_on_validator_bootup_failure", raw["fail_on_validator_bootup_failure"]
    )
    if "wait_for_node_init" in data:
        data["wait_for_node_init"] = _as_bool("wait_for_node_init", data["wait_for_node_init"])
    for name in _ARG_LIST_FIELDS:
        if name in raw:
            data[name] = _as_args(raw[name])

    disable = raw.get("disable_airdrops")
    data["airdrops_enabled"] = _is_empty(disable) or disable is False
    data["gpu"] = parse_gpu_mode(raw.get("gpu_mode"))

    if (
        role is NodeRole.VALIDATOR
        and not data["skip_setup"]
        and _is_empty(raw.get("node_index"))
    ):
        raise ConfigError("node_index not specified")

    try:
        cfg = NodeConfig.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ())) or "config"
        raise ConfigError(f"{loc}: {first.get('msg', 'invalid value')}") from e

    log.debug(
        "Resolved %s node config (entrypoint=%s, nodes=%d)",
        cfg.role.value, cfg.entrypoint_ip, cfg.num_nodes,
    )
    return cfg


def write_deploy_record(cfg: NodeConfig, path: Path) -> DeployRecord:
    record = DeployRecord.from_config(cfg)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(record.model_dump(mode="json"), sort_keys=False))
    log.debug("Wrote deploy record %s", path)
    return record


def load_deploy_record(path: Path) -> DeployRecord:
    if not path.is_file():
        raise ConfigError("deploy config missing")
    data = yaml.safe_load(path.read_text()) or {}
    for name in ("deploy_method", "entrypoint_ip", "num_nodes", "fail_on_validator_bootup_failure"):
        if _is_empty(data.get(name)):
            raise ConfigError(f"{name} not specified")
    try:
        return DeployRecord.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ())) or "deploy config"
        raise ConfigError(f"{loc}: {first.get('msg', 'invalid value')}") from e
