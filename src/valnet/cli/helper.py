# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valnet/cli/helper.py

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from valnet.config.models import ClusterHandshake, NodeConfig, NodePaths, ToolPaths
from valnet.errors import ConfigError
from valnet.genesis.builder import GenesisBuilder
from valnet.join.coordinator import JoinCoordinator, clear_config_dir
from valnet.join.sync import RemoteFileSync
from valnet.keys.provisioner import FAUCET, KeypairProvisioner, names_for_role
from valnet.launch.launcher import NODE_INIT_TIMEOUT_S, NodeLauncher, ProcessHandle
from valnet.launch.supervisor import Supervisor
from valnet.logging.log import default_log_dir
from valnet.observers.console import ConsoleObserver
from valnet.observers.dispatcher import EventBus
from valnet.observers.jsonfile import JsonFileObserver
from valnet.observers.logger import LoggerObserver
from valnet.utils.runner import CommandRunner
from valnet.utils.ssh import RemoteHost

log = logging.getLogger("valnet")


def build_bus(logger: logging.Logger, run_id: str, *, quiet: bool = False) -> EventBus:
    observers = [
        LoggerObserver(logger),
        JsonFileObserver(default_log_dir() / f"{run_id}.jsonl"),
    ]
    if not quiet:
        observers.insert(0, ConsoleObserver())
    return EventBus(observers=observers)


def raw_node_args(**flags: Any) -> Dict[str, Any]:
    """
    CLI flags as raw resolver input. Flags the operator did not pass are
    dropped so they never shadow values from an args file.
    """
    return {k: v for k, v in flags.items() if v is not None}


def deploy_bootstrap(
    cfg: NodeConfig,
    paths: NodePaths,
    *,
    bus: EventBus,
    run_ctx: dict,
    init_timeout: float = NODE_INIT_TIMEOUT_S,
) -> ProcessHandle:
    """
    Bootstrap validator: provision keys, build genesis, start the node
    (and its faucet when airdrops are on).
    """
    tools = ToolPaths(bin_dir=paths.bin_dir)
    runner = CommandRunner(label="genesis")
    config_dir = paths.config_dir

    handshake: Optional[ClusterHandshake] = None
    if not cfg.skip_setup:
        typer.echo("\n[genesis] Provisioning keypairs and building genesis...")
        clear_config_dir(config_dir)
        provisioner = KeypairProvisioner(paths.keypair_cache, config_dir, bus=bus, run_ctx=run_ctx)
        keypairs = provisioner.provision(names_for_role(cfg))
        handshake = GenesisBuilder(
            cfg, paths, tools=tools, runner=runner, bus=bus, run_ctx=run_ctx
        ).build(keypairs)
    elif (config_dir / ClusterHandshake.SHRED_VERSION_FILE).is_file():
        handshake = ClusterHandshake.read_from(
            config_dir, wait_for_supermajority=cfg.wait_for_supermajority
        )
    else:
        log.warning("skip_setup without an existing genesis in %s", config_dir)

    typer.echo("\n[launch] Starting bootstrap validator...")
    launcher = NodeLauncher(
        cfg,
        paths,
        supervisor=Supervisor(paths.supervisor_dir, runner=CommandRunner(label="supervisor")),
        tools=tools,
        bus=bus,
        run_ctx=run_ctx,
    )
    handle = launcher.launch(handshake)
    launcher.launch_faucet(config_dir / f"{FAUCET}.json")

    if cfg.wait_for_node_init:
        launcher.wait_for_init(timeout=init_timeout)
    return handle


def deploy_joining(
    cfg: NodeConfig,
    paths: NodePaths,
    *,
    bus: EventBus,
    run_ctx: dict,
    ssh_username: Optional[str] = None,
    ssh_key: Optional[Path] = None,
    catchup_timeout: Optional[float] = None,
    init_timeout: float = NODE_INIT_TIMEOUT_S,
) -> ProcessHandle:
    """Validator / blockstreamer: sync from the entrypoint and join."""
    if cfg.is_bootstrap:
        raise ConfigError("deploy_joining called for the bootstrap validator")

    typer.echo(f"\n[join] Joining cluster at {cfg.entrypoint}...")
    tools = ToolPaths(bin_dir=paths.bin_dir)
    host = RemoteHost(
        address=cfg.entrypoint_ip,
        username=ssh_username,
        pkey_path=ssh_key,
    )
    sync = RemoteFileSync(host, bus=bus, run_ctx=run_ctx)
    launcher = NodeLauncher(
        cfg,
        paths,
        supervisor=Supervisor(paths.supervisor_dir, runner=CommandRunner(label="supervisor")),
        tools=tools,
        bus=bus,
        run_ctx=run_ctx,
    )
    try:
        return JoinCoordinator(
            cfg,
            paths,
            sync=sync,
            launcher=launcher,
            provisioner=KeypairProvisioner(paths.keypair_cache, paths.config_dir, bus=bus, run_ctx=run_ctx),
            runner=CommandRunner(label="stake"),
            tools=tools,
            catchup_timeout=catchup_timeout,
            bus=bus,
            run_ctx=run_ctx,
        ).run(init_timeout=init_timeout)
    finally:
        sync.close()
