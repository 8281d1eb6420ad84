# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valnet/join/coordinator.py

from __future__ import annotations

import logging
import shutil
import subprocess
import time
from decimal import Decimal
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import requests

from ..config.models import RPC_PORT, ClusterHandshake, DeployMethod, NodeConfig, NodePaths, NodeRole, ToolPaths
from ..errors import ConfigError, JoinError, JoinTimeoutError, ValnetError
from ..keys.provisioner import FAUCET, KeypairProvisioner
from ..launch.launcher import NODE_INIT_TIMEOUT_S, LaunchState, NodeLauncher, ProcessHandle
from ..observers.dispatcher import EventBus
from ..observers.events import (
    CatchupCompleted,
    CatchupStarted,
    JoinSummary,
    StakeDelegated,
    StakeDelegationSkipped,
    new_ctx,
)
from ..rpc.client import JsonRpcClient, RpcError
from ..utils.runner import CommandRunner, stderr_tail
from .sync import RemoteFileSync

log = logging.getLogger("valnet")

LAMPORTS_PER_SOL = 1_000_000_000
DEFAULT_STAKE_SOL = "1"
CATCHUP_POLL_S = 5.0


def clear_config_dir(config_dir: Path) -> None:
    """Wipe the node's config dir but keep the directory itself."""
    if config_dir.is_dir():
        for entry in config_dir.iterdir():
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()
    config_dir.mkdir(parents=True, exist_ok=True)


def lamports_to_sol(lamports: Optional[int]) -> str:
    if lamports is None:
        return DEFAULT_STAKE_SOL
    return format(Decimal(lamports) / LAMPORTS_PER_SOL, "f")


class JoinCoordinator:
    """
    Brings a validator or blockstreamer into a cluster whose bootstrap node
    is already up: fetch its handshake artifacts, launch with them, catch
    up, then delegate stake.
    """

    def __init__(
        self,
        cfg: NodeConfig,
        paths: NodePaths,
        *,
        sync: RemoteFileSync,
        launcher: NodeLauncher,
        provisioner: Optional[KeypairProvisioner] = None,
        runner: Optional[CommandRunner] = None,
        tools: Optional[ToolPaths] = None,
        local_rpc: Optional[JsonRpcClient] = None,
        remote_rpc: Optional[JsonRpcClient] = None,
        catchup_timeout: Optional[float] = None,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if cfg.is_bootstrap:
            raise ConfigError("the bootstrap validator does not join, it builds genesis")
        self.cfg = cfg
        self.paths = paths
        self.sync = sync
        self.launcher = launcher
        self.provisioner = provisioner or KeypairProvisioner(paths.keypair_cache, paths.config_dir)
        self.runner = runner or CommandRunner(label="join")
        self.tools = tools or ToolPaths(bin_dir=paths.bin_dir)
        self.local_rpc = local_rpc or JsonRpcClient(f"http://127.0.0.1:{RPC_PORT}")
        self.remote_rpc = remote_rpc or JsonRpcClient(cfg.rpc_url)
        self.catchup_timeout = catchup_timeout
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx(role=cfg.role.value, host=cfg.entrypoint_ip)
        self.sleep = sleep
        self.clock = clock

    # ---------- (a) artifacts ----------

    def identity_sources(self) -> List[Tuple[str, str]]:
        """(remote file name, local file name) pairs for this node's keys."""
        if self.cfg.role is NodeRole.BLOCKSTREAMER:
            return [("blockstreamer-identity.json", "validator-identity.json")]
        if self.cfg.node_index is None:
            raise ConfigError("node_index not specified")
        n = self.cfg.node_index
        return [
            (f"validator-identity-{n}.json", "validator-identity.json"),
            (f"validator-stake-{n}.json", "stake-account.json"),
            (f"validator-vote-{n}.json", "vote-account.json"),
        ]

    def sync_binaries(self) -> None:
        if self.cfg.deploy_method is DeployMethod.SKIP:
            log.info("Deploy method is skip; using the binaries already on this host")
            return
        self.sync.fetch_dir(self.paths.remote_bin_dir, self.paths.bin_dir)
        self.sync.fetch(self.paths.remote_version_manifest, self.paths.version_manifest)

    def sync_config(self) -> None:
        config_dir = self.paths.config_dir
        remote = self.paths.remote_config_dir
        clear_config_dir(config_dir)

        for src, dst in self.identity_sources():
            self.sync.fetch(f"{remote}/{src}", config_dir / dst, mode=0o600)

        self.sync.fetch(f"{remote}/{ClusterHandshake.SHRED_VERSION_FILE}", config_dir / ClusterHandshake.SHRED_VERSION_FILE)
        self.sync.fetch(
            f"{remote}/{ClusterHandshake.BANK_HASH_FILE}",
            config_dir / ClusterHandshake.BANK_HASH_FILE,
            required=False,
        )
        self.sync.fetch(f"{remote}/{FAUCET}.json", config_dir / f"{FAUCET}.json", mode=0o600)

    # ---------- (b) handshake ----------

    def handshake(self) -> ClusterHandshake:
        config_dir = self.paths.config_dir
        if not (config_dir / ClusterHandshake.SHRED_VERSION_FILE).is_file():
            raise JoinError(f"no shred version in {config_dir}; was the bootstrap node set up?")
        hs = ClusterHandshake.read_from(
            config_dir, wait_for_supermajority=self.cfg.wait_for_supermajority
        )
        log.info("Joining with shred_version=%s bank_hash=%s", hs.shred_version, hs.expected_bank_hash or "-")
        return hs

    def verify_handshake(self, hs: ClusterHandshake) -> None:
        """
        The synced shred version must equal the one the bootstrap
        advertises in gossip right now.
        """
        entrypoint = self.cfg.entrypoint
        try:
            nodes = self.remote_rpc.get_cluster_nodes()
        except (requests.RequestException, RpcError) as e:
            raise JoinError(f"cannot read cluster nodes from {self.remote_rpc.url}: {e}") from e

        advertised = next((n for n in nodes if n.get("gossip") == entrypoint), None)
        if advertised is None or advertised.get("shredVersion") is None:
            raise JoinError(f"bootstrap {entrypoint} does not advertise a shred version")
        live = ClusterHandshake(
            shred_version=int(advertised["shredVersion"]),
            expected_bank_hash=hs.expected_bank_hash,
        )
        hs.verify(live)
        log.info("Bootstrap %s advertises shred_version=%d", entrypoint, live.shred_version)

    def ensure_local_keys(self) -> None:
        identity, vote = self.launcher.identity_paths()
        for path in (identity, vote):
            if self.provisioner.ensure(path):
                log.info("Generated missing keypair %s", path.name)

    # ---------- (c) catchup ----------

    def wait_for_catchup(self, poll_interval: float = CATCHUP_POLL_S) -> int:
        """
        Poll until the local node's slot reaches the bootstrap's. RPC errors
        while the node is still starting are expected and just retried.
        """
        self.bus.emit(CatchupStarted(rpc_url=self.remote_rpc.url, **self.run_ctx))
        start = self.clock()
        while True:
            try:
                remote_slot = self.remote_rpc.get_slot()
                local_slot = self.local_rpc.get_slot()
            except (requests.RequestException, RpcError) as e:
                log.debug("catchup probe failed: %s", e)
            else:
                if local_slot >= remote_slot:
                    log.info("Caught up at slot %d", local_slot)
                    self.bus.emit(CatchupCompleted(slot=local_slot, **self.run_ctx))
                    return local_slot
                log.info("Catching up: local slot %d, bootstrap slot %d", local_slot, remote_slot)

            if self.launcher.poll() is LaunchState.CRASHED:
                raise JoinError("validator exited while catching up")
            if self.catchup_timeout is not None and self.clock() - start >= self.catchup_timeout:
                raise JoinTimeoutError(f"node did not catch up within {int(self.catchup_timeout)}s")
            self.sleep(poll_interval)

    # ---------- (d) stake ----------

    def delegation_commands(self) -> List[Tuple[str, List[str]]]:
        """(step, argv) for each CLI call, in order; the identity pays fees."""
        config_dir = self.paths.config_dir
        identity, vote = self.launcher.identity_paths()
        stake_account = config_dir / "stake-account.json"
        cli = self.tools.path(self.tools.cli)
        common = [cli, "--url", self.cfg.rpc_url, "--keypair", str(identity)]
        amount = lamports_to_sol(self.cfg.stake_lamports)

        steps: List[Tuple[str, List[str]]] = []
        if self.cfg.airdrops_enabled:
            steps.append(("airdrop", [*common, "airdrop", amount]))
        steps.append(("create-stake-account", [*common, "create-stake-account", str(stake_account), amount]))
        steps.append(("delegate-stake", [*common, "delegate-stake", str(stake_account), str(vote)]))
        return steps

    def delegate_stake(self) -> bool:
        if self.cfg.stake_assigned_at_genesis():
            reason = f"node {self.cfg.node_index} was staked at genesis"
            log.info("Skipping stake delegation: %s", reason)
            self.bus.emit(StakeDelegationSkipped(reason=reason, **self.run_ctx))
            return False

        self.provisioner.ensure(self.paths.config_dir / "stake-account.json")
        for step, cmd in self.delegation_commands():
            try:
                self.runner.run(cmd, check=True)
            except subprocess.CalledProcessError as e:
                raise JoinError(f"stake delegation step {step} failed: {stderr_tail(e)}") from e
            except OSError as e:
                raise JoinError(f"stake delegation step {step} failed: {e}") from e

        log.info("Delegated stake to %s", self.launcher.identity_paths()[1].name)
        self.bus.emit(StakeDelegated(lamports=self.cfg.stake_lamports, **self.run_ctx))
        return True

    # ---------- orchestration ----------

    def run(self, *, init_timeout: float = NODE_INIT_TIMEOUT_S) -> ProcessHandle:
        try:
            handle = self._run(init_timeout)
        except ValnetError as e:
            self.bus.emit(JoinSummary(status="FAILED", error=str(e), **self.run_ctx))
            raise
        self.bus.emit(JoinSummary(status="OK", **self.run_ctx))
        return handle

    def _run(self, init_timeout: float) -> ProcessHandle:
        cfg = self.cfg
        self.sync_binaries()
        if not cfg.skip_setup:
            self.sync_config()

        hs = self.handshake()
        self.ensure_local_keys()

        handle = self.launcher.launch(hs)
        if cfg.role is NodeRole.BLOCKSTREAMER:
            self.launcher.launch_faucet(self.paths.config_dir / f"{FAUCET}.json")

        if cfg.wait_for_node_init:
            self.launcher.wait_for_init(timeout=init_timeout)

        if not cfg.skip_setup and cfg.role is NodeRole.VALIDATOR:
            self.verify_handshake(hs)
            self.wait_for_catchup()
            self.delegate_stake()
        return handle
