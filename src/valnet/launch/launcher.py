# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valnet/launch/launcher.py

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..config.models import GOSSIP_PORT, RPC_PORT, ClusterHandshake, NodeConfig, NodePaths, NodeRole, ToolPaths
from ..errors import JoinError, JoinTimeoutError, LaunchError
from ..observers.dispatcher import EventBus
from ..observers.events import NodeInitCompleted, NodeInitTimedOut, NodeInitWaitStarted, NodeLaunched, new_ctx
from .supervisor import SpawnResult, Supervisor, SupervisorSpec, nvidia_present

log = logging.getLogger("valnet")

NODE_INIT_TIMEOUT_S = 600
BLOCKSTREAM_SOCKET = "/tmp/solana-blockstream.sock"


class LaunchState(str, Enum):
    NOT_STARTED = "NotStarted"
    LAUNCHING = "Launching"
    RUNNING = "Running"
    STOPPED = "Stopped"
    CRASHED = "Crashed"


_TRANSITIONS = {
    LaunchState.NOT_STARTED: {LaunchState.LAUNCHING},
    LaunchState.LAUNCHING: {LaunchState.RUNNING, LaunchState.CRASHED},
    LaunchState.RUNNING: {LaunchState.STOPPED, LaunchState.CRASHED},
    LaunchState.STOPPED: set(),
    LaunchState.CRASHED: set(),
}


@dataclass(frozen=True)
class ProcessHandle:
    pid: int
    init_complete_marker: Path
    log_path: Path


class NodeLauncher:
    """
    Builds the validator's flag vector for a role and starts it detached
    under the supervisor, optionally waiting for its init-complete marker.
    """

    def __init__(
        self,
        cfg: NodeConfig,
        paths: NodePaths,
        *,
        supervisor: Supervisor,
        tools: Optional[ToolPaths] = None,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
        gpu_probe: Callable[[], bool] = nvidia_present,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cfg = cfg
        self.paths = paths
        self.supervisor = supervisor
        self.tools = tools or ToolPaths(bin_dir=paths.bin_dir)
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx(role=cfg.role.value, host=cfg.entrypoint_ip)
        self.gpu_probe = gpu_probe
        self.sleep = sleep
        self.clock = clock

        self._state = LaunchState.NOT_STARTED
        self._spawn: Optional[SpawnResult] = None
        self.handle: Optional[ProcessHandle] = None

    # ---------- state machine ----------

    @property
    def state(self) -> LaunchState:
        return self._state

    def _transition(self, new: LaunchState) -> None:
        if new not in _TRANSITIONS[self._state]:
            raise LaunchError(f"invalid launcher transition {self._state.value} -> {new.value}")
        log.debug("launcher: %s -> %s", self._state.value, new.value)
        self._state = new

    # ---------- arguments ----------

    def identity_paths(self) -> tuple[Path, Path]:
        cdir = self.paths.config_dir
        if self.cfg.is_bootstrap:
            return cdir / "bootstrap-validator-identity.json", cdir / "bootstrap-validator-vote.json"
        return cdir / "validator-identity.json", cdir / "vote-account.json"

    def build_args(self, handshake: Optional[ClusterHandshake]) -> List[str]:
        cfg = self.cfg
        identity, vote = self.identity_paths()

        if cfg.is_bootstrap:
            args = [
                "--ledger", str(self.paths.ledger_dir),
                "--gossip-host", cfg.entrypoint_ip,
                "--gossip-port", str(GOSSIP_PORT),
                "--rpc-port", str(RPC_PORT),
            ]
        else:
            if handshake is None:
                raise LaunchError("a joining node needs the bootstrap's shred version")
            args = [
                "--ledger", str(self.paths.config_dir / "validator-ledger"),
                "--entrypoint", cfg.entrypoint,
                "--gossip-port", str(GOSSIP_PORT),
                "--rpc-port", str(RPC_PORT),
            ]

        if handshake is not None:
            args += ["--expected-shred-version", str(handshake.shred_version)]

        if cfg.role is NodeRole.BLOCKSTREAMER:
            args += [
                "--blockstream", BLOCKSTREAM_SOCKET,
                "--no-voting",
                "--dev-no-sigverify",
                "--enable-rpc-transaction-history",
            ]
        elif not cfg.is_bootstrap and cfg.internal_nodes_lamports is not None:
            args += ["--node-lamports", str(cfg.internal_nodes_lamports)]

        args += ["--identity", str(identity), "--vote-account", str(vote)]

        if not cfg.airdrops_enabled:
            args.append("--no-airdrop")

        if handshake is not None and handshake.expected_bank_hash:
            args += ["--expected-bank-hash", handshake.expected_bank_hash]

        args += ["--init-complete-file", str(self.paths.init_complete_file)]
        args += list(cfg.extra_args)
        return args

    def launch_env(self) -> Dict[str, str]:
        """
        GPU capability is forwarded to the validator rather than enforced
        here: a required-but-missing GPU sets SOLANA_GPU_MISSING and the
        process itself decides how to fail.
        """
        env: Dict[str, str] = {}
        if self.cfg.rust_log:
            env["RUST_LOG"] = self.cfg.rust_log

        gpu_env = self.cfg.gpu.env(self.gpu_probe())
        if "SOLANA_CUDA" in gpu_env:
            log.info("Selecting CUDA validator")
        elif "SOLANA_GPU_MISSING" in gpu_env:
            log.error("Expected GPU, found none!")
        env.update(gpu_env)
        return env

    # ---------- lifecycle ----------

    def launch(self, handshake: Optional[ClusterHandshake]) -> ProcessHandle:
        self._transition(LaunchState.LAUNCHING)
        marker = self.paths.init_complete_file
        marker.unlink(missing_ok=True)

        spec = SupervisorSpec(
            name="validator",
            argv=[self.tools.path(self.tools.validator), *self.build_args(handshake)],
            env=self.launch_env(),
            cwd=str(self.paths.work_dir),
            log_dir=str(self.paths.work_dir),
            log_name="validator.log",
            gpu=self.cfg.gpu,
        )
        try:
            self.supervisor.register(spec)
            self._spawn = self.supervisor.start(spec)
        except LaunchError:
            self._transition(LaunchState.CRASHED)
            raise
        except OSError as e:
            self._transition(LaunchState.CRASHED)
            raise LaunchError(f"cannot register validator: {e}") from e

        self.handle = ProcessHandle(
            pid=self._spawn.pid,
            init_complete_marker=marker,
            log_path=self._spawn.log_path,
        )
        self._transition(LaunchState.RUNNING)
        self.bus.emit(NodeLaunched(pid=self.handle.pid, log_path=str(self.handle.log_path), **self.run_ctx))
        return self.handle

    def launch_faucet(self, faucet_keypair: Path) -> Optional[SpawnResult]:
        """Airdrop faucet next to bootstrap/blockstreamer nodes."""
        if not self.cfg.airdrops_enabled or self.cfg.role is NodeRole.VALIDATOR:
            return None
        spec = SupervisorSpec(
            name="faucet",
            argv=[self.tools.path(self.tools.faucet), "--keypair", str(faucet_keypair)],
            env={"RUST_LOG": self.cfg.rust_log} if self.cfg.rust_log else {},
            cwd=str(self.paths.work_dir),
            log_dir=str(self.paths.work_dir),
            log_name="faucet.log",
            oom_score_adj=None,
        )
        self.supervisor.register(spec)
        return self.supervisor.start(spec)

    def _exited(self) -> bool:
        if self._spawn is None:
            return True
        if self._spawn.process is not None:
            return self._spawn.process.poll() is not None
        return not self.supervisor.is_alive(self._spawn.pid)

    def poll(self) -> LaunchState:
        if self._state is LaunchState.RUNNING and self._exited():
            log.error("Validator process %d exited unexpectedly", self._spawn.pid)
            self._transition(LaunchState.CRASHED)
        return self._state

    def stop(self) -> None:
        if self._state is not LaunchState.RUNNING:
            raise LaunchError(f"cannot stop a launcher in state {self._state.value}")
        self.supervisor.stop(self._spawn.pid)
        self._transition(LaunchState.STOPPED)

    def wait_for_init(
        self,
        timeout: float = NODE_INIT_TIMEOUT_S,
        poll_interval: float = 1.0,
    ) -> float:
        """
        Block until the validator writes its init-complete marker.
        Returns the seconds waited; raises JoinTimeoutError on expiry.
        """
        if self.handle is None:
            raise LaunchError("wait_for_init called before launch")

        marker = self.handle.init_complete_marker
        self.bus.emit(NodeInitWaitStarted(marker=str(marker), timeout_s=int(timeout), **self.run_ctx))
        start = self.clock()
        while True:
            waited = self.clock() - start
            if marker.exists():
                log.info("Node initialized after %.0fs", waited)
                self.bus.emit(NodeInitCompleted(waited_s=int(waited), **self.run_ctx))
                return waited
            if self.poll() is LaunchState.CRASHED:
                raise JoinError(
                    f"validator exited before init completed; see {self.handle.log_path}"
                )
            if waited >= timeout:
                self.bus.emit(NodeInitTimedOut(timeout_s=int(timeout), **self.run_ctx))
                raise JoinTimeoutError(f"init-complete marker {marker} not seen after {int(timeout)}s")
            self.sleep(poll_interval)
