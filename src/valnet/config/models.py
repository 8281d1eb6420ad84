# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valnet/config/models.py

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..errors import HandshakeMismatch

GOSSIP_PORT = 8001
RPC_PORT = 8899

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"


class NodeRole(str, Enum):
    BOOTSTRAP = "bootstrap-validator"
    VALIDATOR = "validator"
    BLOCKSTREAMER = "blockstreamer"


class DeployMethod(str, Enum):
    LOCAL = "local"
    TAR = "tar"
    SKIP = "skip"


class GpuMode(str, Enum):
    ON = "on"      # GPU required, any vendor
    OFF = "off"    # CPU only
    AUTO = "auto"  # use a GPU if one is installed
    CUDA = "cuda"  # GPU required, CUDA only


class GpuCapability(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    require_gpu: bool = False
    cuda_only: bool = False

    @classmethod
    def from_mode(cls, mode: GpuMode) -> "GpuCapability":
        if mode is GpuMode.OFF:
            return cls()
        if mode is GpuMode.AUTO:
            return cls(enabled=True)
        if mode is GpuMode.ON:
            return cls(enabled=True, require_gpu=True)
        return cls(enabled=True, require_gpu=True, cuda_only=True)

    def env(self, present: bool) -> Dict[str, str]:
        """Validator environment for this capability given whether a GPU is installed."""
        if self.enabled and present:
            return {"SOLANA_CUDA": "1"}
        if self.require_gpu:
            return {"SOLANA_GPU_MISSING": "1"}
        return {}


class NodeConfig(BaseModel):
    """Resolved, immutable parameters for one node-bootstrap invocation."""

    model_config = ConfigDict(frozen=True)

    # Required
    deploy_method: DeployMethod
    role: NodeRole
    entrypoint_ip: str = Field(min_length=1)
    num_nodes: int = Field(ge=1)
    skip_setup: bool
    fail_on_validator_bootup_failure: bool

    # Optional
    node_index: Optional[int] = Field(default=None, ge=1)
    rust_log: Optional[str] = None
    external_primordial_accounts_file: Optional[Path] = None
    airdrops_enabled: bool = True
    internal_nodes_stake_lamports: Optional[int] = Field(default=None, ge=0)
    internal_nodes_lamports: Optional[int] = Field(default=None, ge=0)
    num_bench_tps_clients: int = Field(default=0, ge=0)
    bench_tps_extra_args: Tuple[str, ...] = ()
    num_bench_exchange_clients: int = Field(default=0, ge=0)
    bench_exchange_extra_args: Tuple[str, ...] = ()
    genesis_options: Tuple[str, ...] = ()
    extra_args: Tuple[str, ...] = ()
    gpu: GpuCapability = GpuCapability(enabled=True)
    warp_slot: Optional[int] = Field(default=None, ge=0)
    wait_for_node_init: bool = False
    extra_primordial_stakes: int = Field(default=0, ge=0)

    @property
    def is_bootstrap(self) -> bool:
        return self.role is NodeRole.BOOTSTRAP

    @property
    def stake_lamports(self) -> Optional[int]:
        return self.internal_nodes_stake_lamports

    @property
    def entrypoint(self) -> str:
        return f"{self.entrypoint_ip}:{GOSSIP_PORT}"

    @property
    def rpc_url(self) -> str:
        return f"http://{self.entrypoint_ip}:{RPC_PORT}"

    @property
    def wait_for_supermajority(self) -> Optional[int]:
        """Slot passed via ``--wait-for-supermajority`` in the extra node args."""
        args = list(self.extra_args)
        for i, arg in enumerate(args):
            if arg == "--wait-for-supermajority" and i + 1 < len(args):
                try:
                    return int(args[i + 1])
                except ValueError:
                    return None
        return None

    @property
    def effective_extra_primordial_stakes(self) -> int:
        return min(self.extra_primordial_stakes, self.num_nodes)

    def stake_assigned_at_genesis(self) -> bool:
        """True when genesis already delegated stake to this node's identity."""
        if self.node_index is None:
            return False
        return self.node_index <= self.effective_extra_primordial_stakes


class DeployRecord(BaseModel):
    """
    The part of NodeConfig later steps (sanity) read back from disk.
    """

    deploy_method: DeployMethod
    entrypoint_ip: str
    num_nodes: int
    fail_on_validator_bootup_failure: bool
    genesis_options: Tuple[str, ...] = ()
    airdrops_enabled: bool = True

    @classmethod
    def from_config(cls, cfg: NodeConfig) -> "DeployRecord":
        return cls(
            deploy_method=cfg.deploy_method,
            entrypoint_ip=cfg.entrypoint_ip,
            num_nodes=cfg.num_nodes,
            fail_on_validator_bootup_failure=cfg.fail_on_validator_bootup_failure,
            genesis_options=cfg.genesis_options,
            airdrops_enabled=cfg.airdrops_enabled,
        )

    @property
    def rpc_url(self) -> str:
        return f"http://{self.entrypoint_ip}:{RPC_PORT}"

    @property
    def entrypoint(self) -> str:
        return f"{self.entrypoint_ip}:{GOSSIP_PORT}"


@dataclass(frozen=True)
class ClusterHandshake:
    """
    Values every joining node must match exactly to be part of the cluster.
    """
    shred_version: int
    expected_bank_hash: Optional[str] = None
    wait_for_supermajority: Optional[int] = None

    SHRED_VERSION_FILE = "shred-version"
    BANK_HASH_FILE = "bank-hash"

    def verify(self, other: "ClusterHandshake") -> None:
        if self.shred_version != other.shred_version:
            raise HandshakeMismatch(
                f"shred version mismatch: expected {self.shred_version}, got {other.shred_version}"
            )
        if self.expected_bank_hash != other.expected_bank_hash:
            raise HandshakeMismatch(
                f"bank hash mismatch: expected {self.expected_bank_hash}, got {other.expected_bank_hash}"
            )

    def write_to(self, config_dir: Path) -> None:
        config_dir.mkdir(parents=True, exist_ok=True)
        (config_dir / self.SHRED_VERSION_FILE).write_text(f"{self.shred_version}\n")
        bank_hash_path = config_dir / self.BANK_HASH_FILE
        if self.expected_bank_hash:
            bank_hash_path.write_text(f"{self.expected_bank_hash}\n")
        elif bank_hash_path.exists():
            bank_hash_path.unlink()

    @classmethod
    def read_from(
        cls,
        config_dir: Path,
        *,
        wait_for_supermajority: Optional[int] = None,
    ) -> "ClusterHandshake":
        raw = (config_dir / cls.SHRED_VERSION_FILE).read_text().strip()
        if not raw:
            raise HandshakeMismatch(f"{config_dir / cls.SHRED_VERSION_FILE} is empty")
        try:
            shred_version = int(raw.splitlines()[-1].strip())
        except ValueError as e:
            raise HandshakeMismatch(f"invalid shred version {raw!r}") from e

        bank_hash = None
        bank_hash_path = config_dir / cls.BANK_HASH_FILE
        if bank_hash_path.is_file() and os.access(bank_hash_path, os.R_OK):
            bank_hash = bank_hash_path.read_text().strip() or None

        return cls(
            shred_version=shred_version,
            expected_bank_hash=bank_hash,
            wait_for_supermajority=wait_for_supermajority,
        )


def _default_work_dir() -> Path:
    env = os.environ.get("VALNET_WORKDIR")
    return Path(env) if env else Path.home() / "solana"


@dataclass
class NodePaths:
    """
    On-host layout shared by every component of one node.
    """
    work_dir: Path = field(default_factory=_default_work_dir)
    bin_dir: Path = field(default_factory=lambda: Path.home() / ".cargo" / "bin")
    version_manifest: Path = field(default_factory=lambda: Path.home() / "version.yml")

    # Locations on the entrypoint host, relative to the remote login directory
    remote_work_dir: str = "solana"
    remote_bin_dir: str = ".cargo/bin"
    remote_version_manifest: str = "version.yml"

    @property
    def config_dir(self) -> Path:
        return self.work_dir / "config"

    @property
    def keypair_cache(self) -> Path:
        return self.work_dir / "net" / "keypairs"

    @property
    def ledger_dir(self) -> Path:
        return self.config_dir / "bootstrap-validator"

    @property
    def init_complete_file(self) -> Path:
        return self.work_dir / "init-complete-node.log"

    @property
    def supervisor_dir(self) -> Path:
        return self.work_dir / "supervisor"

    @property
    def deploy_record(self) -> Path:
        return self.work_dir / "deploy-config.yaml"

    @property
    def remote_config_dir(self) -> str:
        return f"{self.remote_work_dir}/config"


@dataclass
class ToolPaths:
    """
    External executables; resolved inside bin_dir when present there.
    """
    bin_dir: Optional[Path] = None
    validator: str = "solana-validator"
    faucet: str = "solana-faucet"
    genesis: str = "solana-genesis"
    ledger_tool: str = "solana-ledger-tool"
    bench_tps: str = "solana-bench-tps"
    bench_exchange: str = "solana-bench-exchange"
    cli: str = "solana"
    installer: str = "solana-install"
    gossip: str = "solana-gossip"

    def path(self, name: str) -> str:
        if self.bin_dir is not None:
            candidate = self.bin_dir / name
            if candidate.exists():
                return str(candidate)
        return name
