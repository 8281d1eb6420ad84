# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valnet/genesis/builder.py

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

import yaml

from ..config.models import SYSTEM_PROGRAM_ID, ClusterHandshake, NodeConfig, NodePaths, ToolPaths
from ..errors import ConfigError, GenesisError
from ..keys.keypair import read_pubkey
from ..keys.provisioner import BOOTSTRAP_IDENTITY, FAUCET, companion_names
from ..observers.dispatcher import EventBus
from ..observers.events import GenesisBuilt, GenesisFailed, new_ctx
from ..utils.runner import CommandRunner, stderr_tail

log = logging.getLogger("valnet")

DEFAULT_LAMPORTS_PER_SIGNATURE = "42"
MAX_GENESIS_ARCHIVE_UNPACKED_SIZE = "1073741824"


def lamports_per_signature(genesis_options: Sequence[str]) -> str:
    opts = list(genesis_options)
    for i, opt in enumerate(opts):
        if opt == "--target-lamports-per-signature" and i + 1 < len(opts):
            return opts[i + 1]
    return DEFAULT_LAMPORTS_PER_SIGNATURE


class GenesisBuilder:
    """
    Bootstrap-only: assembles primordial balances and stake delegations,
    runs the external genesis/ledger tooling once, and publishes the
    resulting handshake (shred version, optional bank hash) as files.

    Failures are fatal; genesis is never retried.
    """

    def __init__(
        self,
        cfg: NodeConfig,
        paths: NodePaths,
        *,
        tools: Optional[ToolPaths] = None,
        runner: Optional[CommandRunner] = None,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
    ):
        if not cfg.is_bootstrap:
            raise ConfigError(f"genesis is built by the bootstrap node, not {cfg.role.value}")
        self.cfg = cfg
        self.paths = paths
        self.tools = tools or ToolPaths(bin_dir=paths.bin_dir)
        self.runner = runner or CommandRunner(label="genesis")
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx(role=cfg.role.value, host=cfg.entrypoint_ip)

    # ------------- primordial accounts -------------

    @property
    def balances_file(self) -> Path:
        return self.paths.config_dir / "validator-balances.yml"

    @property
    def client_accounts_file(self) -> Path:
        return self.paths.config_dir / "client-accounts.yml"

    def validator_balances(self, keypairs: Mapping[str, Path]) -> Dict[str, dict]:
        """
        One system-owned balance per provisioned validator / blockstreamer
        key set. The funded key is the last of each companion group.
        """
        balances: Dict[str, dict] = {}
        lamports = self.cfg.internal_nodes_lamports
        if lamports is not None:
            for name in keypairs:
                if not (name.startswith("validator-identity-") or name == "blockstreamer-identity"):
                    continue
                funded = keypairs[companion_names(name)[-1]]
                balances[read_pubkey(funded)] = {
                    "balance": lamports,
                    "owner": SYSTEM_PROGRAM_ID,
                    "data": None,
                    "executable": False,
                }

        external = self.cfg.external_primordial_accounts_file
        if external is not None and Path(external).is_file():
            extra = yaml.safe_load(Path(external).read_text()) or {}
            if not isinstance(extra, dict):
                raise GenesisError(f"{external} must be a mapping of pubkey -> account")
            balances.update(extra)
        return balances

    def write_client_accounts(self) -> Dict[str, dict]:
        accounts: Dict[str, dict] = {}
        lps = lamports_per_signature(self.cfg.genesis_options)

        for i in range(self.cfg.num_bench_tps_clients):
            keys_file = self.paths.config_dir / f"bench-tps{i}.yml"
            self._tool(
                [
                    self.tools.path(self.tools.bench_tps),
                    "--write-client-keys", keys_file,
                    "--target-lamports-per-signature", lps,
                    *self.cfg.bench_tps_extra_args,
                ],
                "bench-tps client keys",
            )
            accounts.update(self._read_accounts(keys_file))

        for i in range(self.cfg.num_bench_exchange_clients):
            keys_file = self.paths.config_dir / f"bench-exchange{i}.yml"
            self._tool(
                [
                    self.tools.path(self.tools.bench_exchange),
                    "--batch-size", "1000",
                    "--fund-amount", "20000",
                    "--write-client-keys", keys_file,
                    *self.cfg.bench_exchange_extra_args,
                ],
                "bench-exchange client keys",
            )
            accounts.update(self._read_accounts(keys_file))

        return accounts

    def _read_accounts(self, path: Path) -> Dict[str, dict]:
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except (OSError, yaml.YAMLError) as e:
            raise GenesisError(f"cannot read client keys {path}: {e}") from e
        if not isinstance(data, dict):
            raise GenesisError(f"{path} does not contain client accounts")
        return data

    def _dump(self, accounts: Dict[str, dict], path: Path) -> Optional[Path]:
        if not accounts:
            return None
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(accounts, explicit_start=True, sort_keys=False))
        return path

    # ------------- genesis arguments -------------

    def extra_stake_args(self, keypairs: Mapping[str, Path]) -> List[str]:
        """
        ``--bootstrap-validator identity vote stake`` for the first N
        validators, N clamped to the node count.
        """
        requested = self.cfg.extra_primordial_stakes
        count = self.cfg.effective_extra_primordial_stakes
        if requested > count:
            log.warning(
                "extraPrimordialStakes(%d) clamped to numNodes(%d)", requested, self.cfg.num_nodes
            )

        args: List[str] = []
        for i in range(1, count + 1):
            group = companion_names(f"validator-identity-{i}")
            args.append("--bootstrap-validator")
            args.extend(read_pubkey(keypairs[n]) for n in group)
        return args

    def genesis_args(self, keypairs: Mapping[str, Path], accounts_files: Sequence[Path]) -> List[str]:
        cfg = self.cfg
        args: List[str] = [
            self.tools.path(self.tools.genesis),
            "--ledger", str(self.paths.ledger_dir),
            "--faucet-pubkey", read_pubkey(keypairs[FAUCET]),
            "--bootstrap-validator",
            *(read_pubkey(keypairs[n]) for n in companion_names(BOOTSTRAP_IDENTITY)),
        ]
        for f in accounts_files:
            args += ["--primordial-accounts-file", str(f)]
        if cfg.internal_nodes_stake_lamports is not None:
            args += ["--bootstrap-validator-stake-lamports", str(cfg.internal_nodes_stake_lamports)]
        if cfg.internal_nodes_lamports is not None:
            args += ["--bootstrap-validator-lamports", str(cfg.internal_nodes_lamports)]
        args += list(cfg.genesis_options)
        args += self.extra_stake_args(keypairs)
        return args

    def warp_slot(self) -> Optional[int]:
        # No explicit warp slot: fall back to the wait-for-supermajority slot.
        if self.cfg.warp_slot is not None:
            return self.cfg.warp_slot
        return self.cfg.wait_for_supermajority

    # ------------- tooling -------------

    def _tool(self, cmd: Sequence, what: str) -> str:
        try:
            cp = self.runner.run(cmd, check=True)
        except subprocess.CalledProcessError as e:
            raise GenesisError(f"{what} failed: {stderr_tail(e)}") from e
        except OSError as e:
            raise GenesisError(f"{what} failed: {e}") from e
        return cp.stdout or ""

    def _ledger_tool(self, *args: str) -> str:
        return self._tool(
            [self.tools.path(self.tools.ledger_tool), "-l", str(self.paths.ledger_dir), *args],
            f"ledger tool {args[0]}",
        )

    def build(self, keypairs: Mapping[str, Path]) -> ClusterHandshake:
        try:
            handshake = self._build(keypairs)
        except GenesisError as e:
            self.bus.emit(GenesisFailed(error=str(e), **self.run_ctx))
            raise
        self.bus.emit(
            GenesisBuilt(
                shred_version=handshake.shred_version,
                bank_hash=handshake.expected_bank_hash,
                **self.run_ctx,
            )
        )
        return handshake

    def _build(self, keypairs: Mapping[str, Path]) -> ClusterHandshake:
        config_dir = self.paths.config_dir
        config_dir.mkdir(parents=True, exist_ok=True)

        accounts_files = [
            f for f in (
                self._dump(self.validator_balances(keypairs), self.balances_file),
                self._dump(self.write_client_accounts(), self.client_accounts_file),
            )
            if f is not None
        ]

        self._tool(self.genesis_args(keypairs, accounts_files), "genesis")

        warp = self.warp_slot()
        if warp is not None:
            self._ledger_tool(
                "create-snapshot", "0", str(self.paths.ledger_dir), "--warp-slot", str(warp)
            )

        out = self._ledger_tool(
            "shred-version", "--max-genesis-archive-unpacked-size", MAX_GENESIS_ARCHIVE_UNPACKED_SIZE
        ).strip()
        try:
            shred_version = int(out.splitlines()[-1].strip())
        except (ValueError, IndexError):
            raise GenesisError(f"ledger tool returned an invalid shred version: {out!r}") from None

        bank_hash = None
        wfs = self.cfg.wait_for_supermajority
        if wfs is not None:
            bank_hash = self._ledger_tool("bank-hash").strip() or None
            if bank_hash is None:
                raise GenesisError("ledger tool returned an empty bank hash")

        handshake = ClusterHandshake(
            shred_version=shred_version,
            expected_bank_hash=bank_hash,
            wait_for_supermajority=wfs,
        )
        handshake.write_to(config_dir)
        log.info("Genesis built: shred_version=%s bank_hash=%s", shred_version, bank_hash or "-")
        return handshake
