# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valnet/keys/provisioner.py

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ..config.models import NodeConfig
from ..errors import ProvisionError
from ..observers.dispatcher import EventBus
from ..observers.events import KeypairsProvisioned, new_ctx
from .keypair import Keypair, write_private

log = logging.getLogger("valnet")

IDENTITY_MARKER = "-identity-"
BOOTSTRAP_IDENTITY = "bootstrap-validator-identity"
FAUCET = "faucet"


def companion_names(name: str) -> List[str]:
    """
    A validator identity always travels with its vote and stake keypairs:
    validator-identity-3 -> validator-vote-3, validator-stake-3, and
    bootstrap-validator-identity -> bootstrap-validator-vote, -stake.
    """
    if name.startswith("validator") and IDENTITY_MARKER in name:
        vote = name.replace(IDENTITY_MARKER, "-vote-")
        stake = name.replace(IDENTITY_MARKER, "-stake-")
        return [name, vote, stake]
    if name == BOOTSTRAP_IDENTITY:
        return [name, "bootstrap-validator-vote", "bootstrap-validator-stake"]
    return [name]


def names_for_role(cfg: NodeConfig) -> List[str]:
    if not cfg.is_bootstrap:
        return []
    names = [BOOTSTRAP_IDENTITY, FAUCET]
    names.extend(f"validator-identity-{i}" for i in range(1, cfg.num_nodes + 1))
    names.append("blockstreamer-identity")
    return names


class KeypairProvisioner:
    """
    Makes sure every named credential exists in the node's config dir.

      - cached copy present  -> copied into the config dir
      - config copy present  -> left untouched
      - neither              -> fresh keypair, written to config dir and cache

    Writing new keys back to the cache keeps addresses stable across
    redeploys, even though the config dir is cleared on every setup.
    """

    def __init__(
        self,
        cache_dir: Path,
        config_dir: Path,
        *,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
    ):
        self.cache_dir = Path(cache_dir)
        self.config_dir = Path(config_dir)
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx(role="provision", host=None)

    def cached(self, name: str) -> Optional[Path]:
        path = self.cache_dir / f"{name}.json"
        return path if path.is_file() else None

    def provision(self, names: Iterable[str]) -> Dict[str, Path]:
        resolved: Dict[str, Path] = {}
        generated: List[str] = []
        for name in names:
            for n in companion_names(name):
                if n in resolved:
                    continue
                path, fresh = self._ensure(n)
                resolved[n] = path
                if fresh:
                    generated.append(n)

        log.info(
            "Provisioned %d keypairs in %s (%d generated)",
            len(resolved), self.config_dir, len(generated),
        )
        self.bus.emit(KeypairsProvisioned(names=list(resolved), generated=generated, **self.run_ctx))
        return resolved

    def ensure(self, target: Path) -> bool:
        """
        Generate a keypair at an arbitrary path if nothing is there yet.
        Returns True when a new key was written.
        """
        target = Path(target)
        if target.is_file():
            return False
        Keypair.generate().write(target)
        log.debug("Generated keypair %s", target)
        return True

    def _ensure(self, name: str) -> tuple[Path, bool]:
        target = self.config_dir / f"{name}.json"
        cached = self.cached(name)
        try:
            if cached is not None:
                data = cached.read_bytes()
                if not target.is_file() or target.read_bytes() != data:
                    write_private(target, data)
                return target, False

            if target.is_file():
                Keypair.read(target)
                return target, False

            pair = Keypair.generate()
            pair.write(target)
            pair.write(self.cache_dir / f"{name}.json")
            log.debug("Generated keypair %s", name)
            return target, True
        except OSError as e:
            raise ProvisionError(f"cannot provision keypair {name}: {e}") from e
