# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valnet/errors.py

from __future__ import annotations

from typing import Optional

# Exit status used by coreutils `timeout`; orchestrators already key on it.
TIMEOUT_EXIT_CODE = 124


class ValnetError(RuntimeError):
    """Base class for every failure surfaced to the orchestrator."""

    exit_code: int = 1


class ConfigError(ValnetError):
    """Missing or invalid input. Fatal, never retried."""


class ProvisionError(ValnetError):
    """Keypair generation or copy failed."""


class GenesisError(ValnetError):
    """The ledger/genesis tooling failed; the cluster cannot start."""


class LaunchError(ValnetError):
    """Invalid launcher transition or the validator could not be spawned."""


class JoinError(ValnetError):
    """A joining node could not be brought into the cluster."""


class HandshakeMismatch(JoinError):
    """Shred version or bank hash differs from the bootstrap's."""


class JoinTimeoutError(JoinError):
    """Init marker or catchup was never observed within the allowed time."""

    exit_code = TIMEOUT_EXIT_CODE


class SyncError(ValnetError):
    """Remote file copy from the entrypoint exhausted its retries."""


class SanityFailure(ValnetError):
    """One or more post-deploy checks failed."""

    def __init__(self, message: str, report: Optional[object] = None, *, timed_out: bool = False):
        super().__init__(message)
        self.report = report
        if timed_out:
            self.exit_code = TIMEOUT_EXIT_CODE
