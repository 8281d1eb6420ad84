# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valnet/sanity/checker.py

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from pathlib import Path
from typing import Callable, Optional

import requests

from ..config.models import DeployMethod, DeployRecord, NodePaths, ToolPaths
from ..errors import TIMEOUT_EXIT_CODE, ConfigError, ProvisionError
from ..keys.keypair import Keypair, read_pubkey
from ..observers.dispatcher import EventBus
from ..observers.events import (
    SanityStepFailed,
    SanityStepPassed,
    SanityStepSkipped,
    SanitySummary,
    new_ctx,
)
from ..rpc.client import JsonRpcClient, RpcError
from ..utils.retry import RetryError, call_with_retry
from ..utils.runner import CommandRunner, stderr_tail
from .models import SanityOptions, SanityReport

log = logging.getLogger("valnet")

DISCOVERY_TIMEOUT_S = 120
RPC_ATTEMPTS = 5
RPC_DELAY_S = 2.0
VALIDATOR_SANITY_TIMEOUT_S = 10
LEDGER_SCRATCH = Path("/var/tmp/ledger-verify")
UPDATE_MANIFEST_KEYPAIR = "update_manifest_keypair.json"
CLIENT_KEYPAIR = "client-id.json"
WALLET_AIRDROP_SOL = "1"
WALLET_TRANSFER_SOL = "0.5"


def _sol_amount(text: str) -> float:
    """First number in the CLI's `balance` output ("1 SOL" -> 1.0)."""
    try:
        return float((text or "").split()[0])
    except (IndexError, ValueError):
        return 0.0


class SanityChecker:
    """
    Post-deploy verification run on the bootstrap host.

    Steps run in order and every failure is recorded on the report rather
    than raised, so one report describes the whole cluster. Deciding the
    process exit status is left to the caller.
    """

    def __init__(
        self,
        record: DeployRecord,
        options: Optional[SanityOptions] = None,
        *,
        paths: Optional[NodePaths] = None,
        tools: Optional[ToolPaths] = None,
        runner: Optional[CommandRunner] = None,
        rpc: Optional[JsonRpcClient] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        rust_log: Optional[str] = None,
        ledger_scratch: Path = LEDGER_SCRATCH,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        options = options or SanityOptions()
        if record.deploy_method is DeployMethod.SKIP:
            raise ConfigError(f"Unknown deployment method: {record.deploy_method.value}")
        if options.reject_extra_nodes and not record.fail_on_validator_bootup_failure:
            raise ConfigError("rejectExtraNodes cannot be used without failOnValidatorBootupFailure")

        self.record = record
        self.options = options
        self.paths = paths or NodePaths()
        self.tools = tools or ToolPaths(bin_dir=self.paths.bin_dir)
        self.runner = runner or CommandRunner(label="sanity")
        self.rpc = rpc or JsonRpcClient(record.rpc_url)
        self.popen = popen
        self.rust_log = rust_log or "solana=info"
        self.ledger_scratch = Path(ledger_scratch)
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx(role="sanity", host=record.entrypoint_ip)
        self.sleep = sleep

        self._passed = 0
        self._failed = 0
        self._skipped = 0

    @property
    def expected_nodes(self) -> int:
        if self.record.fail_on_validator_bootup_failure:
            return self.record.num_nodes
        return 1

    # ---------- bookkeeping ----------

    def _pass(self, step: str, message: str) -> None:
        self._passed += 1
        log.info("%s: %s", step, message)
        self.bus.emit(SanityStepPassed(step=step, message=message, **self.run_ctx))

    def _fail(self, report: SanityReport, step: str, error: str) -> None:
        self._failed += 1
        report.fail(step, error)
        log.error("%s: %s", step, error)
        self.bus.emit(SanityStepFailed(step=step, error=error, **self.run_ctx))

    def _skip(self, step: str, reason: str) -> None:
        self._skipped += 1
        log.info("%s skipped: %s", step, reason)
        self.bus.emit(SanityStepSkipped(step=step, reason=reason, **self.run_ctx))

    # ---------- steps ----------

    def check_discovery(self, report: SanityReport, timeout: float = DISCOVERY_TIMEOUT_S) -> None:
        """
        Ask the entrypoint's gossip service, not its RPC port, how many
        nodes it sees. The spy exits 0 once the wanted count is reached.
        """
        expected = self.expected_nodes
        exactly = self.options.reject_extra_nodes
        mode = "exactly" if exactly else "at least"
        report.expected_nodes = expected
        log.info("%s: node count (%s %d expected)", self.record.entrypoint_ip, mode, expected)

        argv = [
            self.tools.path(self.tools.gossip),
            "--entrypoint", self.record.entrypoint,
            "spy",
            "--num-nodes-exactly" if exactly else "--num-nodes", str(expected),
        ]
        try:
            self.runner.run(argv, check=True, timeout=timeout)
        except subprocess.TimeoutExpired:
            report.timed_out = True
            self._fail(report, "discovery", f"gossip did not see {mode} {expected} nodes after {int(timeout)}s")
            return
        except subprocess.CalledProcessError as e:
            self._fail(report, "discovery", stderr_tail(e))
            return
        except OSError as e:
            self._fail(report, "discovery", str(e))
            return
        report.peer_count_observed = expected
        self._pass("discovery", f"gossip sees {mode} {expected} nodes")

    def check_rpc(self, report: SanityReport) -> None:
        try:
            call_with_retry(
                lambda: self.rpc.request("getTransactionCount"),
                attempts=RPC_ATTEMPTS,
                delay=RPC_DELAY_S,
                retry_on=(requests.ConnectionError, requests.Timeout),
                sleep=self.sleep,
            )
        except RetryError as e:
            self._fail(report, "rpc", f"{self.rpc.url} unreachable: {e.__cause__}")
            return
        except (requests.RequestException, RpcError) as e:
            self._fail(report, "rpc", str(e))
            return
        report.rpc_reachable = True
        self._pass("rpc", f"{self.rpc.url} answered getTransactionCount")

    def check_wallet(self, report: SanityReport) -> None:
        """
        Airdrop to a fresh client key, read its balance back and send part
        of it to a second fresh address.
        """
        if not self.record.airdrops_enabled:
            self._skip("wallet", "airdrops disabled")
            return

        client = self.paths.work_dir / CLIENT_KEYPAIR
        cli = self.tools.path(self.tools.cli)
        common = [cli, "--url", self.record.rpc_url, "--keypair", str(client)]
        try:
            Keypair.generate().write(client)
            recipient = Keypair.generate().pubkey
            self.runner.run([*common, "airdrop", WALLET_AIRDROP_SOL], check=True)
            balance = self.runner.run([*common, "balance"], check=True)
            if _sol_amount(balance.stdout) <= 0:
                report.wallet_ok = False
                self._fail(report, "wallet", f"balance after airdrop is {balance.stdout.strip()!r}")
                return
            self.runner.run(
                [*common, "transfer", "--allow-unfunded-recipient", recipient, WALLET_TRANSFER_SOL],
                check=True,
            )
        except subprocess.CalledProcessError as e:
            report.wallet_ok = False
            self._fail(report, "wallet", stderr_tail(e))
            return
        except (OSError, ProvisionError) as e:
            report.wallet_ok = False
            self._fail(report, "wallet", str(e))
            return
        report.wallet_ok = True
        self._pass("wallet", f"airdrop, balance and transfer against {self.record.rpc_url}")

    def verify_ledger(self, report: SanityReport) -> None:
        if not self.options.ledger_verify:
            self._skip("ledger-verify", "disabled")
            return
        ledger = self.paths.ledger_dir
        if not ledger.is_dir():
            log.warning("Ledger verify skipped: directory does not exist: %s", ledger)
            self._skip("ledger-verify", f"{ledger} does not exist")
            return

        scratch = self.ledger_scratch
        try:
            shutil.rmtree(scratch, ignore_errors=True)
            shutil.copytree(ledger, scratch, symlinks=True)
            self.runner.run(
                [self.tools.path(self.tools.ledger_tool), "--ledger", str(scratch), "verify"],
                check=True,
            )
        except subprocess.CalledProcessError as e:
            report.ledger_verified = False
            self._fail(report, "ledger-verify", stderr_tail(e))
            return
        except OSError as e:
            report.ledger_verified = False
            self._fail(report, "ledger-verify", str(e))
            return
        report.ledger_verified = True
        self._pass("ledger-verify", f"copy of {ledger} verified")

    def validator_self_test(self, report: SanityReport) -> None:
        """
        Start a zero-stake validator against the entrypoint for a few
        seconds. Being killed by the timeout is the expected outcome; a
        different non-zero exit or any panic in its output is a failure.
        """
        if not self.options.validator_sanity:
            self._skip("validator-sanity", "disabled")
            return

        work = self.paths.work_dir
        scratch = work / "validator-sanity"
        identity = scratch / "identity.json"
        log_path = work / "validator-sanity.log"
        try:
            shutil.rmtree(scratch, ignore_errors=True)
            Keypair.generate().write(identity)
            argv = [
                self.tools.path(self.tools.validator),
                "--identity", str(identity),
                "--entrypoint", self.record.entrypoint,
                "--ledger", str(scratch / "ledger"),
                "--no-voting",
                "--no-airdrop",
                "--init-complete-file", str(scratch / "init-complete"),
            ]
            with open(log_path, "w") as out:
                proc = self.popen(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=subprocess.STDOUT,
                    env={**os.environ, "RUST_LOG": self.rust_log},
                )
                try:
                    rc = proc.wait(timeout=VALIDATOR_SANITY_TIMEOUT_S)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait()
                    rc = TIMEOUT_EXIT_CODE
            output = log_path.read_text(errors="replace")
        except (OSError, ProvisionError) as e:
            self._fail(report, "validator-sanity", f"cannot run validator: {e}")
            return

        log.info("validator-sanity.log: %d lines", len(output.splitlines()))
        if "panic" in output:
            report.panic_detected = True
            self._fail(report, "validator-sanity", f"Panic observed (exit {rc}); see {log_path}")
            return
        if rc not in (0, TIMEOUT_EXIT_CODE):
            self._fail(report, "validator-sanity", f"validator exited with {rc}; see {log_path}")
            return
        self._pass("validator-sanity", "Validator sanity log looks ok")

    def check_installer(self, report: SanityReport) -> None:
        manifest = self.paths.work_dir / UPDATE_MANIFEST_KEYPAIR
        if not (manifest.is_file() and os.access(manifest, os.R_OK)):
            self._skip("installer", f"{manifest.name} not present")
            return

        data_dir = self.paths.work_dir / "install-data-dir"
        installer = self.tools.path(self.tools.installer)
        try:
            pubkey = read_pubkey(manifest)
            shutil.rmtree(data_dir, ignore_errors=True)
            self.runner.run(
                [
                    installer, "init",
                    "--no-modify-path",
                    "--data-dir", str(data_dir),
                    "--url", self.record.rpc_url,
                    "--pubkey", pubkey,
                ],
                check=True,
                cwd=self.paths.work_dir,
            )
            self.runner.run([installer, "info"], check=True, cwd=self.paths.work_dir)
        except subprocess.CalledProcessError as e:
            report.installer_ok = False
            self._fail(report, "installer", stderr_tail(e))
            return
        except (OSError, ProvisionError) as e:
            report.installer_ok = False
            self._fail(report, "installer", str(e))
            return
        report.installer_ok = True
        self._pass("installer", "init and info succeeded")

    # ---------- entrypoint ----------

    def run(self) -> SanityReport:
        report = SanityReport(expected_nodes=self.expected_nodes)
        self.check_discovery(report)
        self.check_rpc(report)
        self.check_wallet(report)
        self.verify_ledger(report)
        self.validator_self_test(report)
        self.check_installer(report)

        self.bus.emit(
            SanitySummary(
                passed=self._passed, failed=self._failed, skipped=self._skipped, **self.run_ctx
            )
        )
        return report
