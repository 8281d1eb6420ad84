# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valnet/launch/supervisor.py

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field

from ..config.models import GpuCapability
from ..errors import LaunchError
from ..utils.runner import CommandRunner

log = logging.getLogger("valnet")

# Most likely OOM victim; a runaway validator must not take the host's
# sshd/monitoring down with it.
DEFAULT_OOM_SCORE_ADJ = 1000

CRON_TAG = "# valnet:"
GPU_ENV_KEYS = ("SOLANA_CUDA", "SOLANA_GPU_MISSING")


def nvidia_present() -> bool:
    return Path("/dev/nvidia0").exists()


class SupervisorSpec(BaseModel):
    """
    Everything needed to (re)start a detached process, persisted so a host
    restart can relaunch exactly the same command.
    """

    name: str
    argv: List[str]
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None
    log_dir: str
    log_name: str
    oom_score_adj: Optional[int] = DEFAULT_OOM_SCORE_ADJ
    restart_on_reboot: bool = True
    # Set for processes whose GPU environment is recomputed on every relaunch.
    gpu: Optional[GpuCapability] = None


@dataclass
class SpawnResult:
    pid: int
    log_path: Path
    process: Optional[subprocess.Popen] = None


class Supervisor:
    """
    Starts processes detached from the caller (new session, output to a
    timestamped log) and keeps their specs on disk. Specs flagged
    restart_on_reboot are re-run by an ``@reboot`` crontab entry that calls
    ``valnet relaunch``.
    """

    def __init__(
        self,
        spec_dir: Path,
        *,
        runner: Optional[CommandRunner] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        relaunch_cmd: Optional[List[str]] = None,
        gpu_probe: Callable[[], bool] = nvidia_present,
    ):
        self.spec_dir = Path(spec_dir)
        self.runner = runner or CommandRunner(label="supervisor")
        self.popen = popen
        self.relaunch_cmd = relaunch_cmd or [sys.executable, "-m", "valnet.cli.app", "relaunch"]
        self.gpu_probe = gpu_probe

    # ---------- specs ----------

    def spec_path(self, name: str) -> Path:
        return self.spec_dir / f"{name}.yaml"

    def save(self, spec: SupervisorSpec) -> Path:
        self.spec_dir.mkdir(parents=True, exist_ok=True)
        path = self.spec_path(spec.name)
        path.write_text(yaml.safe_dump(spec.model_dump(), sort_keys=False))
        return path

    def load(self, name: str) -> SupervisorSpec:
        path = self.spec_path(name)
        if not path.is_file():
            raise LaunchError(f"no supervisor spec for {name} in {self.spec_dir}")
        return SupervisorSpec.model_validate(yaml.safe_load(path.read_text()) or {})

    def specs(self) -> List[SupervisorSpec]:
        if not self.spec_dir.is_dir():
            return []
        return [
            SupervisorSpec.model_validate(yaml.safe_load(p.read_text()) or {})
            for p in sorted(self.spec_dir.glob("*.yaml"))
        ]

    def register(self, spec: SupervisorSpec) -> Path:
        path = self.save(spec)
        if spec.restart_on_reboot:
            self.install_reboot_hook(spec.name)
        return path

    # ---------- reboot hook ----------

    def _cron_line(self, name: str) -> str:
        cmd = " ".join(shlex.quote(c) for c in [*self.relaunch_cmd, "--spec-dir", str(self.spec_dir), name])
        return f"@reboot {cmd} {CRON_TAG}{name}"

    def install_reboot_hook(self, name: str) -> None:
        try:
            current = self.runner.run(["crontab", "-l"])
            lines: List[str] = []
            if current.returncode == 0:
                lines = [
                    ln for ln in (current.stdout or "").splitlines()
                    if not ln.endswith(f"{CRON_TAG}{name}")
                ]
            lines.append(self._cron_line(name))
            result = self.runner.run(["crontab", "-"], input="\n".join(lines) + "\n")
        except OSError as e:
            raise LaunchError(f"could not install reboot hook for {name}: {e}") from e
        if result.returncode != 0:
            raise LaunchError(f"could not install reboot hook for {name}: {result.stderr.strip()}")
        log.debug("Installed reboot hook for %s", name)

    # ---------- process lifecycle ----------

    def start(self, spec: SupervisorSpec) -> SpawnResult:
        log_dir = Path(spec.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        log_path = log_dir / f"{spec.log_name}.{now}"
        link = log_dir / spec.log_name
        if link.is_symlink() or link.exists():
            link.unlink()
        link.symlink_to(log_path.name)

        env = {**os.environ, **spec.env}
        try:
            with open(log_path, "ab") as out:
                proc = self.popen(
                    spec.argv,
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=subprocess.STDOUT,
                    cwd=spec.cwd,
                    env=env,
                    start_new_session=True,
                )
        except OSError as e:
            raise LaunchError(f"cannot start {spec.name}: {e}") from e

        (log_dir / f"{spec.name}.pid").write_text(f"{proc.pid}\n")
        if spec.oom_score_adj is not None:
            self.adjust_oom_score(proc.pid, spec.oom_score_adj)

        log.info("Started %s (pid %d), log %s", spec.name, proc.pid, log_path)
        return SpawnResult(pid=proc.pid, log_path=log_path, process=proc)

    def adjust_oom_score(self, pid: int, score: int) -> None:
        try:
            Path(f"/proc/{pid}/oom_score_adj").write_text(f"{score}\n")
        except OSError as e:
            log.warning("Could not set oom_score_adj=%d for pid %d: %s", score, pid, e)

    def refresh_gpu_env(self, spec: SupervisorSpec) -> SupervisorSpec:
        """Recompute the saved GPU variables from the hardware present now."""
        if spec.gpu is None:
            return spec
        env = {k: v for k, v in spec.env.items() if k not in GPU_ENV_KEYS}
        env.update(spec.gpu.env(self.gpu_probe()))
        if env != spec.env:
            log.info("GPU environment for %s changed: %s", spec.name, env)
        return spec.model_copy(update={"env": env})

    def relaunch(self, name: str) -> SpawnResult:
        return self.start(self.refresh_gpu_env(self.load(name)))

    def relaunch_all(self) -> List[Tuple[str, SpawnResult]]:
        started = []
        for spec in self.specs():
            if spec.restart_on_reboot:
                started.append((spec.name, self.start(self.refresh_gpu_env(spec))))
        return started

    @staticmethod
    def is_alive(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    @staticmethod
    def stop(pid: int) -> None:
        try:
            os.killpg(pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
