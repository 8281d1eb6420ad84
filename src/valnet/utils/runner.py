# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valnet/utils/runner.py

from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence, Union

Cmd = Sequence[Union[str, "os.PathLike[str]"]]


@dataclass
class CommandRunner:
    """
    Runs external tools (ledger tool, genesis setup, delegation tool, ...)
    and mirrors every invocation into the run log.
    """

    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("valnet"))
    label: Optional[str] = None

    def run(
        self,
        cmd: Cmd,
        *,
        check: bool = False,
        cwd: str | os.PathLike | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        input: str | None = None,
    ) -> subprocess.CompletedProcess:
        label = self.label or "cmd"
        argv = [str(c) for c in cmd]
        self.logger.debug(f"[{label}] $ {' '.join(argv)}")

        merged_env = None
        if env:
            merged_env = {**os.environ, **env}

        start = time.time()
        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                check=check,
                text=True,
                cwd=str(cwd) if cwd else None,
                env=merged_env,
                timeout=timeout,
                input=input,
            )
        except subprocess.CalledProcessError as e:
            self.logger.debug(f"[{label}][exit {e.returncode}]")
            if e.stdout:
                self.logger.debug(f"[{label}][stdout]\n{e.stdout.rstrip()}")
            if e.stderr:
                self.logger.debug(f"[{label}][stderr]\n{e.stderr.rstrip()}")
            raise
        except subprocess.TimeoutExpired:
            self.logger.debug(f"[{label}][timeout after {timeout}s]")
            raise

        duration = time.time() - start
        if result.stdout:
            self.logger.debug(f"[{label}][stdout]\n{result.stdout.rstrip()}")
        if result.stderr:
            self.logger.debug(f"[{label}][stderr]\n{result.stderr.rstrip()}")
        self.logger.debug(f"[{label}][exit {result.returncode}] ({duration:.2f}s)")
        return result


def stderr_tail(exc: subprocess.CalledProcessError, lines: int = 5) -> str:
    text = (exc.stderr or exc.stdout or "").strip()
    if not text:
        return f"exit {exc.returncode}"
    return "\n".join(text.splitlines()[-lines:])
