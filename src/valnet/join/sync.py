# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/valnet/join/sync.py

from __future__ import annotations

import logging
import os
import posixpath
import stat
import time
from pathlib import Path
from typing import Callable, Optional

import paramiko

from ..errors import SyncError
from ..observers.dispatcher import EventBus
from ..observers.events import ArtifactSynced, ArtifactSyncFailed, new_ctx
from ..utils.retry import RetryError, call_with_retry
from ..utils.ssh import RemoteHost, open_ssh

log = logging.getLogger("valnet")

SYNC_ATTEMPTS = 5
SYNC_DELAY_S = 2.0


class RemoteFileSync:
    """
    Pulls files from the entrypoint host over SFTP.

    Every fetch is retried with a fixed delay and lands via an atomic
    rename, so a local copy is either the previous file or the complete
    new one. Exhausted retries raise SyncError; there is no partial join.
    """

    def __init__(
        self,
        host: RemoteHost,
        *,
        connect: Callable[[RemoteHost], paramiko.SSHClient] = open_ssh,
        attempts: int = SYNC_ATTEMPTS,
        delay: float = SYNC_DELAY_S,
        sleep: Callable[[float], None] = time.sleep,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
    ):
        self.host = host
        self.connect = connect
        self.attempts = attempts
        self.delay = delay
        self.sleep = sleep
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx(role="sync", host=host.address)
        self._client: Optional[paramiko.SSHClient] = None
        self._sftp: Optional[paramiko.SFTPClient] = None

    # ---------- session ----------

    def _session(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            self._client = self.connect(self.host)
            self._sftp = self._client.open_sftp()
        return self._sftp

    def _reset(self, attempt: int, exc: Exception) -> None:
        log.warning("sync attempt %d/%d from %s failed: %s", attempt, self.attempts, self.host.address, exc)
        self.close()

    def close(self) -> None:
        try:
            if self._sftp is not None:
                self._sftp.close()
            if self._client is not None:
                self._client.close()
        except (OSError, paramiko.SSHException):
            pass
        finally:
            self._sftp = None
            self._client = None

    # ---------- transfers ----------

    def _get(self, remote: str, local: Path, mode: Optional[int]) -> None:
        sftp = self._session()
        local.parent.mkdir(parents=True, exist_ok=True)
        tmp = local.with_name(f".{local.name}.sync")
        try:
            sftp.get(remote, str(tmp))
            if mode is None:
                mode = stat.S_IMODE(sftp.stat(remote).st_mode or 0o644)
            os.chmod(tmp, mode)
            os.replace(tmp, local)
        finally:
            if tmp.exists():
                tmp.unlink()

    def _get_dir(self, remote_dir: str, local_dir: Path) -> None:
        sftp = self._session()
        local_dir.mkdir(parents=True, exist_ok=True)
        for entry in sftp.listdir_attr(remote_dir):
            rpath = posixpath.join(remote_dir, entry.filename)
            lpath = local_dir / entry.filename
            if stat.S_ISDIR(entry.st_mode or 0):
                self._get_dir(rpath, lpath)
            else:
                self._get(rpath, lpath, stat.S_IMODE(entry.st_mode or 0o644))

    def _retrying(self, what: str, local: Path, fn: Callable[[], None], *, required: bool) -> bool:
        attempts = {"n": 0}

        def _once():
            attempts["n"] += 1
            fn()

        _once.__name__ = f"fetch {what}"

        def _should_retry(exc: Exception) -> bool:
            # A missing optional artifact is an answer, not a transient error.
            return required or not isinstance(exc, FileNotFoundError)

        try:
            call_with_retry(
                _once,
                attempts=self.attempts,
                delay=self.delay,
                retry_on=(OSError, paramiko.SSHException, EOFError),
                should_retry=_should_retry,
                on_retry=self._reset,
                sleep=self.sleep,
            )
        except (RetryError, OSError, paramiko.SSHException, EOFError) as e:
            cause = e.__cause__ if isinstance(e, RetryError) else e
            if not required:
                log.info("Optional artifact %s not fetched: %s", what, cause)
                return False
            self.bus.emit(ArtifactSyncFailed(remote=what, error=str(cause), **self.run_ctx))
            raise SyncError(
                f"could not fetch {self.host.address}:{what} after {attempts['n']} attempts: {cause}"
            ) from e

        self.bus.emit(ArtifactSynced(remote=what, local=str(local), attempts=attempts["n"], **self.run_ctx))
        return True

    def fetch(self, remote: str, local: Path, *, mode: Optional[int] = None, required: bool = True) -> bool:
        local = Path(local)
        ok = self._retrying(remote, local, lambda: self._get(remote, local, mode), required=required)
        if ok:
            log.debug("Synced %s:%s -> %s", self.host.address, remote, local)
        return ok

    def fetch_dir(self, remote_dir: str, local_dir: Path) -> bool:
        local_dir = Path(local_dir)
        ok = self._retrying(remote_dir, local_dir, lambda: self._get_dir(remote_dir, local_dir), required=True)
        log.debug("Synced %s:%s/ -> %s", self.host.address, remote_dir, local_dir)
        return ok
