import errno
import stat
from pathlib import Path
from types import SimpleNamespace

import pytest

from valnet.errors import SyncError
from valnet.join.sync import RemoteFileSync
from valnet.observers.events import ArtifactSynced, ArtifactSyncFailed
from valnet.utils.ssh import RemoteHost


class FakeSFTP:
    """In-memory remote filesystem; the first `flaky` transfers drop the link."""

    def __init__(self, files=None, dirs=None, flaky=0, error=EOFError):
        self.files = files or {}
        self.dirs = dirs or {}
        self.flaky = flaky
        self.error = error
        self.gets = 0
        self.closed = 0

    def _missing(self, path):
        return OSError(errno.ENOENT, "No such file", path)

    def get(self, remote, local):
        self.gets += 1
        if self.flaky:
            self.flaky -= 1
            raise self.error("connection reset by peer")
        if remote not in self.files:
            raise self._missing(remote)
        Path(local).write_bytes(self.files[remote][0])

    def stat(self, remote):
        return SimpleNamespace(st_mode=stat.S_IFREG | self.files[remote][1])

    def listdir_attr(self, remote_dir):
        if remote_dir not in self.dirs:
            raise self._missing(remote_dir)
        out = []
        for name in self.dirs[remote_dir]:
            full = f"{remote_dir}/{name}"
            if full in self.dirs:
                out.append(SimpleNamespace(filename=name, st_mode=stat.S_IFDIR | 0o755))
            else:
                out.append(SimpleNamespace(filename=name, st_mode=stat.S_IFREG | self.files[full][1]))
        return out

    def close(self):
        self.closed += 1


class FakeClient:
    def __init__(self, sftp):
        self.sftp = sftp

    def open_sftp(self):
        return self.sftp

    def close(self):
        pass


def _sync(sftp, *, bus=None, attempts=5):
    sleeps = []
    connects = []

    def connect(host):
        connects.append(host.address)
        return FakeClient(sftp)

    sync = RemoteFileSync(
        RemoteHost(address="10.0.0.1"),
        connect=connect,
        attempts=attempts,
        sleep=sleeps.append,
        bus=bus,
    )
    return sync, sleeps, connects


def test_fetch_replaces_stale_local_copy(tmp_path: Path, capture):
    cap, bus = capture
    sftp = FakeSFTP(files={"/home/sol/config/shred-version": (b"777\n", 0o644)})
    sync, sleeps, _ = _sync(sftp, bus=bus)
    local = tmp_path / "config" / "shred-version"
    local.parent.mkdir()
    local.write_text("111\n")

    assert sync.fetch("/home/sol/config/shred-version", local) is True

    assert local.read_text() == "777\n"
    assert stat.S_IMODE(local.stat().st_mode) == 0o644
    assert not (tmp_path / "config" / ".shred-version.sync").exists()
    ev = cap.of(ArtifactSynced)[0]
    assert ev.attempts == 1
    assert ev.local == str(local)
    assert sleeps == []


def test_explicit_mode_applied(tmp_path: Path):
    sftp = FakeSFTP(files={"/c/id.json": (b"[1]", 0o644)})
    sync, _, _ = _sync(sftp)
    local = tmp_path / "id.json"
    sync.fetch("/c/id.json", local, mode=0o600)
    assert stat.S_IMODE(local.stat().st_mode) == 0o600


def test_transient_failures_are_retried_on_fresh_session(tmp_path: Path, capture):
    cap, bus = capture
    sftp = FakeSFTP(files={"/c/faucet.json": (b"[2]", 0o600)}, flaky=2)
    sync, sleeps, connects = _sync(sftp, bus=bus)

    assert sync.fetch("/c/faucet.json", tmp_path / "faucet.json") is True

    assert sleeps == [2.0, 2.0]
    assert len(connects) == 3
    assert sftp.closed == 2
    assert cap.of(ArtifactSynced)[0].attempts == 3


def test_exhausted_retries_raise(tmp_path: Path, capture):
    cap, bus = capture
    sftp = FakeSFTP(files={"/c/faucet.json": (b"[2]", 0o600)}, flaky=100, error=ConnectionResetError)
    sync, sleeps, _ = _sync(sftp, bus=bus)
    local = tmp_path / "faucet.json"

    with pytest.raises(SyncError, match="10.0.0.1:/c/faucet.json after 5 attempts"):
        sync.fetch("/c/faucet.json", local)

    assert len(sleeps) == 4
    assert not local.exists()
    assert cap.kinds() == ["ArtifactSyncFailed"]
    assert "connection reset" in cap.of(ArtifactSyncFailed)[0].error


def test_missing_optional_artifact_is_not_retried(tmp_path: Path):
    sync, sleeps, _ = _sync(FakeSFTP())
    assert sync.fetch("/c/bank-hash", tmp_path / "bank-hash", required=False) is False
    assert sleeps == []
    assert not (tmp_path / "bank-hash").exists()


def test_missing_required_artifact_fails(tmp_path: Path):
    sync, sleeps, _ = _sync(FakeSFTP(), attempts=2)
    with pytest.raises(SyncError):
        sync.fetch("/c/shred-version", tmp_path / "shred-version")
    assert sleeps == [2.0]


def test_fetch_dir_recurses_and_keeps_modes(tmp_path: Path):
    sftp = FakeSFTP(
        files={
            "/opt/bin/solana-validator": (b"\x7fELF", 0o755),
            "/opt/bin/deps/libfoo.so": (b"lib", 0o644),
        },
        dirs={"/opt/bin": ["solana-validator", "deps"], "/opt/bin/deps": ["libfoo.so"]},
    )
    sync, _, _ = _sync(sftp)

    assert sync.fetch_dir("/opt/bin", tmp_path / "bin") is True

    exe = tmp_path / "bin" / "solana-validator"
    assert exe.read_bytes() == b"\x7fELF"
    assert stat.S_IMODE(exe.stat().st_mode) == 0o755
    assert (tmp_path / "bin" / "deps" / "libfoo.so").read_bytes() == b"lib"


def test_close_is_idempotent():
    sftp = FakeSFTP()
    sync, _, _ = _sync(sftp)
    sync.close()
    sync._session()
    sync.close()
    sync.close()
    assert sftp.closed == 1
