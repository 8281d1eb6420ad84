import subprocess
from pathlib import Path

import pytest

from valnet.config.models import GpuCapability
from valnet.errors import LaunchError
from valnet.launch.supervisor import CRON_TAG, Supervisor, SupervisorSpec


class FakeCronRunner:
    def __init__(self, existing="", rc=0, write_rc=0):
        self.existing = existing
        self.rc = rc
        self.write_rc = write_rc
        self.calls = []
        self.written = None

    def run(self, cmd, *, input=None, **kw):
        self.calls.append(list(cmd))
        if cmd == ["crontab", "-l"]:
            return subprocess.CompletedProcess(cmd, self.rc, self.existing, "no crontab for user" if self.rc else "")
        self.written = input
        return subprocess.CompletedProcess(cmd, self.write_rc, "", "crontab: error" if self.write_rc else "")


class FakePopen:
    def __init__(self):
        self.calls = []

    def __call__(self, argv, **kw):
        self.calls.append((argv, kw))
        return type("P", (), {"pid": 31337, "poll": lambda self: None})()


def _spec(tmp_path: Path, name="validator", **kw):
    return SupervisorSpec(
        name=name,
        argv=["solana-validator", "--ledger", "ledger"],
        env={"RUST_LOG": "info"},
        log_dir=str(tmp_path / "logs"),
        log_name=f"{name}.log",
        **kw,
    )


def test_reboot_hook_replaces_own_entry_only(tmp_path: Path):
    existing = "\n".join([
        "0 * * * * /usr/bin/backup",
        f"@reboot old-command {CRON_TAG}validator",
        f"@reboot faucet-command {CRON_TAG}faucet",
    ]) + "\n"
    runner = FakeCronRunner(existing=existing)
    sup = Supervisor(tmp_path / "specs", runner=runner, relaunch_cmd=["valnet", "relaunch"])

    sup.install_reboot_hook("validator")

    lines = runner.written.splitlines()
    assert "0 * * * * /usr/bin/backup" in lines
    assert f"@reboot faucet-command {CRON_TAG}faucet" in lines
    ours = [ln for ln in lines if ln.endswith(f"{CRON_TAG}validator")]
    assert len(ours) == 1
    assert ours[0].startswith("@reboot valnet relaunch --spec-dir ")
    assert "old-command" not in runner.written


def test_reboot_hook_with_empty_crontab(tmp_path: Path):
    runner = FakeCronRunner(rc=1)
    Supervisor(tmp_path, runner=runner).install_reboot_hook("validator")
    assert len(runner.written.splitlines()) == 1


def test_reboot_hook_failure_is_launch_error(tmp_path: Path):
    runner = FakeCronRunner(write_rc=1)
    with pytest.raises(LaunchError, match="crontab: error"):
        Supervisor(tmp_path, runner=runner).install_reboot_hook("validator")


def test_register_saves_spec_and_hooks_reboot(tmp_path: Path):
    runner = FakeCronRunner()
    sup = Supervisor(tmp_path / "specs", runner=runner)
    sup.register(_spec(tmp_path))

    assert sup.load("validator").argv == ["solana-validator", "--ledger", "ledger"]
    assert runner.written is not None

    quiet = FakeCronRunner()
    Supervisor(tmp_path / "specs", runner=quiet).register(_spec(tmp_path, name="once", restart_on_reboot=False))
    assert quiet.calls == []


def test_load_missing_spec(tmp_path: Path):
    with pytest.raises(LaunchError, match="no supervisor spec"):
        Supervisor(tmp_path).load("validator")


def test_start_detaches_and_logs(tmp_path: Path, monkeypatch):
    popen = FakePopen()
    adjusted = []
    monkeypatch.setattr(Supervisor, "adjust_oom_score", lambda self, pid, score: adjusted.append((pid, score)))
    sup = Supervisor(tmp_path / "specs", runner=FakeCronRunner(), popen=popen)

    result = sup.start(_spec(tmp_path))

    argv, kw = popen.calls[0]
    assert argv == ["solana-validator", "--ledger", "ledger"]
    assert kw["start_new_session"] is True
    assert kw["stdin"] is subprocess.DEVNULL
    assert kw["stderr"] is subprocess.STDOUT
    assert kw["env"]["RUST_LOG"] == "info"

    logs = tmp_path / "logs"
    link = logs / "validator.log"
    assert link.is_symlink()
    assert (logs / link.readlink()) == result.log_path
    assert result.log_path.name.startswith("validator.log.")
    assert (logs / "validator.pid").read_text().strip() == "31337"
    assert adjusted == [(31337, 1000)]


def test_start_failure_is_launch_error(tmp_path: Path):
    def broken_popen(argv, **kw):
        raise FileNotFoundError(argv[0])

    sup = Supervisor(tmp_path, runner=FakeCronRunner(), popen=broken_popen)
    with pytest.raises(LaunchError, match="cannot start validator"):
        sup.start(_spec(tmp_path))


def test_relaunch_all_skips_one_shot_specs(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(Supervisor, "adjust_oom_score", lambda self, pid, score: None)
    popen = FakePopen()
    sup = Supervisor(tmp_path / "specs", runner=FakeCronRunner(), popen=popen)
    sup.save(_spec(tmp_path, name="validator"))
    sup.save(_spec(tmp_path, name="faucet"))
    sup.save(_spec(tmp_path, name="scratch", restart_on_reboot=False))

    started = sup.relaunch_all()

    assert [name for name, _ in started] == ["faucet", "validator"]
    assert len(popen.calls) == 2


def test_relaunch_rechecks_gpu(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(Supervisor, "adjust_oom_score", lambda self, pid, score: None)
    popen = FakePopen()
    gpu_here = [False]
    sup = Supervisor(tmp_path / "specs", runner=FakeCronRunner(), popen=popen, gpu_probe=lambda: gpu_here[0])
    sup.save(_spec(tmp_path, gpu=GpuCapability(enabled=True)))

    sup.relaunch("validator")
    assert "SOLANA_CUDA" not in popen.calls[-1][1]["env"]

    gpu_here[0] = True
    sup.relaunch("validator")
    env = popen.calls[-1][1]["env"]
    assert env["SOLANA_CUDA"] == "1"
    assert env["RUST_LOG"] == "info"


def test_refresh_drops_stale_gpu_missing_flag(tmp_path: Path):
    sup = Supervisor(tmp_path / "specs", runner=FakeCronRunner(), gpu_probe=lambda: True)
    spec = _spec(tmp_path, gpu=GpuCapability(enabled=True, require_gpu=True))
    spec = spec.model_copy(update={"env": {"RUST_LOG": "info", "SOLANA_GPU_MISSING": "1"}})

    assert sup.refresh_gpu_env(spec).env == {"RUST_LOG": "info", "SOLANA_CUDA": "1"}
    assert sup.refresh_gpu_env(_spec(tmp_path)).env == {"RUST_LOG": "info"}
