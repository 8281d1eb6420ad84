from pathlib import Path

import pytest

from valnet.config.models import ClusterHandshake
from valnet.errors import JoinError, JoinTimeoutError, LaunchError
from valnet.launch.launcher import LaunchState, NodeLauncher
from valnet.launch.supervisor import SpawnResult
from valnet.observers.events import NodeInitTimedOut, NodeLaunched


class FakeProc:
    def __init__(self, pid=4242):
        self.pid = pid
        self.returncode = None
    def poll(self): return self.returncode


class FakeSupervisor:
    def __init__(self, log_dir: Path, fail=False, register_error=None):
        self.log_dir = log_dir
        self.fail = fail
        self.register_error = register_error
        self.registered = []
        self.started = []
        self.stopped = []
        self.proc = FakeProc()

    def register(self, spec):
        if self.register_error:
            raise self.register_error
        self.registered.append(spec)

    def start(self, spec):
        if self.fail:
            raise LaunchError("cannot start validator: no such file")
        self.started.append(spec)
        return SpawnResult(pid=self.proc.pid, log_path=self.log_dir / f"{spec.log_name}.ts", process=self.proc)

    def stop(self, pid):
        self.stopped.append(pid)

    @staticmethod
    def is_alive(pid):
        return True


class FakeClock:
    def __init__(self, on_sleep=None):
        self.now = 0.0
        self.sleeps = 0
        self.on_sleep = on_sleep
    def __call__(self): return self.now
    def sleep(self, s):
        self.now += s
        self.sleeps += 1
        if self.on_sleep:
            self.on_sleep(self.sleeps)


def _launcher(cfg, paths, *, supervisor=None, gpu=False, clock=None, bus=None):
    clock = clock or FakeClock()
    return NodeLauncher(
        cfg,
        paths,
        supervisor=supervisor or FakeSupervisor(paths.work_dir),
        bus=bus,
        gpu_probe=lambda: gpu,
        sleep=clock.sleep,
        clock=clock,
    )


HS = ClusterHandshake(shred_version=777)


def test_bootstrap_args(make_cfg, paths):
    args = _launcher(make_cfg(), paths).build_args(HS)
    assert args[:8] == [
        "--ledger", str(paths.ledger_dir),
        "--gossip-host", "10.0.0.1",
        "--gossip-port", "8001",
        "--rpc-port", "8899",
    ]
    assert args[args.index("--expected-shred-version") + 1] == "777"
    assert args[args.index("--identity") + 1].endswith("bootstrap-validator-identity.json")
    assert args[args.index("--vote-account") + 1].endswith("bootstrap-validator-vote.json")
    assert args[args.index("--init-complete-file") + 1] == str(paths.init_complete_file)
    assert "--no-airdrop" not in args
    assert "--entrypoint" not in args


def test_bootstrap_without_handshake_omits_shred_version(make_cfg, paths):
    args = _launcher(make_cfg(disable_airdrops="1"), paths).build_args(None)
    assert "--expected-shred-version" not in args
    assert "--no-airdrop" in args


def test_validator_args(make_cfg, paths):
    cfg = make_cfg(role="validator", node_index=2, extra_args="--limit-ledger-size")
    hs = ClusterHandshake(shred_version=777, expected_bank_hash="HASH")
    args = _launcher(cfg, paths).build_args(hs)

    assert args[args.index("--entrypoint") + 1] == "10.0.0.1:8001"
    assert args[args.index("--expected-shred-version") + 1] == "777"
    assert args[args.index("--expected-bank-hash") + 1] == "HASH"
    assert args[args.index("--identity") + 1] == str(paths.config_dir / "validator-identity.json")
    assert args[args.index("--vote-account") + 1] == str(paths.config_dir / "vote-account.json")
    assert "--blockstream" not in args
    assert "--node-lamports" not in args
    assert args[-1] == "--limit-ledger-size"


def test_validator_node_lamports(make_cfg, paths):
    cfg = make_cfg(role="validator", node_index=1, internal_nodes_lamports=500)
    args = _launcher(cfg, paths).build_args(HS)
    assert args[args.index("--node-lamports") + 1] == "500"

    boot = _launcher(make_cfg(internal_nodes_lamports=500), paths).build_args(HS)
    assert "--node-lamports" not in boot


def test_joining_node_requires_handshake(make_cfg, paths):
    with pytest.raises(LaunchError, match="shred version"):
        _launcher(make_cfg(role="validator", node_index=1), paths).build_args(None)


def test_blockstreamer_flags(make_cfg, paths):
    args = _launcher(make_cfg(role="blockstreamer"), paths).build_args(HS)
    for flag in ("--blockstream", "--no-voting", "--dev-no-sigverify", "--enable-rpc-transaction-history"):
        assert flag in args


@pytest.mark.parametrize(
    "mode,present,expected",
    [
        ("auto", True, {"SOLANA_CUDA": "1"}),
        ("auto", False, {}),
        ("on", False, {"SOLANA_GPU_MISSING": "1"}),
        ("cuda", True, {"SOLANA_CUDA": "1"}),
        ("off", True, {}),
    ],
)
def test_gpu_environment(make_cfg, paths, mode, present, expected):
    env = _launcher(make_cfg(gpu_mode=mode), paths, gpu=present).launch_env()
    assert env == expected


def test_rust_log_forwarded(make_cfg, paths):
    env = _launcher(make_cfg(rust_log="solana=debug", gpu_mode="off"), paths).launch_env()
    assert env == {"RUST_LOG": "solana=debug"}


def test_launch_registers_reboot_spec_and_runs(make_cfg, paths, capture):
    cap, bus = capture
    sup = FakeSupervisor(paths.work_dir)
    paths.work_dir.mkdir(parents=True)
    paths.init_complete_file.write_text("stale")
    launcher = _launcher(make_cfg(), paths, supervisor=sup, bus=bus)

    handle = launcher.launch(HS)

    assert launcher.state is LaunchState.RUNNING
    assert handle.pid == 4242
    assert handle.init_complete_marker == paths.init_complete_file
    assert not paths.init_complete_file.exists()
    spec = sup.registered[0]
    assert spec.name == "validator"
    assert spec.restart_on_reboot is True
    assert spec.oom_score_adj == 1000
    assert spec.gpu == make_cfg().gpu
    assert spec.argv[0] == "solana-validator"
    assert cap.of(NodeLaunched)[0].pid == 4242


def test_state_machine_rejects_double_launch(make_cfg, paths):
    launcher = _launcher(make_cfg(), paths)
    launcher.launch(HS)
    with pytest.raises(LaunchError, match="Running -> Launching"):
        launcher.launch(HS)


def test_failed_spawn_moves_to_crashed(make_cfg, paths):
    launcher = _launcher(make_cfg(), paths, supervisor=FakeSupervisor(paths.work_dir, fail=True))
    with pytest.raises(LaunchError):
        launcher.launch(HS)
    assert launcher.state is LaunchState.CRASHED


def test_unwritable_spec_moves_to_crashed(make_cfg, paths):
    sup = FakeSupervisor(paths.work_dir, register_error=PermissionError(13, "Permission denied"))
    launcher = _launcher(make_cfg(), paths, supervisor=sup)
    with pytest.raises(LaunchError, match="cannot register validator: .*Permission denied"):
        launcher.launch(HS)
    assert launcher.state is LaunchState.CRASHED


def test_poll_detects_exit_and_stop(make_cfg, paths):
    sup = FakeSupervisor(paths.work_dir)
    launcher = _launcher(make_cfg(), paths, supervisor=sup)
    launcher.launch(HS)
    assert launcher.poll() is LaunchState.RUNNING
    launcher.stop()
    assert launcher.state is LaunchState.STOPPED
    assert sup.stopped == [4242]

    crashed = _launcher(make_cfg(), paths, supervisor=FakeSupervisor(paths.work_dir))
    crashed.launch(HS)
    crashed.supervisor.proc.returncode = 1
    assert crashed.poll() is LaunchState.CRASHED
    with pytest.raises(LaunchError):
        crashed.stop()


def test_wait_for_init_sees_marker(make_cfg, paths):
    def create_marker(n):
        if n == 3:
            paths.init_complete_file.write_text("done")

    clock = FakeClock(on_sleep=create_marker)
    launcher = _launcher(make_cfg(), paths, clock=clock)
    launcher.launch(HS)
    paths.work_dir.mkdir(parents=True, exist_ok=True)

    waited = launcher.wait_for_init(timeout=600, poll_interval=1.0)
    assert waited == 3.0


def test_wait_for_init_times_out_with_124(make_cfg, paths, capture):
    cap, bus = capture
    launcher = _launcher(make_cfg(), paths, bus=bus)
    launcher.launch(HS)

    with pytest.raises(JoinTimeoutError) as ei:
        launcher.wait_for_init(timeout=5, poll_interval=1.0)
    assert ei.value.exit_code == 124
    assert cap.of(NodeInitTimedOut)[0].timeout_s == 5


def test_wait_for_init_fails_fast_on_crash(make_cfg, paths):
    launcher = _launcher(make_cfg(), paths)
    launcher.launch(HS)
    launcher.supervisor.proc.returncode = 2
    with pytest.raises(JoinError, match="exited before init"):
        launcher.wait_for_init(timeout=600)


def test_faucet_only_with_airdrops_off_validators(make_cfg, paths):
    sup = FakeSupervisor(paths.work_dir)
    boot = _launcher(make_cfg(), paths, supervisor=sup)
    assert boot.launch_faucet(paths.config_dir / "faucet.json") is not None
    assert sup.registered[-1].name == "faucet"
    assert sup.registered[-1].argv[-2:] == ["--keypair", str(paths.config_dir / "faucet.json")]

    val = _launcher(make_cfg(role="validator", node_index=1), paths)
    assert val.launch_faucet(paths.config_dir / "faucet.json") is None

    no_airdrops = _launcher(make_cfg(disable_airdrops="1"), paths)
    assert no_airdrops.launch_faucet(paths.config_dir / "faucet.json") is None
