import logging
from pathlib import Path

import pytest

import valnet.cli.helper as helper
from valnet.config.models import ClusterHandshake
from valnet.errors import ConfigError
from valnet.launch.launcher import ProcessHandle
from valnet.observers.console import ConsoleObserver
from valnet.observers.events import new_ctx


class FakeLauncher:
    instances = []

    def __init__(self, cfg, paths, **kw):
        self.handshakes = []
        self.faucets = []
        self.waits = []
        FakeLauncher.instances.append(self)

    def launch(self, hs):
        self.handshakes.append(hs)
        return ProcessHandle(pid=7, init_complete_marker=Path("/tmp/init"), log_path=Path("/tmp/v.log"))

    def launch_faucet(self, keypair):
        self.faucets.append(keypair)

    def wait_for_init(self, timeout):
        self.waits.append(timeout)


class FakeGenesis:
    def __init__(self, cfg, paths, **kw):
        pass

    def build(self, keypairs):
        assert "faucet" in keypairs
        return ClusterHandshake(shred_version=55)


@pytest.fixture
def fakes(monkeypatch):
    FakeLauncher.instances = []
    monkeypatch.setattr(helper, "NodeLauncher", FakeLauncher)
    monkeypatch.setattr(helper, "GenesisBuilder", FakeGenesis)
    return FakeLauncher.instances


def test_raw_node_args_drops_unset_flags():
    assert helper.raw_node_args(num_nodes=3, rust_log=None, skip_setup=False) == {"num_nodes": 3, "skip_setup": False}


def test_build_bus_quiet_has_no_console(tmp_path):
    bus = helper.build_bus(logging.getLogger("valnet"), "run-9", quiet=True)
    assert not any(isinstance(o, ConsoleObserver) for o in bus._observers)
    assert len(bus._observers) == 2


def test_bootstrap_builds_genesis_then_launches(make_cfg, paths, fakes):
    cfg = make_cfg(wait_for_node_init="yes")
    handle = helper.deploy_bootstrap(cfg, paths, bus=None, run_ctx=new_ctx("bootstrap-validator", "10.0.0.1"), init_timeout=20)

    launcher = fakes[0]
    assert handle.pid == 7
    assert launcher.handshakes == [ClusterHandshake(shred_version=55)]
    assert launcher.faucets == [paths.config_dir / "faucet.json"]
    assert launcher.waits == [20]
    assert (paths.config_dir / "bootstrap-validator-identity.json").is_file()


def test_bootstrap_skip_setup_reuses_genesis(make_cfg, paths, fakes):
    paths.config_dir.mkdir(parents=True)
    (paths.config_dir / "shred-version").write_text("99\n")
    helper.deploy_bootstrap(make_cfg(skip_setup=True), paths, bus=None, run_ctx=new_ctx("bootstrap-validator", "10.0.0.1"))
    assert fakes[0].handshakes[0].shred_version == 99


def test_deploy_joining_refuses_bootstrap(make_cfg, paths):
    with pytest.raises(ConfigError):
        helper.deploy_joining(make_cfg(), paths, bus=None, run_ctx={})
