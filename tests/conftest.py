import logging
from pathlib import Path

import pytest

from valnet.config.models import NodePaths
from valnet.config.resolver import resolve_node_config
from valnet.observers.dispatcher import EventBus


BASE_ARGS = {
    "deploy_method": "local",
    "role": "bootstrap-validator",
    "entrypoint_ip": "10.0.0.1",
    "num_nodes": 3,
    "skip_setup": False,
    "fail_on_validator_bootup_failure": True,
}


class Capture:
    def __init__(self): self.events = []
    def notify(self, ev): self.events.append(ev)

    def kinds(self):
        return [e.__class__.__name__ for e in self.events]

    def of(self, cls):
        return [e for e in self.events if isinstance(e, cls)]


@pytest.fixture(autouse=True)
def _isolated_home(monkeypatch, tmp_path: Path):
    # Keep run logs and event files out of the real home directory.
    monkeypatch.setenv("VALNET_HOME", str(tmp_path / "valnet-home"))
    yield
    logger = logging.getLogger("valnet")
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.propagate = True


@pytest.fixture
def make_cfg():
    def _make(**overrides):
        raw = dict(BASE_ARGS)
        raw.update(overrides)
        return resolve_node_config(raw)
    return _make


@pytest.fixture
def paths(tmp_path: Path) -> NodePaths:
    return NodePaths(
        work_dir=tmp_path / "solana",
        bin_dir=tmp_path / "bin",
        version_manifest=tmp_path / "version.yml",
    )


@pytest.fixture
def capture():
    cap = Capture()
    return cap, EventBus([cap])
