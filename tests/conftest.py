from __future__ import annotations

import itertools
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional

import orjson
import pytest

from core.config import LaunchSettings, SupervisorConfig
from core.errors import ChannelError
from launcher.base import Launcher
from launcher.protocol import CommandKind, Response
from supervisor.manager import InstanceManager

ROOT = Path(__file__).resolve().parents[1]


# =========================
# Fake launcher (no OS processes)
# =========================

class FakeProcess:
    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.alive = True


class FakeChannel:
    def __init__(self, pid: int) -> None:
        self.label = f"fake[{pid}]"
        self.closed = False
        self.in_flight = False
        self.commands: List[CommandKind] = []


class FakeLauncher(Launcher):
    """
    Scriptable stand-in for ProcessLauncher.

    - launch_error: raised by the next launch() calls
    - next_pid: pid to hand out on the next launch (to simulate pid reuse)
    - outcomes: CommandKind -> exception raised instead of acknowledging
    - delay: seconds each command spends "in flight"
    - overlaps: number of times a command started while another was in flight
    """

    def __init__(self) -> None:
        self._pids = itertools.count(1000)
        self.launch_error: Optional[Exception] = None
        self.next_pid: Optional[int] = None
        self.outcomes: Dict[CommandKind, Exception] = {}
        self.delay = 0.0
        self.overlaps = 0
        self.processes: List[FakeProcess] = []
        self.channels: List[FakeChannel] = []
        self.terminated: List[int] = []

    def launch(self, project_path, config_path, cancel=None):
        if self.launch_error is not None:
            raise self.launch_error
        pid = self.next_pid if self.next_pid is not None else next(self._pids)
        self.next_pid = None
        proc = FakeProcess(pid)
        self.processes.append(proc)
        channel = FakeChannel(pid)
        self.channels.append(channel)
        return proc, channel

    def send_command(self, channel, kind, timeout, cancel=None):
        if channel.closed:
            raise ChannelError(f"{channel.label}: closed")
        if channel.in_flight:
            self.overlaps += 1
        channel.in_flight = True
        try:
            if self.delay:
                time.sleep(self.delay)
            if kind in self.outcomes:
                raise self.outcomes[kind]
            channel.commands.append(kind)
            return Response.ack(0, {"state": "running"} if kind is CommandKind.STATUS else {})
        finally:
            channel.in_flight = False

    def is_alive(self, process):
        return process.alive

    def terminate(self, process, channel=None, stop=True, timeout=1.0):
        process.alive = False
        if channel is not None:
            channel.closed = True
        self.terminated.append(process.pid)


@pytest.fixture
def fake_launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def fake_manager(fake_launcher: FakeLauncher):
    mgr = InstanceManager(launcher=fake_launcher)
    yield mgr
    mgr.shutdown()


# =========================
# Stub simulator (real processes)
# =========================

def stub_settings(**overrides) -> LaunchSettings:
    params = dict(
        command=[sys.executable, "-m", "harness.stub_simulator"],
        env={"PYTHONPATH": str(ROOT)},
        launch_timeout=15.0,
        kill_grace=1.0,
    )
    params.update(overrides)
    return LaunchSettings(**params)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    p = tmp_path / "proj"
    p.mkdir()
    return p


@pytest.fixture
def write_config(project: Path):
    def _write(name: str = "cfg.json", **cfg) -> str:
        path = project / name
        path.write_bytes(orjson.dumps(cfg))
        return str(path)

    return _write


@pytest.fixture
def make_manager():
    managers: List[InstanceManager] = []

    def _make(command_timeout: float = 5.0, **launch_overrides) -> InstanceManager:
        cfg = SupervisorConfig(launch=stub_settings(**launch_overrides), command_timeout=command_timeout)
        mgr = InstanceManager(config=cfg)
        managers.append(mgr)
        return mgr

    yield _make
    for mgr in managers:
        mgr.shutdown()
