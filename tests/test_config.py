from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from core.config import DEFAULT_COMMAND_TIMEOUT, LaunchSettings, SupervisorConfig


def test_default_argv_uses_project_launcher_script():
    argv = LaunchSettings().argv_for("/proj", "/proj/cfg.json")
    assert argv == [str(Path("/proj") / "simics"), "/proj/cfg.json"]


def test_extra_args_precede_config():
    s = LaunchSettings(command=["sim", "--batch"], extra_args=["-q"])
    assert s.argv_for("/p", "c.yml") == ["sim", "--batch", "-q", "c.yml"]


def test_timeouts_must_be_positive():
    with pytest.raises(ValidationError):
        LaunchSettings(launch_timeout=0)
    with pytest.raises(ValidationError):
        SupervisorConfig(command_timeout=-1.0)
    with pytest.raises(ValidationError):
        LaunchSettings(command=[])


def test_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("SIMCTL_SIMULATOR", "python -m harness.stub_simulator")
    monkeypatch.setenv("SIMCTL_LAUNCH_TIMEOUT", "4.5")
    monkeypatch.setenv("SIMCTL_LOG_DIR", str(tmp_path))
    monkeypatch.delenv("SIMCTL_COMMAND_TIMEOUT", raising=False)

    cfg = SupervisorConfig.from_env()
    assert cfg.launch.command == ["python", "-m", "harness.stub_simulator"]
    assert cfg.launch.launch_timeout == 4.5
    assert cfg.launch.log_dir == tmp_path
    assert cfg.command_timeout == DEFAULT_COMMAND_TIMEOUT
    assert cfg.stop_on_teardown is True
