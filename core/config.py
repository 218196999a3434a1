# file: core/config.py
"""
Configuration models for launching and supervising simulator processes.

Defaults
--------
- launch_timeout: 30 s from spawn to the simulator's `ready` answer.
- command_timeout: 10 s for a reset/run/status acknowledgment.
- command: `<project>/simics`, the launcher script a project directory carries.

Environment overrides (see `SupervisorConfig.from_env`)
-------------------------------------------------------
SIMCTL_SIMULATOR        argv prefix, shell-split (e.g. "python -m harness.stub_simulator")
SIMCTL_LAUNCH_TIMEOUT   seconds
SIMCTL_COMMAND_TIMEOUT  seconds
SIMCTL_LOG_DIR          directory for captured simulator output
"""
from __future__ import annotations

import os
import shlex
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_LAUNCH_TIMEOUT = 30.0
DEFAULT_COMMAND_TIMEOUT = 10.0
DEFAULT_EVENT_HISTORY = 10_000
DEFAULT_SIMULATOR_SCRIPT = "simics"


class LaunchSettings(BaseModel):
    """How to turn (project, config) into a running simulator process."""

    command: Optional[List[str]] = Field(
        None, description="argv prefix; None means <project>/simics."
    )
    extra_args: List[str] = Field(default_factory=list, description="Inserted before the config path.")
    env: Dict[str, str] = Field(default_factory=dict, description="Extra environment entries.")
    launch_timeout: float = Field(DEFAULT_LAUNCH_TIMEOUT, gt=0.0)
    connect_host: str = Field("127.0.0.1", description="Control listener bind address.")
    log_dir: Optional[Path] = Field(None, description="Capture simulator stdout/stderr here.")
    kill_grace: float = Field(2.0, ge=0.0, description="Seconds between SIGTERM and SIGKILL.")

    @field_validator("command")
    @classmethod
    def _non_empty_command(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is not None and not v:
            raise ValueError("command must contain at least the executable")
        return v

    def argv_for(self, project_path: str, config_path: str) -> List[str]:
        prefix = self.command or [str(Path(project_path) / DEFAULT_SIMULATOR_SCRIPT)]
        return [*prefix, *self.extra_args, config_path]


class SupervisorConfig(BaseModel):
    launch: LaunchSettings = Field(default_factory=LaunchSettings)
    command_timeout: float = Field(DEFAULT_COMMAND_TIMEOUT, gt=0.0)
    stop_on_teardown: bool = Field(True, description="Send `stop` before killing on teardown.")
    event_history: int = Field(DEFAULT_EVENT_HISTORY, ge=1, description="Transitions kept in the event log.")

    @classmethod
    def from_env(cls) -> "SupervisorConfig":
        launch: Dict[str, object] = {}
        if os.getenv("SIMCTL_SIMULATOR"):
            launch["command"] = shlex.split(os.environ["SIMCTL_SIMULATOR"])
        if os.getenv("SIMCTL_LAUNCH_TIMEOUT"):
            launch["launch_timeout"] = float(os.environ["SIMCTL_LAUNCH_TIMEOUT"])
        if os.getenv("SIMCTL_LOG_DIR"):
            launch["log_dir"] = Path(os.environ["SIMCTL_LOG_DIR"])
        cfg: Dict[str, object] = {"launch": LaunchSettings(**launch)}
        if os.getenv("SIMCTL_COMMAND_TIMEOUT"):
            cfg["command_timeout"] = float(os.environ["SIMCTL_COMMAND_TIMEOUT"])
        return cls(**cfg)
