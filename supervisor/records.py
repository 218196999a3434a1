# file: supervisor/records.py
"""
Handles, lifecycle states and per-instance records owned by the InstanceManager.

Design
------
A SimulatorHandle is (pid, generation). The pid alone is not safe to hand out:
the OS recycles it once the simulator exits. The generation is minted by the
manager from a monotonically increasing counter, so a handle from a previous
life of the same pid never validates against the current record.

Lifecycle
---------
    INITIALIZING -> READY            launch + handshake succeeded
    READY/RUNNING -> READY           reset acknowledged
    READY/RUNNING -> RUNNING         run acknowledged
    any -> TERMINATED                loss detected, timeout, cancel, teardown

TERMINATED is absorbing.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Dict, Optional, Set

from launcher.channel import CommandChannel
from launcher.process import SimulatorProcess


@dataclass(frozen=True)
class SimulatorHandle:
    pid: int
    generation: int

    NULL: ClassVar["SimulatorHandle"]

    def __str__(self) -> str:
        return f"sim:{self.pid}#{self.generation}"


SimulatorHandle.NULL = SimulatorHandle(pid=0, generation=0)


class LifecycleState(str, Enum):
    INITIALIZING = "initializing"
    READY = "ready"
    RUNNING = "running"
    TERMINATED = "terminated"


ALLOWED_TRANSITIONS: Dict[LifecycleState, Set[LifecycleState]] = {
    LifecycleState.INITIALIZING: {LifecycleState.READY, LifecycleState.TERMINATED},
    LifecycleState.READY: {LifecycleState.READY, LifecycleState.RUNNING, LifecycleState.TERMINATED},
    LifecycleState.RUNNING: {LifecycleState.READY, LifecycleState.RUNNING, LifecycleState.TERMINATED},
    LifecycleState.TERMINATED: set(),
}


@dataclass
class InstanceRecord:
    handle: SimulatorHandle
    process: SimulatorProcess
    channel: CommandChannel
    project_path: str
    config_path: str
    state: LifecycleState = LifecycleState.INITIALIZING
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    terminated_reason: Optional[str] = None

    # serializes every channel exchange and state change for this instance
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def is_terminated(self) -> bool:
        return self.state is LifecycleState.TERMINATED

    def can_transition(self, new_state: LifecycleState) -> bool:
        return new_state in ALLOWED_TRANSITIONS[self.state]
