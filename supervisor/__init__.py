"""
Supervisor layer: handle table, lifecycle state machine, and the InstanceManager.
"""
from .records import (
    SimulatorHandle,
    LifecycleState,
    InstanceRecord,
    ALLOWED_TRANSITIONS,
)
from .manager import InstanceManager

__all__ = [
    "SimulatorHandle",
    "LifecycleState",
    "InstanceRecord",
    "ALLOWED_TRANSITIONS",
    "InstanceManager",
]
