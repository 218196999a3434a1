"""
Core: status codes, error taxonomy, configuration, cancellation and logging setup.
"""
from .errors import (
    StatusCode,
    SimulatorError,
    SpawnFailed,
    LaunchTimeout,
    ConfigRejected,
    UnknownHandle,
    StaleHandle,
    InstanceTerminated,
    InstanceLost,
    ChannelError,
    Cancelled,
    InternalError,
    CommandTimeout,
    CommandRejected,
    status_of,
)
from .config import LaunchSettings, SupervisorConfig
from .cancel import CancelToken

__all__ = [
    # errors
    "StatusCode",
    "SimulatorError",
    "SpawnFailed",
    "LaunchTimeout",
    "ConfigRejected",
    "UnknownHandle",
    "StaleHandle",
    "InstanceTerminated",
    "InstanceLost",
    "ChannelError",
    "Cancelled",
    "InternalError",
    "CommandTimeout",
    "CommandRejected",
    "status_of",
    # config
    "LaunchSettings",
    "SupervisorConfig",
    # cancellation
    "CancelToken",
]
