# file: core/errors.py
"""
Status codes and the exception taxonomy shared by launcher and supervisor.

Every failure surfaces as a `SimulatorError` subclass carrying a `StatusCode`.
Callers that want the integer status convention of a C-style binding wrap a call
with `status_of`.

Taxonomy
--------
- validation: UnknownHandle, StaleHandle, InstanceTerminated (never touch the process)
- launch: SpawnFailed, LaunchTimeout, ConfigRejected (no partial state retained)
- channel / process loss: ChannelError, InstanceLost, CommandTimeout
- other: CommandRejected (process answered Nack), Cancelled, InternalError
"""
from __future__ import annotations

from enum import IntEnum
from typing import Any, Callable, Optional, Tuple


class StatusCode(IntEnum):
    OK = 0
    SPAWN_FAILED = 1
    LAUNCH_TIMEOUT = 2
    CONFIG_REJECTED = 3
    UNKNOWN_HANDLE = 4
    STALE_HANDLE = 5
    INSTANCE_TERMINATED = 6
    INSTANCE_LOST = 7
    CHANNEL_ERROR = 8
    CANCELLED = 9
    INTERNAL_ERROR = 10
    COMMAND_TIMEOUT = 11
    COMMAND_REJECTED = 12


class SimulatorError(RuntimeError):
    """Base class; `code` is the status reported to flat-API callers."""

    code: StatusCode = StatusCode.INTERNAL_ERROR

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code.name.lower())
        self.message = message or self.code.name.lower()


class SpawnFailed(SimulatorError):
    code = StatusCode.SPAWN_FAILED


class LaunchTimeout(SimulatorError):
    code = StatusCode.LAUNCH_TIMEOUT


class ConfigRejected(SimulatorError):
    code = StatusCode.CONFIG_REJECTED


class UnknownHandle(SimulatorError):
    code = StatusCode.UNKNOWN_HANDLE


class StaleHandle(SimulatorError):
    code = StatusCode.STALE_HANDLE


class InstanceTerminated(SimulatorError):
    code = StatusCode.INSTANCE_TERMINATED


class InstanceLost(SimulatorError):
    code = StatusCode.INSTANCE_LOST


class ChannelError(SimulatorError):
    code = StatusCode.CHANNEL_ERROR


class Cancelled(SimulatorError):
    code = StatusCode.CANCELLED


class InternalError(SimulatorError):
    code = StatusCode.INTERNAL_ERROR


class CommandTimeout(SimulatorError):
    code = StatusCode.COMMAND_TIMEOUT


class CommandRejected(SimulatorError):
    code = StatusCode.COMMAND_REJECTED

    def __init__(self, message: str = "", reason: str = "", detail: str = "") -> None:
        super().__init__(message)
        self.reason = reason
        self.detail = detail


def status_of(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Tuple[StatusCode, Optional[Any]]:
    """
    Call `fn` and translate the outcome into (StatusCode, result).

    Only SimulatorError is converted; anything else is a bug and propagates.
    """
    try:
        return StatusCode.OK, fn(*args, **kwargs)
    except SimulatorError as e:
        return e.code, None
