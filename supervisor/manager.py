# file: supervisor/manager.py
"""
InstanceManager: the authoritative table of live simulator instances.

Responsibilities
----------------
- Mint handles on successful launch and bind them to (process, channel).
- Validate every handle before a command reaches a process
  (unknown -> UnknownHandle, wrong generation -> StaleHandle,
  terminated -> InstanceTerminated).
- Probe liveness before forwarding, and turn channel failures, timeouts and
  mid-exchange cancellation into an irreversible TERMINATED transition.
- Tear down single instances or drain everything at shutdown.
- Keep a transition log for inspection/export.

Concurrency
-----------
`_table_lock` only guards the pid -> record dict and is never held across I/O.
Each record carries its own lock that is held for the whole exchange with its
process, so two callers can never interleave requests on one channel while
different instances proceed in parallel. State is re-checked after the record
lock is taken, because a concurrent caller may have terminated it meanwhile.

Terminated records stay in the table as tombstones (so later calls report
InstanceTerminated rather than UnknownHandle) until a new launch lands on the
same pid and replaces them. They are bounded by the number of distinct pids
seen; the transition log keeps the last `event_history` entries.
"""
from __future__ import annotations

import itertools
import logging
from collections import deque
import threading
import time
from typing import Any, Deque, Dict, List, Optional

from core.cancel import CancelToken, check
from core.config import SupervisorConfig
from core.errors import (
    Cancelled,
    ChannelError,
    CommandTimeout,
    InstanceLost,
    InstanceTerminated,
    InternalError,
    StaleHandle,
    UnknownHandle,
)
from launcher.base import Launcher
from launcher.process import ProcessLauncher
from launcher.protocol import CommandKind, Response
from supervisor.records import InstanceRecord, LifecycleState, SimulatorHandle

logger = logging.getLogger(__name__)


class InstanceManager:
    """
    Owns simulator instances for the lifetime of this object.

    Public API:
        - init(project_path, config_path, cancel=None) -> SimulatorHandle
        - reset(handle, cancel=None) / run(handle)
        - query(handle) -> dict            (run status reported by the process)
        - state(handle) -> LifecycleState
        - teardown(handle) / shutdown()
        - live_handles(), events, to_dataframe()
    """

    def __init__(
        self,
        launcher: Optional[Launcher] = None,
        config: Optional[SupervisorConfig] = None,
    ) -> None:
        self.config = config or SupervisorConfig()
        self.launcher: Launcher = launcher or ProcessLauncher(self.config.launch)

        self._records: Dict[int, InstanceRecord] = {}
        self._table_lock = threading.Lock()
        self._generations = itertools.count(1)
        self._closed = False

        # transition log, oldest entries dropped past event_history
        self.events: Deque[dict] = deque(maxlen=self.config.event_history)

    def __enter__(self) -> "InstanceManager":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.shutdown()

    # -------------------------
    # Bookkeeping
    # -------------------------
    def _transition(self, record: InstanceRecord, new_state: LifecycleState, reason: str) -> None:
        old = record.state
        if not record.can_transition(new_state):
            raise InternalError(f"{record.handle}: illegal transition {old.value} -> {new_state.value}")
        record.state = new_state
        record.updated_at = time.time()
        self.events.append(
            {
                "time": record.updated_at,
                "pid": record.handle.pid,
                "generation": record.handle.generation,
                "from": old.value,
                "to": new_state.value,
                "reason": reason,
            }
        )
        logger.info("%s: %s -> %s (%s)", record.handle, old.value, new_state.value, reason)

    def _lookup(self, handle: SimulatorHandle) -> InstanceRecord:
        if not isinstance(handle, SimulatorHandle):
            raise UnknownHandle(f"{handle!r} is not a simulator handle")
        with self._table_lock:
            record = self._records.get(handle.pid) if handle.pid > 0 else None
        if record is None:
            raise UnknownHandle(f"{handle} was never issued by this manager")
        if record.handle.generation != handle.generation:
            raise StaleHandle(f"{handle} is stale; pid {handle.pid} now belongs to {record.handle}")
        return record

    def _terminate_locked(self, record: InstanceRecord, reason: str, stop: bool) -> None:
        """Caller holds record.lock."""
        if record.is_terminated:
            return
        self._transition(record, LifecycleState.TERMINATED, reason)
        record.terminated_reason = reason
        self.launcher.terminate(
            record.process, record.channel, stop=stop, timeout=self.config.command_timeout
        )

    # -------------------------
    # Lifecycle operations
    # -------------------------
    def init(
        self,
        project_path: str,
        config_path: str,
        cancel: Optional[CancelToken] = None,
    ) -> SimulatorHandle:
        """Launch a simulator and return a fresh handle in state READY."""
        if self._closed:
            raise InternalError("manager has been shut down")
        process, channel = self.launcher.launch(project_path, config_path, cancel=cancel)

        refusal: Optional[str] = None
        with self._table_lock:
            existing = self._records.get(process.pid)
            if self._closed:
                refusal = "manager was shut down during init"
            elif existing is not None and not existing.is_terminated:
                refusal = f"pid {process.pid} is already bound to live {existing.handle}"
            else:
                record = InstanceRecord(
                    handle=SimulatorHandle(pid=process.pid, generation=next(self._generations)),
                    process=process,
                    channel=channel,
                    project_path=project_path,
                    config_path=config_path,
                )
                self._transition(record, LifecycleState.READY, "launched")
                self._records[process.pid] = record

        if refusal is not None:
            self.launcher.terminate(process, channel, stop=False)
            raise InternalError(refusal)
        return record.handle

    def _command(
        self,
        handle: SimulatorHandle,
        kind: CommandKind,
        new_state: Optional[LifecycleState],
        cancel: Optional[CancelToken] = None,
    ) -> Response:
        record = self._lookup(handle)
        with record.lock:
            if record.is_terminated:
                raise InstanceTerminated(f"{handle} is terminated ({record.terminated_reason})")
            if not self.launcher.is_alive(record.process):
                self._terminate_locked(record, "process exited", stop=False)
                raise InstanceLost(f"{handle}: simulator process is gone")
            # nothing has been written yet, so the channel is still in sync
            check(cancel, kind.value)

            try:
                response = self.launcher.send_command(
                    record.channel, kind, timeout=self.config.command_timeout, cancel=cancel
                )
            except ChannelError as e:
                self._terminate_locked(record, f"channel failure: {e}", stop=False)
                raise InstanceLost(f"{handle}: {e}") from e
            except CommandTimeout:
                self._terminate_locked(record, f"{kind.value} timed out", stop=False)
                raise
            except Cancelled:
                self._terminate_locked(record, f"{kind.value} cancelled mid-exchange", stop=False)
                raise

            if new_state is not None:
                self._transition(record, new_state, kind.value)
            return response

    def reset(self, handle: SimulatorHandle, cancel: Optional[CancelToken] = None) -> None:
        """Reset the simulation; blocks until the process acknowledges."""
        self._command(handle, CommandKind.RESET, LifecycleState.READY, cancel)

    def run(self, handle: SimulatorHandle) -> None:
        """Start the simulation. Returns once the process accepts; it keeps running afterwards."""
        self._command(handle, CommandKind.RUN, LifecycleState.RUNNING)

    def query(self, handle: SimulatorHandle) -> Dict[str, Any]:
        """Ask the process how its current run is doing; the lifecycle state is unchanged."""
        return dict(self._command(handle, CommandKind.STATUS, None).data)

    def state(self, handle: SimulatorHandle) -> LifecycleState:
        return self._lookup(handle).state

    def teardown(self, handle: SimulatorHandle) -> None:
        """Explicitly end an instance. A no-op for handles that are already terminated."""
        record = self._lookup(handle)
        with record.lock:
            self._terminate_locked(record, "teardown", stop=self.config.stop_on_teardown)

    def live_handles(self) -> List[SimulatorHandle]:
        with self._table_lock:
            return [r.handle for r in self._records.values() if not r.is_terminated]

    def shutdown(self) -> None:
        """Tear down every live instance; further init calls fail."""
        with self._table_lock:
            self._closed = True
            records = list(self._records.values())
        for record in records:
            with record.lock:
                self._terminate_locked(record, "shutdown", stop=self.config.stop_on_teardown)

    # -------------------------
    # Export helpers
    # -------------------------
    def to_dataframe(self):
        """Return the transition log as a pandas DataFrame."""
        import pandas as pd

        return pd.DataFrame(list(self.events))
