# file: launcher/process.py
"""
Spawning, handshaking, probing and killing simulator processes.

Responsibilities
----------------
- Open a one-shot control listener and export its address to the child via
  SIMCTL_CONTROL_ADDR.
- Spawn the simulator in its own session (so the whole tree can be signalled),
  with cwd = project directory and the config path as last argument.
- Accept the child's connection, check that `hello` comes from the spawned
  process tree, and run the initialize -> ready handshake.
- Translate reset/run/status/stop into channel exchanges.
- Cheap liveness probe (Popen.poll + psutil identity check).

Failure policy
--------------
Any failure between spawn and `ready` kills and reaps the child before the
error propagates, so a failed launch never leaves a process behind.
"""
from __future__ import annotations

import itertools
import logging
import os
import signal
import socket
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, List, Optional, Set, Tuple

import psutil

from core.cancel import CancelToken, check
from core.config import LaunchSettings
from core.errors import (
    ChannelError,
    CommandRejected,
    CommandTimeout,
    ConfigRejected,
    LaunchTimeout,
    SimulatorError,
    SpawnFailed,
)
from launcher.base import Launcher
from launcher.channel import POLL_SLICE, CommandChannel, ExchangeTimeout
from launcher.protocol import CONTROL_ADDR_ENV, CommandKind, Response, ResponseKind

logger = logging.getLogger(__name__)

STOP_TIMEOUT = 1.0


@dataclass(frozen=True)
class ProcessIdentity:
    """OS pid plus start time; the pair stays unique even when the pid is recycled."""

    pid: int
    create_time: float

    @classmethod
    def of(cls, pid: int) -> "ProcessIdentity":
        try:
            created = psutil.Process(pid).create_time()
        except psutil.Error as e:
            raise SpawnFailed(f"cannot inspect spawned process pid={pid}: {e}") from e
        return cls(pid=pid, create_time=created)


@dataclass
class SimulatorProcess:
    identity: ProcessIdentity
    popen: subprocess.Popen = field(repr=False)
    argv: List[str] = field(default_factory=list)
    log_path: Optional[Path] = None

    @property
    def pid(self) -> int:
        return self.identity.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.popen.poll()


class ProcessLauncher(Launcher):
    """
    Default launcher used by InstanceManager.

    Public API:
        - launch(project_path, config_path, cancel) -> (SimulatorProcess, CommandChannel)
        - send_command(channel, kind, timeout, cancel) -> Response
        - is_alive(process) -> bool
        - terminate(process, channel, stop, timeout) -> None
    """

    def __init__(self, settings: Optional[LaunchSettings] = None) -> None:
        self.settings = settings or LaunchSettings()
        self._log_seq = itertools.count(1)

    # -------------------------
    # Launch
    # -------------------------
    def launch(
        self,
        project_path: str,
        config_path: str,
        cancel: Optional[CancelToken] = None,
    ) -> Tuple[SimulatorProcess, CommandChannel]:
        if not project_path or not config_path:
            raise SpawnFailed("project path and config path must be non-empty")
        check(cancel, "launch")
        deadline = time.monotonic() + self.settings.launch_timeout

        listener = socket.create_server((self.settings.connect_host, 0))
        try:
            process = self._spawn(project_path, config_path, listener.getsockname()[:2])
            channel: Optional[CommandChannel] = None
            try:
                channel = self._accept(listener, process, deadline, cancel)
                self._handshake(channel, process, project_path, config_path, deadline, cancel)
            except Exception:
                if channel is not None:
                    channel.close()
                self._kill(process)
                raise
        finally:
            listener.close()

        logger.info("Simulator pid=%d ready (project=%s, config=%s)", process.pid, project_path, config_path)
        return process, channel

    def _open_log(self) -> Tuple[Optional[IO[bytes]], Optional[Path]]:
        if self.settings.log_dir is None:
            return None, None
        self.settings.log_dir.mkdir(parents=True, exist_ok=True)
        path = self.settings.log_dir / f"sim-{os.getpid()}-{next(self._log_seq)}.log"
        return path.open("ab"), path

    def _spawn(self, project_path: str, config_path: str, addr: Tuple[str, int]) -> SimulatorProcess:
        argv = self.settings.argv_for(project_path, config_path)
        env = dict(os.environ)
        env.update(self.settings.env)
        env[CONTROL_ADDR_ENV] = f"{addr[0]}:{addr[1]}"

        log_file, log_path = self._open_log()
        out = log_file if log_file is not None else subprocess.DEVNULL
        try:
            popen = subprocess.Popen(
                argv,
                cwd=project_path,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=subprocess.STDOUT,
                start_new_session=(os.name != "nt"),
            )
        except (OSError, ValueError) as e:
            # missing binary, missing/non-directory cwd, permission denied
            raise SpawnFailed(f"failed to spawn {argv[0]!r} in {project_path!r}: {e}") from e
        finally:
            if log_file is not None:
                log_file.close()

        try:
            identity = ProcessIdentity.of(popen.pid)
        except SpawnFailed:
            popen.kill()
            popen.wait()
            raise
        process = SimulatorProcess(identity=identity, popen=popen, argv=argv, log_path=log_path)
        logger.info("Spawned simulator pid=%d: %s", process.pid, " ".join(argv))
        return process

    def _tree_pids(self, process: SimulatorProcess) -> Set[int]:
        pids = {process.pid}
        try:
            pids.update(c.pid for c in psutil.Process(process.pid).children(recursive=True))
        except psutil.Error:
            pass
        return pids

    def _accept(
        self,
        listener: socket.socket,
        process: SimulatorProcess,
        deadline: float,
        cancel: Optional[CancelToken],
    ) -> CommandChannel:
        label = f"sim[{process.pid}]"
        while True:
            check(cancel, "launch")
            rc = process.popen.poll()
            if rc is not None:
                raise SpawnFailed(f"simulator exited with status {rc} before connecting")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LaunchTimeout(f"simulator pid={process.pid} did not connect in time")
            listener.settimeout(min(POLL_SLICE, remaining))
            try:
                conn, _ = listener.accept()
            except socket.timeout:
                continue

            channel = CommandChannel(conn, label=label)
            try:
                hello = channel.receive(deadline, cancel)
            except ExchangeTimeout as e:
                channel.close()
                raise LaunchTimeout(f"{label}: no hello before deadline") from e
            except Exception:
                channel.close()
                raise

            try:
                peer = int(hello.data.get("pid", -1))
            except (TypeError, ValueError) as e:
                channel.close()
                raise ChannelError(f"{label}: malformed hello pid {hello.data.get('pid')!r}") from e
            if hello.kind is ResponseKind.HELLO and peer in self._tree_pids(process):
                return channel
            logger.warning("%s: ignoring control connection from pid=%s (%s)", label, peer, hello.kind.value)
            channel.close()

    def _handshake(
        self,
        channel: CommandChannel,
        process: SimulatorProcess,
        project_path: str,
        config_path: str,
        deadline: float,
        cancel: Optional[CancelToken],
    ) -> None:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise LaunchTimeout(f"simulator pid={process.pid}: no time left for initialize")
        try:
            response = channel.request(
                CommandKind.INITIALIZE,
                timeout=remaining,
                params={"project": project_path, "config": config_path},
                cancel=cancel,
            )
        except ExchangeTimeout as e:
            raise LaunchTimeout(f"simulator pid={process.pid} never reported ready") from e

        if response.kind is ResponseKind.NACK:
            raise ConfigRejected(
                f"simulator pid={process.pid} rejected {config_path!r}: "
                f"{response.reason} {response.detail}".strip()
            )
        if response.kind is not ResponseKind.READY:
            raise ChannelError(f"expected ready, got {response.kind.value}")

    # -------------------------
    # Commands
    # -------------------------
    def send_command(
        self,
        channel: CommandChannel,
        kind: CommandKind,
        timeout: float,
        cancel: Optional[CancelToken] = None,
    ) -> Response:
        try:
            response = channel.request(kind, timeout=timeout, cancel=cancel)
        except ExchangeTimeout as e:
            raise CommandTimeout(f"{channel.label}: {kind.value} not acknowledged within {timeout}s") from e

        if response.kind is ResponseKind.NACK:
            raise CommandRejected(
                f"{channel.label}: {kind.value} rejected ({response.reason})",
                reason=response.reason,
                detail=response.detail,
            )
        if response.kind is not ResponseKind.ACK:
            raise ChannelError(f"{channel.label}: expected ack to {kind.value}, got {response.kind.value}")
        return response

    # -------------------------
    # Liveness & teardown
    # -------------------------
    def is_alive(self, process: SimulatorProcess) -> bool:
        if process.popen.poll() is not None:
            return False
        try:
            proc = psutil.Process(process.pid)
            return (
                proc.create_time() == process.identity.create_time
                and proc.status() != psutil.STATUS_ZOMBIE
            )
        except psutil.Error:
            return False

    def terminate(
        self,
        process: SimulatorProcess,
        channel: Optional[CommandChannel] = None,
        stop: bool = True,
        timeout: float = STOP_TIMEOUT,
    ) -> None:
        """Best-effort clean stop, then close the channel and kill/reap. Safe to repeat."""
        if channel is not None and not channel.closed:
            if stop and self.is_alive(process):
                try:
                    self.send_command(channel, CommandKind.STOP, timeout=min(timeout, STOP_TIMEOUT))
                except SimulatorError as e:
                    logger.debug("sim[%d]: stop not acknowledged: %s", process.pid, e)
            channel.close()
        self._kill(process)

    def _signal_tree(self, popen: subprocess.Popen, sig: int) -> None:
        try:
            if os.name == "nt":
                popen.kill()
            else:
                os.killpg(popen.pid, sig)
        except (ProcessLookupError, PermissionError):
            pass

    def _kill(self, process: SimulatorProcess) -> None:
        popen = process.popen
        if popen.poll() is not None:
            return
        self._signal_tree(popen, signal.SIGTERM)
        try:
            popen.wait(timeout=self.settings.kill_grace)
        except subprocess.TimeoutExpired:
            self._signal_tree(popen, getattr(signal, "SIGKILL", signal.SIGTERM))
            popen.wait()
        logger.info("Simulator pid=%d exited with status %s", process.pid, popen.returncode)
