# file: launcher/base.py
"""
Launcher interface consumed by the InstanceManager.

The manager never touches sockets or processes directly; it goes through these
four operations, which lets tests inject a launcher that fakes processes.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional, Tuple

from core.cancel import CancelToken
from launcher.protocol import CommandKind, Response


class Launcher(ABC):
    @abstractmethod
    def launch(
        self, project_path: str, config_path: str, cancel: Optional[CancelToken] = None
    ) -> Tuple[Any, Any]:
        """Spawn + handshake; return (process, channel) or raise a launch error."""
        raise NotImplementedError

    @abstractmethod
    def send_command(
        self, channel: Any, kind: CommandKind, timeout: float, cancel: Optional[CancelToken] = None
    ) -> Response:
        """One request/response exchange; ack -> Response, nack -> CommandRejected."""
        raise NotImplementedError

    @abstractmethod
    def is_alive(self, process: Any) -> bool:
        raise NotImplementedError

    @abstractmethod
    def terminate(self, process: Any, channel: Any = None, stop: bool = True, timeout: float = 1.0) -> None:
        """Stop/kill the process and close its channel. Must be idempotent."""
        raise NotImplementedError
