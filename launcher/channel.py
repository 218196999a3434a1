# file: launcher/channel.py
"""
Supervisor side of the control connection to one simulator process.

A CommandChannel owns a connected socket and performs strictly sequential
request/response exchanges: its lock is held from the first byte written until
the matching response is decoded. Waits are sliced so that deadlines and
cancel tokens are honored without relying on a single long blocking recv.
"""
from __future__ import annotations

import itertools
import logging
import socket
import threading
import time
from typing import Any, Dict, Optional

from core.cancel import CancelToken, check
from core.errors import ChannelError
from launcher.protocol import (
    CommandKind,
    FrameDecoder,
    ProtocolError,
    Request,
    Response,
    decode_response,
    encode_frame,
)

logger = logging.getLogger(__name__)

POLL_SLICE = 0.05
RECV_CHUNK = 65536


class ExchangeTimeout(Exception):
    """The deadline passed before a complete response arrived."""


class CommandChannel:
    def __init__(self, sock: socket.socket, label: str = "") -> None:
        self._sock = sock
        self._decoder = FrameDecoder()
        self._lock = threading.Lock()
        self._seq = itertools.count(1)
        self._closed = False
        self.label = label

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.close()
        except OSError:
            pass

    # -------------------------
    # Low-level I/O
    # -------------------------
    def _write(self, request: Request, deadline: float) -> None:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ExchangeTimeout(f"deadline passed before sending {request.kind.value}")
        try:
            self._sock.settimeout(remaining)
            self._sock.sendall(encode_frame(request))
        except socket.timeout as e:
            raise ExchangeTimeout(f"timed out sending {request.kind.value}") from e
        except OSError as e:
            raise ChannelError(f"{self.label}: write failed: {e}") from e
        logger.debug("%s -> %s seq=%d", self.label, request.kind.value, request.seq)

    def receive(self, deadline: float, cancel: Optional[CancelToken] = None) -> Response:
        """Block until one full response frame is decoded, the deadline passes, or cancel fires."""
        if self._closed:
            raise ChannelError(f"{self.label}: channel is closed")
        while True:
            try:
                payload = self._decoder.next_payload()
                if payload is not None:
                    response = decode_response(payload)
                    logger.debug("%s <- %s seq=%d", self.label, response.kind.value, response.seq)
                    return response
            except ProtocolError as e:
                raise ChannelError(f"{self.label}: {e}") from e

            check(cancel, "wait for simulator response")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ExchangeTimeout(f"{self.label}: no response before deadline")
            try:
                self._sock.settimeout(min(POLL_SLICE, remaining))
                chunk = self._sock.recv(RECV_CHUNK)
            except socket.timeout:
                continue
            except OSError as e:
                raise ChannelError(f"{self.label}: read failed: {e}") from e
            if not chunk:
                raise ChannelError(f"{self.label}: connection closed by simulator")
            self._decoder.feed(chunk)

    # -------------------------
    # Request/response exchange
    # -------------------------
    def request(
        self,
        kind: CommandKind,
        timeout: float,
        params: Optional[Dict[str, Any]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Response:
        """
        Send one request and return the response that answers it.

        The response kind is not interpreted here; callers decide what
        ack/nack/ready mean for their step.
        """
        deadline = time.monotonic() + timeout
        with self._lock:
            if self._closed:
                raise ChannelError(f"{self.label}: channel is closed")
            request = Request(kind=kind, seq=next(self._seq), params=params or {})
            self._write(request, deadline)
            response = self.receive(deadline, cancel)
            if response.seq != request.seq:
                raise ChannelError(
                    f"{self.label}: response seq {response.seq} does not answer request {request.seq}"
                )
            return response
