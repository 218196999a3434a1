# file: harness/stub_simulator.py
"""
Stand-in simulator that speaks the control protocol without modeling hardware.

Usage
-----
SIMCTL_CONTROL_ADDR=127.0.0.1:PORT python -m harness.stub_simulator path/to/config.json

Config keys (all optional, JSON object)
---------------------------------------
reject           nack `initialize` with reason config_rejected
skip_connect     never connect back; sleep until killed
ready_delay      seconds to wait before answering `initialize`
hang_on          command kind (or list) that is read but never answered
exit_on          command kind (or list) that makes the process exit(1) on receipt
nack_on          command kind (or list) answered with nack{reason="refused"}
run_ticks        a run lasts this many 10 ms ticks, then status reports stopped
crash_after_run  a finished run reports stop_type "crash" instead of "normal"
hello_pid        value announced as the pid in `hello` instead of the real one

A config file that does not exist is rejected at `initialize`. The stub reads
each request completely before replying and exits with status 3 on any
malformed frame, so interleaved writes from the supervisor are detected.
"""
from __future__ import annotations

import os
import socket
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import orjson

from launcher.protocol import (
    CONTROL_ADDR_ENV,
    CommandKind,
    FrameDecoder,
    ProtocolError,
    Request,
    Response,
    ResponseKind,
    decode_request,
    encode_frame,
)

TICK = 0.01
EXIT_PROTOCOL_VIOLATION = 3


def _kinds(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def load_config(path: str) -> Optional[Dict[str, Any]]:
    """Return the parsed config, or None if the file is missing or unreadable."""
    p = Path(path)
    if not p.is_file():
        return None
    raw = p.read_bytes()
    if not raw.strip():
        return {}
    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


class StubSimulator:
    def __init__(self, sock: socket.socket, config: Optional[Dict[str, Any]]) -> None:
        self.sock = sock
        self.config = config
        cfg = config or {}
        self.hang_on = _kinds(cfg.get("hang_on"))
        self.exit_on = _kinds(cfg.get("exit_on"))
        self.nack_on = _kinds(cfg.get("nack_on"))
        self.run_ticks = int(cfg.get("run_ticks", 0))
        self.crash_after_run = bool(cfg.get("crash_after_run", False))
        self._decoder = FrameDecoder()
        self._run_started: Optional[float] = None
        self.commands_seen = 0

    # -------------------------
    # I/O
    # -------------------------
    def _send(self, response: Response) -> None:
        self.sock.sendall(encode_frame(response))

    def _read_request(self) -> Optional[Request]:
        while True:
            payload = self._decoder.next_payload()
            if payload is not None:
                return decode_request(payload)
            chunk = self.sock.recv(65536)
            if not chunk:
                return None
            self._decoder.feed(chunk)

    # -------------------------
    # Run status
    # -------------------------
    def _status(self) -> Dict[str, Any]:
        if self._run_started is None:
            return {"state": "idle"}
        elapsed = time.monotonic() - self._run_started
        if self.run_ticks and elapsed >= self.run_ticks * TICK:
            return {"state": "stopped", "stop_type": "crash" if self.crash_after_run else "normal"}
        return {"state": "running", "elapsed": elapsed}

    # -------------------------
    # Dispatch
    # -------------------------
    def _handle(self, req: Request) -> Optional[Response]:
        kind = req.kind.value
        if kind in self.exit_on:
            sys.stdout.flush()
            os._exit(1)
        if kind in self.hang_on:
            while True:
                time.sleep(3600)
        if kind in self.nack_on:
            return Response.nack(req.seq, "refused", f"{kind} refused by config")

        if req.kind is CommandKind.INITIALIZE:
            delay = float((self.config or {}).get("ready_delay", 0.0))
            if delay:
                time.sleep(delay)
            if self.config is None:
                return Response.nack(req.seq, "config_rejected", "config file missing or invalid")
            if self.config.get("reject"):
                return Response.nack(req.seq, "config_rejected", "rejected by config")
            return Response(kind=ResponseKind.READY, seq=req.seq)
        if req.kind is CommandKind.RESET:
            self._run_started = None
            return Response.ack(req.seq, {"commands_seen": self.commands_seen})
        if req.kind is CommandKind.RUN:
            self._run_started = time.monotonic()
            return Response.ack(req.seq, {"commands_seen": self.commands_seen})
        if req.kind is CommandKind.STATUS:
            return Response.ack(req.seq, self._status())
        return Response.ack(req.seq)

    def serve(self) -> int:
        pid = (self.config or {}).get("hello_pid", os.getpid())
        self._send(Response(kind=ResponseKind.HELLO, data={"pid": pid}))
        while True:
            try:
                req = self._read_request()
            except ProtocolError as e:
                print(f"protocol violation: {e}", file=sys.stderr)
                return EXIT_PROTOCOL_VIOLATION
            if req is None:
                return 0
            self.commands_seen += 1
            response = self._handle(req)
            if response is not None:
                self._send(response)
            if req.kind is CommandKind.STOP:
                return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    config = load_config(args[-1]) if args else None

    if config is not None and config.get("skip_connect"):
        while True:
            time.sleep(3600)

    host, _, port = os.environ[CONTROL_ADDR_ENV].rpartition(":")
    with socket.create_connection((host, int(port))) as sock:
        try:
            return StubSimulator(sock, config).serve()
        except (BrokenPipeError, ConnectionResetError):
            return 0


if __name__ == "__main__":
    sys.exit(main())
