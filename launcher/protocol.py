# file: launcher/protocol.py
"""
Length-prefixed JSON control protocol spoken between supervisor and simulator.

Frame layout
------------
    +----------------+-------------------------------+
    | u32 big-endian |  orjson payload (<= 1 MiB)     |
    |  payload size  |                               |
    +----------------+-------------------------------+

Frames are self-delimiting: a reader buffers whatever the stream delivers and
only hands out complete payloads, so short reads and coalesced writes never
desynchronize the two ends.

Conversation
------------
    simulator -> hello{data.pid}
    supervisor -> initialize{params.project, params.config}
    simulator -> ready | nack{reason="config_rejected"}
    then strictly alternating: request{reset|run|status|stop} -> ack | nack

Every response echoes the `seq` of the request it answers.
"""
from __future__ import annotations

import struct
from enum import Enum
from typing import Any, Dict, Optional, Union

import orjson
from pydantic import BaseModel, Field, ValidationError

CONTROL_ADDR_ENV = "SIMCTL_CONTROL_ADDR"
HEADER = struct.Struct(">I")
MAX_FRAME = 1 << 20


class ProtocolError(ValueError):
    """Malformed frame or payload; the stream can no longer be trusted."""


class CommandKind(str, Enum):
    INITIALIZE = "initialize"
    RESET = "reset"
    RUN = "run"
    STATUS = "status"
    STOP = "stop"


class ResponseKind(str, Enum):
    HELLO = "hello"
    READY = "ready"
    ACK = "ack"
    NACK = "nack"


class Request(BaseModel):
    kind: CommandKind
    seq: int = Field(0, ge=0)
    params: Dict[str, Any] = Field(default_factory=dict)


class Response(BaseModel):
    kind: ResponseKind
    seq: int = Field(0, ge=0)
    reason: str = ""
    detail: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ack(cls, seq: int, data: Optional[Dict[str, Any]] = None) -> "Response":
        return cls(kind=ResponseKind.ACK, seq=seq, data=data or {})

    @classmethod
    def nack(cls, seq: int, reason: str, detail: str = "") -> "Response":
        return cls(kind=ResponseKind.NACK, seq=seq, reason=reason, detail=detail)


Message = Union[Request, Response]


def encode_frame(msg: Message) -> bytes:
    payload = orjson.dumps(msg.model_dump(mode="json"))
    if len(payload) > MAX_FRAME:
        raise ProtocolError(f"frame of {len(payload)} bytes exceeds {MAX_FRAME}")
    return HEADER.pack(len(payload)) + payload


def _decode(model: type, payload: bytes) -> Any:
    try:
        return model.model_validate(orjson.loads(payload))
    except (orjson.JSONDecodeError, ValidationError) as e:
        raise ProtocolError(f"bad {model.__name__.lower()} payload: {e}") from e


def decode_request(payload: bytes) -> Request:
    return _decode(Request, payload)


def decode_response(payload: bytes) -> Response:
    return _decode(Response, payload)


class FrameDecoder:
    """Incremental reassembly of frames from arbitrary stream chunks."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, data: bytes) -> None:
        self._buffer.extend(data)

    def next_payload(self) -> Optional[bytes]:
        """Pop one complete payload, or None if more bytes are needed."""
        if len(self._buffer) < HEADER.size:
            return None
        (size,) = HEADER.unpack_from(self._buffer, 0)
        if size > MAX_FRAME:
            raise ProtocolError(f"announced frame of {size} bytes exceeds {MAX_FRAME}")
        end = HEADER.size + size
        if len(self._buffer) < end:
            return None
        payload = bytes(self._buffer[HEADER.size:end])
        del self._buffer[:end]
        return payload

    @property
    def pending(self) -> int:
        return len(self._buffer)
