"""
Launcher package: control protocol, command channel, and simulator process management.
"""
from .protocol import (
    CONTROL_ADDR_ENV,
    CommandKind,
    ResponseKind,
    Request,
    Response,
    FrameDecoder,
    ProtocolError,
    encode_frame,
    decode_request,
    decode_response,
)
from .channel import CommandChannel
from .process import ProcessIdentity, ProcessLauncher, SimulatorProcess

__all__ = [
    # protocol
    "CONTROL_ADDR_ENV",
    "CommandKind",
    "ResponseKind",
    "Request",
    "Response",
    "FrameDecoder",
    "ProtocolError",
    "encode_frame",
    "decode_request",
    "decode_response",
    # channel
    "CommandChannel",
    # processes
    "ProcessIdentity",
    "ProcessLauncher",
    "SimulatorProcess",
]
