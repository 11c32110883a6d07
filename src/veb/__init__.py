"""veb: a per-session browser daemon driven by short-lived clients."""

from veb.client import (
    ConnectError,
    DaemonStartError,
    TransportError,
    close_all_sessions,
    send,
    send_command,
)
from veb.protocol import (
    CommandValidationError,
    ProtocolError,
    Response,
    build_command,
)

__all__ = [
    "CommandValidationError",
    "ConnectError",
    "DaemonStartError",
    "ProtocolError",
    "Response",
    "TransportError",
    "build_command",
    "close_all_sessions",
    "send",
    "send_command",
]
