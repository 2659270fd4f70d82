"""Direct and streaming transports for generated calls."""

from .base import (
    CallerError,
    CallTimeoutError,
    ConnectivityError,
    ProtocolError,
    TransportError,
    error_summary,
)
from .direct import DirectTransport
from .streaming import STREAM_TIMEOUT_SEC, AttemptState, StreamAttempt, StreamingTransport

__all__ = [
    "AttemptState",
    "CallTimeoutError",
    "CallerError",
    "ConnectivityError",
    "DirectTransport",
    "ProtocolError",
    "STREAM_TIMEOUT_SEC",
    "StreamAttempt",
    "StreamingTransport",
    "TransportError",
    "error_summary",
]
