"""MCP envelope, target and event-stream models."""

from .envelope import RequestEnvelope, RequestIdSequence, ResponseEnvelope
from .types import CallTarget, SessionBinding, WeightedTarget

__all__ = [
    "CallTarget",
    "RequestEnvelope",
    "RequestIdSequence",
    "ResponseEnvelope",
    "SessionBinding",
    "WeightedTarget",
]
