"""Typed models for call targets and streaming session state."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict

TARGET_KINDS = ("tool", "resource", "prompt")

_METHOD_BY_KIND = {
    "tool": "tools/call",
    "resource": "resources/read",
    "prompt": "prompts/get",
}


def method_for_kind(kind: str) -> str:
    try:
        return _METHOD_BY_KIND[kind]
    except KeyError:
        raise ValueError("unknown target kind: {0}".format(kind)) from None


@dataclass(frozen=True)
class CallTarget:
    kind: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.kind not in TARGET_KINDS:
            raise ValueError("unknown target kind: {0}".format(self.kind))

    @property
    def method(self) -> str:
        return method_for_kind(self.kind)

    @property
    def label(self) -> str:
        return "{0}:{1}".format(self.kind, self.name)


@dataclass(frozen=True)
class WeightedTarget:
    target: CallTarget
    weight: float = 1.0


@dataclass(frozen=True)
class SessionBinding:
    """Stream session id bound to the single request it currently serves."""

    session_id: str
    pending_request_id: int
