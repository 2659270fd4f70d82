"""JSON-RPC envelopes exchanged with the MCP server."""

from __future__ import annotations

import itertools
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional

from mcpcaller import __version__
from mcpcaller.mcp.types import CallTarget

JSONRPC_VERSION = "2.0"
MCP_PROTOCOL_VERSION = "2024-11-05"
DEFAULT_RESOURCE_SCHEME = "empower"
CLIENT_NAME = "mcpcaller"


class EnvelopeDecodeError(ValueError):
    """Raised when a payload is not a well-formed response envelope."""


class RequestIdSequence:
    """Strictly increasing request ids, shared by every transport of one driver."""

    def __init__(self, start: int = 1) -> None:
        self._counter: Iterator[int] = itertools.count(int(start))
        self._last: Optional[int] = None

    @property
    def last(self) -> Optional[int]:
        return self._last

    def next(self) -> int:
        value = next(self._counter)
        self._last = value
        return value


@dataclass(frozen=True)
class RequestEnvelope:
    request_id: int
    method: str
    params: Dict[str, Any] = field(default_factory=dict)

    def as_json(self) -> Dict[str, Any]:
        return {
            "jsonrpc": JSONRPC_VERSION,
            "id": self.request_id,
            "method": self.method,
            "params": self.params,
        }


@dataclass(frozen=True)
class RPCError:
    code: int
    message: str
    data: Any = None


@dataclass(frozen=True)
class ResponseEnvelope:
    request_id: Any
    result: Any = None
    error: Optional[RPCError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def matches(self, request: RequestEnvelope) -> bool:
        return self.request_id == request.request_id


def build_call_request(
    request_id: int,
    target: CallTarget,
    resource_scheme: str = DEFAULT_RESOURCE_SCHEME,
) -> RequestEnvelope:
    if target.kind == "resource":
        params: Dict[str, Any] = {
            "uri": "{0}://{1}".format(resource_scheme, target.name),
            "name": target.name,
        }
    else:
        params = {"name": target.name, "arguments": dict(target.arguments or {})}
    return RequestEnvelope(request_id=request_id, method=target.method, params=params)


def build_initialize_request(request_id: int) -> RequestEnvelope:
    return RequestEnvelope(
        request_id=request_id,
        method="initialize",
        params={
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": CLIENT_NAME, "version": __version__},
        },
    )


def parse_response(payload: Any) -> ResponseEnvelope:
    """Validate a decoded JSON value as a response envelope.

    Exactly one of ``result`` / ``error`` must be present. A present ``error``
    must be an object carrying at least a message.
    """

    if not isinstance(payload, dict):
        raise EnvelopeDecodeError("response envelope must be a JSON object")
    if "id" not in payload:
        raise EnvelopeDecodeError("response envelope missing id")

    has_result = "result" in payload
    has_error = "error" in payload and payload.get("error") is not None
    if has_result == has_error:
        raise EnvelopeDecodeError("response envelope must carry exactly one of result/error")

    if has_result:
        return ResponseEnvelope(request_id=payload.get("id"), result=payload.get("result"))

    raw_error = payload.get("error")
    if not isinstance(raw_error, dict):
        raise EnvelopeDecodeError("response error must be an object")
    try:
        code = int(raw_error.get("code", 0))
    except (TypeError, ValueError):
        code = 0
    return ResponseEnvelope(
        request_id=payload.get("id"),
        error=RPCError(
            code=code,
            message=str(raw_error.get("message") or ""),
            data=raw_error.get("data"),
        ),
    )


def decode_response_text(text: str) -> ResponseEnvelope:
    try:
        payload = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise EnvelopeDecodeError("response body is not JSON: {0}".format(exc)) from exc
    return parse_response(payload)
