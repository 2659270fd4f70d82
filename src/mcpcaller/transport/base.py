"""Transport interface and shared exceptions."""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional, Protocol

from mcpcaller.mcp.envelope import RequestEnvelope, ResponseEnvelope

TransportEventSink = Callable[[str, Dict[str, Any]], None]

ACCEPT_JSON_OR_STREAM = "application/json, text/event-stream"


class CallerError(RuntimeError):
    """Base error for one generated call."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self._details: Dict[str, Any] = {}
        for key, value in details.items():
            if value is None:
                continue
            self._details[str(key)] = value

    @property
    def details(self) -> Dict[str, Any]:
        return dict(self._details)


def error_summary(exc: BaseException) -> str:
    detail = exc.details if isinstance(exc, CallerError) else {}
    ordered_keys = (
        "transport",
        "method",
        "request_id",
        "status_code",
        "code",
    )
    segments = [str(exc) or type(exc).__name__]
    for key in ordered_keys:
        value = detail.get(key)
        if value in ("", None):
            continue
        segments.append("{0}={1}".format(key, value))
    return " | ".join(segments)


class ConnectivityError(CallerError):
    """Raised when the startup handshake cannot reach a healthy server."""


class TransportError(CallerError):
    """Raised for non-success statuses, network failures and undecodable bodies."""


class CallTimeoutError(CallerError, TimeoutError):
    """Raised when a streaming attempt exceeds its time bound."""


class ProtocolError(CallerError):
    """Raised when the server answers with a JSON-RPC error object."""


def raise_for_error(response: ResponseEnvelope, method: str = "") -> ResponseEnvelope:
    if response.error is None:
        return response
    raise ProtocolError(
        response.error.message or "server returned an error",
        method=method or None,
        request_id=response.request_id,
        code=response.error.code,
    )


class Transport(Protocol):
    name: str

    async def send(self, envelope: RequestEnvelope) -> ResponseEnvelope:
        ...


class EventEmitter:
    """Mixin forwarding transport events to an optional sink."""

    _event_sink: Optional[TransportEventSink] = None

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self._event_sink is None:
            return
        self._event_sink(event_type, payload)
