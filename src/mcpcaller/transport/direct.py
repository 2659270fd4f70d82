"""Plain request/response transport over HTTP POST."""

from __future__ import annotations

from typing import Optional

import httpx

from mcpcaller.mcp.envelope import (
    EnvelopeDecodeError,
    RequestEnvelope,
    ResponseEnvelope,
    decode_response_text,
)
from mcpcaller.mcp.sse import looks_like_event_stream, parse_frames
from mcpcaller.transport.base import (
    ACCEPT_JSON_OR_STREAM,
    EventEmitter,
    TransportError,
    TransportEventSink,
)


def decode_body(text: str, content_type: str = "") -> ResponseEnvelope:
    """Decode a bare JSON envelope or a one-frame event-stream reply."""

    if "text/event-stream" in content_type.lower() or looks_like_event_stream(text):
        for frame in parse_frames(text):
            if frame.data.strip():
                return decode_response_text(frame.data)
        raise EnvelopeDecodeError("event-stream reply carried no data frame")
    return decode_response_text(text)


class DirectTransport(EventEmitter):
    name = "direct"

    def __init__(
        self,
        client: httpx.AsyncClient,
        server_url: str,
        event_sink: Optional[TransportEventSink] = None,
    ) -> None:
        self._client = client
        self.server_url = server_url
        self._event_sink = event_sink

    async def send(self, envelope: RequestEnvelope) -> ResponseEnvelope:
        self._emit(
            "direct.sent",
            {"request_id": envelope.request_id, "method": envelope.method, "url": self.server_url},
        )
        try:
            response = await self._client.post(
                self.server_url,
                json=envelope.as_json(),
                headers={"Accept": ACCEPT_JSON_OR_STREAM},
            )
        except httpx.HTTPError as exc:
            raise TransportError(
                "request to {0} failed: {1}".format(self.server_url, str(exc) or type(exc).__name__),
                transport=self.name,
                method=envelope.method,
                request_id=envelope.request_id,
            ) from exc

        if not response.is_success:
            raise TransportError(
                "HTTP error status {0}".format(response.status_code),
                transport=self.name,
                method=envelope.method,
                request_id=envelope.request_id,
                status_code=response.status_code,
            )

        try:
            decoded = decode_body(response.text, response.headers.get("content-type", ""))
        except EnvelopeDecodeError as exc:
            raise TransportError(
                "undecodable reply: {0}".format(exc),
                transport=self.name,
                method=envelope.method,
                request_id=envelope.request_id,
            ) from exc

        self._emit(
            "direct.received",
            {"request_id": envelope.request_id, "ok": decoded.ok, "status_code": response.status_code},
        )
        return decoded
