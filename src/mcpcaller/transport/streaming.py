"""Session-oriented streaming transport with a single direct fallback.

One call opens a fresh event stream, waits for the frame announcing the
session id, posts the request to the side channel bound to that session and
then waits on the stream for the response carrying the same id. Each call is
tracked by a :class:`StreamAttempt` whose state only moves forward::

    connecting -> awaiting_session -> request_sent -> completed
         \\               \\                  \\
          +---------------+------------------+--> failed_fallback

A stream-level failure (the stream cannot be opened, breaks, or ends before
the response) retries the request once over the direct transport. A timeout
or a side-channel failure is reported as-is.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
from urllib.parse import urlsplit, urlunsplit

import httpx

from mcpcaller.mcp.envelope import RequestEnvelope, ResponseEnvelope
from mcpcaller.mcp.sse import SSEFrame, aiter_frames, extract_session_id, frame_response
from mcpcaller.mcp.types import SessionBinding
from mcpcaller.transport.base import (
    CallTimeoutError,
    EventEmitter,
    Transport,
    TransportError,
    TransportEventSink,
)

STREAM_TIMEOUT_SEC = 45.0


class AttemptState(str, Enum):
    CONNECTING = "connecting"
    AWAITING_SESSION = "awaiting_session"
    REQUEST_SENT = "request_sent"
    COMPLETED = "completed"
    FAILED_FALLBACK = "failed_fallback"


_TERMINAL_STATES = (AttemptState.COMPLETED, AttemptState.FAILED_FALLBACK)


class InvalidTransition(RuntimeError):
    pass


@dataclass
class StreamAttempt:
    request: RequestEnvelope
    state: AttemptState = AttemptState.CONNECTING
    binding: Optional[SessionBinding] = None
    response: Optional[ResponseEnvelope] = None
    failure: str = ""
    fell_back: bool = False
    frames_seen: int = 0
    history: List[AttemptState] = field(default_factory=lambda: [AttemptState.CONNECTING])

    @property
    def done(self) -> bool:
        return self.state in _TERMINAL_STATES

    def bind(self, session_id: str) -> SessionBinding:
        if self.state not in (AttemptState.CONNECTING, AttemptState.AWAITING_SESSION):
            raise InvalidTransition("cannot bind a session in state {0}".format(self.state.value))
        self.binding = SessionBinding(
            session_id=session_id,
            pending_request_id=self.request.request_id,
        )
        if self.state is not AttemptState.AWAITING_SESSION:
            self._move(AttemptState.AWAITING_SESSION)
        return self.binding

    def mark_sent(self) -> None:
        if self.state is not AttemptState.AWAITING_SESSION:
            raise InvalidTransition("cannot dispatch in state {0}".format(self.state.value))
        self._move(AttemptState.REQUEST_SENT)

    def accept(self, response: ResponseEnvelope) -> bool:
        """Complete the attempt when ``response`` answers the pending request."""
        if self.state is not AttemptState.REQUEST_SENT:
            return False
        if not response.matches(self.request):
            return False
        self.response = response
        self.binding = None
        self._move(AttemptState.COMPLETED)
        return True

    def fail(self, reason: str) -> None:
        if self.done:
            return
        self.failure = reason
        self.binding = None
        self._move(AttemptState.FAILED_FALLBACK)

    def _move(self, state: AttemptState) -> None:
        if self.done:
            raise InvalidTransition(
                "attempt already finished in state {0}".format(self.state.value)
            )
        self.state = state
        self.history.append(state)


class _StreamBroken(Exception):
    """Stream-level failure; the only condition that triggers fallback."""


def derive_messages_url(stream_url: str) -> str:
    parts = urlsplit(stream_url)
    path = parts.path.rstrip("/")
    if path.endswith("/sse"):
        path = path[: -len("/sse")]
    return urlunsplit((parts.scheme, parts.netloc, path + "/messages", "", ""))


class StreamingTransport(EventEmitter):
    name = "streaming"

    def __init__(
        self,
        client: httpx.AsyncClient,
        stream_url: str,
        fallback: Transport,
        messages_url: Optional[str] = None,
        timeout_sec: float = STREAM_TIMEOUT_SEC,
        event_sink: Optional[TransportEventSink] = None,
    ) -> None:
        self._client = client
        self.stream_url = stream_url
        self.explicit_messages_url = messages_url
        self._fallback = fallback
        self.timeout_sec = float(timeout_sec)
        self._event_sink = event_sink
        self.last_attempt: Optional[StreamAttempt] = None

    @property
    def messages_url(self) -> str:
        return self.explicit_messages_url or derive_messages_url(self.stream_url)

    async def send(self, envelope: RequestEnvelope) -> ResponseEnvelope:
        attempt = StreamAttempt(request=envelope)
        self.last_attempt = attempt
        try:
            return await asyncio.wait_for(self._run(attempt), timeout=self.timeout_sec)
        except asyncio.TimeoutError as exc:
            attempt.fail("timeout")
            self._emit(
                "stream.timeout",
                {"request_id": envelope.request_id, "timeout_sec": self.timeout_sec},
            )
            raise CallTimeoutError(
                "streaming attempt timed out after {0:g}s".format(self.timeout_sec),
                transport=self.name,
                method=envelope.method,
                request_id=envelope.request_id,
            ) from exc
        except _StreamBroken as exc:
            attempt.fail("stream_error")
            attempt.fell_back = True
            self._emit(
                "stream.fallback",
                {"request_id": envelope.request_id, "reason": str(exc)},
            )
        except TransportError:
            attempt.fail("dispatch_error")
            raise

        return await self._fallback.send(envelope)

    def _stream_timeout(self) -> httpx.Timeout:
        # Reads are unbounded here; timeout_sec is the only limit on a silent stream.
        client_timeout = self._client.timeout
        return httpx.Timeout(
            connect=client_timeout.connect,
            read=None,
            write=client_timeout.write,
            pool=client_timeout.pool,
        )

    async def _run(self, attempt: StreamAttempt) -> ResponseEnvelope:
        try:
            async with self._client.stream(
                "GET",
                self.stream_url,
                headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
                timeout=self._stream_timeout(),
            ) as response:
                if not response.is_success:
                    raise _StreamBroken("stream open returned HTTP {0}".format(response.status_code))
                self._emit(
                    "stream.opened",
                    {"request_id": attempt.request.request_id, "url": self.stream_url},
                )
                async for frame in aiter_frames(response.aiter_lines()):
                    completed = await self._on_frame(attempt, frame)
                    if completed is not None:
                        return completed
        except httpx.HTTPError as exc:
            raise _StreamBroken(str(exc) or type(exc).__name__) from exc
        raise _StreamBroken("stream closed before a response arrived")

    async def _on_frame(self, attempt: StreamAttempt, frame: SSEFrame) -> Optional[ResponseEnvelope]:
        attempt.frames_seen += 1
        if attempt.state in (AttemptState.CONNECTING, AttemptState.AWAITING_SESSION):
            session_id = extract_session_id(frame)
            if session_id is None:
                return None
            binding = attempt.bind(session_id)
            self._emit(
                "stream.session_bound",
                {"request_id": binding.pending_request_id, "session_id": binding.session_id},
            )
            await self._dispatch(attempt, binding)
            return None

        # Bootstrap chatter, keep-alives and other sessions' replies are skipped.
        response = frame_response(frame)
        if response is None or not attempt.accept(response):
            return None
        self._emit("stream.completed", {"request_id": attempt.request.request_id, "ok": response.ok})
        return response

    async def _dispatch(self, attempt: StreamAttempt, binding: SessionBinding) -> None:
        envelope = attempt.request
        try:
            ack = await self._client.post(
                self.messages_url,
                params={"sessionId": binding.session_id},
                json=envelope.as_json(),
            )
        except httpx.HTTPError as exc:
            raise TransportError(
                "failed to send message: {0}".format(str(exc) or type(exc).__name__),
                transport=self.name,
                method=envelope.method,
                request_id=envelope.request_id,
            ) from exc
        if not ack.is_success:
            raise TransportError(
                "failed to send message: HTTP error status {0}".format(ack.status_code),
                transport=self.name,
                method=envelope.method,
                request_id=envelope.request_id,
                status_code=ack.status_code,
            )
        attempt.mark_sent()
        self._emit(
            "stream.request_sent",
            {"request_id": envelope.request_id, "session_id": binding.session_id},
        )
