"""Event-stream frame reassembly and session-id discovery."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, AsyncIterable, Iterable, Iterator, List, Optional

from mcpcaller.mcp.envelope import EnvelopeDecodeError, ResponseEnvelope, parse_response

_SESSION_JSON_RE = re.compile(r'"sessionId"\s*:\s*"([^"]+)"')
_SESSION_QUERY_RE = re.compile(r"[?&]sessionId=([^&\s\"']+)")


@dataclass(frozen=True)
class SSEFrame:
    data: str
    event: str = "message"
    event_id: str = ""


class FrameAssembler:
    """Incremental line-to-frame reassembly for one event stream."""

    def __init__(self) -> None:
        self._data: List[str] = []
        self._event = ""
        self._event_id = ""
        self._has_fields = False

    def feed(self, line: str) -> Optional[SSEFrame]:
        line = line.rstrip("\r\n")
        if not line:
            return self._flush()
        if line.startswith(":"):
            return None

        name, sep, value = line.partition(":")
        if not sep:
            value = ""
        elif value.startswith(" "):
            value = value[1:]

        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            self._event_id = value
        else:
            return None
        self._has_fields = True
        return None

    def close(self) -> Optional[SSEFrame]:
        return self._flush()

    def _flush(self) -> Optional[SSEFrame]:
        if not self._has_fields:
            return None
        frame = SSEFrame(
            data="\n".join(self._data),
            event=self._event or "message",
            event_id=self._event_id,
        )
        self._data = []
        self._event = ""
        self._event_id = ""
        self._has_fields = False
        return frame


def parse_frames(text: str) -> List[SSEFrame]:
    return list(iter_frames(text.splitlines()))


def iter_frames(lines: Iterable[str]) -> Iterator[SSEFrame]:
    assembler = FrameAssembler()
    for line in lines:
        frame = assembler.feed(line)
        if frame is not None:
            yield frame
    tail = assembler.close()
    if tail is not None:
        yield tail


async def aiter_frames(lines: AsyncIterable[str]):
    assembler = FrameAssembler()
    async for line in lines:
        frame = assembler.feed(line)
        if frame is not None:
            yield frame
    tail = assembler.close()
    if tail is not None:
        yield tail


def looks_like_event_stream(text: str) -> bool:
    head = text.lstrip()
    return head.startswith("event:") or head.startswith("data:")


def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return None


def _session_from_object(value: Any) -> Optional[str]:
    if not isinstance(value, dict):
        return None
    direct = value.get("sessionId")
    if isinstance(direct, str) and direct.strip():
        return direct.strip()
    # Servers commonly nest it one level down, e.g. {"params": {"sessionId": ...}}.
    for item in value.values():
        if isinstance(item, dict):
            nested = item.get("sessionId")
            if isinstance(nested, str) and nested.strip():
                return nested.strip()
    return None


def extract_session_id(frame: SSEFrame) -> Optional[str]:
    """Find the session id announced by a bootstrap frame.

    JSON payloads are read structurally. Non-JSON payloads are scanned for a
    ``"sessionId": "..."`` fragment or a ``sessionId=`` query parameter.
    """

    data = frame.data
    if not data or "sessionId" not in data:
        return None

    parsed = _load_json(data)
    if parsed is not None:
        return _session_from_object(parsed)

    match = _SESSION_JSON_RE.search(data)
    if match:
        return match.group(1)
    match = _SESSION_QUERY_RE.search(data)
    if match:
        return match.group(1)
    return None


def frame_response(frame: SSEFrame) -> Optional[ResponseEnvelope]:
    """Decode a frame as a response envelope, or ``None`` when it is not one."""

    parsed = _load_json(frame.data)
    if parsed is None:
        return None
    try:
        return parse_response(parsed)
    except EnvelopeDecodeError:
        return None
