"""Wiring of settings into transports, call log and driver."""

from __future__ import annotations

import random
from typing import Optional

import httpx

from mcpcaller.config import Settings
from mcpcaller.kernel.call_log import CallLogWriter
from mcpcaller.kernel.driver import Driver
from mcpcaller.transport.base import TransportEventSink
from mcpcaller.transport.direct import DirectTransport
from mcpcaller.transport.streaming import StreamingTransport
from mcpcaller.ui.render import ConsoleReporter


def build_call_log(settings: Settings) -> CallLogWriter:
    return CallLogWriter(
        logs_dir=settings.logs_dir,
        enabled=settings.logs_enabled,
        max_file_bytes=settings.logs_max_file_bytes,
        max_files=settings.logs_max_files,
        redaction=settings.logs_redaction,
    )


def create_http_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.http_timeout_sec)


def build_driver(
    settings: Settings,
    client: httpx.AsyncClient,
    reporter: Optional[ConsoleReporter] = None,
    event_sink: Optional[TransportEventSink] = None,
    rng: Optional[random.Random] = None,
) -> Driver:
    schedule = settings.schedule
    direct = DirectTransport(client, schedule.server_url, event_sink=event_sink)
    streaming = StreamingTransport(
        client,
        schedule.stream_url,
        fallback=direct,
        messages_url=schedule.messages_url,
        event_sink=event_sink,
    )
    return Driver(
        schedule,
        direct,
        streaming,
        settings.catalogue,
        rng=rng,
        reporter=reporter,
        event_sink=event_sink,
    )
