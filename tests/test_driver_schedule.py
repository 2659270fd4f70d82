from __future__ import annotations

import asyncio
import json
import random
from datetime import datetime
from typing import Callable, List, Optional

import httpx
import pytest

from mcpcaller.config import ScheduleConfig
from mcpcaller.kernel.driver import Driver
from mcpcaller.mcp.envelope import RPCError, RequestEnvelope, ResponseEnvelope
from mcpcaller.mcp.types import CallTarget, WeightedTarget
from mcpcaller.transport.base import ConnectivityError, TransportError
from mcpcaller.transport.direct import DirectTransport
from mcpcaller.transport.streaming import StreamingTransport

TUESDAY_10AM = datetime(2024, 1, 2, 10, 0)
CATALOGUE = [WeightedTarget(CallTarget("tool", "get-products", {}), 1.0)]


def _ok(envelope: RequestEnvelope) -> ResponseEnvelope:
    return ResponseEnvelope(request_id=envelope.request_id, result={"content": []})


class _FakeTransport:
    def __init__(self, name: str, log: List[int], responder: Callable[[RequestEnvelope], ResponseEnvelope] = _ok):
        self.name = name
        self.sent: List[RequestEnvelope] = []
        self.server_url = ""
        self.stream_url = ""
        self.explicit_messages_url: Optional[str] = None
        self.last_attempt = None
        self.gate: Optional[asyncio.Event] = None
        self._log = log
        self._responder = responder

    async def send(self, envelope: RequestEnvelope) -> ResponseEnvelope:
        self.sent.append(envelope)
        self._log.append(envelope.request_id)
        if self.gate is not None:
            await self.gate.wait()
        return self._responder(envelope)


class _Handle:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        assert not self.cancelled
        self.fired = True
        self.callback()


class _FakeTimers:
    def __init__(self) -> None:
        self.handles: List[_Handle] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> _Handle:
        handle = _Handle(delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def live(self) -> List[_Handle]:
        return [handle for handle in self.handles if not (handle.cancelled or handle.fired)]


def _config(**overrides) -> ScheduleConfig:
    values = dict(
        base_interval_ms=30000,
        jitter_percent=0,
        sse_usage_percent=0,
        server_url="http://mcp.test/mcp",
        stream_url="http://mcp.test/sse",
    )
    values.update(overrides)
    return ScheduleConfig(**values)


def _driver(config: ScheduleConfig, direct, streaming, timers: _FakeTimers, seed: int = 7) -> Driver:
    return Driver(
        config,
        direct,
        streaming,
        CATALOGUE,
        rng=random.Random(seed),
        clock=lambda: TUESDAY_10AM,
        call_later=timers,
    )


async def _fire(driver: Driver, timers: _FakeTimers) -> None:
    timers.live[-1].fire()
    await driver._cycle


def test_start_runs_handshake_first_call_and_arms_timer():
    log: List[int] = []
    direct = _FakeTransport("direct", log)
    streaming = _FakeTransport("streaming", log)
    timers = _FakeTimers()
    driver = _driver(_config(), direct, streaming, timers)

    asyncio.run(driver.start())

    assert [envelope.method for envelope in direct.sent] == ["initialize", "tools/call"]
    assert streaming.sent == []
    assert len(timers.handles) == 1
    assert timers.handles[0].delay == pytest.approx(16.8)
    assert driver.timer_pending
    assert driver.stats.total == 1
    assert driver.stats.succeeded == 1


def test_base_interval_change_reschedules_single_timer():
    log: List[int] = []
    timers = _FakeTimers()
    driver = _driver(_config(), _FakeTransport("direct", log), _FakeTransport("streaming", log), timers)
    asyncio.run(driver.start())

    driver.update_config(base_interval_ms=60000)

    assert len(timers.handles) == 2
    assert timers.handles[0].cancelled
    assert len(timers.live) == 1
    assert timers.live[0].delay == pytest.approx(33.6)


def test_non_interval_change_keeps_pending_timer():
    log: List[int] = []
    direct = _FakeTransport("direct", log)
    streaming = _FakeTransport("streaming", log)
    timers = _FakeTimers()
    driver = _driver(_config(), direct, streaming, timers)
    asyncio.run(driver.start())

    config = driver.update_config(
        jitter_percent=10,
        sse_usage_percent=150,
        server_url="http://other.test/mcp",
        messages_url="http://other.test/messages",
    )

    assert len(timers.handles) == 1
    assert not timers.handles[0].cancelled
    assert config.sse_usage_percent == 100
    assert direct.server_url == "http://other.test/mcp"
    assert streaming.explicit_messages_url == "http://other.test/messages"


def test_update_config_rejects_unknown_option():
    log: List[int] = []
    driver = _driver(_config(), _FakeTransport("direct", log), _FakeTransport("streaming", log), _FakeTimers())
    with pytest.raises(ValueError):
        driver.update_config(interval=5)


def test_update_before_start_does_not_arm_timer():
    log: List[int] = []
    timers = _FakeTimers()
    driver = _driver(_config(), _FakeTransport("direct", log), _FakeTransport("streaming", log), timers)

    driver.update_config(base_interval_ms=5000)

    assert timers.handles == []
    assert driver.config.base_interval_ms == 5000


def test_failed_calls_do_not_stop_the_schedule():
    def responder(envelope: RequestEnvelope) -> ResponseEnvelope:
        if envelope.method == "initialize":
            return _ok(envelope)
        return ResponseEnvelope(request_id=envelope.request_id, error=RPCError(code=-32601, message="no such tool"))

    log: List[int] = []
    direct = _FakeTransport("direct", log, responder)
    timers = _FakeTimers()
    driver = _driver(_config(), direct, _FakeTransport("streaming", log), timers)

    async def scenario():
        await driver.start()
        await _fire(driver, timers)
        await _fire(driver, timers)

    asyncio.run(scenario())

    assert driver.stats.total == 3
    assert driver.stats.failed == 3
    assert len(timers.live) == 1
    assert len(timers.handles) == 3


def test_transport_exception_is_recorded_and_rearmed():
    def responder(envelope: RequestEnvelope) -> ResponseEnvelope:
        if envelope.method == "initialize":
            return _ok(envelope)
        raise TransportError("HTTP error status 503", transport="direct", status_code=503)

    log: List[int] = []
    timers = _FakeTimers()
    driver = _driver(_config(), _FakeTransport("direct", log, responder), _FakeTransport("streaming", log), timers)

    async def scenario():
        await driver.start()
        return await driver.execute_random_call()

    outcome = asyncio.run(scenario())

    assert not outcome.ok
    assert outcome.error_kind == "transport"
    assert "status_code=503" in outcome.error
    assert timers.live


def test_request_ids_increase_across_both_transports():
    log: List[int] = []
    direct = _FakeTransport("direct", log)
    streaming = _FakeTransport("streaming", log)
    timers = _FakeTimers()
    driver = _driver(_config(sse_usage_percent=50), direct, streaming, timers, seed=3)

    async def scenario():
        await driver.start()
        for _ in range(12):
            await _fire(driver, timers)

    asyncio.run(scenario())

    assert log == sorted(log)
    assert len(set(log)) == len(log) == 14
    assert direct.sent and streaming.sent


def test_transport_choice_follows_usage_extremes():
    log: List[int] = []
    direct = _FakeTransport("direct", log)
    streaming = _FakeTransport("streaming", log)
    timers = _FakeTimers()
    driver = _driver(_config(sse_usage_percent=100), direct, streaming, timers)

    async def scenario():
        await driver.start()
        for _ in range(5):
            await _fire(driver, timers)
        driver.update_config(sse_usage_percent=0)
        for _ in range(5):
            await _fire(driver, timers)

    asyncio.run(scenario())

    assert len(streaming.sent) == 6
    assert [envelope.method for envelope in direct.sent] == ["initialize"] + ["tools/call"] * 5


def test_connectivity_failure_aborts_start():
    def responder(envelope: RequestEnvelope) -> ResponseEnvelope:
        raise TransportError("failed to connect", transport="direct")

    log: List[int] = []
    direct = _FakeTransport("direct", log, responder)
    timers = _FakeTimers()
    driver = _driver(_config(), direct, _FakeTransport("streaming", log), timers)

    with pytest.raises(ConnectivityError) as exc_info:
        asyncio.run(driver.start())

    assert exc_info.value.details["method"] == "initialize"
    assert len(direct.sent) == 1
    assert timers.handles == []
    assert driver.stopped
    assert driver.stats.total == 0


def test_initialize_error_envelope_is_a_connectivity_failure():
    def responder(envelope: RequestEnvelope) -> ResponseEnvelope:
        return ResponseEnvelope(request_id=envelope.request_id, error=RPCError(code=-32000, message="boom"))

    log: List[int] = []
    driver = _driver(_config(), _FakeTransport("direct", log, responder), _FakeTransport("streaming", log), _FakeTimers())

    with pytest.raises(ConnectivityError, match="boom"):
        asyncio.run(driver.start())


def test_stop_cancels_timer_and_is_idempotent():
    log: List[int] = []
    timers = _FakeTimers()
    driver = _driver(_config(), _FakeTransport("direct", log), _FakeTransport("streaming", log), timers)
    asyncio.run(driver.start())

    driver.stop()
    driver.stop()

    assert timers.handles[0].cancelled
    assert not driver.timer_pending
    assert driver.stopped


def test_stop_during_inflight_call_prevents_rearm():
    log: List[int] = []
    direct = _FakeTransport("direct", log)
    timers = _FakeTimers()
    driver = _driver(_config(), direct, _FakeTransport("streaming", log), timers)

    async def scenario():
        await driver.start()
        direct.gate = asyncio.Event()
        timers.live[-1].fire()
        await asyncio.sleep(0)
        driver.stop()
        direct.gate.set()
        await driver._cycle

    asyncio.run(scenario())

    assert driver.stats.total == 2
    assert len(timers.handles) == 1
    assert not driver.timer_pending


def test_run_forever_returns_after_stop():
    log: List[int] = []
    timers = _FakeTimers()
    driver = _driver(_config(), _FakeTransport("direct", log), _FakeTransport("streaming", log), timers)

    async def scenario():
        task = asyncio.ensure_future(driver.run_forever())
        while not driver.timer_pending:
            await asyncio.sleep(0)
        driver.stop()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(scenario())
    assert driver.stopped


def test_streaming_fallback_end_to_end():
    counts = {"stream": 0, "direct": 0}
    methods: List[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/sse":
            counts["stream"] += 1
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=b"")
        counts["direct"] += 1
        body = json.loads(request.content)
        methods.append(body["method"])
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": {}})

    timers = _FakeTimers()
    events: List[str] = []

    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            config = _config(sse_usage_percent=100)
            sink = lambda event_type, payload: events.append(event_type)
            direct = DirectTransport(client, config.server_url)
            streaming = StreamingTransport(client, config.stream_url, fallback=direct, event_sink=sink)
            driver = Driver(
                config,
                direct,
                streaming,
                CATALOGUE,
                rng=random.Random(1),
                clock=lambda: TUESDAY_10AM,
                call_later=timers,
                event_sink=sink,
            )
            await driver.start()
            first = driver.stats.fallbacks
            driver.update_config(sse_usage_percent=0)
            await _fire(driver, timers)
            return driver, first

    driver, first_fallbacks = asyncio.run(scenario())

    assert first_fallbacks == 1
    assert counts == {"stream": 1, "direct": 3}
    assert methods == ["initialize", "tools/call", "tools/call"]
    assert driver.stats.fallbacks == 1
    assert driver.stats.succeeded == 2
    assert events.count("stream.fallback") == 1
    assert "driver.scheduled" in events


class _BrokenReporter:
    def __init__(self) -> None:
        self.calls = 0

    def line(self, text: str, style: str = "") -> None:
        self.calls += 1
        raise OSError("console closed")

    def outcome(self, outcome) -> None:
        self.calls += 1
        raise OSError("console closed")

    def schedule(self, delay_ms: float, multiplier: float) -> None:
        self.calls += 1
        raise OSError("console closed")


def test_output_failures_never_end_the_schedule():
    def broken_sink(event_type, payload):
        raise RuntimeError("sink down")

    log: List[int] = []
    timers = _FakeTimers()
    reporter = _BrokenReporter()
    driver = Driver(
        _config(),
        _FakeTransport("direct", log),
        _FakeTransport("streaming", log),
        CATALOGUE,
        rng=random.Random(5),
        clock=lambda: TUESDAY_10AM,
        call_later=timers,
        reporter=reporter,
        event_sink=broken_sink,
    )

    async def scenario():
        await driver.start()
        await _fire(driver, timers)
        await _fire(driver, timers)

    asyncio.run(scenario())

    assert driver.stats.total == 3
    assert driver.stats.succeeded == 3
    assert len(timers.handles) == 3
    assert len(timers.live) == 1
    assert reporter.calls > 0
    assert driver.output_errors >= reporter.calls
