"""Self-rearming call scheduler."""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Sequence

from mcpcaller.config import ScheduleConfig, normalize_schedule_config
from mcpcaller.mcp.envelope import (
    RequestIdSequence,
    ResponseEnvelope,
    build_call_request,
    build_initialize_request,
)
from mcpcaller.mcp.types import CallTarget, WeightedTarget
from mcpcaller.schedule.catalogue import default_catalogue, pick
from mcpcaller.schedule.interval import next_delay, seasonal_multiplier
from mcpcaller.transport.base import (
    CallerError,
    CallTimeoutError,
    ConnectivityError,
    ProtocolError,
    TransportError,
    TransportEventSink,
    error_summary,
    raise_for_error,
)
from mcpcaller.transport.direct import DirectTransport
from mcpcaller.transport.streaming import StreamingTransport
from mcpcaller.ui.render import ConsoleReporter

CallLater = Callable[[float, Callable[[], None]], Any]
Clock = Callable[[], datetime]


@dataclass
class CallOutcome:
    target: CallTarget
    transport: str
    request_id: int
    ok: bool
    started_at: datetime
    elapsed_ms: int
    error: str = ""
    error_kind: str = ""
    fell_back: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.target.kind,
            "name": self.target.name,
            "transport": self.transport,
            "request_id": self.request_id,
            "ok": self.ok,
            "elapsed_ms": self.elapsed_ms,
            "error": self.error,
            "error_kind": self.error_kind,
            "fell_back": self.fell_back,
        }


@dataclass
class CallStats:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    timeouts: int = 0
    fallbacks: int = 0

    def record(self, outcome: CallOutcome) -> None:
        self.total += 1
        if outcome.ok:
            self.succeeded += 1
        else:
            self.failed += 1
        if outcome.error_kind == "timeout":
            self.timeouts += 1
        if outcome.fell_back:
            self.fallbacks += 1


def _error_kind(exc: CallerError) -> str:
    if isinstance(exc, CallTimeoutError):
        return "timeout"
    if isinstance(exc, ProtocolError):
        return "protocol"
    if isinstance(exc, TransportError):
        return "transport"
    return "caller"


class Driver:
    """Owns the single pending timer and the request-id sequence.

    A call never overlaps another: the next delay is computed from the clock
    only after the previous call has settled, whatever its outcome.
    """

    def __init__(
        self,
        config: ScheduleConfig,
        direct: DirectTransport,
        streaming: StreamingTransport,
        catalogue: Optional[Sequence[WeightedTarget]] = None,
        *,
        rng: Optional[random.Random] = None,
        clock: Optional[Clock] = None,
        call_later: Optional[CallLater] = None,
        reporter: Optional[ConsoleReporter] = None,
        event_sink: Optional[TransportEventSink] = None,
        ids: Optional[RequestIdSequence] = None,
    ) -> None:
        self._config = normalize_schedule_config(config)
        self._direct = direct
        self._streaming = streaming
        self._catalogue = list(catalogue) if catalogue else default_catalogue()
        self._rng = rng or random.Random()
        self._clock = clock or datetime.now
        self._call_later = call_later
        self._reporter = reporter
        self._event_sink = event_sink
        self._ids = ids or RequestIdSequence()

        self._timer: Optional[Any] = None
        self._cycle: Optional["asyncio.Future[None]"] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._stopped = True
        self.stats = CallStats()
        self.last_delay_ms: Optional[float] = None
        self.output_errors = 0

    @property
    def config(self) -> ScheduleConfig:
        return self._config

    @property
    def timer_pending(self) -> bool:
        return self._timer is not None

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def start(self) -> None:
        self._stopped = False
        self._stop_event = asyncio.Event()
        self._emit("driver.starting", {"config": self._config.as_dict(), "targets": len(self._catalogue)})
        self._report(
            "line",
            "starting: server={0} stream={1} base_interval_ms={2:g} jitter={3:g}% streaming={4:g}% targets={5}".format(
                self._config.server_url,
                self._config.stream_url,
                self._config.base_interval_ms,
                self._config.jitter_percent,
                self._config.sse_usage_percent,
                len(self._catalogue),
            ),
        )

        try:
            await self.check_connectivity()
        except ConnectivityError:
            self._stopped = True
            raise

        await self.execute_random_call()
        if not self._stopped:
            self._schedule_next()

    async def run_forever(self) -> None:
        await self.start()
        if self._stop_event is not None:
            await self._stop_event.wait()

    def stop(self) -> None:
        self._stopped = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._stop_event is not None:
            self._stop_event.set()

    def update_config(self, **changes: Any) -> ScheduleConfig:
        previous = self._config
        self._config = previous.updated(**changes)

        self._direct.server_url = self._config.server_url
        self._streaming.stream_url = self._config.stream_url
        self._streaming.explicit_messages_url = self._config.messages_url

        self._emit("driver.config_updated", {"config": self._config.as_dict()})
        if self._timer is not None and self._config.base_interval_ms != previous.base_interval_ms:
            self._schedule_next()
        return self._config

    async def check_connectivity(self) -> ResponseEnvelope:
        envelope = build_initialize_request(self._ids.next())
        try:
            response = await self._direct.send(envelope)
        except CallerError as exc:
            raise ConnectivityError(
                "failed to connect to MCP server: {0}".format(error_summary(exc)),
                transport=self._direct.name,
                method=envelope.method,
                request_id=envelope.request_id,
            ) from exc
        if response.error is not None:
            raise ConnectivityError(
                "MCP initialize failed: {0}".format(response.error.message),
                transport=self._direct.name,
                method=envelope.method,
                request_id=envelope.request_id,
                code=response.error.code,
            )
        self._emit("driver.connected", {"request_id": envelope.request_id})
        return response

    async def execute_random_call(self) -> CallOutcome:
        target = pick(self._catalogue, self._rng)
        use_streaming = self._rng.random() * 100.0 < self._config.sse_usage_percent
        transport = self._streaming if use_streaming else self._direct
        envelope = build_call_request(self._ids.next(), target, self._config.resource_scheme)

        started_at = self._clock()
        started = time.monotonic()
        error = ""
        error_kind = ""
        try:
            response = await transport.send(envelope)
            raise_for_error(response, envelope.method)
        except CallerError as exc:
            error = error_summary(exc)
            error_kind = _error_kind(exc)
        except Exception as exc:  # one bad call must not end the schedule
            error = "{0}: {1}".format(type(exc).__name__, exc)
            error_kind = "unexpected"

        attempt = self._streaming.last_attempt if use_streaming else None
        outcome = CallOutcome(
            target=target,
            transport=transport.name,
            request_id=envelope.request_id,
            ok=not error_kind,
            started_at=started_at,
            elapsed_ms=int((time.monotonic() - started) * 1000),
            error=error,
            error_kind=error_kind,
            fell_back=bool(
                attempt is not None
                and attempt.request.request_id == envelope.request_id
                and attempt.fell_back
            ),
        )
        self.stats.record(outcome)
        self._emit("driver.call", outcome.as_dict())
        self._report("outcome", outcome)
        return outcome

    def _schedule_next(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._stopped:
            return

        now = self._clock()
        delay_ms = next_delay(self._config, now, self._rng)
        self.last_delay_ms = delay_ms
        call_later = self._call_later or asyncio.get_running_loop().call_later
        self._timer = call_later(delay_ms / 1000.0, self._on_timer)

        multiplier = seasonal_multiplier(now)
        self._emit("driver.scheduled", {"delay_ms": round(delay_ms, 3), "seasonal_multiplier": multiplier})
        self._report("schedule", delay_ms, multiplier)

    def _on_timer(self) -> None:
        self._timer = None
        self._cycle = asyncio.ensure_future(self._run_cycle())

    async def _run_cycle(self) -> None:
        try:
            await self.execute_random_call()
        finally:
            if not self._stopped:
                self._schedule_next()

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self._event_sink is None:
            return
        try:
            self._event_sink(event_type, payload)
        except Exception:
            # Sinks are isolated from the schedule.
            self.output_errors += 1

    def _report(self, method: str, *args: Any) -> None:
        if self._reporter is None:
            return
        try:
            getattr(self._reporter, method)(*args)
        except Exception:
            self.output_errors += 1
