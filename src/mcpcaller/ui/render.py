"""Presentation helpers for mcpcaller console output."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Optional, TextIO

from rich.console import Console
from rich.text import Text

if TYPE_CHECKING:
    from mcpcaller.kernel.driver import CallOutcome, CallStats


def bilingual_text(zh: str, en: Optional[str] = None) -> str:
    if not en:
        return zh
    return "{0} ({1})".format(zh, en)


def render_notice(level: str, zh: str, en: Optional[str] = None) -> str:
    prefix_map = {
        "info": bilingual_text("提示", "Info"),
        "warn": bilingual_text("警告", "Warning"),
        "error": bilingual_text("错误", "Error"),
        "success": bilingual_text("成功", "Success"),
    }
    prefix = prefix_map.get(level, bilingual_text("提示", "Info"))
    return "{0}: {1}".format(prefix, bilingual_text(zh, en))


def render_outcome(outcome: "CallOutcome") -> str:
    status = "ok" if outcome.ok else "failed"
    line = "[{0}] id={1} transport={2} {3} {4} elapsed_ms={5}".format(
        outcome.started_at.isoformat(timespec="seconds"),
        outcome.request_id,
        outcome.transport,
        outcome.target.label,
        status,
        outcome.elapsed_ms,
    )
    if outcome.fell_back:
        line += " fallback=direct"
    if outcome.error:
        line += " error={0}".format(outcome.error)
    return line


def render_stats(stats: "CallStats") -> str:
    return "calls={0} succeeded={1} failed={2} timeouts={3} fallbacks={4}".format(
        stats.total,
        stats.succeeded,
        stats.failed,
        stats.timeouts,
        stats.fallbacks,
    )


def _is_tty(stream: TextIO, forced: Optional[bool]) -> bool:
    if forced is not None:
        return forced
    isatty = getattr(stream, "isatty", None)
    if callable(isatty):
        try:
            return bool(isatty())
        except Exception:
            return False
    return False


class ConsoleReporter:
    """Writes driver progress lines, styled when attached to a terminal."""

    def __init__(self, stream: Optional[TextIO] = None, is_tty: Optional[bool] = None) -> None:
        self._stream = stream if stream is not None else sys.stdout
        self._tty = _is_tty(self._stream, is_tty)
        self._console = Console(file=self._stream, highlight=False, soft_wrap=True) if self._tty else None

    def line(self, text: str, style: str = "") -> None:
        if self._console is not None:
            self._console.print(Text(text, style=style or ""))
            return
        self._stream.write(text + "\n")
        self._stream.flush()

    def outcome(self, outcome: "CallOutcome") -> None:
        self.line(render_outcome(outcome), "green" if outcome.ok else "red")

    def schedule(self, delay_ms: float, multiplier: float) -> None:
        self.line(
            "next call in {0}s (seasonal: {1:.2f}x)".format(int(round(delay_ms / 1000.0)), multiplier),
            "dim",
        )

    def notice(self, level: str, zh: str, en: Optional[str] = None) -> None:
        styles = {"error": "bold red", "warn": "yellow", "success": "green"}
        self.line(render_notice(level, zh, en), styles.get(level, ""))
