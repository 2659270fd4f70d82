"""Typer CLI entrypoints for mcpcaller."""

from __future__ import annotations

import asyncio
import json
import random
import signal
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from mcpcaller.config import (
    ProjectConfigError,
    Settings,
    initialize_project_config,
    load_settings,
)
from mcpcaller.kernel.driver import Driver
from mcpcaller.kernel.runtime import build_call_log, build_driver, create_http_client
from mcpcaller.schedule.interval import next_delay, seasonal_interval_ms, seasonal_multiplier
from mcpcaller.transport.base import CallerError, ConnectivityError, error_summary
from mcpcaller.ui.render import ConsoleReporter, render_notice, render_stats

app = typer.Typer(
    no_args_is_help=True,
    help="mcpcaller 合成 MCP 流量生成器 (Synthetic MCP traffic generator)",
)


def _load_settings_or_exit(
    base_interval: Optional[float],
    jitter: Optional[float],
    sse_usage: Optional[float],
    server_url: Optional[str],
    stream_url: Optional[str],
    messages_url: Optional[str],
    log_dir: Optional[Path] = None,
    exit_code: int = 2,
) -> Settings:
    try:
        return load_settings(
            base_interval_ms=base_interval,
            jitter_percent=jitter,
            sse_usage_percent=sse_usage,
            server_url=server_url,
            stream_url=stream_url,
            messages_url=messages_url,
            log_dir=log_dir,
        )
    except ProjectConfigError as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=exit_code)


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, driver: Driver, reporter: ConsoleReporter) -> None:
    def _on_signal(signame: str) -> None:
        reporter.notice("info", "收到 {0}，正在停止。".format(signame), "Received {0}, shutting down.".format(signame))
        driver.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig.name)
        except (NotImplementedError, RuntimeError):
            # Event loops without signal support (e.g. Windows) rely on KeyboardInterrupt.
            continue


async def _serve(settings: Settings, reporter: ConsoleReporter) -> int:
    call_log = build_call_log(settings)
    for problem in settings.catalogue_errors:
        reporter.notice("warn", "目标配置被忽略：{0}".format(problem), "Ignored target row.")

    async with create_http_client(settings) as client:
        driver = build_driver(settings, client, reporter=reporter, event_sink=call_log.write_event)
        _install_signal_handlers(asyncio.get_running_loop(), driver, reporter)
        try:
            await driver.run_forever()
        except ConnectivityError as exc:
            call_log.write_entry(
                level="error",
                component="driver",
                kind="startup",
                message="connectivity check failed",
                data={"error": error_summary(exc)},
            )
            reporter.notice(
                "error",
                "启动失败：{0}".format(error_summary(exc)),
                "Failed to start caller.",
            )
            return 1
        finally:
            driver.stop()

    reporter.line(render_stats(driver.stats))
    reporter.notice("success", "已停止。", "Caller stopped.")
    return 0


def _execute_run(settings: Settings) -> int:
    reporter = ConsoleReporter()
    try:
        return asyncio.run(_serve(settings, reporter))
    except KeyboardInterrupt:
        return 0


async def _handshake(settings: Settings) -> Dict[str, Any]:
    async with create_http_client(settings) as client:
        driver = build_driver(settings, client)
        try:
            response = await driver.check_connectivity()
        except CallerError as exc:
            return {"ok": False, "error": error_summary(exc)}
    result = response.result if isinstance(response.result, dict) else {}
    return {
        "ok": True,
        "server_info": result.get("serverInfo") or {},
        "protocol_version": result.get("protocolVersion") or "",
    }


def _doctor_report(settings: Settings, offline: bool) -> Dict[str, Any]:
    now = datetime.now()
    schedule = settings.schedule
    return {
        "config_root": str(settings.config_root),
        "config_file_found": settings.config_file_found,
        "schedule": schedule.as_dict(),
        "http_timeout_sec": settings.http_timeout_sec,
        "catalogue_size": len(settings.catalogue),
        "catalogue_errors": list(settings.catalogue_errors),
        "seasonal_multiplier": round(seasonal_multiplier(now), 4),
        "seasonal_interval_ms": round(seasonal_interval_ms(schedule.base_interval_ms, now), 3),
        "next_delay_ms_sample": round(next_delay(schedule, now, random.Random()), 3),
        "logs": build_call_log(settings).status(),
        "handshake": {"ok": None, "skipped": True} if offline else asyncio.run(_handshake(settings)),
    }


@app.command("run")
def run_cmd(
    base_interval: Optional[float] = typer.Option(None, "--base-interval", help="基础间隔毫秒 (Base interval in ms)"),
    jitter: Optional[float] = typer.Option(None, "--jitter", help="抖动百分比 0-100 (Jitter percent)"),
    sse_usage: Optional[float] = typer.Option(None, "--sse-usage", help="流式传输占比 0-100 (Streaming usage percent)"),
    server_url: Optional[str] = typer.Option(None, "--server-url", help="请求/响应端点 (Request/response endpoint)"),
    stream_url: Optional[str] = typer.Option(None, "--stream-url", help="事件流端点 (Event-stream endpoint)"),
    messages_url: Optional[str] = typer.Option(None, "--messages-url", help="会话消息端点 (Session message endpoint)"),
    log_dir: Optional[Path] = typer.Option(None, "--log-dir", help="调用日志目录 (Call log directory)"),
) -> None:
    # An unreadable config is a startup failure for run.
    settings = _load_settings_or_exit(
        base_interval, jitter, sse_usage, server_url, stream_url, messages_url, log_dir, exit_code=1
    )
    exit_code = _execute_run(settings)
    raise typer.Exit(code=exit_code)


@app.command("init")
def init_cmd(
    force: bool = typer.Option(False, "--force", help="覆盖已有配置 (Overwrite existing config)"),
) -> None:
    try:
        config_root = initialize_project_config(force=force)
    except ProjectConfigError as exc:
        typer.echo(render_notice("error", str(exc)), err=True)
        raise typer.Exit(code=2)
    typer.echo(
        render_notice(
            "success",
            "已初始化项目配置：{0}".format(config_root),
            "Project config initialized.",
        )
    )


@app.command("doctor")
def doctor_cmd(
    base_interval: Optional[float] = typer.Option(None, "--base-interval", help="基础间隔毫秒 (Base interval in ms)"),
    jitter: Optional[float] = typer.Option(None, "--jitter", help="抖动百分比 0-100 (Jitter percent)"),
    sse_usage: Optional[float] = typer.Option(None, "--sse-usage", help="流式传输占比 0-100 (Streaming usage percent)"),
    server_url: Optional[str] = typer.Option(None, "--server-url", help="请求/响应端点 (Request/response endpoint)"),
    stream_url: Optional[str] = typer.Option(None, "--stream-url", help="事件流端点 (Event-stream endpoint)"),
    messages_url: Optional[str] = typer.Option(None, "--messages-url", help="会话消息端点 (Session message endpoint)"),
    offline: bool = typer.Option(False, "--offline", help="跳过握手检查 (Skip the handshake)"),
) -> None:
    settings = _load_settings_or_exit(base_interval, jitter, sse_usage, server_url, stream_url, messages_url)
    report = _doctor_report(settings, offline)
    typer.echo(json.dumps(report, ensure_ascii=False, indent=2))
    if not offline and not report["handshake"].get("ok"):
        raise typer.Exit(code=1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
