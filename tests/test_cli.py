from __future__ import annotations

import json

import httpx
from typer.testing import CliRunner

import mcpcaller.cli
from mcpcaller.kernel.driver import CallStats


def _combined_output(result) -> str:
    try:
        return result.stdout + result.stderr
    except Exception:
        return result.stdout


def _client_factory(handler):
    def factory(settings):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return factory


def _initialize_ok(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    return httpx.Response(
        200,
        json={
            "jsonrpc": "2.0",
            "id": body["id"],
            "result": {"protocolVersion": "2024-11-05", "serverInfo": {"name": "plant-shop", "version": "1.0"}},
        },
    )


class _FakeDriver:
    def __init__(self) -> None:
        self.stats = CallStats(total=3, succeeded=2, failed=1)
        self.stop_calls = 0

    async def run_forever(self) -> None:
        return None

    def stop(self) -> None:
        self.stop_calls += 1


def test_help_and_init_work_without_config(isolated_env):
    runner = CliRunner()

    help_result = runner.invoke(mcpcaller.cli.app, ["--help"])
    assert help_result.exit_code == 0

    init_result = runner.invoke(mcpcaller.cli.app, ["init"])
    assert init_result.exit_code == 0
    assert "Project config initialized." in init_result.stdout
    assert (isolated_env["config_root"] / "config.toml").is_file()
    assert (isolated_env["config_root"] / "logs").is_dir()


def test_init_fails_when_config_exists_without_force(isolated_env):
    runner = CliRunner()

    assert runner.invoke(mcpcaller.cli.app, ["init"]).exit_code == 0
    second = runner.invoke(mcpcaller.cli.app, ["init"])
    assert second.exit_code == 2
    assert "already exists" in _combined_output(second)

    rebuilt = runner.invoke(mcpcaller.cli.app, ["init", "--force"])
    assert rebuilt.exit_code == 0


def test_run_exits_nonzero_when_server_unreachable(monkeypatch, isolated_env):
    monkeypatch.setattr(
        mcpcaller.cli,
        "create_http_client",
        _client_factory(lambda request: httpx.Response(500, text="down")),
    )
    runner = CliRunner()

    result = runner.invoke(mcpcaller.cli.app, ["run", "--log-dir", str(isolated_env["workspace"] / "calls")])

    assert result.exit_code == 1
    assert "Failed to start caller." in _combined_output(result)
    log_lines = (isolated_env["workspace"] / "calls" / "calls.log.jsonl").read_text(encoding="utf-8").splitlines()
    kinds = [json.loads(line)["kind"] for line in log_lines]
    assert "startup" in kinds


def test_run_exits_zero_after_driver_stops(monkeypatch, isolated_env):
    captured = {}

    def fake_build_driver(settings, client, reporter=None, event_sink=None, rng=None):
        captured["settings"] = settings
        captured["driver"] = _FakeDriver()
        return captured["driver"]

    monkeypatch.setattr(mcpcaller.cli, "build_driver", fake_build_driver)
    runner = CliRunner()

    result = runner.invoke(
        mcpcaller.cli.app,
        ["run", "--base-interval", "5000", "--jitter", "0", "--sse-usage", "100", "--server-url", "http://mcp.test/mcp"],
    )

    assert result.exit_code == 0
    assert "calls=3 succeeded=2 failed=1" in result.stdout
    assert "Caller stopped." in result.stdout
    schedule = captured["settings"].schedule
    assert schedule.base_interval_ms == 5000
    assert schedule.jitter_percent == 0
    assert schedule.sse_usage_percent == 100
    assert schedule.server_url == "http://mcp.test/mcp"
    assert captured["driver"].stop_calls >= 1


def test_run_treats_invalid_config_as_startup_failure(isolated_env):
    config_root = isolated_env["config_root"]
    config_root.mkdir()
    (config_root / "config.toml").write_text("[schedule\n", encoding="utf-8")
    runner = CliRunner()

    result = runner.invoke(mcpcaller.cli.app, ["run"])

    assert result.exit_code == 1
    assert "invalid config file" in _combined_output(result)


def test_doctor_offline_outputs_json(isolated_env):
    runner = CliRunner()

    result = runner.invoke(mcpcaller.cli.app, ["doctor", "--offline", "--base-interval", "60000"])

    assert result.exit_code == 0
    parsed = json.loads(result.stdout)
    assert parsed["config_file_found"] is False
    assert parsed["schedule"]["base_interval_ms"] == 60000
    assert parsed["catalogue_size"] == 10
    assert parsed["next_delay_ms_sample"] >= 1000
    assert parsed["handshake"] == {"ok": None, "skipped": True}
    assert parsed["logs"]["logs_enabled"] is False


def test_doctor_reports_server_info(monkeypatch, isolated_env):
    monkeypatch.setattr(mcpcaller.cli, "create_http_client", _client_factory(_initialize_ok))
    runner = CliRunner()

    result = runner.invoke(mcpcaller.cli.app, ["doctor"])

    assert result.exit_code == 0
    handshake = json.loads(result.stdout)["handshake"]
    assert handshake["ok"] is True
    assert handshake["server_info"]["name"] == "plant-shop"
    assert handshake["protocol_version"] == "2024-11-05"


def test_doctor_fails_when_handshake_fails(monkeypatch, isolated_env):
    monkeypatch.setattr(
        mcpcaller.cli,
        "create_http_client",
        _client_factory(lambda request: httpx.Response(503)),
    )
    runner = CliRunner()

    result = runner.invoke(mcpcaller.cli.app, ["doctor"])

    assert result.exit_code == 1
    handshake = json.loads(result.stdout)["handshake"]
    assert handshake["ok"] is False
    assert "status_code=503" in handshake["error"]


def test_doctor_reports_invalid_config_with_usage_code(isolated_env):
    config_root = isolated_env["config_root"]
    config_root.mkdir()
    (config_root / "config.toml").write_text("[schedule\n", encoding="utf-8")
    runner = CliRunner()

    result = runner.invoke(mcpcaller.cli.app, ["doctor", "--offline"])

    assert result.exit_code == 2
    assert "invalid config file" in _combined_output(result)
