"""Configuration loading and override resolution for mcpcaller."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

try:  # pragma: no cover - exercised on Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for Python 3.9/3.10
    import tomli as tomllib  # type: ignore[no-redef]

from mcpcaller.mcp.envelope import DEFAULT_RESOURCE_SCHEME
from mcpcaller.mcp.types import WeightedTarget
from mcpcaller.schedule.catalogue import default_catalogue, parse_catalogue_rows

CONFIG_DIR_NAME = ".mcpcaller_config"
CONFIG_FILE_NAME = "config.toml"
LOGS_DIR_NAME = "logs"

DEFAULT_PORT = 3000
DEFAULT_BASE_INTERVAL_MS = 30 * 1000
DEFAULT_JITTER_PERCENT = 30.0
DEFAULT_SSE_USAGE_PERCENT = 25.0
DEFAULT_HTTP_TIMEOUT_SEC = 30.0
DEFAULT_LOGS_ENABLED = True
DEFAULT_LOGS_MAX_FILE_BYTES = 10 * 1024 * 1024
DEFAULT_LOGS_MAX_FILES = 5
DEFAULT_LOGS_REDACTION = "default"
ALLOWED_LOG_REDACTION = ("default", "none", "strict")


class ProjectConfigError(RuntimeError):
    """Raised when the project configuration is invalid."""


def _local_port() -> str:
    return str(os.environ.get("PORT") or DEFAULT_PORT)


def default_server_url() -> str:
    return "http://localhost:{0}/mcp".format(_local_port())


def default_stream_url() -> str:
    return "http://localhost:{0}/sse".format(_local_port())


@dataclass
class ScheduleConfig:
    """Live knobs of the generator; the driver accepts updates at runtime."""

    base_interval_ms: float = DEFAULT_BASE_INTERVAL_MS
    jitter_percent: float = DEFAULT_JITTER_PERCENT
    sse_usage_percent: float = DEFAULT_SSE_USAGE_PERCENT
    server_url: str = field(default_factory=default_server_url)
    stream_url: str = field(default_factory=default_stream_url)
    messages_url: Optional[str] = None
    resource_scheme: str = DEFAULT_RESOURCE_SCHEME

    def updated(self, **changes: Any) -> "ScheduleConfig":
        unknown = sorted(set(changes) - set(self.__dataclass_fields__))
        if unknown:
            raise ValueError("unknown schedule option(s): {0}".format(", ".join(unknown)))
        return normalize_schedule_config(replace(self, **changes))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "base_interval_ms": self.base_interval_ms,
            "jitter_percent": self.jitter_percent,
            "sse_usage_percent": self.sse_usage_percent,
            "server_url": self.server_url,
            "stream_url": self.stream_url,
            "messages_url": self.messages_url,
            "resource_scheme": self.resource_scheme,
        }


@dataclass
class ProjectConfig:
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    http_timeout_sec: float = DEFAULT_HTTP_TIMEOUT_SEC
    catalogue: List[WeightedTarget] = field(default_factory=default_catalogue)
    catalogue_errors: List[str] = field(default_factory=list)
    logs_enabled: bool = DEFAULT_LOGS_ENABLED
    logs_max_file_bytes: int = DEFAULT_LOGS_MAX_FILE_BYTES
    logs_max_files: int = DEFAULT_LOGS_MAX_FILES
    logs_redaction: str = DEFAULT_LOGS_REDACTION


@dataclass
class Settings:
    """Resolved runtime settings for one CLI invocation."""

    project_root: Path
    config_root: Path
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    http_timeout_sec: float = DEFAULT_HTTP_TIMEOUT_SEC
    catalogue: List[WeightedTarget] = field(default_factory=default_catalogue)
    catalogue_errors: List[str] = field(default_factory=list)
    config_file_found: bool = False
    logs_enabled: bool = False
    logs_dir: Optional[Path] = None
    logs_max_file_bytes: int = DEFAULT_LOGS_MAX_FILE_BYTES
    logs_max_files: int = DEFAULT_LOGS_MAX_FILES
    logs_redaction: str = DEFAULT_LOGS_REDACTION

    @property
    def config_file(self) -> Path:
        return self.config_root / CONFIG_FILE_NAME


def resolve_project_root(workspace_dir: Optional[Path] = None) -> Path:
    return (workspace_dir or Path.cwd()).resolve()


def resolve_project_config_root(workspace_dir: Optional[Path] = None) -> Path:
    return resolve_project_root(workspace_dir) / CONFIG_DIR_NAME


def project_config_exists(workspace_dir: Optional[Path] = None) -> bool:
    config_root = resolve_project_config_root(workspace_dir)
    return config_root.is_dir() and (config_root / CONFIG_FILE_NAME).is_file()


def _safe_positive_float(value: object, default: float) -> float:
    try:
        converted = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if converted <= 0:
        return default
    return converted


def _safe_positive_int_or_default(value: object, default: int) -> int:
    try:
        converted = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if converted <= 0:
        return default
    return converted


def _safe_percent(value: object, default: float) -> float:
    try:
        converted = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if converted != converted:  # NaN
        return default
    return min(100.0, max(0.0, converted))


def _safe_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    return default


def _safe_url(value: object, default: str) -> str:
    text = str(value or "").strip()
    if not text:
        return default
    if not (text.startswith("http://") or text.startswith("https://")):
        return default
    return text


def _safe_optional_url(value: object) -> Optional[str]:
    text = str(value or "").strip()
    if not text:
        return None
    return _safe_url(text, "") or None


def _safe_redaction(value: object, default: str) -> str:
    normalized = str(value or default).strip().lower()
    if normalized not in ALLOWED_LOG_REDACTION:
        return default
    return normalized


def normalize_schedule_config(config: ScheduleConfig) -> ScheduleConfig:
    return ScheduleConfig(
        base_interval_ms=_safe_positive_float(config.base_interval_ms, DEFAULT_BASE_INTERVAL_MS),
        jitter_percent=_safe_percent(config.jitter_percent, DEFAULT_JITTER_PERCENT),
        sse_usage_percent=_safe_percent(config.sse_usage_percent, DEFAULT_SSE_USAGE_PERCENT),
        server_url=_safe_url(config.server_url, default_server_url()),
        stream_url=_safe_url(config.stream_url, default_stream_url()),
        messages_url=_safe_optional_url(config.messages_url),
        resource_scheme=str(config.resource_scheme or "").strip() or DEFAULT_RESOURCE_SCHEME,
    )


def _section(data: Dict[str, object], name: str) -> Dict[str, object]:
    value = data.get(name)
    return value if isinstance(value, dict) else {}


def _parse_project_config_data(data: Dict[str, object]) -> ProjectConfig:
    schedule = _section(data, "schedule")
    endpoints = _section(data, "endpoints")
    http = _section(data, "http")
    runtime = _section(data, "runtime")
    logs = _section(runtime, "logs")

    catalogue, catalogue_errors = parse_catalogue_rows(data.get("targets"))
    if not catalogue:
        catalogue = default_catalogue()

    return ProjectConfig(
        schedule=ScheduleConfig(
            base_interval_ms=_safe_positive_float(schedule.get("base_interval_ms"), DEFAULT_BASE_INTERVAL_MS),
            jitter_percent=_safe_percent(schedule.get("jitter_percent"), DEFAULT_JITTER_PERCENT),
            sse_usage_percent=_safe_percent(schedule.get("sse_usage_percent"), DEFAULT_SSE_USAGE_PERCENT),
            server_url=_safe_url(endpoints.get("server_url"), default_server_url()),
            stream_url=_safe_url(endpoints.get("stream_url"), default_stream_url()),
            messages_url=_safe_optional_url(endpoints.get("messages_url")),
            resource_scheme=str(endpoints.get("resource_scheme") or "").strip() or DEFAULT_RESOURCE_SCHEME,
        ),
        http_timeout_sec=_safe_positive_float(http.get("timeout"), DEFAULT_HTTP_TIMEOUT_SEC),
        catalogue=catalogue,
        catalogue_errors=catalogue_errors,
        logs_enabled=_safe_bool(logs.get("enabled"), DEFAULT_LOGS_ENABLED),
        logs_max_file_bytes=_safe_positive_int_or_default(
            logs.get("max_file_bytes"),
            DEFAULT_LOGS_MAX_FILE_BYTES,
        ),
        logs_max_files=_safe_positive_int_or_default(logs.get("max_files"), DEFAULT_LOGS_MAX_FILES),
        logs_redaction=_safe_redaction(logs.get("redaction"), DEFAULT_LOGS_REDACTION),
    )


def _render_project_config(config: ProjectConfig) -> str:
    schedule = config.schedule
    lines: List[str] = [
        "# mcpcaller project config",
        "",
        "[schedule]",
        "base_interval_ms = {0}".format(int(schedule.base_interval_ms)),
        "jitter_percent = {0:g}".format(schedule.jitter_percent),
        "sse_usage_percent = {0:g}".format(schedule.sse_usage_percent),
        "",
        "[endpoints]",
        'server_url = "{0}"'.format(schedule.server_url),
        'stream_url = "{0}"'.format(schedule.stream_url),
    ]
    if schedule.messages_url:
        lines.append('messages_url = "{0}"'.format(schedule.messages_url))
    else:
        lines.append('# messages_url = "http://localhost:3000/messages"')
    lines.extend(
        [
            'resource_scheme = "{0}"'.format(schedule.resource_scheme),
            "",
            "[http]",
            "timeout = {0:g}".format(config.http_timeout_sec),
            "",
            "[runtime.logs]",
            "enabled = {0}".format(str(bool(config.logs_enabled)).lower()),
            "max_file_bytes = {0}".format(
                _safe_positive_int_or_default(config.logs_max_file_bytes, DEFAULT_LOGS_MAX_FILE_BYTES)
            ),
            "max_files = {0}".format(_safe_positive_int_or_default(config.logs_max_files, DEFAULT_LOGS_MAX_FILES)),
            'redaction = "{0}"'.format(_safe_redaction(config.logs_redaction, DEFAULT_LOGS_REDACTION)),
            "",
            "# Override the built-in catalogue with weighted targets:",
            "# [[targets]]",
            '# kind = "tool"',
            '# name = "get-products"',
            "# weight = 4",
            "# [targets.arguments]",
            '# category = "succulents"',
            "",
        ]
    )
    return "\n".join(lines)


def initialize_project_config(workspace_dir: Optional[Path] = None, force: bool = False) -> Path:
    config_root = resolve_project_config_root(workspace_dir)
    if config_root.exists():
        if not force:
            raise ProjectConfigError(
                "配置目录已存在：{0} (configuration directory already exists)".format(config_root)
            )
        shutil.rmtree(config_root)

    (config_root / LOGS_DIR_NAME).mkdir(parents=True, exist_ok=True)
    (config_root / CONFIG_FILE_NAME).write_text(
        _render_project_config(ProjectConfig()),
        encoding="utf-8",
    )
    return config_root


def load_project_config(config_root: Optional[Path] = None, workspace_dir: Optional[Path] = None) -> ProjectConfig:
    resolved_root = (config_root or resolve_project_config_root(workspace_dir)).resolve()
    config_file = resolved_root / CONFIG_FILE_NAME
    if not config_file.is_file():
        return ProjectConfig()

    try:
        parsed = tomllib.loads(config_file.read_text(encoding="utf-8"))
    except Exception as exc:
        raise ProjectConfigError("配置文件无效：{0} (invalid config file)".format(config_file)) from exc

    if not isinstance(parsed, dict):
        raise ProjectConfigError("配置文件无效：{0} (invalid config file)".format(config_file))

    return _parse_project_config_data(parsed)


def load_settings(
    base_interval_ms: Optional[float] = None,
    jitter_percent: Optional[float] = None,
    sse_usage_percent: Optional[float] = None,
    server_url: Optional[str] = None,
    stream_url: Optional[str] = None,
    messages_url: Optional[str] = None,
    log_dir: Optional[Path] = None,
    workspace_dir: Optional[Path] = None,
) -> Settings:
    """Resolve settings from the optional project config + explicit overrides."""

    project_root = resolve_project_root(workspace_dir)
    config_root = resolve_project_config_root(project_root)
    config_found = project_config_exists(project_root)
    project_config = load_project_config(config_root=config_root)

    overrides: Dict[str, Any] = {}
    if base_interval_ms is not None:
        overrides["base_interval_ms"] = base_interval_ms
    if jitter_percent is not None:
        overrides["jitter_percent"] = jitter_percent
    if sse_usage_percent is not None:
        overrides["sse_usage_percent"] = sse_usage_percent
    if server_url is not None:
        overrides["server_url"] = server_url
    if stream_url is not None:
        overrides["stream_url"] = stream_url
    if messages_url is not None:
        overrides["messages_url"] = messages_url

    schedule = project_config.schedule.updated(**overrides)

    if log_dir is not None:
        logs_enabled = True
        resolved_logs_dir: Optional[Path] = Path(log_dir).expanduser().resolve()
    elif config_found and project_config.logs_enabled:
        logs_enabled = True
        resolved_logs_dir = config_root / LOGS_DIR_NAME
    else:
        logs_enabled = False
        resolved_logs_dir = None

    return Settings(
        project_root=project_root,
        config_root=config_root,
        schedule=schedule,
        http_timeout_sec=project_config.http_timeout_sec,
        catalogue=list(project_config.catalogue),
        catalogue_errors=list(project_config.catalogue_errors),
        config_file_found=config_found,
        logs_enabled=logs_enabled,
        logs_dir=resolved_logs_dir,
        logs_max_file_bytes=project_config.logs_max_file_bytes,
        logs_max_files=project_config.logs_max_files,
        logs_redaction=project_config.logs_redaction,
    )
