"""JSONL call log with size-based rotation and redaction."""

from __future__ import annotations

import json
import re
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

_REDACTED = "***REDACTED***"
_SENSITIVE_KEY_RE = re.compile(
    r"(password|secret|token|authorization|cookie|api[_-]?key|access[_-]?key|private[_-]?key)",
    re.IGNORECASE,
)
_BEARER_RE = re.compile(r"(?i)\bbearer\s+([^\s,;]+)")
_KEY_VALUE_RE = re.compile(
    r"(?i)\b(api[_-]?key|access[_-]?key|token|secret|authorization|cookie|private[_-]?key)\b\s*[:=]\s*([^\s,;]+)"
)

ACTIVE_LOG_NAME = "calls.log.jsonl"


def now_ms() -> int:
    return int(time.time() * 1000)


class CallLogWriter:
    """Best-effort JSONL writer; write failures are counted, never raised."""

    def __init__(
        self,
        *,
        logs_dir: Optional[Path],
        enabled: bool,
        max_file_bytes: int = 10 * 1024 * 1024,
        max_files: int = 5,
        redaction: str = "default",
    ) -> None:
        self._logs_dir = Path(logs_dir) if logs_dir is not None else None
        self._enabled = bool(enabled) and self._logs_dir is not None
        self._max_file_bytes = max(1, int(max_file_bytes or 0))
        self._max_files = max(1, int(max_files or 0))
        self._redaction = str(redaction or "default").strip().lower()
        if self._redaction not in {"none", "default", "strict"}:
            self._redaction = "default"
        self._write_errors = 0
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def active_log_file(self) -> Optional[Path]:
        if self._logs_dir is None:
            return None
        return self._logs_dir / ACTIVE_LOG_NAME

    def write_event(self, event_type: str, payload: Dict[str, Any]) -> None:
        """Event sink for transports and the driver."""
        level = "warn" if event_type.endswith((".fallback", ".timeout")) else "info"
        self.write_entry(
            level=level,
            component=event_type.split(".", 1)[0],
            kind="event",
            message=event_type,
            data=payload,
        )

    def write_entry(
        self,
        *,
        level: str,
        component: str,
        kind: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        ts_ms: Optional[int] = None,
    ) -> None:
        if not self._enabled:
            return

        record = {
            "ts_ms": int(ts_ms if ts_ms is not None else now_ms()),
            "level": str(level or "info"),
            "component": str(component or "driver"),
            "kind": str(kind or "diagnostic"),
            "message": str(message or ""),
            "data": dict(data or {}),
        }
        if self._redaction == "strict":
            record["data"] = self._strict_redact(record["data"])
        elif self._redaction == "default":
            record["message"] = self._redact_text(record["message"])
            record["data"] = self._redact_payload(record["data"])

        with self._lock:
            try:
                line = json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)
                payload = (line + "\n").encode("utf-8")
                self._logs_dir.mkdir(parents=True, exist_ok=True)  # type: ignore[union-attr]
                self._rotate_if_needed_locked(len(payload))
                with self.active_log_file.open("ab") as fp:  # type: ignore[union-attr]
                    fp.write(payload)
            except Exception:
                self._write_errors += 1

    def status(self) -> Dict[str, Any]:
        with self._lock:
            active = self.active_log_file
            report: Dict[str, Any] = {
                "logs_enabled": self._enabled,
                "logs_dir": str(self._logs_dir or ""),
                "logs_active_file": str(active or ""),
                "logs_active_size_bytes": 0,
                "logs_max_file_bytes": self._max_file_bytes,
                "logs_max_files": self._max_files,
                "logs_rotated_files": [],
                "logs_write_errors": int(self._write_errors),
            }
            if not self._enabled or active is None:
                return report

            if active.exists():
                report["logs_active_size_bytes"] = int(active.stat().st_size)
            rotated: List[str] = []
            for index in range(1, self._max_files + 1):
                path = self._rotated_file(index)
                if path.exists():
                    rotated.append(str(path))
            report["logs_rotated_files"] = rotated
            return report

    def _rotate_if_needed_locked(self, incoming_size: int) -> None:
        active = self.active_log_file
        current_size = int(active.stat().st_size) if active.exists() else 0  # type: ignore[union-attr]
        if current_size + int(incoming_size) <= self._max_file_bytes:
            return

        self._rotated_file(self._max_files).unlink(missing_ok=True)
        for index in range(self._max_files - 1, 0, -1):
            src = self._rotated_file(index)
            if src.exists():
                src.replace(self._rotated_file(index + 1))
        if active.exists():  # type: ignore[union-attr]
            active.replace(self._rotated_file(1))  # type: ignore[union-attr]

    def _rotated_file(self, index: int) -> Path:
        return Path("{0}.{1}".format(self.active_log_file, index))

    def _redact_payload(self, value: Any) -> Any:
        if isinstance(value, dict):
            out: Dict[str, Any] = {}
            for key, item in value.items():
                if _SENSITIVE_KEY_RE.search(str(key)):
                    out[key] = _REDACTED
                else:
                    out[key] = self._redact_payload(item)
            return out
        if isinstance(value, list):
            return [self._redact_payload(item) for item in value]
        if isinstance(value, str):
            return self._redact_text(value)
        return value

    def _strict_redact(self, value: Any) -> Any:
        if isinstance(value, dict):
            out: Dict[str, Any] = {}
            for key, item in value.items():
                if isinstance(item, (dict, list)) and not _SENSITIVE_KEY_RE.search(str(key)):
                    out[key] = self._strict_redact(item)
                else:
                    out[key] = _REDACTED
            return out
        if isinstance(value, list):
            return [self._strict_redact(item) for item in value]
        return _REDACTED

    @staticmethod
    def _redact_text(text: str) -> str:
        if not text:
            return text
        masked = _BEARER_RE.sub("Bearer {0}".format(_REDACTED), text)
        return _KEY_VALUE_RE.sub(lambda m: "{0}={1}".format(m.group(1), _REDACTED), masked)
