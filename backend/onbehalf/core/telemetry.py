from __future__ import annotations

import json
import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from onbehalf.core.config import settings


_LOGGER = logging.getLogger("onbehalf")
_WRITE_LOCK = threading.Lock()
_NOISY_COUNTERS: Dict[str, int] = {}
_COLOR_ENABLED = False

_ANSI_RESET = "\033[0m"
_ANSI_BOLD = "\033[1m"
_ANSI_YELLOW = "\033[33m"
_ANSI_RED = "\033[31m"
_ANSI_GREEN = "\033[32m"
_ANSI_CYAN = "\033[36m"
_ANSI_GREY = "\033[90m"

_RESERVED_DETAIL_KEYS = {"task_id", "session_id", "duration_ms", "status"}


def _events_file() -> Path:
    settings.DATA_ROOT.mkdir(parents=True, exist_ok=True)
    return settings.DATA_ROOT / "telemetry_events.jsonl"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_sampled_out(action: str, status: str) -> bool:
    """High-frequency actions only reach the console every N occurrences."""
    if status != "ok" or action not in set(settings.LOG_NOISY_ACTIONS or ()):
        return False
    if settings.LOG_NOISY_EVENTS_EVERY_N <= 0:
        return True

    with _WRITE_LOCK:
        count = _NOISY_COUNTERS.get(action, 0) + 1
        _NOISY_COUNTERS[action] = count
    return count % max(1, settings.LOG_NOISY_EVENTS_EVERY_N) != 0


def _trim(value: Any, *, max_length: int = 140) -> str:
    if value is None:
        return "n/a"
    if isinstance(value, (dict, list, tuple)):
        value = json.dumps(value, default=str)
    text = str(value)
    if len(text) <= max_length:
        return text
    return f"{text[: max_length - 1]}…"


def _paint(text: str, color: str) -> str:
    if not (settings.LOG_PRETTY and _COLOR_ENABLED):
        return text
    return f"{color}{text}{_ANSI_RESET}"


def _render(entry: Dict[str, Any]) -> str:
    status = str(entry.get("status", "ok"))
    if status == "error":
        status_token = _paint("ERR", _ANSI_RED)
    elif status == "warning":
        status_token = _paint("WARN", _ANSI_YELLOW)
    else:
        status_token = _paint("OK", _ANSI_GREEN)

    chunks = [
        f"{_paint(str(entry.get('component', 'unknown')), _ANSI_BOLD)}/"
        f"{_paint(str(entry.get('action', 'event')), _ANSI_CYAN)}",
        status_token,
    ]
    if entry.get("task_id"):
        chunks.append(f"task={_trim(entry['task_id'], max_length=36)}")
    if entry.get("session_id"):
        chunks.append(f"session={_trim(entry['session_id'], max_length=36)}")
    if entry.get("duration_ms") is not None:
        chunks.append(f"dur={entry['duration_ms']}ms")
    if entry.get("error") is not None:
        chunks.append(_paint(f"error={_trim(entry['error'], max_length=220)}", _ANSI_RED))

    details = entry.get("details")
    detail_items: Iterable[tuple[str, Any]] = details.items() if isinstance(details, dict) else []
    detail_chunks: list[str] = []
    for key, value in detail_items:
        if key in _RESERVED_DETAIL_KEYS:
            continue
        detail_chunks.append(f"{key}={_trim(value, max_length=80)}")
        if len(detail_chunks) >= 8:
            detail_chunks.append("...")
            break
    if detail_chunks:
        chunks.append(" | ".join(detail_chunks))

    timestamp = str(entry.get("timestamp") or entry.get("started_at") or _timestamp())[:19]
    return f"{_paint(timestamp, _ANSI_GREY)} | " + " | ".join(chunks)


def configure_logging() -> None:
    global _COLOR_ENABLED
    if getattr(_LOGGER, "_onbehalf_configured", False):
        return

    log_level = getattr(logging, settings.LOG_LEVEL, logging.INFO)
    _LOGGER.setLevel(log_level)

    fmt = logging.Formatter(
        "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        "%Y-%m-%dT%H:%M:%S%z",
    )

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(fmt)
    stream_handler.setLevel(log_level)
    if settings.LOG_COLOR is None:
        _COLOR_ENABLED = bool(getattr(stream_handler.stream, "isatty", lambda: False)())
    else:
        _COLOR_ENABLED = bool(settings.LOG_COLOR)
    _LOGGER.addHandler(stream_handler)

    log_path = settings.DATA_ROOT / "service.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(fmt)
    file_handler.setLevel(log_level)
    _LOGGER.addHandler(file_handler)

    _LOGGER._onbehalf_configured = True  # type: ignore[attr-defined]


def _append_jsonl(entry: Dict[str, Any]) -> None:
    with _WRITE_LOCK:
        with open(_events_file(), "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, default=str))
            f.write("\n")


def _emit(entry: Dict[str, Any]) -> None:
    _append_jsonl(entry)
    status = str(entry.get("status", "ok"))
    if _is_sampled_out(str(entry.get("action", "")), status):
        return
    msg = _render(entry)
    if status == "error":
        _LOGGER.error(msg)
    elif status == "warning":
        _LOGGER.warning(msg)
    else:
        _LOGGER.info(msg)


def log_event(
    component: str,
    action: str,
    *,
    status: str = "ok",
    duration_ms: Optional[float] = None,
    task_id: Optional[str] = None,
    session_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    entry: Dict[str, Any] = {
        "timestamp": _timestamp(),
        "component": component,
        "action": action,
        "status": status,
        "task_id": task_id,
        "session_id": session_id,
        "details": details or {},
    }
    if duration_ms is not None:
        entry["duration_ms"] = round(duration_ms, 3)
    _emit(entry)


@contextmanager
def timed_step(
    component: str,
    action: str,
    *,
    task_id: Optional[str] = None,
    session_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
):
    started = time.perf_counter()
    entry: Dict[str, Any] = {
        "started_at": _timestamp(),
        "component": component,
        "action": action,
        "status": "ok",
        "task_id": task_id,
        "session_id": session_id,
        "details": details or {},
    }
    try:
        yield
    except Exception as exc:
        entry["status"] = "error"
        entry["error"] = f"{type(exc).__name__}: {exc}"
        raise
    finally:
        entry["duration_ms"] = round((time.perf_counter() - started) * 1000.0, 3)
        _emit(entry)
