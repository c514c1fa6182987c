#!/usr/bin/env python3
"""Structured JSONL event log for the auto-continue Stop hook.

Fail-open: nothing in here may raise into the hook, and nothing is written
unless ``logging.enabled`` is set in the project config.

Layout: {log_root}/logs/{event_category}/{YYYY-MM-DD}.jsonl
where event_category = event_type.split('.')[0]
"""

import json
import math
import os
import re
import time
from datetime import datetime, timezone
from pathlib import Path

LEVELS = ("debug", "info", "warning", "error")

DEFAULT_RETENTION_DAYS = 14

# Reasons quote evaluator output; keep single log lines bounded
_MAX_STRING_LEN = 2000

_CLEANUP_INTERVAL_S = 86400
_STAMP_NAME = ".last_cleanup"

_CATEGORY_STRIP_RE = re.compile(r"[^a-zA-Z0-9_-]")

_O_NOFOLLOW = getattr(os, "O_NOFOLLOW", 0)


def parse_logging_config(config):
    # type: (dict) -> dict
    """Normalise the ``logging`` section (or a full config holding one).

    Returns a dict with keys: enabled, level, retention_days.
    """
    section = config if isinstance(config, dict) else {}
    if isinstance(section.get("logging"), dict):
        section = section["logging"]
    elif "logging" in section:
        section = {}

    enabled = section.get("enabled", False)
    if isinstance(enabled, str):
        enabled = enabled.strip().lower() in ("true", "1", "yes")

    level = str(section.get("level", "info")).lower()

    try:
        retention = int(section.get("retention_days", DEFAULT_RETENTION_DAYS))
    except (ValueError, TypeError, OverflowError):
        retention = DEFAULT_RETENTION_DAYS

    return {
        "enabled": bool(enabled),
        "level": level if level in LEVELS else "info",
        "retention_days": retention if retention >= 0 else DEFAULT_RETENTION_DAYS,
    }


def _cleanup_due(stamp):
    # type: (Path) -> bool
    try:
        if stamp.is_symlink():
            stamp.unlink()
            return True
        return time.time() - os.lstat(str(stamp)).st_mtime >= _CLEANUP_INTERVAL_S
    except OSError:
        return True


def cleanup_old_logs(log_dir, retention_days):
    # type: (Path, int) -> None
    """Delete ``.jsonl`` files older than *retention_days* (0 keeps all).

    Scans at most once per day; the scan time is kept in a stamp file.
    """
    if retention_days <= 0:
        return
    log_dir = Path(log_dir)
    stamp = log_dir / _STAMP_NAME
    if not _cleanup_due(stamp):
        return

    cutoff = time.time() - retention_days * 86400
    for log_file in log_dir.glob("*/*.jsonl"):
        category_dir = log_file.parent
        if category_dir.name.startswith(".") or category_dir.is_symlink() or log_file.is_symlink():
            continue
        try:
            if log_file.stat().st_mtime < cutoff:
                log_file.unlink()
        except OSError:
            continue

    _append_bytes(stamp, str(time.time()).encode("utf-8"), truncate=True)


def _sanitize_category(event_type):
    # type: (str) -> str
    category = _CATEGORY_STRIP_RE.sub("", str(event_type).split(".", 1)[0])
    return (category or "unknown")[:64]


def _truncate_strings(data):
    # type: (dict) -> dict
    return {
        key: value[:_MAX_STRING_LEN] + "...[truncated]"
        if isinstance(value, str) and len(value) > _MAX_STRING_LEN else value
        for key, value in data.items()
    }


def _json_default(obj):
    """Sets become sorted lists; anything else falls back to str()."""
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    return str(obj)


def _finite_or_none(value):
    try:
        return value if math.isfinite(value) else None
    except (TypeError, ValueError):
        return None


def _append_bytes(path, payload, truncate=False):
    # type: (Path, bytes, bool) -> None
    flags = os.O_CREAT | os.O_WRONLY | _O_NOFOLLOW
    flags |= os.O_TRUNC if truncate else os.O_APPEND
    try:
        fd = os.open(str(path), flags, 0o600)
    except OSError:
        return
    try:
        os.write(fd, payload)
    finally:
        os.close(fd)


class EventLog:
    """Event sink for one hook invocation.

    Bound to a session and a log root; the project config decides whether
    anything is written at all.
    """

    hook = "Stop"
    script = "continue_stop.py"

    def __init__(self, log_root, session_id="", config=None):
        # type: (str, str, dict) -> None
        self.log_root = Path(log_root) if log_root else None
        self.session_id = str(session_id)
        self.settings = parse_logging_config(config)

    @property
    def enabled(self):
        # type: () -> bool
        return self.settings["enabled"] and self.log_root is not None

    def emit(self, event_type, data, *, level="info", duration_ms=None):
        # type: (str, dict, str, float) -> None
        """Append one event line. Never raises."""
        try:
            self._emit(event_type, data, level, duration_ms)
        except Exception:
            pass  # Fail-open: logging never blocks the hook

    def _emit(self, event_type, data, level, duration_ms):
        if not self.enabled:
            return
        level = str(level).lower()
        if level not in LEVELS:
            level = "info"
        if LEVELS.index(level) < LEVELS.index(self.settings["level"]):
            return

        now = datetime.now(timezone.utc)
        entry = {
            "timestamp": now.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "event_type": str(event_type),
            "level": level,
            "hook": self.hook,
            "script": self.script,
            "session_id": self.session_id,
            "duration_ms": _finite_or_none(duration_ms),
            "data": _truncate_strings(data) if isinstance(data, dict) else {},
        }
        line = json.dumps(
            entry, ensure_ascii=False, separators=(",", ":"),
            default=_json_default, allow_nan=False,
        ) + "\n"

        logs_dir = self.log_root / "logs"
        category_dir = logs_dir / _sanitize_category(event_type)
        category_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        # mkdir follows symlinks; refuse to write outside logs/
        try:
            category_dir.resolve().relative_to(logs_dir.resolve())
        except ValueError:
            return

        _append_bytes(category_dir / now.strftime("%Y-%m-%d.jsonl"), line.encode("utf-8"))
        cleanup_old_logs(logs_dir, self.settings["retention_days"])
