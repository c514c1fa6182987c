#!/usr/bin/env python3
"""Auto-continue hook for Claude Code (Stop event).

Decides whether a session that is about to stop should be sent back to
work. A nested Claude run judges the tail of the transcript; a per-session
throttle caps how many times in a row the stop can be vetoed.

Output protocol (advanced JSON hook API), always exit 0:
  Keep working: {"decision": "block", "reason": "..."}
  Allow stop:   {"decision": "approve", "reason": "..."}

Every failure path approves. The hook must never trap a session.
"""

from __future__ import annotations

import json
import math
import os
import select
import sys
import time
from pathlib import Path
from typing import Callable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from continue_context import DEFAULT_CONTEXT_LINES, extract_context
from continue_judge import (
    DEFAULT_MODEL,
    DEFAULT_TIMEOUT,
    JUDGE_MODE_ENV,
    JudgeError,
    JudgmentVerdict,
    judge_context,
)
from continue_logger import EventLog
from continue_throttle import (
    DEFAULT_MAX_CONTINUATIONS,
    DEFAULT_WINDOW_SECONDS,
    FileThrottleStore,
    ThrottleStore,
    clear,
    register_continuation,
    session_key,
    should_force_stop,
)

Judge = Callable[[list], JudgmentVerdict]

# ---------------------------------------------------------------------------
# Reasons
# ---------------------------------------------------------------------------

REASON_JUDGE_MODE = "Running in judge mode, allowing stop"
REASON_BAD_EVENT = "Could not parse event data"
REASON_DISABLED = "Auto-continue is disabled in configuration, allowing stop"
REASON_MAX_CYCLES = (
    "Maximum continuation cycles reached in time window, "
    "forcing stop to prevent infinite loops"
)
REASON_NO_TRANSCRIPT = "No transcript available for evaluation"
REASON_UNREADABLE_TRANSCRIPT = "Could not read transcript file"
REASON_CONTINUE = "Claude evaluator determined continuation is appropriate: {reasoning}"
REASON_STOP = "Claude evaluator determined stopping is appropriate: {reasoning}"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class StopEvent(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")
    stop_hook_active: bool = False
    transcript_path: str = ""
    session_id: str = "unknown"
    cwd: str = ""

    @field_validator("stop_hook_active", "transcript_path", "session_id", "cwd", mode="before")
    @classmethod
    def _null_to_default(cls, v, info):
        if v is None:
            return cls.model_fields[info.field_name].default
        return v


class Decision(BaseModel):
    model_config = ConfigDict(frozen=True)
    action: Literal["approve", "block"] = Field(serialization_alias="decision")
    reason: str

    def to_output(self) -> dict:
        return self.model_dump(by_alias=True)


def approve(reason: str) -> Decision:
    return Decision(action="approve", reason=reason)


def block(reason: str) -> Decision:
    return Decision(action="block", reason=reason)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

CONFIG_RELPATH = Path(".claude") / "auto-continue.json"

VALID_MODELS = {"haiku", "sonnet", "opus"}

# key -> (default, min, max)
_INT_LIMITS: dict[str, tuple[int, int, int]] = {
    "max_continuations": (DEFAULT_MAX_CONTINUATIONS, 1, 20),
    "window_seconds": (DEFAULT_WINDOW_SECONDS, 30, 3600),
    "context_lines": (DEFAULT_CONTEXT_LINES, 1, 100),
    "timeout_seconds": (int(DEFAULT_TIMEOUT), 5, 300),
}


def default_config() -> dict:
    config: dict = {"enabled": True, "model": DEFAULT_MODEL, "_raw": {}}
    for key, (default, _lo, _hi) in _INT_LIMITS.items():
        config[key] = default
    return config


def load_config(cwd: str) -> dict:
    """Load hook settings from ``{cwd}/.claude/auto-continue.json``.

    Keys: enabled, max_continuations, window_seconds, context_lines,
    timeout_seconds, model, plus ``_raw`` (the whole file, for the logger).
    Missing or invalid values keep their defaults; numbers are clamped.
    """
    config = default_config()

    config_path = Path(cwd) / CONFIG_RELPATH
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError, UnicodeDecodeError):
        return config
    if not isinstance(raw, dict):
        return config
    config["_raw"] = raw

    section = raw.get("auto_continue", {})
    if not isinstance(section, dict):
        return config

    if "enabled" in section:
        enabled = section["enabled"]
        if isinstance(enabled, str):
            enabled = enabled.strip().lower() in ("true", "1", "yes")
        config["enabled"] = bool(enabled)

    for key, (_default, lo, hi) in _INT_LIMITS.items():
        if key not in section or isinstance(section[key], bool):
            continue
        try:
            val = float(section[key])
        except (ValueError, TypeError):
            continue
        if math.isnan(val) or math.isinf(val):
            continue
        config[key] = max(lo, min(hi, int(val)))

    if "model" in section:
        model = str(section["model"]).lower()
        if model in VALID_MODELS:
            config["model"] = model

    return config


# ---------------------------------------------------------------------------
# stdin reading
# ---------------------------------------------------------------------------

def read_stdin(timeout_seconds: float = 2.0) -> str:
    """Read stdin with timeout.

    Claude Code does not send EOF after writing hook input, so a plain
    sys.stdin.read() could block forever. select() waits for the first
    chunk; a short follow-up timeout drains the rest.
    """
    chunks: list[bytes] = []
    fd = sys.stdin.fileno()
    remaining = timeout_seconds

    while remaining > 0:
        ready, _, _ = select.select([fd], [], [], remaining)
        if not ready:
            break
        chunk = os.read(fd, 65536)
        if not chunk:
            break
        chunks.append(chunk)
        remaining = 0.1

    return b"".join(chunks).decode("utf-8", errors="replace")


def judge_mode_enabled(environ=None) -> bool:
    value = (environ if environ is not None else os.environ).get(JUDGE_MODE_ENV, "")
    return value.strip().lower() in ("true", "1", "yes")


# ---------------------------------------------------------------------------
# Decision policy
# ---------------------------------------------------------------------------

def evaluate_stop(
    raw_input: str,
    *,
    judge_mode: bool,
    store: Optional[ThrottleStore] = None,
    judge: Optional[Judge] = None,
    now: Optional[int] = None,
    config: Optional[dict] = None,
) -> Decision:
    """Run one stop event through the throttle and the judge.

    *judge_mode* marks this process as the nested judge itself; it wins
    over everything else. *store*, *judge*, *now* and *config* default to
    the temp-file store, the nested Claude judge, the wall clock and the
    project config.
    """
    if judge_mode:
        return approve(REASON_JUDGE_MODE)

    try:
        event = StopEvent.model_validate(json.loads(raw_input))
    except (json.JSONDecodeError, ValidationError):
        return approve(REASON_BAD_EVENT)

    cwd = event.cwd or os.getcwd()
    if config is None:
        config = load_config(cwd)
    if store is None:
        store = FileThrottleStore()
    if now is None:
        now = int(time.time())
    if judge is None:
        def judge(window: list) -> JudgmentVerdict:
            return judge_context(
                window,
                model=config["model"],
                timeout=config["timeout_seconds"],
            )

    events = EventLog(
        str(Path(cwd) / ".claude" / "auto-continue"),
        session_id=event.session_id,
        config=config.get("_raw"),
    )

    def finish(decision: Decision, stage: str) -> Decision:
        events.emit(f"decision.{decision.action}", {"stage": stage, "reason": decision.reason})
        return decision

    if not config["enabled"]:
        return finish(approve(REASON_DISABLED), "disabled")

    key = session_key(event.session_id)
    window_seconds = config["window_seconds"]

    if event.stop_hook_active:
        record = store.load(key)
        if should_force_stop(record, now, window_seconds, config["max_continuations"]):
            clear(store, key)
            events.emit("throttle.force_stop", {
                "continue_count": record.continue_count,
                "seconds_since_last": now - record.last_continue_epoch_seconds,
            }, level="warning")
            return finish(approve(REASON_MAX_CYCLES), "throttle")

    try:
        window = extract_context(event.transcript_path, config["context_lines"])
    except OSError as e:
        events.emit("judge.error", {"error_type": "transcript_unreadable", "message": str(e)},
                    level="warning")
        return finish(approve(REASON_UNREADABLE_TRANSCRIPT), "transcript")
    if window is None:
        return finish(approve(REASON_NO_TRANSCRIPT), "transcript")

    t0 = time.monotonic()
    try:
        verdict = judge(window)
    except JudgeError as e:
        events.emit("judge.error", {
            "error_type": e.stage,
            "message": e.detail,
            "model": config["model"],
        }, level="warning", duration_ms=round((time.monotonic() - t0) * 1000, 2))
        return finish(approve(e.reason), e.stage)

    events.emit("judge.evaluate", {
        "should_continue": verdict.should_continue,
        "reasoning": verdict.reasoning,
        "context_entries": len(window),
        "model": config["model"],
    }, duration_ms=round((time.monotonic() - t0) * 1000, 2))

    if verdict.should_continue:
        register_continuation(store, key, now, window_seconds)
        return finish(block(REASON_CONTINUE.format(reasoning=verdict.reasoning)), "verdict")

    clear(store, key)
    return finish(approve(REASON_STOP.format(reasoning=verdict.reasoning)), "verdict")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> int:
    """Hook entry point. Prints exactly one JSON decision and returns 0."""
    judge_mode = judge_mode_enabled()
    try:
        raw_input = "" if judge_mode else read_stdin(timeout_seconds=2.0)
        decision = evaluate_stop(raw_input, judge_mode=judge_mode)
    except Exception as e:
        # Fail open: never trap the session on unexpected errors
        print(f"[auto_continue] Error (fail-open): {e}", file=sys.stderr)
        decision = approve(f"Auto-continue hook error, allowing stop: {e}")
    print(json.dumps(decision.to_output()))
    return 0


if __name__ == "__main__":
    sys.exit(main())
