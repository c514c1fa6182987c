#!/usr/bin/env python3
"""Per-session continuation throttle for the auto-continue Stop hook.

Bounds how often the hook may force a session to keep working: at most
``DEFAULT_MAX_CONTINUATIONS`` continuations inside a rolling window anchored
at the last continuation. The limit holds regardless of what the evaluator
answers.

State is one small file per session under the platform temp directory,
containing ``"<continue_count>:<epoch_seconds>"``. Reads treat anything
unexpected as "no record"; writes and deletes are best-effort.
"""

from __future__ import annotations

import os
import re
import sys
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import ContextManager, Iterator, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_WINDOW_SECONDS = 300
DEFAULT_MAX_CONTINUATIONS = 3

THROTTLE_FILE_PREFIX = ".claude-continue-throttle-"

_UNSAFE_KEY_RE = re.compile(r"[^A-Za-z0-9._-]")


class ThrottleRecord(BaseModel):
    model_config = ConfigDict(frozen=True)
    continue_count: int = Field(ge=0)
    last_continue_epoch_seconds: int


def session_key(session_id: str) -> str:
    """Map a session id to a filesystem-safe key (path separators included)."""
    return _UNSAFE_KEY_RE.sub("_", str(session_id)) or "unknown"


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class ThrottleStore(Protocol):
    def load(self, key: str) -> Optional[ThrottleRecord]: ...

    def save(self, key: str, record: ThrottleRecord) -> None: ...

    def delete(self, key: str) -> None: ...

    def locked(self, key: str) -> ContextManager: ...


class InMemoryThrottleStore:
    """Dict-backed store. One process only."""

    def __init__(self, records: Optional[dict[str, ThrottleRecord]] = None):
        self.records: dict[str, ThrottleRecord] = dict(records or {})

    def load(self, key: str) -> Optional[ThrottleRecord]:
        return self.records.get(key)

    def save(self, key: str, record: ThrottleRecord) -> None:
        self.records[key] = record

    def delete(self, key: str) -> None:
        self.records.pop(key, None)

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        yield


class FileThrottleStore:
    """One ``<prefix><key>`` file per session in *directory*."""

    def __init__(self, directory: Optional[str] = None):
        self.directory = Path(directory or tempfile.gettempdir())

    def path_for(self, key: str) -> Path:
        return self.directory / f"{THROTTLE_FILE_PREFIX}{key}"

    def load(self, key: str) -> Optional[ThrottleRecord]:
        try:
            raw = self.path_for(key).read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError):
            return None
        return parse_record(raw)

    def save(self, key: str, record: ThrottleRecord) -> None:
        target = self.path_for(key)
        content = format_record(record)
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.directory), prefix=".cct-", suffix=".tmp",
            )
        except OSError:
            return  # Best-effort: a lost write only loosens the throttle
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_path, target)
        except OSError:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass

    def delete(self, key: str) -> None:
        try:
            self.path_for(key).unlink(missing_ok=True)
        except OSError:
            pass

    def locked(self, key: str) -> "_SessionLock":
        path = self.path_for(key)
        return _SessionLock(path.with_name(path.name + ".lockdir"))


class _SessionLock:
    """mkdir-based lock around a session's read-modify-write.

    Never fails the caller: on timeout or permission problems it proceeds
    unlocked, which degrades to last-writer-wins.
    """

    _LOCK_TIMEOUT = 2.0
    _STALE_AGE = 30.0
    _POLL_INTERVAL = 0.05

    def __init__(self, lock_dir: Path):
        self.lock_dir = lock_dir
        self.acquired = False

    def __enter__(self):
        deadline = time.monotonic() + self._LOCK_TIMEOUT
        while True:
            try:
                os.mkdir(self.lock_dir)
                self.acquired = True
                return self
            except FileExistsError:
                try:
                    mtime = self.lock_dir.stat().st_mtime
                    if (time.time() - mtime) > self._STALE_AGE and self._break_stale():
                        continue
                except OSError:
                    pass  # Lock vanished between mkdir and stat -- retry

                if time.monotonic() >= deadline:
                    print(
                        "[auto_continue] Throttle lock timeout; proceeding without lock",
                        file=sys.stderr,
                    )
                    return self
                time.sleep(self._POLL_INTERVAL)
            except OSError:
                return self

    def _break_stale(self) -> bool:
        # Non-empty or foreign-owned lock dirs cannot be removed; wait them out
        try:
            os.rmdir(self.lock_dir)
        except OSError:
            return False
        print("[auto_continue] Broke stale throttle lock", file=sys.stderr)
        return True

    def __exit__(self, *args):
        if self.acquired:
            try:
                os.rmdir(self.lock_dir)
            except OSError:
                pass


# ---------------------------------------------------------------------------
# Record encoding
# ---------------------------------------------------------------------------

def format_record(record: ThrottleRecord) -> str:
    return f"{record.continue_count}:{record.last_continue_epoch_seconds}"


def parse_record(raw: str) -> Optional[ThrottleRecord]:
    """Parse ``"<count>:<epoch>"``. Returns None for anything malformed."""
    parts = raw.split(":")
    if len(parts) != 2:
        return None
    try:
        count = int(parts[0])
        last = int(parts[1])
    except ValueError:
        return None
    if count < 0:
        return None
    return ThrottleRecord(continue_count=count, last_continue_epoch_seconds=last)


# ---------------------------------------------------------------------------
# Throttle policy
# ---------------------------------------------------------------------------

def should_force_stop(
    record: Optional[ThrottleRecord],
    now: int,
    window: int = DEFAULT_WINDOW_SECONDS,
    limit: int = DEFAULT_MAX_CONTINUATIONS,
) -> bool:
    """True when the session already used up its continuations in the window."""
    if record is None:
        return False
    return (now - record.last_continue_epoch_seconds) < window and record.continue_count >= limit


def reset_if_window_expired(
    record: Optional[ThrottleRecord],
    now: int,
    window: int = DEFAULT_WINDOW_SECONDS,
) -> Optional[ThrottleRecord]:
    """Zero the count of a record whose last continuation is older than *window*."""
    if record is None:
        return None
    if now - record.last_continue_epoch_seconds > window:
        return record.model_copy(update={"continue_count": 0})
    return record


def record_continuation(
    store: ThrottleStore, key: str, previous_count: int, now: int,
) -> ThrottleRecord:
    record = ThrottleRecord(
        continue_count=previous_count + 1, last_continue_epoch_seconds=now,
    )
    store.save(key, record)
    return record


def register_continuation(
    store: ThrottleStore,
    key: str,
    now: int,
    window: int = DEFAULT_WINDOW_SECONDS,
) -> ThrottleRecord:
    """Increment the session's counter, honouring window expiry.

    The load and save happen under the store's lock so two hook processes
    for the same session do not both write ``1`` over an existing ``1``.
    """
    with store.locked(key):
        current = reset_if_window_expired(store.load(key), now, window)
        previous = current.continue_count if current is not None else 0
        return record_continuation(store, key, previous, now)


def clear(store: ThrottleStore, key: str) -> None:
    store.delete(key)
