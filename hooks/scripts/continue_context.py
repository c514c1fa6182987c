#!/usr/bin/env python3
"""Recent-transcript window for the continuation judge.

Only the tail of the transcript matters for "what is the assistant about to
do next", so the window is a fixed number of JSONL lines, oldest first.
Lines that do not decode are kept verbatim instead of being dropped.
"""

from __future__ import annotations

import collections
import json
import os
from typing import Any, Optional

DEFAULT_CONTEXT_LINES = 10


def extract_context(transcript_path: str, max_lines: int = DEFAULT_CONTEXT_LINES) -> Optional[list[Any]]:
    """Return the last *max_lines* transcript entries, or None if there is no transcript.

    Leading and trailing blank lines are ignored; blank lines between
    entries are kept as empty strings. A transcript with no content at all
    yields a single empty entry, so the judge still sees a window. Invalid
    UTF-8 bytes are replaced rather than failing the read. OSError
    propagates so the caller can tell "missing" from "unreadable".
    """
    if not transcript_path or not os.path.isfile(transcript_path):
        return None

    maxlen = max(1, max_lines)
    window: collections.deque[str] = collections.deque(maxlen=maxlen)
    # Blank lines are only committed once a later non-blank line shows
    # they are not trailing.
    pending_blank: collections.deque[str] = collections.deque(maxlen=maxlen)
    seen_content = False

    with open(transcript_path, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            line = line.rstrip("\r\n")
            if not line.strip():
                if seen_content:
                    pending_blank.append(line)
                continue
            seen_content = True
            window.extend(pending_blank)
            pending_blank.clear()
            window.append(line)

    if not seen_content:
        return [""]
    return [_decode_line(line) for line in window]


def _decode_line(line: str) -> Any:
    try:
        return json.loads(line)
    except json.JSONDecodeError:
        return line


def serialize_context(window: list[Any]) -> str:
    """Serialize the window as a JSON array for the judge prompt."""
    return json.dumps(window, ensure_ascii=False)
