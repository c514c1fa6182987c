"""Shared fixtures for auto-continue hook tests."""

import json
import sys
from pathlib import Path

import pytest

# Add scripts directory to path so we can import modules directly
SCRIPTS_DIR = str(Path(__file__).parent.parent / "hooks" / "scripts")
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)


# ---------------------------------------------------------------------------
# Transcript factories
# ---------------------------------------------------------------------------

def user_msg(text):
    return {"type": "user", "message": {"role": "user", "content": text}}


def assistant_msg(text):
    return {
        "type": "assistant",
        "message": {
            "role": "assistant",
            "content": [{"type": "text", "text": text}],
        },
    }


def write_transcript(path, entries):
    """Write JSONL transcript. Strings are written verbatim, dicts as JSON."""
    with open(path, "w", encoding="utf-8") as f:
        for entry in entries:
            line = entry if isinstance(entry, str) else json.dumps(entry)
            f.write(line + "\n")
    return str(path)


# ---------------------------------------------------------------------------
# Judge output factories
# ---------------------------------------------------------------------------

def step_array_output(should_continue, reasoning="because"):
    """``claude --print --output-format json`` step-array shape."""
    return json.dumps([
        {"type": "system", "subtype": "init"},
        {"type": "assistant", "message": {"content": []}},
        {
            "type": "result",
            "subtype": "success",
            "is_error": False,
            "structured_output": {
                "should_continue": should_continue,
                "reasoning": reasoning,
            },
        },
    ])


def hook_input(transcript_path="", session_id="sess-1", stop_hook_active=False, cwd=""):
    data = {
        "session_id": session_id,
        "transcript_path": transcript_path,
        "stop_hook_active": stop_hook_active,
        "hook_event_name": "Stop",
    }
    if cwd:
        data["cwd"] = cwd
    return json.dumps(data)


# ---------------------------------------------------------------------------
# Filesystem fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def project(tmp_path):
    """Project root with an empty .claude directory (no config file)."""
    proj = tmp_path / "project"
    (proj / ".claude").mkdir(parents=True)
    return proj


@pytest.fixture
def throttle_dir(tmp_path):
    d = tmp_path / "throttle"
    d.mkdir()
    return d


@pytest.fixture
def continuing_transcript(tmp_path):
    return write_transcript(tmp_path / "transcript.jsonl", [
        user_msg("Please refactor the config loader"),
        assistant_msg("I've split the loader into two functions."),
        assistant_msg("Next I'll update the config file to use the new keys."),
    ])
