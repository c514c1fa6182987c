#!/usr/bin/env python3
"""LLM-as-judge for stop-hook continuation.

Asks a nested ``claude --print`` run whether the assistant's latest
transcript shows autonomous work still pending. The nested run gets a
fixed classifier identity, a fixed rubric, a JSON schema for its answer and
no tools. It is started with ``CLAUDE_HOOK_JUDGE_MODE=true`` so its own Stop
hook approves immediately instead of judging the judge.

Every failure raises JudgeError naming the stage that failed; the caller
turns that into an "allow stop" decision.
"""

from __future__ import annotations

import json
import os
import subprocess
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError, field_validator

from continue_context import serialize_context

JUDGE_MODE_ENV = "CLAUDE_HOOK_JUDGE_MODE"
DEFAULT_COMMAND = "claude"
DEFAULT_MODEL = "haiku"
DEFAULT_TIMEOUT = 60.0
NO_REASONING = "No reasoning provided"

VERDICT_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "should_continue": {"type": "boolean"},
        "reasoning": {"type": "string"},
    },
    "required": ["should_continue", "reasoning"],
}

JUDGE_SYSTEM = (
    "You are a conversation state classifier. Your only job is to analyze "
    "conversation transcripts and determine if the assistant has more "
    "autonomous work to do. You output structured JSON. You do not write "
    "code or use tools."
)

_RUBRIC = """\
CONTINUE (should_continue: true) ONLY IF the assistant explicitly states what it will do next:
- Phrases indicating intent to continue (e.g., 'Next I need to...', 'Now I'll...', 'Moving on to...')
- Incomplete todo list with remaining items marked pending
- Stated follow-up tasks not yet performed

STOP (should_continue: false) in ALL other cases:

1. TASK COMPLETION - The assistant indicates work is finished:
   - Completion statements (done, complete, finished, ready, all set)
   - Summary of accomplished work with no stated next steps
   - Confirming something is working/verified/installed

2. QUESTIONS - The assistant needs user input:
   - Asking for approval, decisions, clarification, or confirmation
   - Offering optional actions (e.g., 'Want me to...?', 'Should I also...?')
   - Note: Mid-task continuation questions (e.g., 'Should I continue?' when work is ongoing) = CONTINUE

3. BLOCKERS - The assistant cannot proceed:
   - Unresolved errors or missing information
   - Uncertainty about requirements

KEY: If the assistant is WAITING for the user (whether after completing work OR asking a question), that means STOP. Waiting is not more autonomous work to do.

Default to STOP when uncertain."""


class JudgmentVerdict(BaseModel):
    model_config = ConfigDict(extra="ignore")
    should_continue: StrictBool
    reasoning: Optional[str] = Field(default=None, validate_default=True)

    @field_validator("reasoning", mode="after")
    @classmethod
    def _default_reasoning(cls, v: Optional[str]) -> str:
        return v if v else NO_REASONING


class JudgeError(Exception):
    """Judge failure tagged with the stage that failed.

    Stages: invocation, timeout, exit_status, parse, missing_output, schema.
    """

    _REASONS = {
        "invocation": "Claude evaluation command failed: {detail}",
        "timeout": "Claude evaluation command failed: {detail}, allowing default stop behavior",
        "exit_status": "Claude evaluation command failed, allowing default stop behavior",
        "parse": "Could not parse Claude evaluation result, allowing default stop behavior",
        "missing_output": "No structured output in Claude evaluation result, allowing default stop behavior",
        "schema": "Claude evaluation result did not match the verdict schema, allowing default stop behavior",
    }

    def __init__(self, stage: str, detail: str = ""):
        super().__init__(f"{stage}: {detail}" if detail else stage)
        self.stage = stage
        self.detail = detail

    @property
    def reason(self) -> str:
        template = self._REASONS.get(self.stage, "Claude evaluation failed ({detail})")
        return template.format(detail=self.detail or self.stage)


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------

def build_evaluation_prompt(context: str) -> str:
    return (
        "Analyze this conversation and determine: Does the assistant have "
        "more autonomous work to do RIGHT NOW?\n\n"
        f"Conversation:\n{context}\n\n"
        f"{_RUBRIC}"
    )


def build_command(model: str = DEFAULT_MODEL, command: str = DEFAULT_COMMAND) -> list[str]:
    return [
        command,
        "--print",
        "--model", model,
        "--output-format", "json",
        "--json-schema", json.dumps(VERDICT_SCHEMA, separators=(",", ":")),
        "--system-prompt", JUDGE_SYSTEM,
        "--disallowedTools", "*",
    ]


def call_judge(
    prompt: str,
    *,
    model: str = DEFAULT_MODEL,
    timeout: float = DEFAULT_TIMEOUT,
    command: str = DEFAULT_COMMAND,
) -> str:
    """Run the nested judge and return its stdout."""
    env = dict(os.environ)
    env[JUDGE_MODE_ENV] = "true"
    try:
        result = subprocess.run(
            build_command(model, command),
            input=prompt,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            env=env,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise JudgeError("timeout", f"timed out after {timeout:g}s")
    except (OSError, ValueError) as e:
        raise JudgeError("invocation", str(e))

    if result.returncode != 0:
        raise JudgeError("exit_status", f"exit code {result.returncode}")
    return result.stdout


# ---------------------------------------------------------------------------
# Response decoding
# ---------------------------------------------------------------------------

def decode_response(raw: str) -> JudgmentVerdict:
    """Decode the judge's stdout into a verdict.

    Accepted shapes, tried in order:
      1. array of step records -- the ``type == "result"`` step carries
         ``structured_output``;
      2. object wrapping the verdict in ``structured_output``;
      3. bare verdict object.
    """
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise JudgeError("parse", str(e))

    if isinstance(parsed, list):
        output = _structured_output_from_steps(parsed)
    elif isinstance(parsed, dict):
        output = parsed.get("structured_output") or parsed
    else:
        raise JudgeError("parse", f"unexpected top-level {type(parsed).__name__}")

    if not isinstance(output, dict) or not output:
        raise JudgeError("missing_output")

    try:
        return JudgmentVerdict.model_validate(output)
    except ValidationError as e:
        raise JudgeError("schema", f"{e.error_count()} validation error(s)")


def _structured_output_from_steps(steps: list) -> Any:
    for step in steps:
        if isinstance(step, dict) and step.get("type") == "result":
            return step.get("structured_output")
    return None


def judge_context(
    window: list,
    *,
    model: str = DEFAULT_MODEL,
    timeout: float = DEFAULT_TIMEOUT,
    command: str = DEFAULT_COMMAND,
) -> JudgmentVerdict:
    """Ask the judge about a context window. Raises JudgeError on any failure."""
    prompt = build_evaluation_prompt(serialize_context(window))
    raw = call_judge(prompt, model=model, timeout=timeout, command=command)
    return decode_response(raw)
