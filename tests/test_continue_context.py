"""Tests for continue_context.py -- transcript tail window."""

import json
import sys
from pathlib import Path

import pytest

SCRIPTS_DIR = Path(__file__).parent.parent / "hooks" / "scripts"
sys.path.insert(0, str(SCRIPTS_DIR))

from conftest import assistant_msg, user_msg, write_transcript
from continue_context import DEFAULT_CONTEXT_LINES, extract_context, serialize_context


class TestExtractContextAbsent:
    def test_empty_path(self):
        assert extract_context("") is None

    def test_missing_file(self, tmp_path):
        assert extract_context(str(tmp_path / "nope.jsonl")) is None

    def test_directory_is_not_a_transcript(self, tmp_path):
        assert extract_context(str(tmp_path)) is None


class TestExtractContextWindow:
    def test_default_window_is_ten(self):
        assert DEFAULT_CONTEXT_LINES == 10

    def test_keeps_last_ten_in_order(self, tmp_path):
        path = write_transcript(
            tmp_path / "t.jsonl",
            [user_msg(f"message {i}") for i in range(25)],
        )
        window = extract_context(path)
        assert len(window) == 10
        texts = [e["message"]["content"] for e in window]
        assert texts == [f"message {i}" for i in range(15, 25)]

    def test_short_transcript_kept_whole(self, tmp_path):
        path = write_transcript(tmp_path / "t.jsonl", [user_msg("a"), assistant_msg("b")])
        window = extract_context(path)
        assert len(window) == 2
        assert window[1]["type"] == "assistant"

    def test_custom_window(self, tmp_path):
        path = write_transcript(tmp_path / "t.jsonl", [user_msg(str(i)) for i in range(5)])
        window = extract_context(path, max_lines=2)
        assert [e["message"]["content"] for e in window] == ["3", "4"]

    def test_undecodable_lines_kept_verbatim(self, tmp_path):
        path = write_transcript(tmp_path / "t.jsonl", [
            user_msg("hi"),
            "this is {not json",
            assistant_msg("bye"),
        ])
        window = extract_context(path)
        assert window[1] == "this is {not json"
        assert window[0]["type"] == "user"
        assert window[2]["type"] == "assistant"

    def test_trailing_blank_lines_do_not_consume_window(self, tmp_path):
        path = tmp_path / "t.jsonl"
        lines = [json.dumps(user_msg(str(i))) for i in range(12)]
        path.write_text("\n".join(lines) + "\n\n\n\n", encoding="utf-8")
        window = extract_context(str(path))
        assert len(window) == 10
        assert window[-1]["message"]["content"] == "11"

    def test_leading_blank_lines_ignored(self, tmp_path):
        path = tmp_path / "t.jsonl"
        path.write_text("\n\n" + json.dumps(user_msg("only")) + "\n", encoding="utf-8")
        assert extract_context(str(path)) == [user_msg("only")]

    def test_interior_blank_line_kept_as_raw(self, tmp_path):
        path = tmp_path / "t.jsonl"
        path.write_text(
            json.dumps(user_msg("a")) + "\n\n" + json.dumps(user_msg("b")) + "\n",
            encoding="utf-8",
        )
        window = extract_context(str(path))
        assert window == [user_msg("a"), "", user_msg("b")]

    def test_crlf_line_endings(self, tmp_path):
        path = tmp_path / "t.jsonl"
        path.write_bytes(("plain line\r\n" + json.dumps(user_msg("x")) + "\r\n").encode("utf-8"))
        window = extract_context(str(path))
        assert window == ["plain line", user_msg("x")]

    @pytest.mark.parametrize("content", ["", "\n\n", "   \n\t\n"])
    def test_contentless_file_gives_single_empty_entry(self, tmp_path, content):
        path = tmp_path / "t.jsonl"
        path.write_text(content, encoding="utf-8")
        assert extract_context(str(path)) == [""]

    def test_non_object_json_lines_decoded(self, tmp_path):
        path = write_transcript(tmp_path / "t.jsonl", ["42", '"text"', "[1, 2]"])
        assert extract_context(str(path)) == [42, "text", [1, 2]]

    def test_invalid_utf8_replaced(self, tmp_path):
        path = tmp_path / "t.jsonl"
        lines = [json.dumps(user_msg(str(i))).encode("utf-8") for i in range(30)]
        path.write_bytes(b"\xff old garbage\n" + b"\n".join(lines) + b"\n")
        window = extract_context(str(path))
        assert len(window) == 10
        assert window[-1] == user_msg("29")

    def test_invalid_utf8_inside_window_kept_as_raw(self, tmp_path):
        path = tmp_path / "t.jsonl"
        path.write_bytes(b"\xff\xfe bad bytes\n")
        assert extract_context(str(path)) == ["\ufffd\ufffd bad bytes"]

    def test_read_error_propagates(self, tmp_path, monkeypatch):
        path = write_transcript(tmp_path / "t.jsonl", [user_msg("x")])

        def denied(*args, **kwargs):
            raise PermissionError(13, "Permission denied", path)

        monkeypatch.setattr("continue_context.open", denied, raising=False)
        with pytest.raises(PermissionError):
            extract_context(path)


class TestSerializeContext:
    def test_json_array_preserves_order(self):
        window = [user_msg("first"), "raw", assistant_msg("last")]
        assert json.loads(serialize_context(window)) == window

    def test_non_ascii_not_escaped(self):
        assert "café" in serialize_context(["café"])

    def test_empty(self):
        assert serialize_context([]) == "[]"
