"""Tests for parser.py: tool_calls extraction and narration."""

import pytest

from ollamacode.parser import (
    Invocation,
    extract_narration,
    has_invocations,
    parse,
    parse_invocations,
)


def _call(name, **params):
    body = "".join(f"<{k}>{v}</{k}>" for k, v in params.items())
    return (
        f"<tool_call>\n<tool_name>{name}</tool_name>\n"
        f"<parameters>\n{body}\n</parameters>\n</tool_call>\n"
    )


def _block(*calls):
    return "<tool_calls>\n" + "".join(calls) + "</tool_calls>"


# =========================================================================
# Plain text
# =========================================================================


class TestPlainText:
    def test_no_invocations(self):
        assert parse_invocations("Hello there.") == []

    def test_narration_is_trimmed_text(self):
        assert extract_narration("  Hello there.\n\n") == "Hello there."

    def test_parse_plain_text(self):
        narration, invocations = parse("Just an answer.")
        assert narration == "Just an answer."
        assert invocations == []

    def test_has_invocations(self):
        assert has_invocations("x <tool_calls> y")
        assert not has_invocations("x <tool_call> y")


# =========================================================================
# Invocations
# =========================================================================


class TestParseInvocations:
    def test_single_bash(self):
        text = _block(_call("Bash", command="ls -la", description="List files"))
        invocations = parse_invocations(text)
        assert invocations == [
            Invocation("Bash", {"command": "ls -la", "description": "List files"})
        ]

    def test_multiple_in_order(self):
        text = _block(
            _call("Read", file_path="a.txt"),
            _call("Glob", pattern="*.py"),
            _call("Bash", command="pwd"),
        )
        names = [inv.name for inv in parse_invocations(text)]
        assert names == ["Read", "Glob", "Bash"]

    def test_parameter_values_are_trimmed(self):
        text = _block(_call("Read", file_path="\n   notes.md  \n"))
        assert parse_invocations(text)[0].parameters["file_path"] == "notes.md"

    def test_inner_whitespace_preserved(self):
        content = "line one\n    indented\nline three"
        text = _block(_call("Write", file_path="f.txt", content=content))
        assert parse_invocations(text)[0].parameters["content"] == content

    def test_empty_parameter_omitted(self):
        text = _block(_call("Bash", command="ls", description="   "))
        params = parse_invocations(text)[0].parameters
        assert "description" not in params
        assert params["command"] == "ls"

    def test_unknown_parameter_ignored(self):
        text = _block(_call("Bash", command="ls", timeout="5"))
        assert dict(parse_invocations(text)[0].parameters) == {"command": "ls"}

    def test_name_not_trimmed(self):
        text = "<tool_calls><tool_call><tool_name> Bash </tool_name></tool_call></tool_calls>"
        assert parse_invocations(text)[0].name == " Bash "

    def test_empty_name_dropped(self):
        text = _block(_call("", command="ls"), _call("Read", file_path="x"))
        invocations = parse_invocations(text)
        assert [inv.name for inv in invocations] == ["Read"]

    def test_missing_name_dropped(self):
        text = "<tool_calls><tool_call><parameters><command>ls</command></parameters></tool_call></tool_calls>"
        assert parse_invocations(text) == []

    def test_missing_parameters_block(self):
        text = "<tool_calls><tool_call><tool_name>Glob</tool_name></tool_call></tool_calls>"
        invocations = parse_invocations(text)
        assert invocations == [Invocation("Glob", {})]

    def test_unterminated_block(self):
        text = "<tool_calls>" + _call("Bash", command="ls")
        assert parse_invocations(text) == []

    def test_unterminated_tool_call_skipped(self):
        text = "<tool_calls>" + _call("Read", file_path="a") + "<tool_call><tool_name>Bash</tool_name></tool_calls>"
        assert [inv.name for inv in parse_invocations(text)] == ["Read"]

    def test_only_first_block_used(self):
        text = _block(_call("Read", file_path="a")) + "\n" + _block(_call("Bash", command="ls"))
        assert [inv.name for inv in parse_invocations(text)] == ["Read"]

    def test_first_close_tag_wins(self):
        text = _block(_call("Bash", command="echo </command> tail"))
        assert parse_invocations(text)[0].parameters["command"] == "echo"

    def test_no_entity_unescaping(self):
        text = _block(_call("Bash", command="echo a &amp;&amp; b"))
        assert parse_invocations(text)[0].parameters["command"] == "echo a &amp;&amp; b"

    def test_parameters_are_read_only(self):
        inv = parse_invocations(_block(_call("Bash", command="ls")))[0]
        with pytest.raises(TypeError):
            inv.parameters["command"] = "rm"


# =========================================================================
# Narration
# =========================================================================


class TestNarration:
    def test_text_around_block(self):
        text = "I'll list the files.\n\n" + _block(_call("Bash", command="ls")) + "\n\nThen I'll report."
        assert extract_narration(text) == "I'll list the files.\nThen I'll report."

    def test_block_only(self):
        assert extract_narration(_block(_call("Bash", command="ls"))) == ""

    def test_blank_lines_removed_and_lines_trimmed(self):
        text = "  first  \n\n\n   second\n" + _block(_call("Bash", command="ls"))
        assert extract_narration(text) == "first\nsecond"

    def test_unterminated_block_returns_whole_text(self):
        text = "  Working on it <tool_calls> oops  "
        assert extract_narration(text) == "Working on it <tool_calls> oops"

    def test_parse_returns_both(self):
        text = "Checking.\n" + _block(_call("Read", file_path="a.txt"))
        narration, invocations = parse(text)
        assert narration == "Checking."
        assert invocations == [Invocation("Read", {"file_path": "a.txt"})]
