"""Tests for the fmt module (ANSI-formatted output helpers)."""

from io import StringIO
from unittest.mock import patch

from rich.console import Console

from ollamacode import fmt


def _capture(func, *args, **kwargs):
    """Call a fmt function with a captured console and return plain-text output."""
    buf = StringIO()
    old = fmt._console
    fmt._console = Console(file=buf, no_color=True, width=80)
    try:
        func(*args, **kwargs)
    finally:
        fmt._console = old
    return buf.getvalue()


class TestIterationHeader:
    def test_contains_iteration_info(self):
        out = _capture(fmt.iteration_header, 3, 10, 4200)
        assert "Iteration 3/10" in out
        assert "4200 tokens" in out


class TestLlmTiming:
    def test_basic(self):
        assert "LLM responded in 1.4s" in _capture(fmt.llm_timing, 1.4)


class TestCompletion:
    def test_ok(self):
        out = _capture(fmt.completion, 5, "ok")
        assert "Agent finished" in out
        assert "5 iterations" in out
        assert "exit=" not in out

    def test_max_iterations(self):
        out = _capture(fmt.completion, 10, "max_iterations")
        assert "10 iterations" in out
        assert "exit=max_iterations" in out


class TestDuration:
    def test_whole_seconds(self):
        assert "Duration: 12s" in _capture(fmt.duration, 12.3)


class TestToolOutput:
    def test_batch(self):
        assert "Executing 3 tool(s)" in _capture(fmt.tool_batch, 3)

    def test_call(self):
        out = _capture(fmt.tool_call, 2, 3, "Bash")
        assert "▶" in out
        assert "Tool 2/3: Bash" in out

    def test_detail_multiline(self):
        out = _capture(fmt.tool_detail, "Command", "echo a\necho b")
        assert "Command: echo a" in out
        assert "echo b" in out

    def test_result(self):
        out = _capture(fmt.tool_result, "Read", 0.1, "Hello world")
        assert "✓ Read" in out
        assert "0.1s" in out
        assert "Hello world" in out

    def test_result_empty_preview(self):
        assert "Write" in _capture(fmt.tool_result, "Write", 0.0, "")

    def test_error(self):
        out = _capture(fmt.tool_error, "Bash", "Command not allowed in safe mode")
        assert "✗ Bash" in out
        assert "Command not allowed in safe mode" in out


class TestMessages:
    def test_warning(self):
        out = _capture(fmt.warning, "Safe mode disabled")
        assert "⚠ Warning:" in out
        assert "Safe mode disabled" in out

    def test_error(self):
        out = _capture(fmt.error, "LLM call failed: connection refused")
        assert "Error:" in out
        assert "LLM call failed: connection refused" in out

    def test_success(self):
        assert "✓ Switched to model: phi3" in _capture(fmt.success, "Switched to model: phi3")


class TestTables:
    def test_settings_table_aligned(self):
        out = _capture(fmt.settings_table, [("Model", "llama3"), ("Auto Approve", "false")])
        lines = [line for line in out.splitlines() if line.strip()]
        assert lines[0] == "Current Configuration:"
        assert lines[1].index("llama3") == lines[2].index("false")

    def test_model_list(self):
        out = _capture(fmt.model_list, ["llama3:latest", "mistral:7b"])
        assert "Available Models:" in out
        assert "mistral:7b" in out

    def test_model_list_empty(self):
        out = _capture(fmt.model_list, [])
        assert "No models found" in out


def _confirm(name, description, answer):
    """Run fmt.confirm against a captured console with a canned keyboard answer."""
    buf = StringIO()
    old = fmt._console
    fmt._console = Console(file=buf, no_color=True, width=120)
    try:
        with patch("builtins.input", return_value=answer):
            result = fmt.confirm(name, description)
    finally:
        fmt._console = old
    return buf.getvalue(), result


class TestConfirm:
    def test_yes(self):
        out, result = _confirm("Bash", "List files", answer="y")
        assert result is True
        assert "Execute Bash?" in out
        assert "List files" in out

    def test_no(self):
        _, result = _confirm("Bash", "List files", answer="n")
        assert result is False

    def test_default_is_no(self):
        _, result = _confirm("Write", "File exists. Overwrite?", answer="")
        assert result is False

    def test_closed_stdin_is_no(self):
        buf = StringIO()
        old = fmt._console
        fmt._console = Console(file=buf, no_color=True, width=120)
        try:
            with patch("builtins.input", side_effect=EOFError):
                assert fmt.confirm("Bash", "List files") is False
        finally:
            fmt._console = old


class TestMarkupEscaping:
    """Dynamic text containing Rich markup brackets should appear literally."""

    def test_brackets_in_detail(self):
        out = _capture(fmt.tool_detail, "Command", "echo [bold]x[/]")
        assert "[bold]x[/]" in out

    def test_brackets_in_error(self):
        out = _capture(fmt.error, "unexpected [tag] in response")
        assert "[tag]" in out

    def test_brackets_in_confirm_description(self):
        out, _ = _confirm("Bash", "print [red]x[/red]", answer="n")
        assert "[red]x[/red]" in out


class TestInit:
    def test_no_color(self):
        old = fmt._console
        fmt.init(no_color=True)
        assert fmt._console._color_system is None
        fmt._console = old

    def test_color_overrides_no_color_env(self, monkeypatch):
        monkeypatch.setenv("NO_COLOR", "1")
        old = fmt._console
        fmt.init(color=True)
        assert fmt._console.no_color is False
        fmt._console = old
