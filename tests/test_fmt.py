"""Tests for the fmt module (Rich rendering helpers)."""

from io import StringIO

from rich.console import Console

from maki import fmt
from maki.llm import Usage
from maki.session import DisplayEntry
from maki.store import ThreadSummary


def _capture(func, *args, **kwargs):
    """Call a fmt function with a captured console and return plain-text output."""
    buf = StringIO()
    old = fmt._console
    fmt._console = Console(file=buf, no_color=True, width=100)
    try:
        func(*args, **kwargs)
    finally:
        fmt._console = old
    return buf.getvalue()


class TestMenu:
    def test_cursor_marks_selected_item(self):
        out = _capture(fmt.menu, "Select a model", ["a/one", "b/two"], 1, "hint text")
        lines = out.splitlines()
        assert lines[0] == "Select a model"
        assert "❯ 2. b/two" in lines[2]
        assert "❯" not in lines[1]
        assert "hint text" in out

    def test_thread_label(self):
        thread = ThreadSummary("id1", None, "2026-01-01T10:00:00+00:00", "bad-date", 4)
        assert fmt.thread_label(thread) == "Untitled thread  (4 messages, bad-date)"


class TestHeader:
    def test_with_title(self):
        out = _capture(fmt.header, "openai/gpt-4.1-mini", "Invoices", "single")
        assert "Invoices | model: openai/gpt-4.1-mini | mode: single" in out

    def test_without_title(self):
        out = _capture(fmt.header, None, None, "multi")
        assert "model: - | mode: multi" in out


class TestUsageLine:
    def test_basic(self):
        line = fmt.usage_line(Usage(prompt_tokens=10, completion_tokens=5, total_tokens=15))
        assert line == "tokens: prompt 10, completion 5, total 15"

    def test_cost_and_estimate(self):
        usage = Usage(prompt_tokens=1, total_tokens=1, cost=0.0123, estimated=True, cached_tokens=2)
        line = fmt.usage_line(usage)
        assert line.startswith("~tokens:")
        assert "cached 2" in line
        assert "cost $0.0123" in line


class TestEntry:
    def test_user(self):
        out = _capture(fmt.entry, DisplayEntry(kind="user", text="sort my files"))
        assert "> sort my files" in out

    def test_assistant_markdown(self):
        out = _capture(fmt.entry, DisplayEntry(kind="assistant", text="**Done** sorting"))
        assert "Done sorting" in out
        assert "**" not in out

    def test_tool_started(self):
        out = _capture(fmt.entry, DisplayEntry(kind="tool", text="", name="read_file", phase="started"))
        assert "▶ read_file" in out

    def test_tool_finished_ok(self):
        entry = DisplayEntry(kind="tool", text="Read a.txt", name="read_file", phase="finished", ok=True)
        out = _capture(fmt.entry, entry)
        assert "✓ read_file" in out
        assert "Read a.txt" in out

    def test_tool_failed(self):
        entry = DisplayEntry(
            kind="tool", text="Error: file does not exist", name="read_file", phase="finished", ok=False
        )
        out = _capture(fmt.entry, entry)
        assert "✗ read_file" in out

    def test_error_prefix_not_doubled(self):
        out = _capture(fmt.entry, DisplayEntry(kind="error", text="Error: boom"))
        assert out.strip() == "Error: boom"

    def test_usage(self):
        entry = DisplayEntry(kind="usage", text="", usage=Usage(total_tokens=3))
        assert "total 3" in _capture(fmt.entry, entry)

    def test_info(self):
        assert "hello" in _capture(fmt.entry, DisplayEntry(kind="info", text="hello"))


class TestDiagnostics:
    def test_warning(self):
        assert "Warning: careful" in _capture(fmt.warning, "careful")

    def test_error(self):
        assert "Error: bad" in _capture(fmt.error, "bad")
