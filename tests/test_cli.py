"""Tests for maki.cli: argument parsing, logging setup and input dispatch."""

import asyncio
import logging
import sys
import types
from io import StringIO

import pytest
from rich.console import Console

from maki import cli, fmt
from maki.config import _UNSET, API_KEY_ENV
from maki.session import SessionState, Screen
from maki.store import ThreadSummary


class FakeController:
    """Records the events the input handlers send."""

    def __init__(self, processing=False, fail=False):
        self.events = []
        self.fail = fail
        self.state = types.SimpleNamespace(is_processing=processing)

    async def quit(self):
        self.events.append("quit")

    def move(self, delta):
        self.events.append(("move", delta))

    async def confirm(self):
        self.events.append("confirm")

    async def select(self, index):
        self.events.append(("select", index))

    async def submit(self, text):
        await asyncio.sleep(0)
        if self.fail:
            raise RuntimeError("model exploded")
        self.events.append(("submit", text))


@pytest.fixture
def captured():
    buf = StringIO()
    old = fmt._console
    fmt._console = Console(file=buf, no_color=True, width=100)
    yield buf
    fmt._console = old


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for h in root.handlers:
        h.close()
    root.handlers[:] = handlers
    root.setLevel(level)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class TestParser:
    def test_unset_by_default(self):
        args = cli.build_parser().parse_args([])
        assert args.model is _UNSET
        assert args.max_iterations is _UNSET
        assert args.color is _UNSET
        assert args.verbose is False

    def test_values(self):
        args = cli.build_parser().parse_args(
            ["--model", "a/b", "--max-iterations", "4", "--timeout", "2.5", "-v"]
        )
        assert args.model == "a/b"
        assert args.max_iterations == 4
        assert args.timeout == 2.5
        assert args.verbose is True

    def test_color_flags_exclusive(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["--color", "--no-color"])


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def test_setup_logging_writes_to_file(tmp_path, restore_logging):
    log_file = tmp_path / "logs" / "maki.log"
    cli.setup_logging(str(log_file), verbose=False)
    logging.getLogger("maki.test").info("hello log")
    logging.getLogger("maki.test").debug("hidden detail")
    logging.getLogger("litellm").info("noisy")
    for h in logging.getLogger().handlers:
        h.flush()
    text = log_file.read_text()
    assert "INFO maki.test: hello log" in text
    assert "hidden detail" not in text
    assert "noisy" not in text


def test_setup_logging_verbose(tmp_path, restore_logging):
    log_file = tmp_path / "maki.log"
    cli.setup_logging(str(log_file), verbose=True)
    logging.getLogger("maki.test").debug("now visible")
    for h in logging.getLogger().handlers:
        h.flush()
    assert "now visible" in log_file.read_text()


# ---------------------------------------------------------------------------
# Menu input
# ---------------------------------------------------------------------------


class TestMenuInput:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "line, expected",
        [
            ("", "confirm"),
            ("q", "quit"),
            ("EXIT", "quit"),
            ("3", ("select", 2)),
            (cli._UP, ("move", -1)),
            (cli._DOWN, ("move", 1)),
        ],
    )
    async def test_dispatch(self, line, expected):
        controller = FakeController()
        await cli.handle_menu_input(controller, line)
        assert controller.events == [expected]

    @pytest.mark.asyncio
    async def test_unrecognized(self, captured):
        controller = FakeController()
        await cli.handle_menu_input(controller, "banana")
        assert controller.events == []
        assert "unrecognized choice 'banana'" in captured.getvalue()


def test_render_model_menu(captured):
    state = SessionState(models=["a/one", "b/two"])
    cli.render_menu(types.SimpleNamespace(state=state))
    out = captured.getvalue()
    assert "Select a model" in out
    assert "❯ 1. a/one" in out


def test_render_thread_list(captured):
    thread = ThreadSummary("t1", "Budget", "2026-01-01T00:00:00+00:00", "x", 2)
    state = SessionState(models=["a/one"], screen=Screen.THREAD_LIST, threads=[thread])
    cli.render_menu(types.SimpleNamespace(state=state))
    out = captured.getvalue()
    assert "Start a new thread" in out
    assert "Budget  (2 messages, x)" in out


# ---------------------------------------------------------------------------
# Chat input
# ---------------------------------------------------------------------------


class TestChatInput:
    @pytest.mark.asyncio
    async def test_request_runs_in_background(self):
        controller = FakeController()
        running = set()
        await cli.handle_chat_input(controller, "sort my files", running)
        assert len(running) == 1
        assert controller.events == []
        await asyncio.gather(*list(running))
        assert controller.events == [("submit", "sort my files")]
        assert running == set()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("line", ["/help", "quit"])
    async def test_commands_run_inline(self, line):
        controller = FakeController()
        running = set()
        await cli.handle_chat_input(controller, line, running)
        assert running == set()
        assert controller.events == [("submit", line)]

    @pytest.mark.asyncio
    async def test_busy_submission_runs_inline(self):
        controller = FakeController(processing=True)
        running = set()
        await cli.handle_chat_input(controller, "another", running)
        assert running == set()
        assert controller.events == [("submit", "another")]

    @pytest.mark.asyncio
    async def test_blank_ignored(self):
        controller = FakeController()
        running = set()
        await cli.handle_chat_input(controller, "   ", running)
        assert controller.events == []
        assert running == set()

    @pytest.mark.asyncio
    async def test_clear_clears_console(self, monkeypatch):
        cleared = []
        monkeypatch.setattr(fmt, "console", lambda: types.SimpleNamespace(clear=lambda: cleared.append(1)))
        await cli.handle_chat_input(FakeController(), "/clear", set())
        assert cleared == [1]

    @pytest.mark.asyncio
    async def test_background_failure_is_reported(self, captured):
        controller = FakeController(fail=True)
        running = set()
        await cli.handle_chat_input(controller, "boom", running)
        await asyncio.gather(*list(running), return_exceptions=True)
        assert "unexpected failure: model exploded" in captured.getvalue()


# ---------------------------------------------------------------------------
# main
# ---------------------------------------------------------------------------


class TestMain:
    def test_version(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["maki", "--version"])
        with pytest.raises(SystemExit) as exc_info:
            cli.main()
        assert exc_info.value.code == 0
        assert capsys.readouterr().out.strip()

    def test_init_config(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["maki", "--init-config"])
        with pytest.raises(SystemExit):
            cli.main()
        assert "# maki configuration file" in capsys.readouterr().out

    def test_missing_api_key_exits(self, monkeypatch, tmp_path, captured):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
        monkeypatch.delenv(API_KEY_ENV, raising=False)
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr(sys, "argv", ["maki"])
        monkeypatch.setattr(fmt, "init", lambda **kwargs: None)
        with pytest.raises(SystemExit) as exc_info:
            cli.main()
        assert exc_info.value.code == 1
        assert API_KEY_ENV in captured.getvalue()

    def test_bad_config_exits(self, monkeypatch, tmp_path, captured):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
        monkeypatch.chdir(tmp_path)
        (tmp_path / "maki.toml").write_text("max_iterations = -1\n")
        monkeypatch.setattr(sys, "argv", ["maki"])
        with pytest.raises(SystemExit) as exc_info:
            cli.main()
        assert exc_info.value.code == 1
        assert "at least 1" in captured.getvalue()
