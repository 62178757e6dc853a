"""Command-line entry point and the interactive terminal loop."""

import argparse
import asyncio
import logging
import sys
from importlib import metadata
from pathlib import Path

from . import fmt
from .config import (
    _UNSET,
    apply_config_to_args,
    generate_config,
    load_config,
    resolve_api_key,
)
from .errors import ConfigError, MakiError
from .llm import LLMClient
from .session import NEW_THREAD_LABEL, QUIT_WORDS, Screen, SessionController
from .store import ThreadStore
from .tools import build_registry

logger = logging.getLogger(__name__)

_UP = "\x00up"
_DOWN = "\x00down"
MENU_HINT = "↑/↓ or a number to choose, Enter to confirm, q to quit"


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="maki",
        description="An interactive terminal assistant that manages files, CSV data "
        "and notes in a workspace directory using a tool-calling language model.",
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--model",
        default=_UNSET,
        help="Model highlighted on the model screen (an OpenRouter model id).",
    )
    parser.add_argument(
        "--api-key",
        default=_UNSET,
        help="OpenRouter API key (overrides config and OPENROUTER_API_KEY).",
    )
    parser.add_argument("--base-url", default=_UNSET, help="Override the API base URL.")
    parser.add_argument(
        "--workspace",
        default=_UNSET,
        help="Directory the tools operate in (default: ./file_assistant_workspace).",
    )
    parser.add_argument(
        "--database",
        default=_UNSET,
        help="SQLite file holding threads (default: ~/.config/maki/maki.db).",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=_UNSET,
        help="Maximum model calls per request (default: 15).",
    )
    parser.add_argument(
        "--max-history",
        type=int,
        default=_UNSET,
        help="Maximum messages replayed to the model (default: 100).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=_UNSET,
        help="Model call timeout in seconds (default: 60).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: 0.1).",
    )
    parser.add_argument(
        "--log-file",
        default=_UNSET,
        help="Write logs here (default: ~/.config/maki/maki.log).",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Log at DEBUG level."
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )
    return parser


def setup_logging(log_file: str, verbose: bool = False) -> None:
    """Send log records to a file so they never interleave with the terminal UI."""
    path = Path(log_file).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    for noisy in ("LiteLLM", "litellm", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# -- Terminal loop -----------------------------------------------------------


def render_menu(controller: SessionController) -> None:
    state = controller.state
    if state.screen is Screen.MODEL_SELECT:
        fmt.menu("Select a model", state.menu_items(), state.cursor, MENU_HINT)
    elif state.screen is Screen.THREAD_LIST:
        items = [NEW_THREAD_LABEL] + [fmt.thread_label(t) for t in state.threads]
        fmt.menu("Threads", items, state.cursor, MENU_HINT)
    elif state.screen is Screen.THREAD_MANAGE:
        title = state.selected_thread.label if state.selected_thread else ""
        fmt.menu(f"Thread: {title}", state.menu_items(), state.cursor, MENU_HINT)
    elif state.screen is Screen.THREAD_LOADING:
        fmt.loading()


async def handle_menu_input(controller: SessionController, line: str) -> None:
    """Translate one line (or arrow key) typed on a menu screen into an event."""
    choice = line.strip().lower()
    if choice in ("q", *QUIT_WORDS):
        await controller.quit()
    elif line == _UP:
        controller.move(-1)
    elif line == _DOWN:
        controller.move(1)
    elif choice == "":
        await controller.confirm()
    elif choice.isdigit():
        await controller.select(int(choice) - 1)
    else:
        fmt.warning(f"unrecognized choice {line.strip()!r}")


def _log_task_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        exc = task.exception()
        logger.error("chat request failed", exc_info=exc)
        fmt.error(f"unexpected failure: {exc}")


async def handle_chat_input(
    controller: SessionController, line: str, running: set
) -> None:
    """Dispatch one chat line.

    Requests run as background tasks so the prompt stays live; commands,
    quit words and submissions rejected by the processing guard are
    handled inline.
    """
    text = line.strip()
    if not text:
        return
    inline = (
        text.startswith("/")
        or text.lower() in QUIT_WORDS
        or controller.state.is_processing
    )
    if inline:
        await controller.submit(text)
        if text.lower() == "/clear":
            fmt.console().clear()
        return
    task = asyncio.create_task(controller.submit(text))
    running.add(task)
    task.add_done_callback(running.discard)
    task.add_done_callback(_log_task_failure)


def _enter_chat_view(controller: SessionController) -> None:
    state = controller.state
    fmt.header(state.model, state.thread_title, state.agent_mode)
    for e in state.log:
        fmt.entry(e)
    fmt.info("Type /help for commands, exit to quit.")


async def run_terminal(controller: SessionController, history_path: Path) -> None:
    """Run the session until the Exit screen is reached."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory
    from prompt_toolkit.key_binding import KeyBindings
    from prompt_toolkit.patch_stdout import patch_stdout

    history_path.parent.mkdir(parents=True, exist_ok=True)

    chat_keys = KeyBindings()

    @chat_keys.add("c-t")
    def _(event):
        mode = controller.toggle_agent_mode()
        fmt.info(f"agent mode: {mode}")

    menu_keys = KeyBindings()

    @menu_keys.add("up")
    def _(event):
        event.app.exit(result=_UP)

    @menu_keys.add("down")
    def _(event):
        event.app.exit(result=_DOWN)

    chat_session = PromptSession(
        history=FileHistory(str(history_path)),
        enable_history_search=True,
        key_bindings=chat_keys,
    )
    menu_session = PromptSession(key_bindings=menu_keys)
    chat_prompt = FormattedText([("bold fg:ansigreen", "maki> ")])
    menu_prompt = FormattedText([("fg:ansicyan", "› ")])

    controller.subscribe(fmt.entry)
    fmt.banner()
    running: set[asyncio.Task] = set()
    last_screen = None

    with patch_stdout(raw=True):
        try:
            while controller.state.screen is not Screen.EXIT:
                screen = controller.state.screen
                try:
                    if screen is Screen.CHAT:
                        if last_screen is not Screen.CHAT:
                            _enter_chat_view(controller)
                        last_screen = screen
                        line = await chat_session.prompt_async(chat_prompt)
                        await handle_chat_input(controller, line, running)
                    else:
                        last_screen = screen
                        render_menu(controller)
                        line = await menu_session.prompt_async(menu_prompt)
                        await handle_menu_input(controller, line)
                except (EOFError, KeyboardInterrupt):
                    await controller.quit()
        finally:
            for task in running:
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)
            await controller.aclose()


# -- Entry point -------------------------------------------------------------


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("maki")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=True))
        sys.exit(0)

    try:
        config = load_config(Path.cwd())
        apply_config_to_args(args, config)
        fmt.init(color=args.color, no_color=args.no_color)
        api_key = resolve_api_key(args.api_key, config)
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)

    setup_logging(args.log_file, args.verbose)
    logger.info("starting maki (workspace=%s, database=%s)", args.workspace, args.database)

    try:
        store = ThreadStore(Path(args.database).expanduser())
        registry = build_registry(Path(args.workspace).expanduser())
    except (MakiError, OSError) as e:
        fmt.error(str(e))
        sys.exit(1)

    llm = LLMClient(
        api_key=api_key,
        base_url=args.base_url,
        timeout=args.timeout,
        temperature=args.temperature,
    )
    controller = SessionController(
        store,
        llm,
        registry,
        models=args.models,
        default_model=args.model,
        max_iterations=args.max_iterations,
        max_history=args.max_history,
    )
    history_path = Path(args.database).expanduser().parent / "input_history"
    try:
        asyncio.run(run_terminal(controller, history_path))
    except KeyboardInterrupt:
        pass
    logger.info("exiting")


if __name__ == "__main__":
    main()
