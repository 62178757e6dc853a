"""Session state machine: model selection, thread management and chat."""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from .agent import AgentLoop, AgentRun, ToolEvent, build_coordinator, generate_title
from .errors import MakiError
from .history import Message, repair
from .llm import LLMClient, Usage
from .prompts import SYSTEM_PROMPT
from .store import ThreadStore, ThreadSummary
from .tools import ToolRegistry

logger = logging.getLogger(__name__)

QUIT_WORDS = ("exit", "quit")
MANAGE_ACTIONS = ("continue", "delete", "back")
NEW_THREAD_LABEL = "Start a new thread"
AGENT_MODES = ("single", "multi")

HELP_TEXT = (
    "Type a request and press Enter. Commands: /threads returns to the thread "
    "list, /clear clears the screen, /help shows this message, exit or quit leaves."
)


class Screen(enum.Enum):
    MODEL_SELECT = "model_select"
    THREAD_LOADING = "thread_loading"
    THREAD_LIST = "thread_list"
    THREAD_MANAGE = "thread_manage"
    CHAT = "chat"
    EXIT = "exit"


@dataclass
class DisplayEntry:
    """One line of the chat log.

    ``kind`` is one of user, assistant, tool, info, error, usage. Tool
    entries carry the tool name, the phase and, once finished, ``ok``.
    """

    kind: str
    text: str
    name: str | None = None
    phase: str | None = None
    ok: bool | None = None
    usage: Usage | None = None


@dataclass
class SessionState:
    models: list[str]
    screen: Screen = Screen.MODEL_SELECT
    model: str | None = None
    cursor: int = 0
    threads: list[ThreadSummary] = field(default_factory=list)
    selected_thread: ThreadSummary | None = None
    thread_id: str | None = None
    thread_title: str | None = None
    history: list[Message] = field(default_factory=list)
    log: list[DisplayEntry] = field(default_factory=list)
    agent_mode: str = "single"
    is_loading_threads: bool = False
    is_creating_thread: bool = False
    is_loading_thread: bool = False
    is_deleting_thread: bool = False
    is_processing: bool = False

    def menu_items(self) -> list[str]:
        """Labels of the selectable entries on the current screen."""
        if self.screen is Screen.MODEL_SELECT:
            return list(self.models)
        if self.screen is Screen.THREAD_LIST:
            return [NEW_THREAD_LABEL] + [t.label for t in self.threads]
        if self.screen is Screen.THREAD_MANAGE:
            return [a.capitalize() for a in MANAGE_ACTIONS]
        return []


def history_to_display(history: list[Message]) -> list[DisplayEntry]:
    """Visible log for a loaded thread: user and assistant text only."""
    entries = []
    for msg in history:
        if msg.role in ("user", "assistant") and msg.content and msg.content.strip():
            entries.append(DisplayEntry(kind=msg.role, text=msg.content))
    return entries


async def _call(callback: Callable, payload) -> None:
    result = callback(payload)
    if inspect.isawaitable(result):
        await result


class SessionController:
    """Drives the session through its screens and owns the SessionState.

    Every handler is a coroutine on the event loop. Thread creation,
    loading and deletion and chat submission are guarded by flags that are
    checked and set before the first await, so rapid repeated events are
    no-ops rather than duplicate side effects.
    """

    def __init__(
        self,
        store: ThreadStore,
        llm: LLMClient,
        registry: ToolRegistry,
        *,
        models: list[str],
        default_model: str | None = None,
        system_prompt: str = SYSTEM_PROMPT,
        max_iterations: int = 15,
        max_history: int = 100,
    ):
        if not models:
            raise ValueError("at least one model is required")
        self.store = store
        self.llm = llm
        self.registry = registry
        self.system_prompt = system_prompt
        self.max_iterations = max_iterations
        self.max_history = max_history
        self.state = SessionState(models=list(models))
        if default_model in self.state.models:
            self.state.cursor = self.state.models.index(default_model)
        self.agent: AgentLoop | None = None
        self.coordinator: AgentLoop | None = None
        self._subscribers: list[Callable[[DisplayEntry], Any]] = []
        self._background: set[asyncio.Task] = set()
        self._load_task: asyncio.Task | None = None

    # -- view plumbing --------------------------------------------------------

    def subscribe(self, callback: Callable[[DisplayEntry], Any]) -> None:
        self._subscribers.append(callback)

    async def _emit(self, entry: DisplayEntry) -> None:
        self.state.log.append(entry)
        for callback in self._subscribers:
            await _call(callback, entry)

    async def _info(self, text: str) -> None:
        await self._emit(DisplayEntry(kind="info", text=text))

    async def _error(self, text: str) -> None:
        await self._emit(DisplayEntry(kind="error", text=text))

    # -- menu navigation ------------------------------------------------------

    def move(self, delta: int) -> None:
        if self.state.screen is Screen.THREAD_MANAGE and (
            self.state.is_deleting_thread or self.state.is_loading_thread
        ):
            return
        items = self.state.menu_items()
        if not items:
            return
        self.state.cursor = max(0, min(len(items) - 1, self.state.cursor + delta))

    async def select(self, index: int) -> None:
        items = self.state.menu_items()
        if not 0 <= index < len(items):
            return
        self.state.cursor = index
        await self.confirm()

    async def confirm(self) -> None:
        """Act on the highlighted entry of the current menu screen."""
        screen = self.state.screen
        if screen is Screen.MODEL_SELECT:
            await self.choose_model(self.state.models[self.state.cursor])
        elif screen is Screen.THREAD_LIST:
            if self.state.cursor == 0:
                await self.new_thread()
            else:
                self.open_thread(self.state.threads[self.state.cursor - 1])
        elif screen is Screen.THREAD_MANAGE:
            action = MANAGE_ACTIONS[self.state.cursor]
            if action == "continue":
                await self.continue_thread()
            elif action == "delete":
                await self.delete_thread()
            else:
                self.back_to_threads()

    # -- ModelSelect ----------------------------------------------------------

    async def choose_model(self, model: str) -> None:
        if self.state.screen is not Screen.MODEL_SELECT:
            return
        self.state.model = model
        self.agent = AgentLoop(
            self.llm,
            self.registry,
            model=model,
            system_prompt=self.system_prompt,
            max_iterations=self.max_iterations,
            max_history=self.max_history,
        )
        self.coordinator = build_coordinator(
            self.llm,
            self.registry,
            model=model,
            max_iterations=self.max_iterations,
            max_history=self.max_history,
            on_progress=self._on_tool_event,
        )
        logger.info("model selected: %s", model)
        await self.load_threads()

    # -- ThreadLoading / ThreadList -------------------------------------------

    async def load_threads(self) -> None:
        """Enter ThreadLoading and fetch the list; one fetch in flight at a time."""
        if self._load_task is None or self._load_task.done():
            self._load_task = asyncio.create_task(self._load_threads())
        await self._load_task

    async def _load_threads(self) -> None:
        self.state.screen = Screen.THREAD_LOADING
        self.state.is_loading_threads = True
        try:
            threads = await asyncio.to_thread(self.store.list_threads)
        except Exception as e:
            logger.error("could not load threads: %s", e)
            threads = []
            await self._error(f"Could not load threads: {e}")
        finally:
            self.state.is_loading_threads = False
        self.state.threads = threads
        self.state.selected_thread = None
        self.state.cursor = 0
        if self.state.screen is Screen.THREAD_LOADING:
            self.state.screen = Screen.THREAD_LIST

    async def refresh_threads(self) -> None:
        """Reload the list in place without leaving the current screen."""
        try:
            threads = await asyncio.to_thread(self.store.list_threads)
        except Exception as e:
            logger.error("could not refresh threads: %s", e)
            return
        self.state.threads = threads
        selected = self.state.selected_thread
        if selected is not None:
            self.state.selected_thread = next((t for t in threads if t.id == selected.id), selected)
        if self.state.screen is Screen.THREAD_LIST:
            self.state.cursor = min(self.state.cursor, len(threads))

    async def new_thread(self) -> str | None:
        """Create a thread and enter Chat. Re-entrant calls are no-ops."""
        if self.state.screen is not Screen.THREAD_LIST or self.state.is_creating_thread:
            return None
        self.state.is_creating_thread = True
        try:
            thread_id = await asyncio.to_thread(self.store.create_thread)
        except Exception as e:
            logger.error("could not create thread: %s", e)
            await self._error(f"Could not create thread: {e}")
            return None
        finally:
            self.state.is_creating_thread = False

        self._enter_chat(thread_id, None, [Message.system(self.system_prompt)])
        return thread_id

    def open_thread(self, thread: ThreadSummary) -> None:
        if self.state.screen is not Screen.THREAD_LIST:
            return
        self.state.selected_thread = thread
        self.state.screen = Screen.THREAD_MANAGE
        self.state.cursor = 0

    # -- ThreadManage ---------------------------------------------------------

    async def continue_thread(self) -> None:
        """Load the selected thread and enter Chat. Re-entrant calls are no-ops.

        Messages dropped by repair are also deleted from the store, so later
        messages are appended to a valid stored history.
        """
        thread = self.state.selected_thread
        if (
            self.state.screen is not Screen.THREAD_MANAGE
            or thread is None
            or self.state.is_loading_thread
            or self.state.is_deleting_thread
        ):
            return
        self.state.is_loading_thread = True
        try:
            entered = await self._continue(thread)
        finally:
            self.state.is_loading_thread = False
        if entered is None:
            await self.load_threads()

    async def _continue(self, thread: ThreadSummary) -> bool | None:
        """True once in Chat, False to stay on ThreadManage, None if the thread is gone."""
        try:
            stored = await asyncio.to_thread(self.store.get_thread, thread.id)
        except Exception as e:
            logger.error("could not load thread %s: %s", thread.id, e)
            await self._error(f"Could not load thread: {e}")
            return False
        if stored is None:
            await self._error("That thread no longer exists.")
            return None

        history = repair(stored.messages)
        removed = len(stored.messages) - len(history)
        if removed:
            try:
                await asyncio.to_thread(self.store.truncate_messages, stored.id, len(history))
            except Exception as e:
                logger.error("could not repair stored thread %s: %s", stored.id, e)
                await self._error(f"Could not repair thread: {e}")
                return False
            logger.info("thread %s: dropped %d interrupted message(s)", stored.id, removed)
        if not history or history[0].role != "system":
            history = [Message.system(self.system_prompt)] + history
        self._enter_chat(stored.id, stored.title, history)
        # The view renders the log of a freshly entered chat itself.
        self.state.log = history_to_display(history)
        if removed:
            self.state.log.append(
                DisplayEntry(
                    kind="info",
                    text=f"Removed {removed} message(s) left incomplete by an interrupted request.",
                )
            )
        return True

    async def delete_thread(self) -> None:
        """Delete the selected thread. Repeated calls while deleting are no-ops."""
        thread = self.state.selected_thread
        if (
            self.state.screen is not Screen.THREAD_MANAGE
            or thread is None
            or self.state.is_deleting_thread
            or self.state.is_loading_thread
        ):
            return
        self.state.is_deleting_thread = True
        try:
            try:
                await asyncio.to_thread(self.store.delete_thread, thread.id)
            except Exception as e:
                logger.error("could not delete thread %s: %s", thread.id, e)
                await self._error(f"Could not delete thread: {e}")
                return
            logger.info("deleted thread %s", thread.id)
            await self.load_threads()
        finally:
            self.state.is_deleting_thread = False

    def back_to_threads(self) -> None:
        if self.state.screen is not Screen.THREAD_MANAGE:
            return
        self.state.selected_thread = None
        self.state.screen = Screen.THREAD_LIST
        self.state.cursor = 0

    # -- Chat -----------------------------------------------------------------

    def _enter_chat(self, thread_id: str, title: str | None, history: list[Message]) -> None:
        self.state.thread_id = thread_id
        self.state.thread_title = title
        self.state.history = history
        self.state.log = []
        self.state.selected_thread = None
        self.state.cursor = 0
        self.state.screen = Screen.CHAT

    def toggle_agent_mode(self) -> str:
        """Switch between the single agent and the delegating coordinator.

        Takes effect from the next request; one already running keeps its mode.
        """
        idx = AGENT_MODES.index(self.state.agent_mode)
        self.state.agent_mode = AGENT_MODES[(idx + 1) % len(AGENT_MODES)]
        logger.info("agent mode: %s", self.state.agent_mode)
        return self.state.agent_mode

    def active_agent(self) -> AgentLoop | None:
        if self.state.agent_mode == "multi":
            return self.coordinator
        return self.agent

    async def _on_tool_event(self, event: ToolEvent) -> None:
        text = event.summary if event.phase == "finished" else f"Running {event.name}"
        await self._emit(
            DisplayEntry(kind="tool", text=text, name=event.name, phase=event.phase, ok=event.ok)
        )

    async def submit(self, text: str) -> AgentRun | None:
        """Handle one line of chat input."""
        text = text.strip()
        if not text:
            return None
        if text.lower() in QUIT_WORDS:
            await self.quit()
            return None
        if self.state.screen is not Screen.CHAT:
            return None
        if text.startswith("/"):
            await self._command(text)
            return None
        if self.state.is_processing:
            await self._info("Still working on the previous request.")
            return None

        self.state.is_processing = True
        try:
            return await self._run(text)
        finally:
            self.state.is_processing = False

    async def _command(self, text: str) -> None:
        cmd = text.split()[0].lower()
        if cmd == "/help":
            await self._info(HELP_TEXT)
        elif cmd == "/clear":
            self.state.log = []
        elif cmd == "/threads":
            if self.state.is_processing:
                await self._info("Wait for the current request to finish first.")
                return
            self.state.thread_id = None
            self.state.thread_title = None
            self.state.history = []
            self.state.log = []
            await self.load_threads()
        else:
            await self._error(f"Unknown command: {cmd}")

    async def _run(self, text: str) -> AgentRun:
        thread_id = self.state.thread_id
        history = repair(self.state.history)
        if not history or history[0].role != "system":
            history = [Message.system(self.system_prompt)] + history
        self.state.history = history
        await self._emit(DisplayEntry(kind="user", text=text))

        async def on_message(message: Message) -> None:
            self.state.history.append(message)
            await self._persist(thread_id, message)
            if (
                message.role == "user"
                and len(self.state.history) == 2
                and self.state.thread_title is None
            ):
                self._spawn_title(thread_id, message.content)

        run = await self.active_agent().run(
            text, history, on_progress=self._on_tool_event, on_message=on_message
        )
        self.state.history = run.history

        if run.error is not None:
            await self._error(f"Error: {run.error.message}")
        else:
            await self._emit(DisplayEntry(kind="assistant", text=run.final_text))
            if run.exhausted:
                await self._info(f"Stopped after {run.iterations} steps.")
        if run.usage.total_tokens:
            await self._emit(DisplayEntry(kind="usage", text="", usage=run.usage))
        return run

    async def _persist(self, thread_id: str | None, message: Message) -> None:
        if thread_id is None:
            return
        try:
            await asyncio.to_thread(self.store.save_message, thread_id, message)
        except MakiError as e:
            logger.error("could not save %s message to thread %s: %s", message.role, thread_id, e)
            await self._error(f"Could not save message: {e.message}")

    # -- title generation -----------------------------------------------------

    def _spawn_title(self, thread_id: str | None, first_message: str) -> None:
        if thread_id is None:
            return
        task = asyncio.create_task(self._generate_title(thread_id, first_message))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _generate_title(self, thread_id: str, first_message: str) -> None:
        try:
            title = await generate_title(self.llm, self.state.model, first_message)
            await asyncio.to_thread(self.store.update_thread_title, thread_id, title)
        except MakiError as e:
            logger.warning("title generation failed for thread %s: %s", thread_id, e)
            return
        logger.info("thread %s titled %r", thread_id, title)
        if self.state.thread_id == thread_id:
            self.state.thread_title = title
        if self.state.screen in (Screen.THREAD_LIST, Screen.THREAD_MANAGE):
            await self.refresh_threads()

    # -- Exit -----------------------------------------------------------------

    async def quit(self) -> None:
        self.state.screen = Screen.EXIT
        await self.aclose()

    async def aclose(self) -> None:
        """Cancel pending background work (title generation)."""
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
