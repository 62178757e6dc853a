"""Terminal rendering using Rich. Pure view functions over session state."""

from datetime import datetime

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


def console() -> Console:
    return _console


# -- Screens -----------------------------------------------------------------


def banner() -> None:
    _console.print(Text("▌ maki", style="bold cyan"))


def header(model: str | None, title: str | None, agent_mode: str) -> None:
    parts = [f"model: {model or '-'}", f"mode: {agent_mode}"]
    if title:
        parts.insert(0, title)
    _console.print(Rule(escape(" | ".join(parts)), style="cyan"))


def menu(title: str, items: list[str], cursor: int, hint: str | None = None) -> None:
    _console.print(Text(title, style="bold"))
    for i, label in enumerate(items):
        line = Text()
        if i == cursor:
            line.append(f"  ❯ {i + 1}. ", style="bold cyan")
            line.append(label, style="bold cyan")
        else:
            line.append(f"    {i + 1}. ", style="dim")
            line.append(label)
        _console.print(line)
    if hint:
        _console.print(Text(f"  {hint}", style="dim"))


def _short_date(value: str) -> str:
    try:
        return datetime.fromisoformat(value).astimezone().strftime("%Y-%m-%d %H:%M")
    except (TypeError, ValueError):
        return value or ""


def thread_label(thread) -> str:
    return f"{thread.label}  ({thread.message_count} messages, {_short_date(thread.updated_at)})"


def loading(label: str = "Loading threads...") -> None:
    _console.print(Text(f"  {label}", style="dim"))


# -- Chat log ----------------------------------------------------------------


def usage_line(usage) -> str:
    parts = [
        f"prompt {usage.prompt_tokens}",
        f"completion {usage.completion_tokens}",
        f"total {usage.total_tokens}",
    ]
    if usage.cached_tokens:
        parts.append(f"cached {usage.cached_tokens}")
    if usage.reasoning_tokens:
        parts.append(f"reasoning {usage.reasoning_tokens}")
    if usage.cost is not None:
        parts.append(f"cost ${usage.cost:.4f}")
    prefix = "~" if usage.estimated else ""
    return prefix + "tokens: " + ", ".join(parts)


def entry(e) -> None:
    """Print one DisplayEntry."""
    if e.kind == "user":
        line = Text()
        line.append("> ", style="bold green")
        line.append(e.text, style="green")
        _console.print(line)
    elif e.kind == "assistant":
        _console.print(Markdown(e.text or ""))
    elif e.kind == "tool":
        tool_event(e.name, e.phase, e.text, e.ok)
    elif e.kind == "error":
        error(e.text.removeprefix("Error: "))
    elif e.kind == "usage":
        _console.print(Text(f"  {usage_line(e.usage)}", style="dim"))
    else:
        info(e.text)


def tool_event(name: str, phase: str, summary: str | None, ok: bool | None) -> None:
    line = Text()
    if phase == "started":
        line.append("  ▶ ", style="bold magenta")
        line.append(name, style="bold magenta")
    elif ok:
        line.append(f"  ✓ {name}", style="green")
        if summary:
            line.append(f"  {summary}", style="dim")
    else:
        line.append(f"  ✗ {name}", style="bold red")
        if summary:
            line.append(f"  {summary}", style="red")
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)
