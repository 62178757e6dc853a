"""The tool-calling agent loop and thread title generation."""

from __future__ import annotations

import inspect
import logging
import re
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from .errors import ErrorKind, MakiError, TransportError, ValidationError
from .history import Message, ensure_system, limit_history, repair
from .llm import LLMClient, Usage
from .prompts import (
    COORDINATOR_PROMPT,
    SYSTEM_PROMPT,
    TITLE_MAX_LENGTH,
    TITLE_SYSTEM_PROMPT,
    subagent_prompt,
    title_request,
)
from .tools import THINK_TOOL, ToolDescriptor, ToolRegistry, parse_arguments

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 15
SUBAGENT_MAX_ITERATIONS = 7
MAX_HISTORY = 100
EXHAUSTED_TEXT = "I wasn't able to finish this request within the step limit."


@dataclass(frozen=True)
class ToolEvent:
    """Progress notification for one tool call.

    ``phase`` is "started" before execution and "finished" after it; a
    finished event carries the result summary (or error text) and ``ok``.
    """

    name: str
    arguments: Any
    phase: str
    call_id: str | None = None
    summary: str | None = None
    ok: bool | None = None


@dataclass(frozen=True)
class ToolLogEntry:
    name: str
    arguments: Any
    ok: bool
    summary: str
    elapsed: float
    error_kind: ErrorKind | None = None


@dataclass
class AgentRun:
    final_text: str | None
    history: list[Message]
    tool_log: list[ToolLogEntry] = field(default_factory=list)
    error: MakiError | None = None
    usage: Usage = field(default_factory=Usage)
    iterations: int = 0
    exhausted: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


async def _notify(callback: Callable | None, payload) -> None:
    if callback is None:
        return
    result = callback(payload)
    if inspect.isawaitable(result):
        await result


class AgentLoop:
    """Bounded model-turn / tool-execution loop for one session.

    The model is fixed at construction; a session that switches models
    builds a new loop.
    """

    def __init__(
        self,
        llm: LLMClient,
        registry: ToolRegistry,
        *,
        model: str,
        system_prompt: str = SYSTEM_PROMPT,
        max_iterations: int = MAX_ITERATIONS,
        max_history: int = MAX_HISTORY,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.llm = llm
        self.registry = registry
        self.model = model
        self.system_prompt = system_prompt
        self.max_iterations = max_iterations
        self.max_history = max_history

    async def run(
        self,
        utterance: str,
        history: list[Message],
        on_progress: Callable[[ToolEvent], Any] | None = None,
        on_message: Callable[[Message], Any] | None = None,
    ) -> AgentRun:
        """Answer one user utterance, executing tool calls as the model asks.

        ``on_message`` sees every message appended to the history, in order.
        Transport failures are returned in ``AgentRun.error``; they never
        raise and never leave a partial assistant turn behind.
        """
        history = ensure_system(repair(history), self.system_prompt)
        tool_schemas = self.registry.schemas()
        usage = Usage()
        tool_log: list[ToolLogEntry] = []
        last_text: str | None = None

        async def append(message: Message) -> None:
            history.append(message)
            await _notify(on_message, message)

        await append(Message.user(utterance))

        iteration = 0
        while iteration < self.max_iterations:
            iteration += 1
            replay = repair(limit_history(history, self.max_history))
            try:
                completion = await self.llm.complete(
                    self.system_prompt, replay, tool_schemas, model=self.model
                )
            except TransportError as e:
                logger.warning("model call failed on iteration %d: %s", iteration, e)
                return AgentRun(
                    final_text=None,
                    history=history,
                    tool_log=tool_log,
                    error=e,
                    usage=usage,
                    iterations=iteration,
                )

            if completion.usage is not None:
                usage = usage + completion.usage
            text = completion.text if completion.text and completion.text.strip() else None

            if not completion.tool_calls:
                if text is None:
                    logger.debug("empty model turn on iteration %d, asking again", iteration)
                    continue
                await append(Message.assistant(text))
                return AgentRun(
                    final_text=text,
                    history=history,
                    tool_log=tool_log,
                    usage=usage,
                    iterations=iteration,
                )

            if text is not None:
                last_text = text
            await append(completion.to_message())

            # Sequential: later calls may depend on earlier side effects.
            for call in completion.tool_calls:
                args = parse_arguments(call.arguments)
                await _notify(on_progress, ToolEvent(call.name, args, "started", call_id=call.id))
                t0 = time.monotonic()
                outcome = await self.registry.aexecute(call.name, args)
                elapsed = time.monotonic() - t0
                if not outcome.ok:
                    logger.info("tool %s failed: %s", call.name, outcome.summary)
                await append(Message.tool(call.id, call.name, outcome.content))
                tool_log.append(
                    ToolLogEntry(
                        name=call.name,
                        arguments=args,
                        ok=outcome.ok,
                        summary=outcome.summary,
                        elapsed=elapsed,
                        error_kind=outcome.error_kind,
                    )
                )
                await _notify(
                    on_progress,
                    ToolEvent(
                        call.name,
                        args,
                        "finished",
                        call_id=call.id,
                        summary=outcome.summary,
                        ok=outcome.ok,
                    ),
                )

        logger.warning("iteration cap of %d reached without a final reply", self.max_iterations)
        final_text = last_text or EXHAUSTED_TEXT
        await append(Message.assistant(final_text))
        return AgentRun(
            final_text=final_text,
            history=history,
            tool_log=tool_log,
            usage=usage,
            iterations=iteration,
            exhausted=True,
        )


# ---------------------------------------------------------------------------
# Multi-agent mode
# ---------------------------------------------------------------------------


def build_coordinator(
    llm: LLMClient,
    registry: ToolRegistry,
    *,
    model: str,
    max_iterations: int = MAX_ITERATIONS,
    max_history: int = MAX_HISTORY,
    subagent_iterations: int = SUBAGENT_MAX_ITERATIONS,
    on_progress: Callable[[ToolEvent], Any] | None = None,
) -> AgentLoop:
    """Build the multi-agent loop: a planner whose only actions are
    ``think`` and ``delegate_task``.

    Each delegation runs a fresh sub-agent loop over the full ``registry``
    with an empty history and its own iteration cap. Delegations execute one
    at a time, in the order the coordinator issued them. Sub-agent tool
    events reach ``on_progress`` with the tool name prefixed by the role.
    """

    async def delegate_task(root, role: str, instructions: str) -> dict:
        if not isinstance(instructions, str) or not instructions.strip():
            raise ValidationError("instructions must be a non-empty string")
        role = str(role or "").strip() or "general"
        sub = AgentLoop(
            llm,
            registry,
            model=model,
            system_prompt=subagent_prompt(role, instructions),
            max_iterations=subagent_iterations,
            max_history=max_history,
        )

        async def relay(event: ToolEvent) -> None:
            await _notify(on_progress, replace(event, name=f"{role}/{event.name}"))

        logger.info("delegating to %s sub-agent", role)
        run = await sub.run(instructions, [], on_progress=relay)
        logger.info(
            "%s sub-agent finished: %d step(s), %d tool call(s), %d tokens",
            role,
            run.iterations,
            len(run.tool_log),
            run.usage.total_tokens,
        )
        if run.error is not None:
            raise run.error
        return {
            "role": role,
            "completed": not run.exhausted,
            "report": run.final_text,
            "steps": run.iterations,
            "tool_calls": [
                {"name": e.name, "ok": e.ok, "summary": e.summary} for e in run.tool_log
            ],
        }

    def summarize(args: dict, result: dict) -> str:
        calls = len(result["tool_calls"])
        status = "finished" if result["completed"] else "stopped at the step limit"
        return f"{result['role']} {status} ({calls} tool call{'s' if calls != 1 else ''})"

    delegate = ToolDescriptor(
        name="delegate_task",
        description=(
            "Hand one self-contained sub-task to a sub-agent that has the full "
            "workspace tool set. Returns its report and the tools it used."
        ),
        parameters={
            "type": "object",
            "properties": {
                "role": {
                    "type": "string",
                    "description": "Short role name, e.g. 'csv analyst' or 'file organizer'.",
                },
                "instructions": {
                    "type": "string",
                    "description": "Precise, self-contained instructions for the sub-task.",
                },
            },
            "required": ["role", "instructions"],
        },
        func=delegate_task,
        summarize=summarize,
    )
    return AgentLoop(
        llm,
        registry.with_tools([THINK_TOOL, delegate]),
        model=model,
        system_prompt=COORDINATOR_PROMPT,
        max_iterations=max_iterations,
        max_history=max_history,
    )


# ---------------------------------------------------------------------------
# Title generation
# ---------------------------------------------------------------------------


def clean_title(text: str | None, fallback: str = "") -> str:
    """Normalize a model-produced title to one short line."""
    title = (text or "").strip().splitlines()[0] if (text or "").strip() else ""
    title = title.strip().strip("\"'`*").strip()
    title = re.sub(r"^(title:\s*)", "", title, flags=re.IGNORECASE)
    title = title.strip("\"'`*").strip()
    title = re.sub(r"\s+", " ", title).rstrip(".")
    if not title:
        title = re.sub(r"\s+", " ", fallback).strip()
    if len(title) > TITLE_MAX_LENGTH:
        title = title[: TITLE_MAX_LENGTH - 3].rstrip() + "..."
    return title


async def generate_title(llm: LLMClient, model: str, first_message: str) -> str:
    """Ask the model for a short thread title. No tools are offered.

    Raises:
        TransportError: The model call failed.
    """
    completion = await llm.complete(
        TITLE_SYSTEM_PROMPT, [Message.user(title_request(first_message))], None, model=model
    )
    return clean_title(completion.text, fallback=first_message)
