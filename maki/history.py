"""Conversation history model, wire conversion and repair."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

ROLES = ("system", "user", "assistant", "tool")


def _get(obj, key, default=None):
    """Read a field from a dict or from a litellm response object."""
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


@dataclass(frozen=True)
class ToolCall:
    """A single tool invocation requested by the model.

    ``arguments`` is kept as the raw JSON text the model emitted; parsing
    happens at execution time so malformed input can be reported back.
    """

    id: str
    name: str
    arguments: str = "{}"

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_wire(cls, obj) -> ToolCall:
        fn = _get(obj, "function") or {}
        arguments = _get(fn, "arguments")
        if arguments is None:
            arguments = "{}"
        elif not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        call_id = _get(obj, "id") or f"call_{uuid.uuid4().hex[:12]}"
        return cls(id=call_id, name=_get(fn, "name", ""), arguments=arguments)


@dataclass(frozen=True)
class Message:
    role: str
    content: str | None = None
    tool_calls: tuple[ToolCall, ...] = field(default_factory=tuple)
    tool_call_id: str | None = None
    tool_name: str | None = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"unknown message role {self.role!r}")

    # -- constructors ---------------------------------------------------------

    @classmethod
    def system(cls, content: str) -> Message:
        return cls("system", content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls("user", content)

    @classmethod
    def assistant(
        cls, content: str | None, tool_calls: list[ToolCall] | tuple = ()
    ) -> Message:
        return cls("assistant", content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(cls, tool_call_id: str, tool_name: str, content: str) -> Message:
        return cls("tool", content, tool_call_id=tool_call_id, tool_name=tool_name)

    # -- wire format (what litellm sends to the provider) ---------------------

    def to_wire(self) -> dict:
        wire: dict = {"role": self.role, "content": self.content}
        if self.role == "assistant" and self.tool_calls:
            wire["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        elif self.role == "tool":
            wire["tool_call_id"] = self.tool_call_id
            if self.tool_name:
                wire["name"] = self.tool_name
            if wire["content"] is None:
                wire["content"] = ""
        elif wire["content"] is None:
            wire["content"] = ""
        return wire

    @classmethod
    def from_wire(cls, obj) -> Message:
        role = _get(obj, "role")
        tool_calls = tuple(ToolCall.from_wire(tc) for tc in (_get(obj, "tool_calls") or ()))
        return cls(
            role=role,
            content=_get(obj, "content"),
            tool_calls=tool_calls,
            tool_call_id=_get(obj, "tool_call_id"),
            tool_name=_get(obj, "name") or _get(obj, "tool_name"),
        )

    # -- storage format -------------------------------------------------------

    def to_stored(self) -> tuple[str, str, dict]:
        """Split into the (role, content, extra) triple the thread store keeps."""
        extra: dict = {}
        if self.tool_calls:
            extra["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            extra["tool_call_id"] = self.tool_call_id
        if self.tool_name is not None:
            extra["tool_name"] = self.tool_name
        return self.role, self.content or "", extra

    @classmethod
    def from_stored(cls, role: str, content: str, extra: dict | None) -> Message:
        extra = extra or {}
        tool_calls = tuple(ToolCall.from_wire(tc) for tc in extra.get("tool_calls", ()))
        if role == "assistant" and tool_calls and not content:
            content = None
        return cls(
            role=role.lower(),
            content=content,
            tool_calls=tool_calls,
            tool_call_id=extra.get("tool_call_id"),
            tool_name=extra.get("tool_name"),
        )

    @property
    def has_tool_calls(self) -> bool:
        return self.role == "assistant" and bool(self.tool_calls)


def to_wire(history: list[Message]) -> list[dict]:
    return [m.to_wire() for m in history]


# ---------------------------------------------------------------------------
# Repair
# ---------------------------------------------------------------------------


def unanswered_tool_calls(history: list[Message]) -> set[str]:
    """Return ids of tool calls that have no tool-role response."""
    emitted = {tc.id for m in history if m.role == "assistant" for tc in m.tool_calls}
    answered = {m.tool_call_id for m in history if m.role == "tool"}
    return emitted - answered


def repair(history: list[Message]) -> list[Message]:
    """Truncate a history so every tool call has a matching result.

    Scans backward for the latest assistant message with an unanswered call
    and cuts the history just before it, dropping the user message that
    prompted it as well. Repeats until no unanswered call remains, so the
    result is always valid and ``repair(repair(h)) == repair(h)``.
    Never fabricates a tool result.
    """
    repaired = list(history)
    unanswered = unanswered_tool_calls(repaired)
    while unanswered:
        cut = None
        for i in range(len(repaired) - 1, -1, -1):
            msg = repaired[i]
            if msg.role == "assistant" and any(tc.id in unanswered for tc in msg.tool_calls):
                cut = i
                break
        if cut is None:
            break
        if cut > 0 and repaired[cut - 1].role == "user":
            cut -= 1
        repaired = repaired[:cut]
        unanswered = unanswered_tool_calls(repaired)

    if len(repaired) != len(history):
        logger.info(
            "repaired history: removed %d trailing message(s) with unanswered tool calls",
            len(history) - len(repaired),
        )
    return repaired


# ---------------------------------------------------------------------------
# Length limiting
# ---------------------------------------------------------------------------


def group_into_turns(messages: list[Message]) -> list[list[Message]]:
    """Group messages into atomic turns.

    A turn is one of:
    - A single message (system, user, or assistant without tool_calls)
    - An assistant message with tool_calls + all its matching tool results
    """
    turns = []
    i = 0
    while i < len(messages):
        msg = messages[i]
        if msg.has_tool_calls:
            turn = [msg]
            tc_ids = {tc.id for tc in msg.tool_calls}
            j = i + 1
            while (
                j < len(messages)
                and messages[j].role == "tool"
                and messages[j].tool_call_id in tc_ids
            ):
                turn.append(messages[j])
                j += 1
            turns.append(turn)
            i = j
        else:
            turns.append([msg])
            i += 1
    return turns


def limit_history(messages: list[Message], max_messages: int) -> list[Message]:
    """Drop the oldest turns until at most ``max_messages`` remain.

    Leading system messages are always kept, and an assistant tool-call
    message is never separated from its tool results. The newest turn is
    kept even when it alone exceeds the limit.
    """
    if len(messages) <= max_messages:
        return list(messages)

    leading = []
    for msg in messages:
        if msg.role != "system":
            break
        leading.append(msg)

    turns = group_into_turns(messages[len(leading):])
    budget = max_messages - len(leading)
    kept: list[list[Message]] = []
    used = 0
    for turn in reversed(turns):
        if kept and used + len(turn) > budget:
            break
        kept.append(turn)
        used += len(turn)
    kept.reverse()

    # A replay must not open on a bare tool result.
    while len(kept) > 1 and kept[0][0].role == "tool":
        kept.pop(0)

    return leading + [m for turn in kept for m in turn]


def ensure_system(history: list[Message], system_prompt: str) -> list[Message]:
    """Return the history, or a fresh system-only history if it is empty."""
    if history:
        return list(history)
    return [Message.system(system_prompt)]
