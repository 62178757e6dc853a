"""Language-model transport over LiteLLM."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

import litellm
import tiktoken

from .errors import TransportError
from .history import Message, ToolCall

logger = logging.getLogger(__name__)

_encoder = tiktoken.get_encoding("cl100k_base")

DEFAULT_MODEL = "openai/gpt-4.1-mini"


def estimate_tokens(messages: list[dict], tools: list | None = None) -> int:
    """Count tokens across wire messages using tiktoken."""
    total = 0
    for m in messages:
        content = m.get("content") or ""
        for tc in m.get("tool_calls") or ():
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments") or "")
        total += len(_encoder.encode(content))
    if tools:
        total += len(_encoder.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cached_tokens: int = 0
    reasoning_tokens: int = 0
    cost: float | None = None
    estimated: bool = False

    def __add__(self, other: Usage) -> Usage:
        if self.cost is None and other.cost is None:
            cost = None
        else:
            cost = (self.cost or 0.0) + (other.cost or 0.0)
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            cached_tokens=self.cached_tokens + other.cached_tokens,
            reasoning_tokens=self.reasoning_tokens + other.reasoning_tokens,
            cost=cost,
            estimated=self.estimated or other.estimated,
        )

    @classmethod
    def from_response(cls, response) -> Usage | None:
        raw = getattr(response, "usage", None)
        if raw is None:
            return None
        prompt_details = getattr(raw, "prompt_tokens_details", None)
        completion_details = getattr(raw, "completion_tokens_details", None)
        hidden = getattr(response, "_hidden_params", None) or {}
        cost = hidden.get("response_cost") if isinstance(hidden, dict) else None
        prompt = getattr(raw, "prompt_tokens", 0) or 0
        completion = getattr(raw, "completion_tokens", 0) or 0
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=getattr(raw, "total_tokens", 0) or prompt + completion,
            cached_tokens=getattr(prompt_details, "cached_tokens", 0) or 0,
            reasoning_tokens=getattr(completion_details, "reasoning_tokens", 0) or 0,
            cost=cost,
        )


@dataclass
class Completion:
    text: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage | None = None
    finish_reason: str | None = None

    def to_message(self) -> Message:
        return Message.assistant(self.text, self.tool_calls)


class LLMClient:
    """Single-shot chat completion against an OpenRouter model.

    The selected model is passed on every call; the client itself holds only
    the credentials and sampling settings.
    """

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str | None = None,
        timeout: float = 60,
        temperature: float | None = 0.1,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.temperature = temperature

    @staticmethod
    def model_string(model: str) -> str:
        return model if model.startswith("openrouter/") else f"openrouter/{model}"

    async def complete(
        self,
        system_prompt: str | None,
        history: list[Message],
        tools: list[dict] | None = None,
        *,
        model: str,
    ) -> Completion:
        """Ask the model for its next turn.

        ``system_prompt`` replaces any system message already in the history.

        Raises:
            TransportError: The API could not be reached, timed out, or rejected the request.
        """
        wire = []
        if system_prompt is not None:
            wire.append({"role": "system", "content": system_prompt})
            wire.extend(m.to_wire() for m in history if m.role != "system")
        else:
            wire.extend(m.to_wire() for m in history)

        kwargs = dict(
            model=self.model_string(model),
            messages=wire,
            api_key=self.api_key,
            timeout=self.timeout,
        )
        if self.base_url:
            kwargs["api_base"] = self.base_url
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        logger.debug("calling %s with %d message(s)", kwargs["model"], len(wire))
        litellm.suppress_debug_info = True
        try:
            response = await litellm.acompletion(**kwargs)
        except litellm.ContextWindowExceededError as e:
            raise TransportError(f"context window exceeded: {e}") from e
        except litellm.AuthenticationError as e:
            raise TransportError(f"authentication failed: {e}") from e
        except litellm.Timeout as e:
            raise TransportError(f"model call timed out after {self.timeout}s") from e
        except Exception as e:
            raise TransportError(f"LLM call failed: {e}") from e

        try:
            choice = response.choices[0]
        except (AttributeError, IndexError) as e:
            raise TransportError("LLM returned no choices") from e
        msg = choice.message
        usage = Usage.from_response(response)
        if usage is None:
            prompt = estimate_tokens(wire, tools)
            usage = Usage(prompt_tokens=prompt, total_tokens=prompt, estimated=True)
        return Completion(
            text=getattr(msg, "content", None),
            tool_calls=[ToolCall.from_wire(tc) for tc in (getattr(msg, "tool_calls", None) or ())],
            usage=usage,
            finish_reason=getattr(choice, "finish_reason", None),
        )
