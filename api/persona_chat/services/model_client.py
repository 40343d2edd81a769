"""Model-call collaborator: one chat completion per call, no retries."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from loguru import logger
from openai import NOT_GIVEN, AsyncOpenAI, OpenAIError


@dataclass(frozen=True)
class ToolInvocation:
    id: str
    name: str
    arguments: str


@dataclass(frozen=True)
class Completion:
    text: str
    tool_invocations: List[ToolInvocation] = field(default_factory=list)


class UpstreamUnavailable(Exception):
    """Raised when the language model could not produce a completion."""


class ModelClient(Protocol):
    async def complete(self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]) -> Completion: ...


class OpenAIModelClient:
    """Chat completions through the OpenAI SDK."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        *,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        timeout_seconds: float = 30.0,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> None:
        # max_retries=0: a failed call is reported to the caller, not repeated.
        self._client = client or AsyncOpenAI(api_key=api_key, timeout=timeout_seconds, max_retries=0)
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    async def complete(self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]) -> Completion:
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                tools=tools if tools else NOT_GIVEN,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except OpenAIError as exc:
            logger.error("Model call failed: {}", exc)
            raise UpstreamUnavailable("AI service temporarily unavailable.") from exc

        if not response.choices:
            raise UpstreamUnavailable("AI service returned no choices.")

        message = response.choices[0].message
        tool_calls = getattr(message, "tool_calls", None) or []
        return Completion(
            text=message.content or "",
            tool_invocations=[
                ToolInvocation(id=call.id, name=call.function.name, arguments=call.function.arguments or "{}")
                for call in tool_calls
            ],
        )


__all__ = ["Completion", "ModelClient", "OpenAIModelClient", "ToolInvocation", "UpstreamUnavailable"]
