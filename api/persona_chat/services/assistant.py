"""Persona assistant: prompt assembly, model calls and tool dispatch."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from loguru import logger

from persona_chat.db.models import ChatMessage, UserProfile
from persona_chat.services.model_client import ModelClient, ToolInvocation, UpstreamUnavailable
from persona_chat.services.session_coordinator import InvalidEmail, SessionCoordinator
from persona_chat.settings import PersonaSettings


@dataclass
class AssistantReply:
    text: str
    user: Optional[UserProfile]
    tool_outputs: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class _Turn:
    user: Optional[UserProfile]
    session_id: str


ToolHandler = Callable[[Dict[str, Any], _Turn], Awaitable[Dict[str, Any]]]


TOOL_SCHEMAS: List[Dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "record_user_details",
            "description": (
                "Record the user's name, email, or other relevant details as soon as they share them. "
                "Call it again whenever more details come up."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "email": {"type": "string", "description": "The user's email address, if given."},
                    "name": {"type": "string", "description": "The user's name, if given."},
                    "notes": {"type": "string", "description": "Anything else worth remembering."},
                },
                "required": [],
                "additionalProperties": False,
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "record_unknown_question",
            "description": "Record any question you could not answer.",
            "parameters": {
                "type": "object",
                "properties": {
                    "question": {"type": "string", "description": "The question that couldn't be answered."},
                },
                "required": ["question"],
                "additionalProperties": False,
            },
        },
    },
]


class PersonaAssistant:
    """Answer as the configured persona, executing tool calls server-side."""

    def __init__(
        self,
        *,
        model_client: ModelClient,
        coordinator: SessionCoordinator,
        persona: PersonaSettings,
        max_tool_rounds: int = 5,
    ) -> None:
        self._model = model_client
        self._coordinator = coordinator
        self._persona = persona
        self._max_tool_rounds = max_tool_rounds
        self._tools: Dict[str, ToolHandler] = {
            "record_user_details": self._record_user_details,
            "record_unknown_question": self._record_unknown_question,
        }

    async def reply(
        self,
        *,
        message: str,
        history: Iterable[ChatMessage],
        user: Optional[UserProfile],
        session_id: str,
    ) -> AssistantReply:
        turn = _Turn(user=user, session_id=session_id)
        messages: List[Dict[str, Any]] = [{"role": "system", "content": self.system_prompt(user)}]
        for exchange in history:
            messages.append({"role": "user", "content": exchange.user_message})
            messages.append({"role": "assistant", "content": exchange.assistant_message})
        messages.append({"role": "user", "content": message})

        tool_outputs: List[Dict[str, Any]] = []
        for _ in range(self._max_tool_rounds):
            completion = await self._model.complete(messages, TOOL_SCHEMAS)
            if not completion.tool_invocations:
                return AssistantReply(text=completion.text.strip(), user=turn.user, tool_outputs=tool_outputs)

            messages.append(
                {
                    "role": "assistant",
                    "content": completion.text or None,
                    "tool_calls": [
                        {
                            "id": invocation.id,
                            "type": "function",
                            "function": {"name": invocation.name, "arguments": invocation.arguments},
                        }
                        for invocation in completion.tool_invocations
                    ],
                }
            )
            for invocation in completion.tool_invocations:
                arguments, result = await self._execute_tool(invocation, turn)
                tool_outputs.append({"tool": invocation.name, "params": arguments, "result": result})
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": invocation.id,
                        "content": json.dumps(result),
                    }
                )

        raise UpstreamUnavailable("AI service did not finish answering.")

    def system_prompt(self, user: Optional[UserProfile]) -> str:
        name = self._persona.name
        sections = [
            f"You are {name}, answering visitors on {name}'s website. "
            f"Stay in character as {name}: casual, friendly and concise, professional for career questions.",
            "Use record_user_details whenever the visitor shares their name, email or other details. "
            "Use record_unknown_question for any question you cannot answer.",
        ]
        if user is not None:
            sections.append(
                "Known visitor details:\n"
                f"- Name: {user.name or 'Not provided yet'}\n"
                f"- Email: {user.email or 'Not provided yet'}\n"
                f"- Notes: {user.notes or 'None recorded yet'}"
            )
        if self._persona.profile:
            sections.append(f"Background:\n{self._persona.profile.strip()}")
        if self._persona.contact_email:
            sections.append(f"Contact email for follow-ups: {self._persona.contact_email}")
        return "\n\n".join(sections)

    async def _execute_tool(self, invocation: ToolInvocation, turn: _Turn) -> tuple[Dict[str, Any], Dict[str, Any]]:
        try:
            arguments = json.loads(invocation.arguments or "{}")
        except json.JSONDecodeError:
            return {}, {"recorded": "error", "message": "Invalid tool arguments."}
        if not isinstance(arguments, dict):
            return {}, {"recorded": "error", "message": "Invalid tool arguments."}

        handler = self._tools.get(invocation.name)
        if handler is None:
            logger.warning("Model requested unknown tool {}", invocation.name)
            return arguments, {"recorded": "error", "message": f"Unknown tool: {invocation.name}"}

        logger.info("Tool called: {}", invocation.name)
        return arguments, await handler(arguments, turn)

    async def _record_user_details(self, arguments: Dict[str, Any], turn: _Turn) -> Dict[str, Any]:
        if turn.user is None:
            return {"recorded": "error", "message": "Details can only be saved once the chat has been initialised."}
        try:
            update = await self._coordinator.update_details(
                turn.user,
                name=_string_or_none(arguments.get("name")),
                email=_string_or_none(arguments.get("email")),
                notes=_string_or_none(arguments.get("notes")),
            )
        except InvalidEmail as exc:
            return {"recorded": "error", "message": str(exc), "validation_error": True, "field": "email"}

        turn.user = update.user
        return {"recorded": "ok", "updated": update.updated_fields}

    async def _record_unknown_question(self, arguments: Dict[str, Any], turn: _Turn) -> Dict[str, Any]:
        question = _string_or_none(arguments.get("question"))
        if not question:
            return {"recorded": "error", "message": "A question is required."}
        await self._coordinator.record_unknown_question(
            question,
            session_id=turn.session_id,
            user_id=turn.user.id if turn.user else None,
        )
        return {"recorded": "ok", "message": "unknown question recorded for analysis"}


def _string_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value.strip() else None


__all__ = ["AssistantReply", "PersonaAssistant", "TOOL_SCHEMAS"]
