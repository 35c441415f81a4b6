"""
Conversational prompt refiner.

The caller resubmits the whole conversation on every call. The refiner looks at
that history to decide its state: before any assistant turn it may ask one
round of clarifying questions, afterwards it must commit to a decision. The
model is asked for a ``submit_decision`` tool call; JSON embedded in plain text
and the older ``READY_TO_GENERATE``/``FINAL_PROMPT`` line protocol are accepted
as fallbacks. Output that matches none of them is never turned into a final
prompt.
"""
import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, Sequence

import httpx

from adstudio.config import Settings
from adstudio.errors import ConfigurationError, UpstreamIncompleteError, ValidationError
from adstudio.providers import (
    GATEWAY,
    GEMINI,
    chat_message,
    gateway_headers,
    gemini_parts,
    gemini_url,
    post_json,
    strip_code_fences,
)
from adstudio.schemas import ChatMessage, RefinementResponse

logger = logging.getLogger(__name__)

DECISION_TOOL = "submit_decision"
UI_HINT_CHAT = "chat"

GENERIC_REPLY = (
    "I'm not sure I understood. Could you describe in a bit more detail the kind of image you want?"
)
READY_REPLY = "Great, I have everything I need. Generating your image now."

DECISION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "assistant_reply": {
            "type": "string",
            "description": "Chat message shown to the user.",
        },
        "ready": {
            "type": "boolean",
            "description": "True when there is enough information to generate the image.",
        },
        "final_prompt": {
            "type": "string",
            "description": "Self-contained, ultra-detailed image prompt; empty when ready is false.",
        },
    },
    "required": ["assistant_reply", "ready", "final_prompt"],
}

BASE_PROMPT = """You are an image assistant working in continuous chat mode.
You are an expert in performance creatives (Meta Ads, TikTok, Reels, Instagram) and help define and refine ultra-realistic images for ads.

CONVERSATION RULES:
- You may ask at most ONE round of short questions to understand the context before generating the image.
- After that first round you may NOT ask new questions. Use what you have to decide and generate the image.
- Never ask the user to "write a prompt"; ask natural questions instead.
- Never restart the conversation or change the interaction mode.
- Always answer in {language}.

WHEN THE REQUEST IS VAGUE, ask short questions about: business/product, audience, campaign goal, platform/format, visual style.

WHEN YOU HAVE ENOUGH INFORMATION, briefly explain what you are going to generate and set ready=true with a final_prompt that synthesizes the entire conversation: who appears, setting, lighting, emotion, framing, style, platform and marketing angle. The final_prompt must stand on its own without the conversation.

OUTPUT:
Call the {tool} function with assistant_reply, ready and final_prompt (empty string when ready is false).
If you cannot call functions, answer ONLY with a JSON object with those three keys and no text around it.
"""

AWAITING_CONTEXT_PROMPT = (
    "You have not replied in this conversation yet. You MAY ask ONE round of short questions to clarify "
    "the context BEFORE deciding to generate the image (ready=true). After that, do not ask further questions."
)

DECIDING_PROMPT = (
    "There is already at least one reply of YOURS (assistant) in this conversation. From now on you may NOT "
    "ask any new questions. Use the existing messages to decide, set ready=true and produce a complete final_prompt."
)

CORRECTIVE_PROMPT = (
    "Your previous answer did not follow the rules: you already asked your questions, so you must now set "
    "ready=true and return a complete, self-contained final_prompt. Do not ask anything else."
)

_CONTROL_TOKEN_RE = re.compile(r"\[UI_MODE:[^\]]*\]")
_CONTROL_LINE_RE = re.compile(r"^\s*(READY_TO_GENERATE|FINAL_PROMPT)\s*:.*$", re.MULTILINE | re.IGNORECASE)
_READY_MARKER_RE = re.compile(r"READY_TO_GENERATE\s*:\s*true", re.IGNORECASE)
_FINAL_MARKER_RE = re.compile(r"FINAL_PROMPT\s*:\s*(.+)", re.IGNORECASE)
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")


class RefinerState(str, Enum):
    AWAITING_CONTEXT = "awaiting_context"
    DECIDING = "deciding"

    @classmethod
    def for_history(cls, messages: Sequence[ChatMessage]) -> "RefinerState":
        if any(message.role == "assistant" for message in messages):
            return cls.DECIDING
        return cls.AWAITING_CONTEXT


@dataclass(frozen=True)
class ModelTurn:
    arguments: dict[str, Any] | None = None
    text: str = ""


@dataclass(frozen=True)
class Decision:
    reply: str
    ready: bool
    final_prompt: str | None = None

    @property
    def is_final(self) -> bool:
        return self.ready and bool(self.final_prompt)

    @property
    def asks_question(self) -> bool:
        return "?" in strip_control_tokens(self.reply)


def build_system_prompt(state: RefinerState, language: str) -> str:
    behaviour = DECIDING_PROMPT if state is RefinerState.DECIDING else AWAITING_CONTEXT_PROMPT
    return f"{BASE_PROMPT.format(language=language, tool=DECISION_TOOL)}\nADDITIONAL CONTEXT:\n{behaviour}"


def _decision_from_mapping(data: dict[str, Any]) -> Decision | None:
    keys = {"assistant_reply", "reply", "ready", "final_prompt", "finalPrompt"}
    if not keys & data.keys():
        return None
    reply = data.get("assistant_reply") or data.get("reply") or ""
    ready = data.get("ready")
    if isinstance(ready, str):
        ready = ready.strip().lower() == "true"
    final_prompt = data.get("final_prompt") or data.get("finalPrompt")
    if not isinstance(final_prompt, str) or not final_prompt.strip():
        final_prompt = None
    is_ready = ready is True and final_prompt is not None
    return Decision(
        reply=reply if isinstance(reply, str) else "",
        ready=is_ready,
        final_prompt=final_prompt.strip() if is_ready else None,
    )


def _json_object_in(text: str) -> dict[str, Any] | None:
    cleaned = strip_code_fences(text)
    candidates = [cleaned]
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        candidates.append(cleaned[start : end + 1])
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def _decision_from_markers(text: str) -> Decision | None:
    if not _READY_MARKER_RE.search(text):
        return None
    match = _FINAL_MARKER_RE.search(text)
    final_prompt = match.group(1).strip() if match else ""
    if not final_prompt:
        return None
    return Decision(reply=text, ready=True, final_prompt=final_prompt)


def extract_decision(turn: ModelTurn) -> Decision | None:
    if turn.arguments:
        decision = _decision_from_mapping(turn.arguments)
        if decision is not None:
            return decision
    if not turn.text.strip():
        return None
    data = _json_object_in(turn.text)
    if data is not None:
        decision = _decision_from_mapping(data)
        if decision is not None:
            return decision
    return _decision_from_markers(turn.text)


def strip_control_tokens(text: str) -> str:
    text = _CONTROL_TOKEN_RE.sub("", text)
    text = _CONTROL_LINE_RE.sub("", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def limit_questions(text: str, max_questions: int = 1) -> str:
    """Cut the reply right after its ``max_questions``-th question."""
    if text.count("?") <= max_questions:
        return text
    kept: list[str] = []
    asked = 0
    for sentence in _SENTENCE_RE.split(text.strip()):
        kept.append(sentence)
        asked += sentence.count("?")
        if asked >= max_questions:
            break
    return " ".join(kept)


def drop_questions(text: str) -> str:
    if "?" not in text:
        return text
    return " ".join(s for s in _SENTENCE_RE.split(text.strip()) if "?" not in s)


class RefinerBackend(Protocol):
    name: str

    async def complete(
        self,
        client: httpx.AsyncClient,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        corrective: str | None = None,
    ) -> ModelTurn: ...


class GatewayRefinerBackend:
    name = "gateway"

    def __init__(self, settings: Settings):
        self.settings = settings

    @staticmethod
    def _chat_content(message: ChatMessage) -> str | list[dict[str, Any]]:
        text = message.content or ""
        if not message.image_url or message.role != "user":
            return text
        content: list[dict[str, Any]] = []
        if text:
            content.append({"type": "text", "text": text})
        content.append({"type": "image_url", "image_url": {"url": message.image_url}})
        return content

    async def complete(
        self,
        client: httpx.AsyncClient,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        corrective: str | None = None,
    ) -> ModelTurn:
        chat = [{"role": "system", "content": system_prompt}]
        chat += [{"role": m.role, "content": self._chat_content(m)} for m in messages]
        if corrective:
            chat.append({"role": "system", "content": corrective})

        payload = await post_json(
            client,
            GATEWAY,
            self.settings.gateway_url,
            headers=gateway_headers(self.settings),
            json={
                "model": self.settings.refiner_model,
                "messages": chat,
                "tools": [
                    {
                        "type": "function",
                        "function": {
                            "name": DECISION_TOOL,
                            "description": "Submit the chat reply and the generation decision.",
                            "parameters": DECISION_SCHEMA,
                        },
                    }
                ],
                "tool_choice": {"type": "function", "function": {"name": DECISION_TOOL}},
            },
        )

        message = chat_message(payload)
        arguments = None
        for call in message.get("tool_calls") or []:
            function = (call or {}).get("function") or {}
            if function.get("name") == DECISION_TOOL:
                arguments = _tool_arguments(function.get("arguments"))
                break
        text = message.get("content")
        return ModelTurn(arguments=arguments, text=text if isinstance(text, str) else "")


class GeminiRefinerBackend:
    name = "gemini"

    def __init__(self, settings: Settings):
        self.settings = settings

    @staticmethod
    def transcript(messages: Sequence[ChatMessage]) -> str:
        lines = []
        for message in messages:
            role = "Assistant" if message.role == "assistant" else "User"
            content = message.content or ""
            if message.image_url:
                content = f"{content} [attached image: {message.image_url}]".strip()
            lines.append(f"{role}: {content}")
        return "\n".join(lines)

    async def complete(
        self,
        client: httpx.AsyncClient,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        corrective: str | None = None,
    ) -> ModelTurn:
        prompt = f"{system_prompt}\n\nCONVERSATION SO FAR:\n{self.transcript(messages)}"
        if corrective:
            prompt = f"{prompt}\n\n{corrective}"

        payload = await post_json(
            client,
            GEMINI,
            gemini_url(self.settings, self.settings.gemini_chat_model),
            params={"key": self.settings.require_key("gemini")},
            headers={"Content-Type": "application/json"},
            json={
                "contents": [{"role": "user", "parts": [{"text": prompt}]}],
                "tools": [
                    {
                        "functionDeclarations": [
                            {
                                "name": DECISION_TOOL,
                                "description": "Submit the chat reply and the generation decision.",
                                "parameters": DECISION_SCHEMA,
                            }
                        ]
                    }
                ],
                "toolConfig": {
                    "functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": [DECISION_TOOL]}
                },
            },
        )

        arguments = None
        texts = []
        for part in gemini_parts(payload):
            call = part.get("functionCall")
            if isinstance(call, dict) and call.get("name") == DECISION_TOOL and arguments is None:
                arguments = _tool_arguments(call.get("args"))
            if isinstance(part.get("text"), str):
                texts.append(part["text"])
        return ModelTurn(arguments=arguments, text="\n".join(texts))


def _tool_arguments(raw: Any) -> dict[str, Any] | None:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Unparseable tool arguments: %s", raw)
            return None
        return data if isinstance(data, dict) else None
    return None


def build_refiner_backend(settings: Settings) -> RefinerBackend:
    if settings.refiner_provider == "gateway":
        return GatewayRefinerBackend(settings)
    if settings.refiner_provider == "gemini":
        return GeminiRefinerBackend(settings)
    raise ConfigurationError(f"Unsupported refiner provider: {settings.refiner_provider}")


async def refine(
    client: httpx.AsyncClient,
    backend: RefinerBackend,
    messages: Sequence[ChatMessage],
    language: str,
) -> RefinementResponse:
    if not messages:
        raise ValidationError("Field 'messages' is required and must be a non-empty list.")

    state = RefinerState.for_history(messages)
    system_prompt = build_system_prompt(state, language)
    logger.info("[refiner:%s] %d messages, state=%s", backend.name, len(messages), state.value)

    turn = await backend.complete(client, system_prompt, messages)
    decision = extract_decision(turn)

    if state is RefinerState.AWAITING_CONTEXT:
        if decision is None:
            logger.warning("Could not parse refiner output: %r", turn.text)
            decision = Decision(reply=GENERIC_REPLY, ready=False)
        reply = limit_questions(strip_control_tokens(decision.reply))
        return RefinementResponse(
            reply=reply or (READY_REPLY if decision.ready else GENERIC_REPLY),
            ready=decision.ready,
            final_prompt=decision.final_prompt,
            ui_hint=UI_HINT_CHAT,
        )

    if decision is None or not decision.is_final or decision.asks_question:
        logger.warning("Refiner did not settle after the clarifying round; re-prompting: %r", turn)
        earlier = decision
        turn = await backend.complete(client, system_prompt, messages, corrective=CORRECTIVE_PROMPT)
        decision = extract_decision(turn)
        if (decision is None or not decision.is_final) and earlier is not None and earlier.is_final:
            decision = earlier
        if decision is None or not decision.is_final:
            logger.error("Refiner still undecided after corrective prompt: %r", turn)
            raise UpstreamIncompleteError(
                "The assistant could not finalize the image description. Please try again."
            )

    reply = drop_questions(strip_control_tokens(decision.reply))
    return RefinementResponse(
        reply=reply or READY_REPLY,
        ready=True,
        final_prompt=decision.final_prompt,
        ui_hint=None,
    )
