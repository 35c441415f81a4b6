import logging
import re
from typing import Any

import httpx

from adstudio.config import Settings
from adstudio.errors import UpstreamFormatError, UpstreamGenericError, raise_for_provider_status

logger = logging.getLogger(__name__)

GATEWAY = "AI gateway"
GEMINI = "Google Gemini"
OPENAI = "OpenAI"
ELEVENLABS = "ElevenLabs"

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?")


async def send(client: httpx.AsyncClient, provider_name: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.HTTPError as exc:
        logger.error("%s request to %s failed: %s", provider_name, url, exc)
        raise UpstreamGenericError(f"Could not reach {provider_name}. Please try again.") from exc
    raise_for_provider_status(provider_name, response)
    return response


def read_json(provider_name: str, response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        logger.error("%s returned a non-JSON body: %s", provider_name, response.text[:500])
        raise UpstreamFormatError(f"{provider_name} returned an unreadable response.") from exc


async def post_json(
    client: httpx.AsyncClient, provider_name: str, url: str, **kwargs: Any
) -> Any:
    response = await send(client, provider_name, "POST", url, **kwargs)
    return read_json(provider_name, response)


def gateway_headers(settings: Settings) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {settings.require_key('gateway')}",
        "Content-Type": "application/json",
    }


def gemini_url(settings: Settings, model: str) -> str:
    return f"{settings.gemini_api_base}/models/{model}:generateContent"


def chat_message(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        return {}
    choices = payload.get("choices")
    first = choices[0] if isinstance(choices, list) and choices and isinstance(choices[0], dict) else {}
    return first.get("message") or {}


def chat_text(payload: Any) -> str:
    content = chat_message(payload).get("content")
    return content if isinstance(content, str) else ""


def gemini_parts(payload: Any) -> list[dict[str, Any]]:
    if not isinstance(payload, dict):
        return []
    candidates = payload.get("candidates")
    first = candidates[0] if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict) else {}
    parts = (first.get("content") or {}).get("parts") or []
    return [part for part in parts if isinstance(part, dict)]


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).replace("```", "").strip()


def shorten(text: str, limit: int = 60) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."
