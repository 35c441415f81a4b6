import logging

import httpx

from adstudio.config import Settings
from adstudio.errors import UpstreamTranscriptionError, ValidationError
from adstudio.providers import ELEVENLABS
from adstudio.schemas import TranscriptionResponse

logger = logging.getLogger(__name__)

TRANSCRIPTION_FAILED = "Could not transcribe the audio. Please try again."


async def transcribe(
    client: httpx.AsyncClient,
    settings: Settings,
    content: bytes,
    filename: str | None = None,
    content_type: str | None = None,
) -> TranscriptionResponse:
    if not content:
        raise ValidationError("No audio file provided.")

    api_key = settings.require_key("elevenlabs")
    try:
        response = await client.post(
            settings.stt_url,
            headers={"xi-api-key": api_key},
            data={"model_id": settings.stt_model, "language_code": settings.stt_language},
            files={"file": (filename or "audio.webm", content, content_type or "audio/webm")},
        )
    except httpx.HTTPError as exc:
        logger.error("%s speech-to-text request failed: %s", ELEVENLABS, exc)
        raise UpstreamTranscriptionError(TRANSCRIPTION_FAILED) from exc

    if not response.is_success:
        logger.error("%s STT error: %s %s", ELEVENLABS, response.status_code, response.text)
        raise UpstreamTranscriptionError(TRANSCRIPTION_FAILED)

    try:
        payload = response.json()
    except ValueError as exc:
        logger.error("%s STT returned a non-JSON body: %s", ELEVENLABS, response.text[:500])
        raise UpstreamTranscriptionError(TRANSCRIPTION_FAILED) from exc

    text = payload.get("text") if isinstance(payload, dict) else None
    if not isinstance(text, str) or not text.strip():
        logger.info("No speech detected in %d-byte clip", len(content))
        return TranscriptionResponse(text=None)
    return TranscriptionResponse(text=text.strip())
