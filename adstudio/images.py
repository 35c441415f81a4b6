import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Protocol

import httpx

from adstudio.config import Settings
from adstudio.errors import ConfigurationError, UpstreamEmptyResultError, ValidationError
from adstudio.extractors import (
    B64JsonExtractor,
    ChatCompletionImageExtractor,
    GeminiInlineDataExtractor,
    ImagePayload,
    ResultExtractor,
)
from adstudio.providers import GATEWAY, GEMINI, OPENAI, gateway_headers, gemini_url, post_json, shorten
from adstudio.schemas import ImagePair, ImageRequest, PairedImageResponse, SingleImageResponse, resolve_aspect_ratio

logger = logging.getLogger(__name__)

PHOTOGRAPHER_PROMPT = (
    "You are a professional commercial photographer.\n"
    "Generate an ultra-realistic, high-resolution marketing image strictly based on the user prompt below.\n"
    "The image must look like a real photo (no cartoon, no illustration).\n"
    "Format: suitable for social media ads.\n"
    "Resolution: at least 1080p equivalent.\n"
    "Style: realistic photography, professional lighting, natural skin tones, correct proportions.\n"
    "{ratio_hint}\n\n"
    "User prompt (describes subject, setting and mood):\n"
    "{prompt}"
)

RATIO_HINTS: dict[str, str] = {
    "1:1": "Aspect ratio 1:1, square, ideal for the social media feed.",
    "4:5": "Aspect ratio 4:5, portrait, ideal for feed posts.",
    "9:16": "Aspect ratio 9:16, vertical, ideal for stories and reels.",
    "16:9": "Aspect ratio 16:9, horizontal, ideal for banners and videos.",
}

STYLE_HINTS: dict[str, str] = {
    "natural": "Style: natural, lifestyle, user-generated content, candid moment, everyday context.",
    "corporate": (
        "Style: professional, corporate, clean composition, suitable for paid ads and landing pages."
    ),
}

OPENAI_SIZES: dict[str, str] = {
    "1:1": "1024x1024",
    "4:5": "1024x1536",
    "9:16": "1024x1536",
    "16:9": "1536x1024",
}


def build_image_prompt(prompt: str, aspect_ratio: str, style_hint: str | None = None) -> str:
    ratio = resolve_aspect_ratio(aspect_ratio)
    text = PHOTOGRAPHER_PROMPT.format(ratio_hint=RATIO_HINTS[ratio], prompt=prompt.strip())
    if style_hint:
        text = f"{text}\n\n{style_hint}"
    return text


def ensure_prompt(request: ImageRequest) -> str:
    prompt = request.prompt.strip()
    if not prompt:
        raise ValidationError("Field 'prompt' is required.")
    return prompt


ImageResult = SingleImageResponse | PairedImageResponse


class ImageStrategy(Protocol):
    name: str

    async def generate(self, client: httpx.AsyncClient, request: ImageRequest) -> ImageResult: ...


class SingleImageStrategy:
    """Base for adapters that return one image per call."""

    name = "single"
    provider_name = "provider"
    extractor: ResultExtractor

    def __init__(self, settings: Settings):
        self.settings = settings

    async def request_image(self, client: httpx.AsyncClient, prompt_text: str, aspect_ratio: str) -> dict:
        raise NotImplementedError

    async def generate_payload(
        self, client: httpx.AsyncClient, prompt_text: str, aspect_ratio: str
    ) -> ImagePayload:
        payload = await self.request_image(client, prompt_text, aspect_ratio)
        image = self.extractor.extract(payload)
        if image is None:
            logger.error("%s response contains no image: %s", self.provider_name, str(payload)[:500])
            raise UpstreamEmptyResultError(f"{self.provider_name} did not return an image.")
        return image

    async def generate(self, client: httpx.AsyncClient, request: ImageRequest) -> ImageResult:
        prompt = ensure_prompt(request)
        logger.info("[%s] generating image (%s): %s", self.name, request.aspect_ratio, shorten(prompt))
        started = time.monotonic()
        image = await self.generate_payload(
            client, build_image_prompt(prompt, request.aspect_ratio), request.aspect_ratio
        )
        logger.info("[%s] image ready in %d ms", self.name, (time.monotonic() - started) * 1000)
        return SingleImageResponse(image=image.url)


class GatewayImageStrategy(SingleImageStrategy):
    name = "gateway"
    provider_name = GATEWAY
    extractor = ChatCompletionImageExtractor()

    def __init__(self, settings: Settings, model: str | None = None):
        super().__init__(settings)
        self.model = model or settings.gateway_image_model

    async def request_image(self, client: httpx.AsyncClient, prompt_text: str, aspect_ratio: str) -> dict:
        return await post_json(
            client,
            self.provider_name,
            self.settings.gateway_url,
            headers=gateway_headers(self.settings),
            json={
                "model": self.model,
                "messages": [{"role": "user", "content": prompt_text}],
                "modalities": ["image", "text"],
            },
        )


class GeminiImageStrategy(SingleImageStrategy):
    name = "gemini"
    provider_name = GEMINI
    extractor = GeminiInlineDataExtractor()

    async def request_image(self, client: httpx.AsyncClient, prompt_text: str, aspect_ratio: str) -> dict:
        return await post_json(
            client,
            self.provider_name,
            gemini_url(self.settings, self.settings.gemini_image_model),
            params={"key": self.settings.require_key("gemini")},
            headers={"Content-Type": "application/json"},
            json={
                "contents": [{"parts": [{"text": prompt_text}]}],
                "generationConfig": {
                    "responseModalities": ["IMAGE"],
                    "imageConfig": {"aspectRatio": resolve_aspect_ratio(aspect_ratio)},
                },
            },
        )


class OpenAIImageStrategy(SingleImageStrategy):
    name = "openai"
    provider_name = OPENAI
    extractor = B64JsonExtractor()

    async def request_image(self, client: httpx.AsyncClient, prompt_text: str, aspect_ratio: str) -> dict:
        return await post_json(
            client,
            self.provider_name,
            f"{self.settings.openai_api_base}/images/generations",
            headers={
                "Authorization": f"Bearer {self.settings.require_key('openai')}",
                "Content-Type": "application/json",
            },
            json={
                "model": self.settings.openai_image_model,
                "prompt": prompt_text,
                "size": OPENAI_SIZES[resolve_aspect_ratio(aspect_ratio)],
                "output_format": "png",
                "n": 1,
            },
        )


@dataclass
class DualVariantImageStrategy:
    """Generates a natural and a corporate take on the same prompt, concurrently."""

    inner: SingleImageStrategy
    name: str = "dual"

    async def generate(self, client: httpx.AsyncClient, request: ImageRequest) -> ImageResult:
        prompt = ensure_prompt(request)
        logger.info("[%s] generating image pair (%s): %s", self.name, request.aspect_ratio, shorten(prompt))

        async def variant(style: str) -> ImagePayload:
            prompt_text = build_image_prompt(prompt, request.aspect_ratio, STYLE_HINTS[style])
            return await self.inner.generate_payload(client, prompt_text, request.aspect_ratio)

        tasks = [asyncio.ensure_future(variant("natural")), asyncio.ensure_future(variant("corporate"))]
        try:
            natural, corporate = await asyncio.gather(*tasks)
        except Exception:
            # no partial pairs: stop the sibling before the client goes away
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return PairedImageResponse(images=ImagePair(natural=natural.url, corporate=corporate.url))


def build_image_strategy(settings: Settings) -> ImageStrategy:
    if settings.image_provider == "gateway":
        return GatewayImageStrategy(settings)
    if settings.image_provider == "gemini":
        return GeminiImageStrategy(settings)
    if settings.image_provider == "openai":
        return OpenAIImageStrategy(settings)
    if settings.image_provider == "dual":
        return DualVariantImageStrategy(GatewayImageStrategy(settings))
    raise ConfigurationError(f"Unsupported image provider: {settings.image_provider}")
