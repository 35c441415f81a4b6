import asyncio
import base64
import json

import httpx
import pytest
from conftest import PNG_B64, PNG_BYTES, PNG_DATA_URL, Upstream, chat_image_response

from adstudio.extractors import (
    B64JsonExtractor,
    ChatCompletionImageExtractor,
    GeminiInlineDataExtractor,
    ImagePayload,
    sniff_image_mime,
)
from adstudio.errors import UpstreamRateLimited
from adstudio.images import DualVariantImageStrategy, build_image_prompt
from adstudio.schemas import ImageRequest, resolve_aspect_ratio

JPEG_B64 = base64.b64encode(b"\xff\xd8\xff\xe0" + b"\x00" * 20).decode("ascii")


@pytest.mark.parametrize("value", ["3:2", "", None, 42, "portrait"])
def test_unknown_aspect_ratio_falls_back_to_vertical(value):
    assert resolve_aspect_ratio(value) == "9:16"
    assert ImageRequest.model_validate({"prompt": "x", "aspectRatio": value}).aspect_ratio == "9:16"


@pytest.mark.parametrize("value", ["1:1", "4:5", "9:16", "16:9"])
def test_known_aspect_ratios_are_kept(value):
    assert ImageRequest.model_validate({"prompt": "x", "aspectRatio": value}).aspect_ratio == value


def test_image_prompt_frames_user_text():
    prompt = build_image_prompt("  mulher sorrindo em um café  ", "1:1", "Style: natural")
    assert prompt.startswith("You are a professional commercial photographer.")
    assert "Aspect ratio 1:1" in prompt
    assert prompt.index("Aspect ratio 1:1") < prompt.index("mulher sorrindo em um café")
    assert prompt.endswith("Style: natural")


def test_chat_extractor():
    payload = chat_image_response().json()
    assert ChatCompletionImageExtractor().extract(payload) == ImagePayload(PNG_DATA_URL)
    assert ChatCompletionImageExtractor().extract({"choices": [{"message": {"content": "sorry"}}]}) is None
    assert ChatCompletionImageExtractor().extract({"choices": []}) is None


def test_gemini_extractor_uses_declared_mime():
    payload = {"candidates": [{"content": {"parts": [{"text": "here"}, {"inlineData": {"mimeType": "image/jpeg", "data": JPEG_B64}}]}}]}
    image = GeminiInlineDataExtractor().extract(payload)
    assert image.mime_type == "image/jpeg"
    assert image.is_data_uri


def test_gemini_extractor_snake_case_and_sniffing():
    payload = {"candidates": [{"content": {"parts": [{"inline_data": {"data": JPEG_B64}}]}}]}
    assert GeminiInlineDataExtractor().extract(payload).mime_type == "image/jpeg"
    assert GeminiInlineDataExtractor().extract({"candidates": [{"content": {"parts": [{"text": "no"}]}}]}) is None


def test_b64_json_extractor():
    image = B64JsonExtractor().extract({"data": [{"b64_json": PNG_B64}]})
    assert image.url == PNG_DATA_URL
    assert B64JsonExtractor().extract({"data": [{"url": "https://cdn.example.com/a.png"}]}).is_data_uri is False
    assert B64JsonExtractor().extract({"data": []}) is None


def test_data_uri_decodes_to_declared_image_type():
    image = ImagePayload(PNG_DATA_URL)
    content = image.decode()
    assert content == PNG_BYTES
    assert sniff_image_mime(content) == image.mime_type


def test_remote_url_cannot_be_decoded():
    with pytest.raises(ValueError):
        ImagePayload("https://cdn.example.com/a.png").decode()


def test_gateway_strategy(make_client):
    upstream = Upstream(chat_image_response())
    client = make_client(upstream)

    response = client.post("/api/generate-image", json={"prompt": "tênis de corrida na praia", "aspectRatio": "4:5"})

    assert response.status_code == 200
    assert response.json() == {"image": PNG_DATA_URL}
    sent = upstream.json_bodies()[0]
    assert sent["modalities"] == ["image", "text"]
    assert "Aspect ratio 4:5" in sent["messages"][0]["content"]
    assert "tênis de corrida na praia" in sent["messages"][0]["content"]


def test_empty_prompt_is_rejected_without_upstream_call(make_client):
    upstream = Upstream()
    client = make_client(upstream)

    response = client.post("/api/generate-image", json={"prompt": "", "aspectRatio": "9:16"})

    assert response.status_code == 400
    assert "prompt" in response.json()["error"]
    assert upstream.requests == []


@pytest.mark.parametrize("provider", ["gateway", "gemini", "openai", "dual"])
def test_rate_limit_maps_to_429(make_client, provider):
    upstream = Upstream()
    upstream.responder = lambda request: httpx.Response(429, json={"error": {"message": "quota"}})
    client = make_client(upstream, image_provider=provider)

    response = client.post("/api/generate-image", json={"prompt": "cachorro feliz"})

    assert response.status_code == 429
    body = response.json()
    assert list(body) == ["error"]
    assert "rate limit" in body["error"].lower()


@pytest.mark.parametrize("status", [401, 403])
def test_rejected_credentials_keep_status(make_client, status):
    client = make_client(Upstream(httpx.Response(status, text="bad key")))

    response = client.post("/api/generate-image", json={"prompt": "cachorro feliz"})

    assert response.status_code == status
    assert "bad key" not in response.json()["error"]


def test_other_upstream_errors_are_generic(make_client):
    client = make_client(Upstream(httpx.Response(503, text="<html>overloaded</html>")))

    response = client.post("/api/generate-image", json={"prompt": "cachorro feliz"})

    assert response.status_code == 500
    assert "overloaded" not in response.json()["error"]


def test_missing_image_in_ok_response_is_an_error(make_client):
    client = make_client(Upstream(httpx.Response(200, json={"choices": [{"message": {"content": "I can't draw that"}}]})))

    response = client.post("/api/generate-image", json={"prompt": "cachorro feliz"})

    assert response.status_code == 500
    assert "did not return an image" in response.json()["error"]


def test_gemini_strategy(make_client):
    upstream = Upstream(
        httpx.Response(200, json={"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": PNG_B64}}]}}]})
    )
    client = make_client(upstream, image_provider="gemini")

    response = client.post("/api/generate-image", json={"prompt": "cafeteria aconchegante", "aspectRatio": "16:9"})

    assert response.status_code == 200
    assert response.json() == {"image": PNG_DATA_URL}
    request = upstream.requests[0]
    assert request.url.path.endswith("/models/gemini-2.5-flash-image:generateContent")
    assert request.url.params["key"] == "gm-test-key"
    sent = upstream.json_bodies()[0]
    assert sent["generationConfig"]["imageConfig"] == {"aspectRatio": "16:9"}


def test_openai_strategy_uses_pixel_size(make_client):
    upstream = Upstream(httpx.Response(200, json={"data": [{"b64_json": PNG_B64}]}))
    client = make_client(upstream, image_provider="openai")

    response = client.post("/api/generate-image", json={"prompt": "cafeteria", "aspectRatio": "16:9"})

    assert response.status_code == 200
    assert response.json()["image"] == PNG_DATA_URL
    assert upstream.json_bodies()[0]["size"] == "1536x1024"
    assert upstream.requests[0].headers["Authorization"] == "Bearer oa-test-key"


def _variant_responder(failing: str | None = None):
    def respond(request: httpx.Request) -> httpx.Response:
        content = json.loads(request.content)["messages"][0]["content"]
        variant = "natural" if "candid moment" in content else "corporate"
        if variant == failing:
            return httpx.Response(429, text="busy")
        return chat_image_response(f"https://cdn.example.com/{variant}.png")

    return respond


def test_dual_strategy_returns_matched_pair(make_client):
    upstream = Upstream()
    upstream.responder = _variant_responder()
    client = make_client(upstream, image_provider="dual")

    response = client.post("/api/generate-image", json={"prompt": "executiva em escritório"})

    assert response.status_code == 200
    assert response.json() == {
        "images": {
            "natural": "https://cdn.example.com/natural.png",
            "corporate": "https://cdn.example.com/corporate.png",
        }
    }
    assert len(upstream.requests) == 2


@pytest.mark.parametrize("failing", ["natural", "corporate"])
def test_dual_strategy_fails_as_a_whole(make_client, failing):
    upstream = Upstream()
    upstream.responder = _variant_responder(failing)
    client = make_client(upstream, image_provider="dual")

    response = client.post("/api/generate-image", json={"prompt": "executiva em escritório"})

    assert response.status_code == 429
    assert "images" not in response.json()


def test_dual_strategy_requests_run_concurrently(make_client):
    arrived: list[str] = []
    both_arrived = asyncio.Event()

    async def respond(request: httpx.Request) -> httpx.Response:
        content = json.loads(request.content)["messages"][0]["content"]
        variant = "natural" if "candid moment" in content else "corporate"
        arrived.append(variant)
        if len(arrived) == 2:
            both_arrived.set()
        try:
            await asyncio.wait_for(both_arrived.wait(), timeout=2)
        except asyncio.TimeoutError:
            return httpx.Response(504, text="variants were requested one after another")
        return chat_image_response(f"https://cdn.example.com/{variant}.png")

    upstream = Upstream()
    upstream.responder = respond
    client = make_client(upstream, image_provider="dual")

    response = client.post("/api/generate-image", json={"prompt": "executiva em escritório"})

    assert response.status_code == 200
    assert sorted(arrived) == ["corporate", "natural"]


class SlowCorporateVariant:
    """Fails the natural take at once and keeps the corporate one pending."""

    def __init__(self):
        self.corporate_cancelled = False

    async def generate_payload(self, client, prompt: str, aspect_ratio: str) -> ImagePayload:
        if "candid moment" in prompt:
            raise UpstreamRateLimited("busy")
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            self.corporate_cancelled = True
            raise
        return ImagePayload("https://cdn.example.com/corporate.png")


def test_dual_strategy_cancels_sibling_on_failure():
    inner = SlowCorporateVariant()
    strategy = DualVariantImageStrategy(inner)

    async def scenario():
        with pytest.raises(UpstreamRateLimited):
            await strategy.generate(None, ImageRequest(prompt="executiva em escritório"))
        return [task for task in asyncio.all_tasks() if task is not asyncio.current_task()]

    leftover = asyncio.run(scenario())

    assert inner.corporate_cancelled is True
    assert leftover == []
