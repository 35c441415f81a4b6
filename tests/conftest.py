import base64
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from adstudio.config import Settings
from adstudio.main import create_app, get_http_client, get_pacer
from adstudio.pacing import IntervalPacer

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00\x00\x00\rIHDR" + b"\x00" * 16
PNG_B64 = base64.b64encode(PNG_BYTES).decode("ascii")
PNG_DATA_URL = f"data:image/png;base64,{PNG_B64}"

ALL_KEYS = {
    "gateway": "gw-test-key",
    "gemini": "gm-test-key",
    "openai": "oa-test-key",
    "elevenlabs": "el-test-key",
}


def make_settings(**overrides) -> Settings:
    values = {"api_keys": dict(ALL_KEYS), "frame_interval_seconds": 0.0}
    values.update(overrides)
    return Settings(**values)


def chat_image_response(url: str = PNG_DATA_URL) -> httpx.Response:
    return httpx.Response(
        200,
        json={"choices": [{"message": {"role": "assistant", "content": "", "images": [{"image_url": {"url": url}}]}}]},
    )


def chat_text_response(text: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": text}}]})


def chat_tool_response(arguments: dict, content: str | None = None) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "choices": [
                {
                    "message": {
                        "role": "assistant",
                        "content": content,
                        "tool_calls": [
                            {
                                "id": "call_1",
                                "type": "function",
                                "function": {"name": "submit_decision", "arguments": json.dumps(arguments)},
                            }
                        ],
                    }
                }
            ]
        },
    )


class Upstream:
    """Records outbound requests and answers them from a queue or a callable."""

    def __init__(self, *responses):
        self.requests: list[httpx.Request] = []
        self.responses = list(responses)
        self.responder = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responder is not None:
            return self.responder(request)
        if not self.responses:
            raise AssertionError(f"unexpected upstream call: {request.method} {request.url}")
        return self.responses.pop(0)

    def json_bodies(self) -> list[dict]:
        return [json.loads(request.content) for request in self.requests]


class RecordingSleep:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def make_client():
    def _make(upstream: Upstream, pacer=None, **overrides) -> TestClient:
        app = create_app(make_settings(**overrides))
        transport = httpx.MockTransport(upstream)

        async def http_client():
            async with httpx.AsyncClient(transport=transport) as client:
                yield client

        app.dependency_overrides[get_http_client] = http_client
        app.dependency_overrides[get_pacer] = lambda: pacer or IntervalPacer(0.0)
        return TestClient(app)

    return _make
