"""
Result extractors: one per provider response shape.

Each extractor turns a decoded JSON body into an ``ImagePayload`` or ``None``
when the body carries no usable image. Calling code never walks provider field
paths itself.
"""
import base64
import binascii
import re
from dataclasses import dataclass
from typing import Any, Protocol

DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.+)$", re.DOTALL)

_SIGNATURES: list[tuple[bytes, str]] = [
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
]


def sniff_image_mime(content: bytes, default: str = "image/png") -> str:
    for signature, mime in _SIGNATURES:
        if content.startswith(signature):
            return mime
    if content[:4] == b"RIFF" and content[8:12] == b"WEBP":
        return "image/webp"
    return default


def to_data_url(image_b64: str, mime_type: str | None = None) -> str:
    if not mime_type:
        try:
            head = base64.b64decode(image_b64[:64], validate=False)
        except (binascii.Error, ValueError):
            head = b""
        mime_type = sniff_image_mime(head)
    return f"data:{mime_type};base64,{image_b64}"


@dataclass(frozen=True)
class ImagePayload:
    """A generated image, either an inline data URI or a remote URL."""

    url: str

    @property
    def is_data_uri(self) -> bool:
        return DATA_URI_RE.match(self.url) is not None

    @property
    def mime_type(self) -> str | None:
        match = DATA_URI_RE.match(self.url)
        return match.group("mime") if match else None

    def decode(self) -> bytes:
        match = DATA_URI_RE.match(self.url)
        if not match:
            raise ValueError("Image payload is a remote URL, not a data URI.")
        return base64.b64decode(match.group("data"))


class ResultExtractor(Protocol):
    def extract(self, raw: Any) -> ImagePayload | None: ...


def _first(items: Any) -> dict[str, Any]:
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return {}


class ChatCompletionImageExtractor:
    """``choices[0].message.images[0].image_url.url``"""

    def extract(self, raw: Any) -> ImagePayload | None:
        if not isinstance(raw, dict):
            return None
        message = _first(raw.get("choices")).get("message") or {}
        image_url = (_first(message.get("images")).get("image_url") or {}).get("url")
        if isinstance(image_url, str) and image_url.strip():
            return ImagePayload(image_url.strip())
        return None


class GeminiInlineDataExtractor:
    """``candidates[].content.parts[].inlineData.data`` with its mime type."""

    def extract(self, raw: Any) -> ImagePayload | None:
        if not isinstance(raw, dict):
            return None
        for candidate in raw.get("candidates") or []:
            parts = ((candidate or {}).get("content") or {}).get("parts") or []
            for part in parts:
                if not isinstance(part, dict):
                    continue
                blob = part.get("inlineData") or part.get("inline_data") or part.get("fileData")
                if isinstance(blob, dict) and isinstance(blob.get("data"), str) and blob["data"]:
                    mime = blob.get("mimeType") or blob.get("mime_type")
                    return ImagePayload(to_data_url(blob["data"], mime))
        return None


class B64JsonExtractor:
    """``data[0].b64_json``; falls back to ``data[0].url`` for URL responses."""

    def extract(self, raw: Any) -> ImagePayload | None:
        if not isinstance(raw, dict):
            return None
        item = _first(raw.get("data"))
        image_b64 = item.get("b64_json")
        if isinstance(image_b64, str) and image_b64:
            return ImagePayload(to_data_url(image_b64))
        url = item.get("url")
        if isinstance(url, str) and url:
            return ImagePayload(url)
        return None
