from typing import Literal

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

ASPECT_RATIOS = ("1:1", "4:5", "9:16", "16:9")
DEFAULT_ASPECT_RATIO = "9:16"


def resolve_aspect_ratio(value: object) -> str:
    if isinstance(value, str) and value.strip() in ASPECT_RATIOS:
        return value.strip()
    return DEFAULT_ASPECT_RATIO


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AdBrief(CamelModel):
    niche: str = ""
    platform: str = ""
    objective: str = ""
    product_name: str = ""
    target_audience: str = ""
    main_benefit: str = ""
    prompt: str = ""

    @field_validator("*", mode="before")
    @classmethod
    def _null_as_blank(cls, value: object) -> object:
        return "" if value is None else value

    def has_prompt(self) -> bool:
        return bool(self.prompt.strip())

    def has_structured_fields(self) -> bool:
        return all(
            value.strip() for value in (self.product_name, self.target_audience, self.main_benefit)
        )


class Script(CamelModel):
    scene1: str = ""
    scene2: str = ""
    scene3: str = ""


class AdContent(CamelModel):
    hook: str
    script: Script
    caption: str
    cta: str


class ImageRequest(CamelModel):
    prompt: str = ""
    aspect_ratio: str = DEFAULT_ASPECT_RATIO

    @field_validator("aspect_ratio", mode="before")
    @classmethod
    def _fallback_ratio(cls, value: object) -> str:
        return resolve_aspect_ratio(value)


class SingleImageResponse(CamelModel):
    image: str


class ImagePair(CamelModel):
    natural: str
    corporate: str


class PairedImageResponse(CamelModel):
    images: ImagePair


class VideoFramesRequest(CamelModel):
    script: Script | None = None
    niche: str = ""
    platform: str = ""

    @field_validator("niche", "platform", mode="before")
    @classmethod
    def _null_as_blank(cls, value: object) -> object:
        return "" if value is None else value


class VideoFramesResponse(CamelModel):
    frames: dict[str, str]


class ChatMessage(CamelModel):
    role: Literal["user", "assistant"]
    content: str | None = None
    image_url: str | None = None


class RefinerRequest(CamelModel):
    messages: list[ChatMessage] = []


class RefinementResponse(CamelModel):
    reply: str
    ready: bool
    final_prompt: str | None = None
    ui_hint: str | None = None


class TranscriptionResponse(CamelModel):
    text: str | None = None
