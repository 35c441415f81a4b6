import logging

import httpx

from adstudio.errors import ValidationError
from adstudio.images import SingleImageStrategy
from adstudio.pacing import Pacer
from adstudio.providers import shorten
from adstudio.schemas import Script, VideoFramesResponse

logger = logging.getLogger(__name__)

FRAME_RATIO = "9:16"

FRAME_PROMPT = (
    "Create a high-quality, professional {platform} ad frame for the {niche} niche.\n"
    "Scene: {scene}\n\n"
    "Style: modern, clean, engaging, suitable for social media ads.\n"
    "Format: 9:16 vertical (mobile-first).\n"
    "Quality: high resolution, professional lighting, cinematic.\n"
    "No text overlays - just the visual scene."
)


def build_frame_prompt(scene: str, niche: str, platform: str) -> str:
    return FRAME_PROMPT.format(
        platform=platform.strip() or "social media",
        niche=niche.strip() or "general",
        scene=scene.strip(),
    )


def scenes_of(script: Script | None) -> list[tuple[str, str]]:
    if script is None:
        raise ValidationError("A complete script is required (scene1, scene2, scene3).")
    scenes = [("scene1", script.scene1), ("scene2", script.scene2), ("scene3", script.scene3)]
    missing = [name for name, text in scenes if not text.strip()]
    if missing:
        raise ValidationError(
            f"A complete script is required (scene1, scene2, scene3); missing {', '.join(missing)}."
        )
    return scenes


async def generate_frames(
    client: httpx.AsyncClient,
    strategy: SingleImageStrategy,
    pacer: Pacer,
    script: Script | None,
    niche: str = "",
    platform: str = "",
) -> VideoFramesResponse:
    scenes = scenes_of(script)
    logger.info("Generating video frames for: niche=%s platform=%s", niche, platform)

    frames: dict[str, str] = {}
    for name, description in scenes:
        await pacer.wait()
        logger.info("Generating %s: %s", name, shorten(description))
        # any failure propagates as-is; collected frames are dropped with it
        image = await strategy.generate_payload(
            client, build_frame_prompt(description, niche, platform), FRAME_RATIO
        )
        frames[name] = image.url

    logger.info("All %d frames generated", len(frames))
    return VideoFramesResponse(frames=frames)
