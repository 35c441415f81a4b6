import json
import logging
import time

import httpx

from adstudio.config import Settings
from adstudio.errors import (
    UpstreamEmptyResultError,
    UpstreamFormatError,
    UpstreamIncompleteError,
    ValidationError,
)
from adstudio.providers import GATEWAY, chat_text, gateway_headers, post_json, strip_code_fences
from adstudio.schemas import AdBrief, AdContent

logger = logging.getLogger(__name__)

AD_SHAPE = """{
  "hook": "ultra-impactful opening line (max 15 words)",
  "script": {
    "scene1": "first scene: the main problem or pain",
    "scene2": "second scene: the solution or transformation",
    "scene3": "third scene: proof or result"
  },
  "caption": "full post caption (5-8 lines, with strategic emojis)",
  "cta": "direct, urgent call-to-action"
}"""

SCENES = ("scene1", "scene2", "scene3")


def describe_objective(objective: str) -> str:
    return "lead generation" if objective.strip().lower() == "leads" else "direct sales"


def build_system_prompt(brief: AdBrief, language: str) -> str:
    platform = brief.platform.strip() or "Instagram"
    lines = [
        f"You are an expert in high-converting copywriting and digital ads for {platform}.",
        f"Your goal is to create {describe_objective(brief.objective)} ads"
        + (f" in the {brief.niche.strip()} niche." if brief.niche.strip() else "."),
        "",
        "ALWAYS return a valid JSON object with exactly this structure:",
        AD_SHAPE,
        "",
        "CRITICAL RULES:",
        "- The hook must trigger immediate CURIOSITY or PAIN",
        "- Visual script: each scene at most 10 descriptive words",
        "- Caption: storytelling + benefit + urgency",
        "- CTA: clear action + reason for urgency",
        f"- Write every field in {language}",
    ]
    if brief.target_audience.strip():
        lines.append(f"- Use the language of the audience: {brief.target_audience.strip()}")
    if brief.main_benefit.strip():
        lines.append(f"- Focus on the benefit: {brief.main_benefit.strip()}")
    return "\n".join(lines)


def build_user_prompt(brief: AdBrief) -> str:
    if brief.has_prompt() and not brief.has_structured_fields():
        return f"Create an ad for this request:\n{brief.prompt.strip()}\n\nReturn ONLY the JSON, no extra text."

    platform = brief.platform.strip() or "Instagram"
    goal = "capture qualified leads" if describe_objective(brief.objective) == "lead generation" else "drive immediate sales"
    lines = [f"Create an ad for {platform}" + (f" in the {brief.niche.strip()} niche." if brief.niche.strip() else "."), ""]
    lines.append(f"Product/offer: {brief.product_name.strip()}")
    lines.append(f"Target audience: {brief.target_audience.strip()}")
    lines.append(f"Main benefit: {brief.main_benefit.strip()}")
    lines.append(f"Objective: {goal}")
    if brief.has_prompt():
        lines.append(f"Extra notes: {brief.prompt.strip()}")
    lines.extend(["", "Return ONLY the JSON, no extra text."])
    return "\n".join(lines)


def parse_ad_content(content: str) -> AdContent:
    """Parse model output into an AdContent, never inventing missing parts."""
    try:
        data = json.loads(strip_code_fences(content))
    except json.JSONDecodeError as exc:
        logger.warning("Failed to parse ad copy response: %s", content)
        raise UpstreamFormatError("The AI returned the ad in an invalid format. Please try again.") from exc
    if not isinstance(data, dict):
        logger.warning("Ad copy response is not a JSON object: %s", content)
        raise UpstreamFormatError("The AI returned the ad in an invalid format. Please try again.")

    missing = [name for name in ("hook", "caption", "cta") if not _filled(data.get(name))]
    script = data.get("script")
    if isinstance(script, dict):
        missing += [f"script.{scene}" for scene in SCENES if not _filled(script.get(scene))]
    else:
        missing.append("script")
    if missing:
        logger.warning("Ad copy response is missing %s: %s", ", ".join(missing), content)
        raise UpstreamIncompleteError("The AI returned an incomplete ad. Please try again.")

    return AdContent(
        hook=data["hook"],
        script={scene: script[scene] for scene in SCENES},
        caption=data["caption"],
        cta=data["cta"],
    )


def _filled(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip())


async def generate_ad(client: httpx.AsyncClient, settings: Settings, brief: AdBrief) -> AdContent:
    if not (brief.has_prompt() or brief.has_structured_fields()):
        raise ValidationError(
            "Provide either a 'prompt' or the product name, target audience and main benefit."
        )

    logger.info(
        "Generating ad for: niche=%s platform=%s objective=%s product=%s",
        brief.niche, brief.platform, brief.objective, brief.product_name or "(free prompt)",
    )
    started = time.monotonic()
    payload = await post_json(
        client,
        GATEWAY,
        settings.gateway_url,
        headers=gateway_headers(settings),
        json={
            "model": settings.ad_copy_model,
            "messages": [
                {"role": "system", "content": build_system_prompt(brief, settings.content_language)},
                {"role": "user", "content": build_user_prompt(brief)},
            ],
            "temperature": 0.8,
        },
    )

    content = chat_text(payload)
    if not content.strip():
        logger.error("Ad copy response has no content: %s", str(payload)[:500])
        raise UpstreamEmptyResultError("The AI returned an empty response. Please try again.")

    ad = parse_ad_content(content)
    logger.info("Ad generated in %d ms", (time.monotonic() - started) * 1000)
    return ad
