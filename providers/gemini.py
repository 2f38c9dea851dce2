from __future__ import annotations

import logging
from typing import Optional

import requests

from orchestration.context import CallContext
from orchestration.errors import ProviderNotConfigured
from orchestration.io_types import GarmentCategory, GenerationOutcome

from .base import raise_for_status, success_outcome, to_data_uri


logger = logging.getLogger(__name__)

GATEWAY_URL = "https://ai.gateway.lovable.dev/v1/chat/completions"
GEMINI_MODEL = "google/gemini-3-pro-image-preview"

CATEGORY_INSTRUCTIONS = {
    GarmentCategory.UPPER_BODY: "Replace ONLY the clothing on the upper body/torso area",
    GarmentCategory.LOWER_BODY: "Replace ONLY the lower body clothing (pants, skirt, shorts)",
    GarmentCategory.FULL_BODY: "Replace the full outfit with the dress shown",
}


def tryon_prompt(category: GarmentCategory, width: int = 768, height: int = 1024) -> str:
    return f"""You are an expert virtual fashion photography AI.

TASK: Create a single image showing the person from image 1 wearing the garment from image 2.

===== MANDATORY OUTPUT SPECIFICATIONS =====
OUTPUT DIMENSIONS: Exactly {width} pixels wide by {height} pixels tall
ASPECT RATIO: Exactly 3:4 portrait (0.75)
ORIENTATION: Vertical/Portrait ONLY

===== GARMENT APPLICATION =====
{CATEGORY_INSTRUCTIONS[category]}
- The garment should drape naturally following the body's contours
- Add natural fabric shadows and wrinkles
- Maintain realistic lighting matching the original photo

===== IDENTITY PRESERVATION (NON-NEGOTIABLE) =====
These must be PIXEL-PERFECT identical to input:
- Face features, expression, skin tone
- Hair color, hairstyle, hair position
- Body shape, weight, curves, proportions
- Pose (exact arm and leg positions)
- Hand positions and gestures (EXACTLY 5 fingers per hand)
- Background (keep EXACTLY the same)

===== FINAL OUTPUT =====
- One single photorealistic image
- Dimensions: {width}x{height} pixels exactly
- Full body visible (head to at least mid-thigh)
- Fashion editorial quality
- No text, watermarks, or artifacts"""


def extract_image(data: dict) -> Optional[str]:
    """Pull the generated image out of a chat completion, whichever shape it came back in."""
    try:
        message = data["choices"][0]["message"]
    except (KeyError, IndexError, TypeError):
        return None

    for image in message.get("images") or []:
        url = (image.get("image_url") or {}).get("url")
        if url:
            return url

    content = message.get("content")
    if not isinstance(content, list):
        return None
    for part in content:
        if part.get("type") == "image_url" and (part.get("image_url") or {}).get("url"):
            return part["image_url"]["url"]
    for part in content:
        inline = part.get("inline_data") or {}
        if part.get("type") == "image" and inline.get("data"):
            return f"data:{inline.get('mime_type') or 'image/png'};base64,{inline['data']}"
    return None


class GeminiGatewayAdapter:
    provider_id = "gemini-3-pro"

    def __init__(
        self,
        api_key: Optional[str],
        gateway_url: str = GATEWAY_URL,
        model: str = GEMINI_MODEL,
        http_timeout_s: float = 90.0,
        cost_estimate: Optional[float] = 0.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key
        self.gateway_url = gateway_url
        self.model = model
        self.http_timeout_s = http_timeout_s
        self.cost_estimate = cost_estimate
        self.session = session or requests.Session()

    def invoke(self, ctx: CallContext, avatar: bytes, garment: bytes, category: GarmentCategory) -> GenerationOutcome:
        if not self.api_key:
            raise ProviderNotConfigured("LOVABLE_API_KEY not configured", self.provider_id)
        body = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": tryon_prompt(category)},
                        {"type": "image_url", "image_url": {"url": to_data_uri(avatar)}},
                        {"type": "image_url", "image_url": {"url": to_data_uri(garment)}},
                    ],
                }
            ],
            "modalities": ["image", "text"],
        }
        resp = self.session.post(
            self.gateway_url,
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
            json=body,
            timeout=ctx.http_timeout(self.http_timeout_s, self.provider_id),
        )
        raise_for_status(self.provider_id, resp)
        try:
            data = resp.json()
        except ValueError:
            data = {}
        ref = extract_image(data)
        if ref is None:
            logger.warning("%s returned no image in a known format", self.provider_id)
        return success_outcome(self.provider_id, ref, self.cost_estimate)
