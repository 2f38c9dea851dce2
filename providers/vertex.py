from __future__ import annotations

import base64
import binascii
import logging
import random
from typing import Optional

import requests

from orchestration.context import CallContext
from orchestration.credentials import CredentialBroker
from orchestration.errors import AuthError, ProviderError, ProviderNotConfigured
from orchestration.governor import classify_response
from orchestration.io_types import GarmentCategory, GenerationOutcome, OutcomeStatus


logger = logging.getLogger(__name__)

VERTEX_CATEGORIES = {
    GarmentCategory.UPPER_BODY: "TOPS",
    GarmentCategory.LOWER_BODY: "BOTTOMS",
    GarmentCategory.FULL_BODY: "ONE_PIECES",
}

EDIT_PROMPTS = {
    "TOPS": "Replace the shirt/top with the garment from the reference image. Keep exact face, body, and pose.",
    "BOTTOMS": "Replace the pants/bottom with the garment from the reference image. Keep exact face, body, and pose.",
    "ONE_PIECES": "Replace the outfit with the dress from the reference image. Keep exact face, body, and pose.",
}

NEGATIVE_PROMPT = "distorted, deformed, extra limbs, missing limbs, blurry, low quality"


class VertexTryOnAdapter:
    """
    Vertex AI Imagen try-on with a bearer token from the credential broker.
    - 400 on the try-on request shape: retried once as an Imagen product edit.
    - 401/403: the cached token is dropped before the AuthError surfaces.
    """

    provider_id = "vertex-ai"

    def __init__(
        self,
        broker: CredentialBroker,
        region: str = "us-central1",
        model: str = "imagegeneration@006",
        http_timeout_s: float = 60.0,
        cost_estimate: Optional[float] = None,
        cancel_grace_s: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.broker = broker
        self.region = region
        self.model = model
        self.http_timeout_s = http_timeout_s
        self.cost_estimate = cost_estimate
        self.cancel_grace_s = cancel_grace_s
        self.session = session or requests.Session()

    def endpoint(self, project_id: str) -> str:
        return (
            f"https://{self.region}-aiplatform.googleapis.com/v1/projects/{project_id}"
            f"/locations/{self.region}/publishers/google/models/{self.model}:predict"
        )

    def invoke(self, ctx: CallContext, avatar: bytes, garment: bytes, category: GarmentCategory) -> GenerationOutcome:
        if not self.broker.has_account(self.provider_id):
            raise ProviderNotConfigured("GOOGLE_APPLICATION_CREDENTIALS_JSON not configured", self.provider_id)
        project_id = self.broker.account(self.provider_id).get("project_id")
        if not project_id:
            raise AuthError("service account has no project_id", self.provider_id)

        vto_category = VERTEX_CATEGORIES[category]
        avatar_b64 = base64_text(avatar)
        garment_b64 = base64_text(garment)
        url = self.endpoint(project_id)

        resp = self._post(ctx, url, self.tryon_body(avatar_b64, garment_b64, vto_category))
        if resp.status_code == 400:
            logger.info("%s rejected try-on request shape, retrying as product edit", self.provider_id)
            resp = self._post(ctx, url, self.edit_body(avatar_b64, garment_b64, vto_category))
        if resp.status_code >= 400:
            if resp.status_code in (401, 403):
                self.broker.invalidate(self.provider_id)
            raise classify_response(self.provider_id, resp)

        try:
            image_b64 = resp.json()["predictions"][0]["bytesBase64Encoded"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"{self.provider_id}: no image generated", self.provider_id, retryable=True) from e
        return GenerationOutcome(
            provider=self.provider_id,
            status=OutcomeStatus.SUCCESS,
            image_bytes=decode_base64(image_b64),
            mime_type="image/png",
            cost_estimate=self.cost_estimate,
        )

    def _post(self, ctx: CallContext, url: str, body: dict) -> requests.Response:
        cred = self.broker.get_token(self.provider_id, ctx)
        return self.session.post(
            url,
            headers={"Authorization": f"Bearer {cred.token}", "Content-Type": "application/json"},
            json=body,
            timeout=ctx.http_timeout(self.http_timeout_s, self.provider_id),
        )

    @staticmethod
    def tryon_body(avatar_b64: str, garment_b64: str, vto_category: str) -> dict:
        return {
            "instances": [
                {
                    "prompt": (
                        f"Virtual try-on: Apply the garment to the person. Category: {vto_category}. "
                        "Preserve exact identity, face, body proportions, and pose. "
                        "Output photorealistic fashion photography."
                    ),
                    "image": {"bytesBase64Encoded": avatar_b64},
                    "referenceImage": {"bytesBase64Encoded": garment_b64},
                    "parameters": {
                        "sampleCount": 1,
                        "aspectRatio": "3:4",
                        "negativePrompt": NEGATIVE_PROMPT,
                        "guidanceScale": 100,
                        "seed": random.randint(0, 999999),
                    },
                }
            ],
            "parameters": {"sampleCount": 1},
        }

    @staticmethod
    def edit_body(avatar_b64: str, garment_b64: str, vto_category: str) -> dict:
        return {
            "instances": [
                {
                    "prompt": EDIT_PROMPTS.get(vto_category, EDIT_PROMPTS["TOPS"]),
                    "image": {"bytesBase64Encoded": avatar_b64},
                }
            ],
            "parameters": {
                "sampleCount": 1,
                "editMode": "product-image",
                "editConfig": {"referenceImage": {"bytesBase64Encoded": garment_b64}},
            },
        }


def base64_text(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_base64(text: str) -> bytes:
    try:
        return base64.b64decode(text)
    except (binascii.Error, ValueError) as e:
        raise ProviderError("vertex-ai: malformed image payload", "vertex-ai", retryable=True) from e
