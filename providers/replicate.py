from __future__ import annotations

import logging
from typing import Optional

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from orchestration.context import CallContext
from orchestration.errors import (
    ProviderError,
    ProviderNotConfigured,
    ProviderTimeoutError,
    RequestCancelled,
)
from orchestration.io_types import GarmentCategory, GenerationOutcome

from .base import raise_for_status, success_outcome, to_data_uri


logger = logging.getLogger(__name__)

REPLICATE_BASE_URL = "https://api.replicate.com/v1"

# Replicate model vocabulary shared by IDM-VTON and Seedream
REPLICATE_CATEGORIES = {
    GarmentCategory.UPPER_BODY: "upper_body",
    GarmentCategory.LOWER_BODY: "lower_body",
    GarmentCategory.FULL_BODY: "dresses",
}

IDM_ALTERNATIVE = {
    "upper_body": "dresses",
    "lower_body": "upper_body",
    "dresses": "upper_body",
}

IDM_GARMENT_DESCRIPTIONS = {
    "upper_body": "A stylish upper body garment, focus on fabric drape and fit on torso only, preserve hands exactly as they are",
    "lower_body": "A lower body garment, focus on fit around waist and legs only",
    "dresses": "An elegant dress, focus on how it fits the body silhouette, preserve hands and arms exactly",
}

SEEDREAM_INSTRUCTIONS = {
    "upper_body": "Replace ONLY the upper body clothing (shirt, blouse, jacket) on the person in Figure 1 with the garment shown in Figure 2.",
    "lower_body": "Replace ONLY the lower body clothing (pants, skirt, shorts) on the person in Figure 1 with the garment shown in Figure 2.",
    "dresses": "Replace the outfit on the person in Figure 1 with the dress/full garment shown in Figure 2.",
}

SEEDREAM_REQUIREMENTS = """CRITICAL REQUIREMENTS:
- Preserve the EXACT face, hair, skin tone, and body shape from Figure 1
- Keep the EXACT same pose, arm positions, and hand gestures
- Maintain the original background completely unchanged
- Each hand must have exactly 5 fingers - do NOT modify hands
- The garment should drape naturally following body contours
- Output: Photorealistic fashion photo, 768x1024 pixels, portrait orientation

Figure 1: The person (preserve identity exactly)
Figure 2: The garment to apply"""


class ReplicatePredictionAdapter:
    """
    Runs one model on the Replicate predictions API.
    - Resolves the model's latest version at call time.
    - Creates a prediction with data-URI inputs and polls it until it settles.
    - Cancels the remote prediction if the caller cancels or the deadline passes.
    Subclasses only describe the model input.
    """

    def __init__(
        self,
        provider_id: str,
        model: str,
        api_key: Optional[str],
        base_url: str = REPLICATE_BASE_URL,
        poll_interval_s: float = 2.0,
        max_polls: int = 60,
        http_timeout_s: float = 30.0,
        cost_estimate: Optional[float] = None,
        pinned_version: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.provider_id = provider_id
        self.model = model
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.poll_interval_s = poll_interval_s
        self.max_polls = max_polls
        self.http_timeout_s = http_timeout_s
        self.cost_estimate = cost_estimate
        self.pinned_version = pinned_version
        self.session = session or requests.Session()

    def build_input(self, avatar_uri: str, garment_uri: str, category: str) -> dict:
        raise NotImplementedError

    def invoke(self, ctx: CallContext, avatar: bytes, garment: bytes, category: GarmentCategory) -> GenerationOutcome:
        self._require_key()
        version = self.resolve_version(ctx)
        model_input = self.build_input(to_data_uri(avatar), to_data_uri(garment), REPLICATE_CATEGORIES[category])
        output = self.run_prediction(ctx, version, model_input)
        return success_outcome(self.provider_id, output, self.cost_estimate)

    def _require_key(self) -> None:
        if not self.api_key:
            raise ProviderNotConfigured(f"{self.provider_id}: REPLICATE_API_KEY not configured", self.provider_id)

    def _headers(self) -> dict:
        return {"Authorization": f"Token {self.api_key}", "Content-Type": "application/json"}

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
    )
    def _get(self, url: str, timeout: float) -> requests.Response:
        return self.session.get(url, headers=self._headers(), timeout=timeout)

    def resolve_version(self, ctx: CallContext) -> str:
        url = f"{self.base_url}/models/{self.model}"
        try:
            resp = self._get(url, ctx.http_timeout(self.http_timeout_s, self.provider_id))
            if resp.status_code == 429:
                raise_for_status(self.provider_id, resp)
            if resp.ok:
                latest = (resp.json().get("latest_version") or {}).get("id")
                if latest:
                    return latest
            logger.warning("%s: could not resolve latest version (%s)", self.provider_id, resp.status_code)
        except (requests.RequestException, ValueError) as e:
            logger.warning("%s: version lookup failed: %s", self.provider_id, e)
        if self.pinned_version:
            return self.pinned_version
        raise ProviderError(f"{self.provider_id}: no model version available", self.provider_id, retryable=True)

    def run_prediction(self, ctx: CallContext, version: str, model_input: dict) -> Optional[str]:
        resp = self.session.post(
            f"{self.base_url}/predictions",
            headers=self._headers(),
            json={"version": version, "input": model_input},
            timeout=ctx.http_timeout(self.http_timeout_s, self.provider_id),
        )
        raise_for_status(self.provider_id, resp)
        prediction_id = resp.json().get("id")
        if not prediction_id:
            raise ProviderError(f"{self.provider_id}: prediction has no id", self.provider_id, retryable=True)
        logger.info("%s prediction created: %s", self.provider_id, prediction_id)

        try:
            return self._poll(ctx, prediction_id)
        except (RequestCancelled, ProviderTimeoutError):
            self._cancel_remote(prediction_id)
            raise

    def _poll(self, ctx: CallContext, prediction_id: str) -> Optional[str]:
        url = f"{self.base_url}/predictions/{prediction_id}"
        for i in range(self.max_polls):
            ctx.wait(self.poll_interval_s, self.provider_id, responded=True)
            try:
                resp = self._get(url, ctx.http_timeout(self.http_timeout_s, self.provider_id))
            except requests.RequestException as e:
                logger.warning("%s status check failed: %s", self.provider_id, e)
                continue
            if not resp.ok:
                logger.warning("%s status check failed: %s", self.provider_id, resp.status_code)
                continue
            status = resp.json()
            state = status.get("status")
            logger.debug("%s status (%d/%d): %s", self.provider_id, i + 1, self.max_polls, state)
            if state == "succeeded":
                output = status.get("output")
                if isinstance(output, list):
                    output = output[0] if output else None
                return output if isinstance(output, str) else None
            if state == "failed":
                raise ProviderError(f"{self.provider_id} failed: {status.get('error') or 'unknown error'}", self.provider_id)
            if state == "canceled":
                raise ProviderError(f"{self.provider_id} was canceled", self.provider_id)
        raise ProviderTimeoutError(
            f"{self.provider_id}: prediction still running after {self.max_polls} polls", self.provider_id, responded=True
        )

    def _cancel_remote(self, prediction_id: str) -> None:
        try:
            self.session.post(
                f"{self.base_url}/predictions/{prediction_id}/cancel", headers=self._headers(), timeout=5
            )
            logger.info("%s prediction %s cancelled", self.provider_id, prediction_id)
        except requests.RequestException as e:
            logger.warning("%s could not cancel prediction %s: %s", self.provider_id, prediction_id, e)


class IdmVtonAdapter(ReplicatePredictionAdapter):
    def build_input(self, avatar_uri: str, garment_uri: str, category: str) -> dict:
        return {
            "garm_img": garment_uri,
            "human_img": avatar_uri,
            "category": category,
            "garment_des": IDM_GARMENT_DESCRIPTIONS[category],
        }

    def invoke(self, ctx: CallContext, avatar: bytes, garment: bytes, category: GarmentCategory) -> GenerationOutcome:
        self._require_key()
        version = self.resolve_version(ctx)
        avatar_uri, garment_uri = to_data_uri(avatar), to_data_uri(garment)
        primary = REPLICATE_CATEGORIES[category]
        try:
            output = self.run_prediction(ctx, version, self.build_input(avatar_uri, garment_uri, primary))
            return success_outcome(self.provider_id, output, self.cost_estimate)
        except ProviderError as e:
            if e.status_code == 402:
                raise
            logger.info("%s category %s failed (%s), retrying as %s", self.provider_id, primary, e.message, IDM_ALTERNATIVE[primary])

        # Rate limits, auth and cancellation never reach here
        alternative = IDM_ALTERNATIVE[primary]
        output = self.run_prediction(ctx, version, self.build_input(avatar_uri, garment_uri, alternative))
        return success_outcome(self.provider_id, output, self.cost_estimate)


class SeedreamAdapter(ReplicatePredictionAdapter):
    def build_input(self, avatar_uri: str, garment_uri: str, category: str) -> dict:
        return {
            "prompt": f"{SEEDREAM_INSTRUCTIONS[category]}\n\n{SEEDREAM_REQUIREMENTS}",
            "image_input": [avatar_uri, garment_uri],
            "size": "custom",
            "width": 1920,
            "height": 2560,
            "aspect_ratio": "3:4",
        }
