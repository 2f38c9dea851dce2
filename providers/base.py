from __future__ import annotations

import base64
import binascii
from typing import Optional, Protocol

import requests

from orchestration.context import CallContext
from orchestration.errors import ProviderError
from orchestration.governor import classify_response
from orchestration.io_types import GarmentCategory, GenerationOutcome, OutcomeStatus


class ProviderAdapter(Protocol):
    provider_id: str
    cost_estimate: Optional[float]

    def invoke(
        self,
        ctx: CallContext,
        avatar: bytes,
        garment: bytes,
        category: GarmentCategory,
    ) -> GenerationOutcome: ...


def to_data_uri(data: bytes, mime_type: str = "image/jpeg") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def is_valid_result(ref: Optional[str]) -> bool:
    if not ref or len(ref) < 20:
        return False
    if ref.startswith("data:"):
        return "base64" in ref and len(ref) > 100
    return ref.startswith(("http://", "https://"))


def success_outcome(provider: str, ref: Optional[str], cost: Optional[float] = None) -> GenerationOutcome:
    """Validate an output reference and wrap it; data URIs are decoded into bytes."""
    if not is_valid_result(ref):
        raise ProviderError(f"{provider}: invalid output", provider, retryable=True)
    if ref.startswith("data:"):
        header, _, payload = ref.partition(",")
        mime_type = header[5:].split(";")[0] or "image/png"
        try:
            data = base64.b64decode(payload)
        except (binascii.Error, ValueError) as e:
            raise ProviderError(f"{provider}: invalid output (bad base64)", provider, retryable=True) from e
        return GenerationOutcome(
            provider=provider,
            status=OutcomeStatus.SUCCESS,
            image_bytes=data,
            mime_type=mime_type,
            cost_estimate=cost,
        )
    return GenerationOutcome(provider=provider, status=OutcomeStatus.SUCCESS, image_url=ref, cost_estimate=cost)


def raise_for_status(provider: str, resp: requests.Response) -> None:
    if resp.status_code >= 400:
        raise classify_response(provider, resp)
