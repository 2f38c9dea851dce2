from __future__ import annotations

import logging
import os
from typing import Mapping, Optional

import requests

from orchestration.credentials import CredentialBroker, load_service_account
from orchestration.errors import AuthError
from orchestration.settings import OrchestratorConfig

from .base import ProviderAdapter
from .gemini import GeminiGatewayAdapter
from .replicate import IdmVtonAdapter, SeedreamAdapter
from .vertex import VertexTryOnAdapter


logger = logging.getLogger(__name__)

SEEDREAM_MODELS = {
    "seedream-4.5": ("bytedance/seedream-4.5", 0.04),
    "seedream-4.0": ("bytedance/seedream-4", 0.03),
}


def build_registry(
    config: OrchestratorConfig,
    broker: CredentialBroker,
    env: Optional[Mapping[str, str]] = None,
    session: Optional[requests.Session] = None,
) -> dict[str, ProviderAdapter]:
    """Every known backend keyed by provider id; missing secrets surface as skipped at call time."""
    env = os.environ if env is None else env
    replicate = config.provider_options("replicate")
    replicate_key = env.get("REPLICATE_API_KEY")
    common = dict(
        api_key=replicate_key,
        base_url=replicate.get("base_url", "https://api.replicate.com/v1"),
        poll_interval_s=float(replicate.get("poll_interval_s", 2)),
        max_polls=int(replicate.get("max_polls", 60)),
        session=session,
    )

    registry: dict[str, ProviderAdapter] = {}
    idm = config.provider_options("idm-vton")
    registry["idm-vton"] = IdmVtonAdapter(
        "idm-vton",
        idm.get("model", "cuuupid/idm-vton"),
        pinned_version=idm.get("pinned_version"),
        cost_estimate=_cost(idm),
        **common,
    )
    for provider_id, (model, cost) in SEEDREAM_MODELS.items():
        opts = config.provider_options(provider_id)
        registry[provider_id] = SeedreamAdapter(
            provider_id,
            opts.get("model", model),
            cost_estimate=_cost(opts, cost),
            **common,
        )

    vertex = config.provider_options("vertex-ai")
    _register_service_account(broker, "vertex-ai", env.get("GOOGLE_APPLICATION_CREDENTIALS_JSON"), vertex.get("token_url"))
    registry["vertex-ai"] = VertexTryOnAdapter(
        broker,
        region=vertex.get("region", "us-central1"),
        model=vertex.get("model", "imagegeneration@006"),
        cost_estimate=_cost(vertex),
        cancel_grace_s=vertex.get("grace_s"),
        session=session,
    )

    gemini = config.provider_options("gemini-3-pro")
    gateway = {k: gemini[k] for k in ("gateway_url", "model") if k in gemini}
    registry["gemini-3-pro"] = GeminiGatewayAdapter(
        env.get("LOVABLE_API_KEY"),
        cost_estimate=_cost(gemini, 0.0),
        session=session,
        **gateway,
    )
    return registry


def _cost(opts: dict, default: Optional[float] = None) -> Optional[float]:
    value = opts.get("cost", default)
    return None if value is None else float(value)


def _register_service_account(broker: CredentialBroker, provider_id: str, raw: Optional[str], token_url: Optional[str]) -> None:
    try:
        info = load_service_account(raw)
    except AuthError as e:
        logger.error("%s service account rejected: %s", provider_id, e.message)
        return
    if info is None:
        return
    if token_url and not info.get("token_uri"):
        info["token_uri"] = token_url
    broker.register(provider_id, info)
