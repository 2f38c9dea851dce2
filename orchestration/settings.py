from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .io_types import Strategy


DEFAULT_ORDERS = {
    Strategy.CASCADE: ["idm-vton", "vertex-ai", "gemini-3-pro"],
    Strategy.RACE: ["vertex-ai", "gemini-3-pro", "idm-vton"],
    Strategy.BENCHMARK: ["seedream-4.5", "seedream-4.0", "gemini-3-pro"],
}


@dataclass
class PreprocessConfig:
    avatar_width: int = 768
    avatar_height: int = 1024
    avatar_quality: int = 90
    garment_max_size: int = 1024
    garment_quality: int = 92
    landscape_ratio: float = 1.2
    max_source_side: int = 4000


@dataclass
class OrchestratorConfig:
    provider_timeout_s: float = 90.0
    global_timeout_s: float = 180.0
    cancel_grace_s: float = 5.0
    force_grace_s: float = 10.0
    onboarding_provider_timeout_s: float = 35.0
    refresh_margin_s: float = 300.0
    assertion_lifetime_s: int = 3600
    orders: dict[Strategy, list[str]] = field(default_factory=lambda: {k: list(v) for k, v in DEFAULT_ORDERS.items()})
    onboarding_order: list[str] = field(default_factory=lambda: ["gemini-3-pro", "vertex-ai"])
    preprocess: PreprocessConfig = field(default_factory=PreprocessConfig)
    # Raw per-provider option blocks keyed by provider id (and "replicate")
    providers: dict[str, dict[str, Any]] = field(default_factory=dict)

    def provider_options(self, provider_id: str) -> dict[str, Any]:
        return dict(self.providers.get(provider_id) or {})

    @classmethod
    def from_settings(cls, settings) -> "OrchestratorConfig":
        # settings is the backend.app.config.settings instance
        orders = {}
        for strategy in Strategy:
            orders[strategy] = settings.get_list(f"strategies.{strategy.value}", DEFAULT_ORDERS[strategy])
        pre = PreprocessConfig(
            avatar_width=int(settings.get("preprocess.avatar_width", 768)),
            avatar_height=int(settings.get("preprocess.avatar_height", 1024)),
            avatar_quality=int(settings.get("preprocess.avatar_quality", 90)),
            garment_max_size=int(settings.get("preprocess.garment_max_size", 1024)),
            garment_quality=int(settings.get("preprocess.garment_quality", 92)),
            landscape_ratio=float(settings.get("preprocess.landscape_ratio", 1.2)),
            max_source_side=int(settings.get("preprocess.max_source_side", 4000)),
        )
        return cls(
            provider_timeout_s=float(settings.get("timeouts.provider_s", 90)),
            global_timeout_s=float(settings.get("timeouts.global_s", 180)),
            cancel_grace_s=float(settings.get("timeouts.cancel_grace_s", 5)),
            force_grace_s=float(settings.get("timeouts.force_grace_s", 10)),
            onboarding_provider_timeout_s=float(settings.get("timeouts.onboarding_provider_s", 35)),
            refresh_margin_s=float(settings.get("credentials.refresh_margin_s", 300)),
            assertion_lifetime_s=int(settings.get("credentials.assertion_lifetime_s", 3600)),
            orders=orders,
            onboarding_order=settings.get_list("strategies.onboarding", ["gemini-3-pro", "vertex-ai"]),
            preprocess=pre,
            providers=dict(settings.get("providers", {}) or {}),
        )
