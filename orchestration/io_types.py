from __future__ import annotations

import base64
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class GarmentCategory(str, Enum):
    UPPER_BODY = "upper_body"
    LOWER_BODY = "lower_body"
    FULL_BODY = "full_body"

    @classmethod
    def parse(cls, value: Optional[str]) -> "GarmentCategory":
        """Map a free-form garment label onto one of the three canonical categories."""
        normalized = (value or "").strip().lower()
        for category, aliases in _CATEGORY_ALIASES.items():
            if normalized == category.value or normalized in aliases:
                return category
        return cls.UPPER_BODY


_CATEGORY_ALIASES = {
    GarmentCategory.UPPER_BODY: {
        "top", "tops", "upper", "shirt", "blouse", "t-shirt", "jacket", "coat", "sweater", "blazer",
    },
    GarmentCategory.LOWER_BODY: {
        "bottom", "bottoms", "lower", "pants", "skirt", "shorts", "jeans", "trousers",
    },
    GarmentCategory.FULL_BODY: {
        "dress", "dresses", "full", "jumpsuit", "romper", "overalls", "one_piece",
    },
}


class Strategy(str, Enum):
    CASCADE = "cascade"
    RACE = "race"
    BENCHMARK = "benchmark"


class ImageRole(str, Enum):
    AVATAR = "avatar"
    GARMENT = "garment"


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionState(str, Enum):
    SUBMITTED = "submitted"
    PREPROCESSING = "preprocessing"
    DISPATCHING = "dispatching"
    AWAITING_ALL = "awaiting_all"
    AWAITING_FIRST = "awaiting_first"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class GenerationRequest:
    avatar_ref: str
    garment_ref: str
    category: GarmentCategory = GarmentCategory.UPPER_BODY
    strategy: Strategy = Strategy.CASCADE
    # Priority order for cascade; selection for race/benchmark. Empty = configured default.
    providers: tuple[str, ...] = ()
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    retry_count: int = 0
    provider_timeout_s: Optional[float] = None


@dataclass(frozen=True)
class RetryGuidance:
    retry_after_seconds: Optional[float] = None
    is_rate_limited: bool = False
    is_terminal: bool = False

    def to_dict(self) -> dict:
        return {
            "retry_after_seconds": self.retry_after_seconds,
            "is_rate_limited": self.is_rate_limited,
            "is_terminal": self.is_terminal,
        }


@dataclass
class GenerationOutcome:
    provider: str
    status: OutcomeStatus
    image_bytes: Optional[bytes] = None
    image_url: Optional[str] = None
    mime_type: str = "image/png"
    duration_ms: Optional[int] = None
    cost_estimate: Optional[float] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    guidance: Optional[RetryGuidance] = None

    @property
    def succeeded(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    def data_uri(self) -> Optional[str]:
        if self.image_bytes is None:
            return None
        return f"data:{self.mime_type};base64,{base64.b64encode(self.image_bytes).decode('ascii')}"

    def to_dict(self) -> dict:
        out = {
            "model": self.provider,
            "status": self.status.value,
            "result_image_url": self.image_url,
            "processing_time_ms": self.duration_ms,
            "cost": self.cost_estimate,
            "error": self.error_message,
            "error_kind": self.error_kind,
        }
        if self.guidance is not None:
            out["retry"] = self.guidance.to_dict()
        return out


@dataclass(frozen=True)
class Credential:
    provider: str
    token: str
    # Epoch seconds at which the provider stops accepting the token
    expires_at: float

    def is_fresh(self, margin_s: float, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now < self.expires_at - margin_s


@dataclass
class BenchmarkSummary:
    success: int
    failed: int
    skipped: int
    fastest_model: Optional[str]
    total_time_ms: int

    @classmethod
    def from_outcomes(cls, outcomes: list[GenerationOutcome], total_time_ms: int) -> "BenchmarkSummary":
        timed = [o for o in outcomes if o.succeeded and o.duration_ms is not None]
        fastest = min(timed, key=lambda o: o.duration_ms).provider if timed else None
        return cls(
            success=sum(1 for o in outcomes if o.status is OutcomeStatus.SUCCESS),
            failed=sum(1 for o in outcomes if o.status is OutcomeStatus.FAILED),
            skipped=sum(1 for o in outcomes if o.status is OutcomeStatus.SKIPPED),
            fastest_model=fastest,
            total_time_ms=total_time_ms,
        )

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "fastest_model": self.fastest_model,
        }


@dataclass
class OrchestrationResult:
    job_id: str
    strategy: Strategy
    state: ExecutionState
    # Winner (or most actionable failure) for cascade/race; None for benchmark
    outcome: Optional[GenerationOutcome] = None
    # Every attempt, in dispatch order
    outcomes: list[GenerationOutcome] = field(default_factory=list)
    summary: Optional[BenchmarkSummary] = None
    elapsed_ms: int = 0

    @property
    def succeeded(self) -> bool:
        if self.strategy is Strategy.BENCHMARK:
            return self.state is ExecutionState.COMPLETED
        return self.outcome is not None and self.outcome.succeeded

    @property
    def guidance(self) -> Optional[RetryGuidance]:
        if self.outcome is None or self.outcome.succeeded:
            return None
        return self.outcome.guidance
