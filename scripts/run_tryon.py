import argparse
import json
import os

from dotenv import load_dotenv

from backend.app.config import settings
from backend.app.logging_config import setup_logging
from orchestration.credentials import CredentialBroker
from orchestration.io_types import GarmentCategory, GenerationRequest, Strategy
from orchestration.jobs import InMemoryJobTracker
from orchestration.orchestrator import Orchestrator, onboarding_request
from orchestration.settings import OrchestratorConfig
from providers.registry import build_registry


def main():
    parser = argparse.ArgumentParser(description="Run a virtual try-on against the configured providers")
    parser.add_argument("--avatar", required=True, help="Avatar image path, URL or data URI")
    parser.add_argument("--garment", required=True, help="Garment image path, URL or data URI")
    parser.add_argument("--category", default="upper_body", help="Garment category (top, pants, dress, ...)")
    parser.add_argument("--strategy", default="cascade", choices=[s.value for s in Strategy])
    parser.add_argument("--providers", default=None, help="Comma separated provider ids, e.g. vertex-ai,gemini-3-pro")
    parser.add_argument("--retry-count", type=int, default=0, help="Skip the first N providers of a cascade")
    parser.add_argument("--onboarding", action="store_true", help="Use the fast onboarding cascade")
    parser.add_argument("--out", required=True, help="Output image path (or .json report for benchmark)")
    args = parser.parse_args()

    load_dotenv()
    setup_logging()
    config = OrchestratorConfig.from_settings(settings)
    broker = CredentialBroker(refresh_margin_s=config.refresh_margin_s, assertion_lifetime_s=config.assertion_lifetime_s)
    orch = Orchestrator(build_registry(config, broker), tracker=InMemoryJobTracker(), config=config)

    if args.onboarding:
        request = onboarding_request(args.avatar, args.garment, args.category, config=config)
    else:
        providers = tuple(p.strip() for p in (args.providers or "").split(",") if p.strip())
        request = GenerationRequest(
            avatar_ref=args.avatar,
            garment_ref=args.garment,
            category=GarmentCategory.parse(args.category),
            strategy=Strategy(args.strategy),
            providers=providers,
            retry_count=args.retry_count,
        )

    try:
        result = orch.orchestrate(request)
    finally:
        orch.shutdown()

    os.makedirs(os.path.dirname(args.out) or ".", exist_ok=True)
    if result.strategy is Strategy.BENCHMARK:
        report = {
            "category": request.category.value,
            "total_time_ms": result.summary.total_time_ms if result.summary else result.elapsed_ms,
            "summary": result.summary.to_dict() if result.summary else None,
            "results": [o.to_dict() for o in result.outcomes],
        }
        with open(args.out, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2)
        print(f"Saved: {args.out}")
        return 0 if result.succeeded else 1

    if not result.succeeded:
        outcome = result.outcome
        print(f"Failed: {outcome.error_message if outcome else 'no provider produced a result'}")
        if result.guidance and result.guidance.retry_after_seconds is not None:
            print(f"Retry after {result.guidance.retry_after_seconds:.0f}s")
        return 1

    outcome = result.outcome
    if outcome.image_bytes is not None:
        with open(args.out, "wb") as f:
            f.write(outcome.image_bytes)
        print(f"Saved: {args.out} ({outcome.provider}, {result.elapsed_ms}ms)")
    else:
        print(f"Result URL: {outcome.image_url} ({outcome.provider}, {result.elapsed_ms}ms)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
