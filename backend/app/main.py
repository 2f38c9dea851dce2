import math
import os
import uuid
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, RedirectResponse
from prometheus_client import make_asgi_app as make_prom_app
from dotenv import load_dotenv

from orchestration.credentials import CLOUD_PLATFORM_SCOPE, CredentialBroker
from orchestration.io_types import GarmentCategory, GenerationOutcome, GenerationRequest, OrchestrationResult, Strategy
from orchestration.orchestrator import Orchestrator
from orchestration.preprocess import ImagePreprocessor
from orchestration.settings import OrchestratorConfig
from providers.registry import build_registry
from .config import settings
from .db import SqlJobTracker, init_db
from .logging_config import setup_logging
from .metrics import jobs_in_flight, record_execution, record_token_exchange
from .models import (
    BenchmarkRequest,
    BenchmarkResponse,
    BenchmarkSummaryModel,
    JobStatusResponse,
    RetryInfo,
    TryOnErrorDetail,
    TryOnRequest,
    TryOnResponse,
)
from .storage import Storage

load_dotenv()

app = FastAPI(title="Try-On Orchestration API", version="0.1.0")

origins = os.environ.get("CORS_ORIGINS", "*")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.mount("/metrics", make_prom_app())

_orchestrator: Optional[Orchestrator] = None


def build_orchestrator(tracker=None, env=None, session=None) -> Orchestrator:
    config = OrchestratorConfig.from_settings(settings)
    vertex = config.provider_options("vertex-ai")
    broker = CredentialBroker(
        scope=vertex.get("scope", CLOUD_PLATFORM_SCOPE),
        refresh_margin_s=config.refresh_margin_s,
        assertion_lifetime_s=config.assertion_lifetime_s,
        on_exchange=record_token_exchange,
    )
    registry = build_registry(config, broker, env=env, session=session)
    return Orchestrator(
        registry,
        preprocessor=ImagePreprocessor(config=config.preprocess),
        tracker=tracker or SqlJobTracker(),
        config=config,
        listener=record_execution,
    )


def get_orchestrator() -> Orchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator


@app.on_event("startup")
def _startup():
    setup_logging()
    Storage.ensure_dirs()
    init_db()


@app.on_event("shutdown")
def _shutdown():
    if _orchestrator is not None:
        _orchestrator.shutdown(wait=False)
    jobs_in_flight.set(0)


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


def _result_path(orch: Orchestrator, job_id: str, outcome: GenerationOutcome) -> Optional[str]:
    if outcome.image_bytes is None:
        return None
    job = orch.tracker.get(job_id)
    return job.result_path if job else None


def _raise_failure(result: OrchestrationResult) -> None:
    outcome = result.outcome
    guidance = result.guidance
    attempts = [o.to_dict() for o in result.outcomes]
    detail = TryOnErrorDetail(
        job_id=result.job_id,
        error=(outcome.error_message if outcome else None) or "no provider produced a result",
        error_kind=outcome.error_kind if outcome else None,
        retry_after_seconds=guidance.retry_after_seconds if guidance else None,
        retry=RetryInfo(**guidance.to_dict()) if guidance else None,
        attempts=attempts,
    )
    headers = None
    if guidance and guidance.is_rate_limited:
        status_code = 429
        if guidance.retry_after_seconds is not None:
            headers = {"Retry-After": str(math.ceil(guidance.retry_after_seconds))}
    else:
        status_code = 400
    raise HTTPException(status_code=status_code, detail=detail.model_dump(), headers=headers)


@app.post("/v1/tryon", response_model=TryOnResponse)
def create_tryon(
    body: TryOnRequest,
    idempotency_key: Optional[str] = Header(default=None),
    orch: Orchestrator = Depends(get_orchestrator),
):
    try:
        strategy = Strategy(body.strategy.lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"unknown strategy: {body.strategy}")
    if strategy is Strategy.BENCHMARK:
        raise HTTPException(status_code=400, detail="use /v1/benchmark for benchmark runs")

    request = GenerationRequest(
        avatar_ref=body.avatar_image_url,
        garment_ref=body.garment_image_url,
        category=GarmentCategory.parse(body.category),
        strategy=strategy,
        providers=tuple(body.providers or ()),
        job_id=idempotency_key or body.job_id or str(uuid.uuid4()),
        retry_count=body.retry_count,
    )
    try:
        result = orch.orchestrate(request)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"internal error: {e}")

    if not result.succeeded:
        _raise_failure(result)
    outcome = result.outcome
    return TryOnResponse(
        success=True,
        job_id=result.job_id,
        provider=outcome.provider,
        result_image_url=outcome.image_url,
        result_path=_result_path(orch, result.job_id, outcome),
        processing_time_ms=result.elapsed_ms,
        attempts=[o.to_dict() for o in result.outcomes],
    )


@app.post("/v1/benchmark", response_model=BenchmarkResponse)
def run_benchmark(body: BenchmarkRequest, orch: Orchestrator = Depends(get_orchestrator)):
    category = GarmentCategory.parse(body.category)
    request = GenerationRequest(
        avatar_ref=body.avatar_image_url,
        garment_ref=body.garment_image_url,
        category=category,
        strategy=Strategy.BENCHMARK,
        providers=tuple(body.models or ()),
    )
    try:
        result = orch.orchestrate(request)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"internal error: {e}")
    if result.summary is None:
        # Inputs could not be fetched
        _raise_failure(result)

    results = []
    for o in result.outcomes:
        row = o.to_dict()
        if row["result_image_url"] is None and o.image_bytes is not None:
            row["result_image_url"] = o.data_uri()
        results.append(row)
    return BenchmarkResponse(
        success=result.succeeded,
        job_id=result.job_id,
        category=category.value,
        total_time_ms=result.summary.total_time_ms,
        summary=BenchmarkSummaryModel(**result.summary.to_dict()),
        results=results,
    )


@app.get("/v1/jobs/{job_id}", response_model=JobStatusResponse)
def get_job_status(job_id: str, orch: Orchestrator = Depends(get_orchestrator)):
    job = orch.tracker.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobStatusResponse(
        job_id=job_id,
        status=job.status,
        retry_count=job.retry_count,
        provider=job.provider,
        error=job.error,
        result_path=job.result_path,
        result_url=job.result_url,
    )


@app.get("/v1/jobs/{job_id}/result")
def get_job_result(job_id: str, orch: Orchestrator = Depends(get_orchestrator)):
    job = orch.tracker.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.status != "completed" or not (job.result_path or job.result_url):
        raise HTTPException(status_code=409, detail="Job not completed yet")
    if job.result_url:
        return RedirectResponse(url=job.result_url, status_code=307)
    return FileResponse(job.result_path, filename=os.path.basename(job.result_path))
