from pydantic import BaseModel, Field


class TryOnRequest(BaseModel):
    avatar_image_url: str
    garment_image_url: str
    category: str = "upper_body"
    strategy: str = "cascade"
    providers: list[str] | None = None
    job_id: str | None = None
    retry_count: int = Field(default=0, ge=0)


class BenchmarkRequest(BaseModel):
    avatar_image_url: str
    garment_image_url: str
    category: str = "upper_body"
    models: list[str] | None = None


class RetryInfo(BaseModel):
    retry_after_seconds: float | None = None
    is_rate_limited: bool = False
    is_terminal: bool = False


class TryOnResponse(BaseModel):
    success: bool
    job_id: str
    provider: str | None = None
    result_image_url: str | None = None
    result_path: str | None = None
    processing_time_ms: int
    attempts: list[dict] = []


class TryOnErrorDetail(BaseModel):
    success: bool = False
    job_id: str
    error: str
    error_kind: str | None = None
    retry_after_seconds: float | None = None
    retry: RetryInfo | None = None
    attempts: list[dict] = []


class BenchmarkSummaryModel(BaseModel):
    success: int
    failed: int
    skipped: int
    fastest_model: str | None = None


class BenchmarkResponse(BaseModel):
    success: bool
    job_id: str
    category: str
    total_time_ms: int
    summary: BenchmarkSummaryModel
    results: list[dict]


class JobStatusResponse(BaseModel):
    job_id: str
    status: str
    retry_count: int = 0
    provider: str | None = None
    error: str | None = None
    result_path: str | None = None
    result_url: str | None = None
