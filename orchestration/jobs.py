from __future__ import annotations

import datetime as dt
import threading
from dataclasses import dataclass, field, replace
from typing import Optional, Protocol

from .io_types import GenerationOutcome, GenerationRequest


class JobTracker(Protocol):
    def create_job(self, request: GenerationRequest) -> str: ...

    def mark_processing(self, job_id: str) -> None: ...

    def mark_completed(self, job_id: str, outcome: GenerationOutcome) -> None: ...

    def mark_failed(self, job_id: str, error: str) -> None: ...


@dataclass
class JobRecord:
    id: str
    status: str = "pending"
    retry_count: int = 0
    provider: Optional[str] = None
    result_path: Optional[str] = None
    result_url: Optional[str] = None
    error: Optional[str] = None
    created_at: dt.datetime = field(default_factory=dt.datetime.utcnow)
    updated_at: dt.datetime = field(default_factory=dt.datetime.utcnow)


class InMemoryJobTracker:
    """Process-local job table used by the CLI and tests."""

    def __init__(self) -> None:
        self._jobs: dict[str, JobRecord] = {}
        self._lock = threading.Lock()

    def create_job(self, request: GenerationRequest) -> str:
        with self._lock:
            job = self._jobs.get(request.job_id)
            if job is None:
                self._jobs[request.job_id] = JobRecord(id=request.job_id, retry_count=request.retry_count)
            else:
                job.status = "pending"
                job.retry_count += 1
                job.error = None
                job.provider = job.result_url = None
                job.updated_at = dt.datetime.utcnow()
        return request.job_id

    def mark_processing(self, job_id: str) -> None:
        self._update(job_id, status="processing")

    def mark_completed(self, job_id: str, outcome: GenerationOutcome) -> None:
        self._update(job_id, status="completed", provider=outcome.provider, result_url=outcome.image_url, error=None)

    def mark_failed(self, job_id: str, error: str) -> None:
        self._update(job_id, status="failed", error=error)

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    def _update(self, job_id: str, **fields) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            for k, v in fields.items():
                setattr(job, k, v)
            job.updated_at = dt.datetime.utcnow()
