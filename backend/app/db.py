from __future__ import annotations

import os
import datetime as dt
from typing import Optional

from sqlalchemy import (
    create_engine,
    String,
    Text,
    DateTime,
    Float,
    Integer,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, Session

from orchestration.io_types import GenerationOutcome, GenerationRequest

from .storage import Storage


DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///storage/tryon.sqlite3")


class Base(DeclarativeBase):
    pass


class TryOnJobORM(Base):
    __tablename__ = "tryon_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), default="pending")
    strategy: Mapped[str] = mapped_column(String(16), default="cascade")
    category: Mapped[str] = mapped_column(String(16), default="upper_body")
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    avatar_ref: Mapped[str] = mapped_column(Text)
    garment_ref: Mapped[str] = mapped_column(Text)
    provider: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    result_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cost_estimate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow
    )


engine = create_engine(DATABASE_URL, echo=False, future=True)


def init_db(bind: Optional[Engine] = None) -> None:
    # Ensure storage dir exists for SQLite
    if DATABASE_URL.startswith("sqlite") and bind is None:
        os.makedirs("storage", exist_ok=True)
    Base.metadata.create_all(bind or engine)


def _ref(ref: str) -> str:
    # Inline data URIs are not worth keeping in the job table
    return ref if not ref.startswith("data:") else ref[:48] + "..."


class SqlJobTracker:
    """Job lifecycle persisted in the tryon_jobs table."""

    def __init__(self, bind: Optional[Engine] = None) -> None:
        self.engine = bind or engine

    def create_job(self, request: GenerationRequest) -> str:
        with Session(self.engine) as s:
            job = s.get(TryOnJobORM, request.job_id)
            if job is None:
                job = TryOnJobORM(
                    id=request.job_id,
                    status="pending",
                    strategy=request.strategy.value,
                    category=request.category.value,
                    retry_count=request.retry_count,
                    avatar_ref=_ref(request.avatar_ref),
                    garment_ref=_ref(request.garment_ref),
                )
            else:
                job.status = "pending"
                job.retry_count = (job.retry_count or 0) + 1
                job.error = None
                # A resubmission replaces whatever the previous attempt produced
                Storage.remove_result(job.result_path)
                job.result_path = None
                job.result_url = None
                job.provider = None
            s.add(job)
            s.commit()
        return request.job_id

    def mark_processing(self, job_id: str) -> None:
        self._update(job_id, status="processing")

    def mark_completed(self, job_id: str, outcome: GenerationOutcome) -> None:
        result_path = None
        if outcome.image_bytes is not None:
            result_path = Storage.save_generated(job_id, outcome.provider, outcome.image_bytes, outcome.mime_type)
        self._update(
            job_id,
            status="completed",
            provider=outcome.provider,
            result_path=result_path,
            result_url=outcome.image_url,
            cost_estimate=outcome.cost_estimate,
            processing_time_ms=outcome.duration_ms,
            error=None,
        )

    def mark_failed(self, job_id: str, error: str) -> None:
        self._update(job_id, status="failed", error=error)

    def get(self, job_id: str) -> Optional[TryOnJobORM]:
        with Session(self.engine) as s:
            job = s.get(TryOnJobORM, job_id)
            if job is None:
                return None
            # Detach for safe return
            s.expunge(job)
            return job

    def _update(self, job_id: str, **fields) -> None:
        with Session(self.engine) as s:
            job = s.get(TryOnJobORM, job_id)
            if not job:
                return
            for key, value in fields.items():
                setattr(job, key, value)
            s.add(job)
            s.commit()
