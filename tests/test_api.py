"""HTTP API tests: FastAPI TestClient over an orchestrator with scripted adapters and a SQLite job table."""

import os

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine

from helpers import FakeAdapter, image_bytes
from orchestration.errors import ProviderError, RateLimitError
from orchestration.governor import RetryGovernor
from orchestration.orchestrator import Orchestrator
from backend.app import storage
from backend.app.db import SqlJobTracker, init_db
from backend.app.main import app, get_orchestrator
from backend.app.metrics import record_execution


@pytest.fixture
def api(tmp_path, monkeypatch, fast_config, avatar_ref, garment_ref):
    monkeypatch.setattr(storage, "RESULTS_DIR", str(tmp_path / "results"))
    engine = create_engine(
        f"sqlite:///{tmp_path / 'jobs.sqlite3'}", connect_args={"check_same_thread": False}
    )
    init_db(bind=engine)
    tracker = SqlJobTracker(bind=engine)
    built = []

    def serve(*adapters):
        orch = Orchestrator(
            {a.provider_id: a for a in adapters},
            tracker=tracker,
            governor=RetryGovernor(force_grace_s=0.2, poll_s=0.01),
            config=fast_config,
            listener=record_execution,
            max_workers=8,
        )
        built.append(orch)
        app.dependency_overrides[get_orchestrator] = lambda: orch
        return TestClient(app)

    serve.body = {"avatar_image_url": avatar_ref, "garment_image_url": garment_ref}
    yield serve
    app.dependency_overrides.clear()
    for orch in built:
        orch.shutdown(wait=False)


class TestTryOn:

    def test_health(self, api):
        assert api().get("/health").json() == {"status": "ok"}

    def test_success_with_url(self, api):
        client = api(FakeAdapter("idm-vton"))
        resp = client.post("/v1/tryon", json=dict(api.body, providers=["idm-vton"]))

        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["provider"] == "idm-vton"
        assert data["result_image_url"] == "https://cdn.example.com/idm-vton.png"
        assert data["result_path"] is None
        assert [a["model"] for a in data["attempts"]] == ["idm-vton"]

    def test_success_with_bytes_is_stored(self, api):
        png = image_bytes((16, 16))
        client = api(FakeAdapter("vertex-ai", image=png))
        resp = client.post("/v1/tryon", json=dict(api.body, providers=["vertex-ai"], job_id="job-bytes"))

        assert resp.status_code == 200
        path = resp.json()["result_path"]
        assert path.endswith("job-bytes_vertex-ai.png")

        result = client.get("/v1/jobs/job-bytes/result")
        assert result.status_code == 200
        assert result.content == png

    def test_cascade_falls_through_to_second_provider(self, api):
        client = api(FakeAdapter("idm-vton", error=ProviderError("boom", "idm-vton", retryable=True)), FakeAdapter("gemini-3-pro"))
        resp = client.post("/v1/tryon", json=dict(api.body, providers=["idm-vton", "gemini-3-pro"]))

        data = resp.json()
        assert data["provider"] == "gemini-3-pro"
        assert [a["status"] for a in data["attempts"]] == ["failed", "success"]

    def test_rate_limited_is_429_with_retry_after(self, api):
        client = api(FakeAdapter("idm-vton", error=RateLimitError("busy", "idm-vton", retry_after=9.2)))
        resp = client.post("/v1/tryon", json=dict(api.body, providers=["idm-vton"]))

        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "10"
        detail = resp.json()["detail"]
        assert detail["success"] is False
        assert detail["retry_after_seconds"] == 9.2
        assert detail["retry"]["is_rate_limited"] is True

    def test_terminal_failure_is_400(self, api):
        client = api(FakeAdapter("idm-vton", error=ProviderError("credits exhausted", "idm-vton", status_code=402)))
        resp = client.post("/v1/tryon", json=dict(api.body, providers=["idm-vton"], job_id="job-fail"))

        assert resp.status_code == 400
        assert resp.json()["detail"]["retry"]["is_terminal"] is True
        assert client.get("/v1/jobs/job-fail").json()["status"] == "failed"

    def test_unknown_strategy(self, api):
        resp = api().post("/v1/tryon", json=dict(api.body, strategy="lottery"))
        assert resp.status_code == 400

    def test_benchmark_strategy_is_rejected(self, api):
        resp = api().post("/v1/tryon", json=dict(api.body, strategy="benchmark"))
        assert resp.status_code == 400

    def test_unreachable_input(self, api):
        client = api(FakeAdapter("idm-vton"))
        resp = client.post("/v1/tryon", json=dict(api.body, avatar_image_url="/missing/avatar.jpg"))
        assert resp.status_code == 400
        assert resp.json()["detail"]["error_kind"] == "fetch"

    def test_directory_as_input(self, api, tmp_path):
        client = api(FakeAdapter("idm-vton"))
        resp = client.post("/v1/tryon", json=dict(api.body, avatar_image_url=str(tmp_path)))
        assert resp.status_code == 400
        assert resp.json()["detail"]["error_kind"] == "fetch"


class TestJobs:

    def test_idempotency_key_names_the_job(self, api):
        client = api(FakeAdapter("idm-vton"))
        resp = client.post(
            "/v1/tryon", json=dict(api.body, providers=["idm-vton"]), headers={"Idempotency-Key": "order-42"}
        )
        assert resp.json()["job_id"] == "order-42"

        job = client.get("/v1/jobs/order-42").json()
        assert job["status"] == "completed"
        assert job["provider"] == "idm-vton"
        assert job["result_url"] == "https://cdn.example.com/idm-vton.png"

    def test_resubmission_counts_as_retry(self, api):
        client = api(FakeAdapter("idm-vton"))
        for _ in range(2):
            client.post("/v1/tryon", json=dict(api.body, providers=["idm-vton"], job_id="again"))
        assert client.get("/v1/jobs/again").json()["retry_count"] == 1

    def test_resubmission_replaces_stored_result(self, api):
        client = api(FakeAdapter("vertex-ai", image=image_bytes((8, 8))), FakeAdapter("gemini-3-pro", image=image_bytes((9, 9))))
        first = client.post("/v1/tryon", json=dict(api.body, providers=["vertex-ai"], job_id="swap")).json()["result_path"]
        second = client.post("/v1/tryon", json=dict(api.body, providers=["gemini-3-pro"], job_id="swap")).json()["result_path"]

        assert second.endswith("swap_gemini-3-pro.png")
        assert not os.path.exists(first)
        assert os.path.exists(second)

    def test_result_redirects_to_url(self, api):
        client = api(FakeAdapter("idm-vton"))
        client.post("/v1/tryon", json=dict(api.body, providers=["idm-vton"], job_id="job-url"))

        resp = client.get("/v1/jobs/job-url/result", follow_redirects=False)
        assert resp.status_code == 307
        assert resp.headers["location"] == "https://cdn.example.com/idm-vton.png"

    def test_unknown_job(self, api):
        client = api()
        assert client.get("/v1/jobs/nope").status_code == 404
        assert client.get("/v1/jobs/nope/result").status_code == 404

    def test_result_of_failed_job(self, api):
        client = api(FakeAdapter("idm-vton", error=ProviderError("nope", "idm-vton")))
        client.post("/v1/tryon", json=dict(api.body, providers=["idm-vton"], job_id="job-409"))
        assert client.get("/v1/jobs/job-409/result").status_code == 409


class TestBenchmark:

    def test_summary_and_results(self, api):
        client = api(
            FakeAdapter("seedream-4.5", cost=0.04),
            FakeAdapter("seedream-4.0", error=ProviderError("boom", "seedream-4.0")),
            FakeAdapter("gemini-3-pro", image=image_bytes((8, 8))),
        )
        resp = client.post("/v1/benchmark", json=dict(api.body, models=["seedream-4.5", "seedream-4.0", "gemini-3-pro"]))

        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["summary"]["success"] == 2
        assert data["summary"]["failed"] == 1
        assert data["summary"]["fastest_model"] in ("seedream-4.5", "gemini-3-pro")
        by_model = {r["model"]: r for r in data["results"]}
        assert by_model["seedream-4.5"]["cost"] == 0.04
        assert by_model["gemini-3-pro"]["result_image_url"].startswith("data:image/png;base64,")
        assert by_model["seedream-4.0"]["status"] == "failed"

    def test_all_failed(self, api):
        client = api(FakeAdapter("seedream-4.5", error=ProviderError("boom", "seedream-4.5")))
        data = client.post("/v1/benchmark", json=dict(api.body, models=["seedream-4.5"])).json()
        assert data["success"] is False
        assert data["summary"]["fastest_model"] is None


class TestMetrics:

    def test_exposition(self, api):
        client = api(FakeAdapter("idm-vton"))
        client.post("/v1/tryon", json=dict(api.body, providers=["idm-vton"]))
        body = client.get("/metrics/").text
        assert "tryon_jobs_completed_total" in body
        assert "tryon_provider_attempts_total" in body
