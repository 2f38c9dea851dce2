import os
import time
import requests
from typing import Optional


class TryOnAPIError(Exception):
    def __init__(self, status_code: int, detail) -> None:
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail

    @property
    def retry_after_seconds(self) -> Optional[float]:
        if isinstance(self.detail, dict):
            return self.detail.get("retry_after_seconds")
        return None

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429


class TryOnClient:
    def __init__(self, base_url: str = "http://127.0.0.1:8000", timeout: float = 200.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def try_on(
        self,
        avatar_image_url: str,
        garment_image_url: str,
        category: str = "upper_body",
        strategy: str = "cascade",
        providers: Optional[list[str]] = None,
        idempotency_key: Optional[str] = None,
        retry_count: int = 0,
    ) -> dict:
        body = {
            "avatar_image_url": avatar_image_url,
            "garment_image_url": garment_image_url,
            "category": category,
            "strategy": strategy,
            "retry_count": retry_count,
        }
        if providers:
            body["providers"] = providers
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        r = requests.post(f"{self.base_url}/v1/tryon", json=body, headers=headers, timeout=self.timeout)
        return self._json(r)

    def benchmark(
        self,
        avatar_image_url: str,
        garment_image_url: str,
        category: str = "upper_body",
        models: Optional[list[str]] = None,
    ) -> dict:
        body = {"avatar_image_url": avatar_image_url, "garment_image_url": garment_image_url, "category": category}
        if models:
            body["models"] = models
        r = requests.post(f"{self.base_url}/v1/benchmark", json=body, timeout=self.timeout)
        return self._json(r)

    def job_status(self, job_id: str) -> dict:
        r = requests.get(f"{self.base_url}/v1/jobs/{job_id}", timeout=30)
        return self._json(r)

    def wait_for_result(self, job_id: str, timeout_s: int = 120, interval_s: float = 1.0) -> dict:
        deadline = time.time() + timeout_s
        last = None
        while time.time() < deadline:
            last = self.job_status(job_id)
            if last.get("status") in ("completed", "failed"):
                return last
            time.sleep(interval_s)
        return last or {"status": "timeout", "job_id": job_id}

    def download_result_to(self, job_id: str, out_path: str) -> str:
        r = requests.get(f"{self.base_url}/v1/jobs/{job_id}/result", timeout=60)
        if r.status_code >= 400:
            self._json(r)
        os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
        with open(out_path, "wb") as f:
            f.write(r.content)
        return out_path

    @staticmethod
    def _json(r: requests.Response) -> dict:
        if r.status_code >= 400:
            try:
                detail = r.json().get("detail")
            except ValueError:
                detail = r.text
            raise TryOnAPIError(r.status_code, detail)
        return r.json()
