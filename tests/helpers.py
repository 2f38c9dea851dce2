"""Fakes shared by the test modules: images, HTTP responses, sessions and adapters."""

import base64
import io
import json
import threading
import time

import requests
from PIL import Image

from orchestration.errors import RequestCancelled
from orchestration.io_types import GenerationOutcome, OutcomeStatus


def image_bytes(size=(300, 400), mode="RGB", color=(200, 30, 30), fmt="PNG") -> bytes:
    buf = io.BytesIO()
    Image.new(mode, size, color).save(buf, format=fmt)
    return buf.getvalue()


def data_uri(data: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def make_response(status=200, json_body=None, text=None, headers=None) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    if json_body is not None:
        resp._content = json.dumps(json_body).encode("utf-8")
        resp.headers["Content-Type"] = "application/json"
    else:
        resp._content = (text or "").encode("utf-8")
    for k, v in (headers or {}).items():
        resp.headers[k] = v
    return resp


class FakeSession:
    """Routes (method, url) to a handler; records every call."""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.calls = []
        self._lock = threading.Lock()

    def _dispatch(self, method, url, **kwargs):
        with self._lock:
            self.calls.append((method, url, kwargs))
        for (m, suffix), handler in self.routes.items():
            if m == method and url.endswith(suffix):
                return handler(url, **kwargs) if callable(handler) else handler
        raise AssertionError(f"unexpected {method} {url}")

    def get(self, url, **kwargs):
        return self._dispatch("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._dispatch("POST", url, **kwargs)

    def calls_to(self, method, suffix):
        return [c for c in self.calls if c[0] == method and c[1].endswith(suffix)]


class FakeAdapter:
    """
    Scriptable provider adapter.
    - delay: cooperative wait (wakes on cancellation) before answering
    - hang: wait until cancelled or past the deadline
    - stubborn: ignore the context entirely and block on `release`
    """

    def __init__(self, provider_id, error=None, delay=0.0, hang=False, stubborn=False, image=None, cost=None):
        self.provider_id = provider_id
        self.cost_estimate = cost
        self.error = error
        self.delay = delay
        self.hang = hang
        self.stubborn = stubborn
        self.image = image
        self.calls = 0
        self.started = threading.Event()
        self.saw_cancel = threading.Event()
        self.release = threading.Event()
        self.received = []

    def invoke(self, ctx, avatar, garment, category):
        self.calls += 1
        self.received.append((avatar, garment, category))
        self.started.set()
        if self.stubborn:
            self.release.wait(5)
        elif self.hang:
            try:
                while True:
                    ctx.wait(0.01, self.provider_id)
            except RequestCancelled:
                self.saw_cancel.set()
                raise
        elif self.delay:
            try:
                ctx.wait(self.delay, self.provider_id)
            except RequestCancelled:
                self.saw_cancel.set()
                raise
        if self.error is not None:
            raise self.error
        if self.image is not None:
            return GenerationOutcome(
                provider=self.provider_id,
                status=OutcomeStatus.SUCCESS,
                image_bytes=self.image,
                cost_estimate=self.cost_estimate,
            )
        return GenerationOutcome(
            provider=self.provider_id,
            status=OutcomeStatus.SUCCESS,
            image_url=f"https://cdn.example.com/{self.provider_id}.png",
            cost_estimate=self.cost_estimate,
        )


class SleepyAdapter(FakeAdapter):
    """Answers after a plain sleep, deaf to cancellation."""

    def invoke(self, ctx, avatar, garment, category):
        self.calls += 1
        self.started.set()
        time.sleep(self.delay)
        return GenerationOutcome(
            provider=self.provider_id,
            status=OutcomeStatus.SUCCESS,
            image_url=f"https://cdn.example.com/{self.provider_id}.png",
        )
