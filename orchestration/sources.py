from __future__ import annotations

import base64
import binascii
import os
from typing import Optional

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import FetchError


class ImageSource:
    """Resolves an image reference (http(s) URL, data URI or local path) to raw bytes."""

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 30.0) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch_bytes(self, ref: str) -> bytes:
        if not ref:
            raise FetchError("empty image reference")
        if ref.startswith("data:"):
            return _decode_data_uri(ref)
        if ref.startswith(("http://", "https://")):
            try:
                return self._download(ref)
            except requests.RequestException as e:
                raise FetchError(f"image not reachable: {ref[:60]} ({e})") from e
        if os.path.exists(ref):
            try:
                with open(ref, "rb") as f:
                    return f.read()
            except OSError as e:
                raise FetchError(f"image not readable: {ref[:60]} ({e.strerror or e})") from e
        raise FetchError(f"image not found: {ref[:60]}")

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
    )
    def _download(self, url: str) -> bytes:
        resp = self.session.get(url, timeout=self.timeout)
        if resp.status_code >= 400:
            raise FetchError(f"image not reachable ({resp.status_code}): {url[:60]}")
        return resp.content


def _decode_data_uri(ref: str) -> bytes:
    header, _, payload = ref.partition(",")
    if ";base64" not in header or not payload:
        raise FetchError("unsupported data URI")
    try:
        return base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise FetchError("malformed base64 payload") from e
