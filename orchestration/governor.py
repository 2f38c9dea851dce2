from __future__ import annotations

import datetime as dt
import email.utils
import logging
import re
import threading
import time
from typing import Optional

import requests

from .context import CallContext
from .errors import (
    AuthError,
    ProviderError,
    ProviderNotConfigured,
    ProviderTimeoutError,
    RateLimitError,
    RequestCancelled,
    TryOnError,
)
from .io_types import GarmentCategory, GenerationOutcome, OutcomeStatus, RetryGuidance


logger = logging.getLogger(__name__)

RATE_LIMIT_PHRASES = (
    "rate limit",
    "rate_limit",
    "ratelimit",
    "too many requests",
    "try later",
    "try again later",
    "resource_exhausted",
    "quota exceeded",
)
_RETRY_AFTER_RE = re.compile(r"retry[\s_-]*after\D{0,3}(\d+(?:\.\d+)?)\s*(ms|milliseconds|s|sec|seconds)?", re.I)
_TRY_AGAIN_IN_RE = re.compile(r"try again in\s*(\d+(?:\.\d+)?)\s*(ms|milliseconds|s|sec|seconds)?", re.I)


def parse_retry_after(value: Optional[str], now: Optional[dt.datetime] = None) -> Optional[float]:
    """Parse a Retry-After header: delta-seconds or an HTTP-date."""
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=dt.timezone.utc)
    now = now or dt.datetime.now(dt.timezone.utc)
    return max(0.0, (when - now).total_seconds())


def retry_after_from_text(text: Optional[str]) -> Optional[float]:
    if not text:
        return None
    for pattern in (_RETRY_AFTER_RE, _TRY_AGAIN_IN_RE):
        m = pattern.search(text)
        if m:
            amount = float(m.group(1))
            unit = (m.group(2) or "s").lower()
            return amount / 1000.0 if unit.startswith("m") else amount
    return None


def looks_rate_limited(text: Optional[str]) -> bool:
    lowered = (text or "").lower()
    return any(p in lowered for p in RATE_LIMIT_PHRASES)


def classify_response(provider: str, resp: requests.Response) -> TryOnError:
    """Map a failed provider HTTP response onto the shared error taxonomy."""
    status = resp.status_code
    text = resp.text or ""
    body: dict = {}
    try:
        parsed = resp.json()
        if isinstance(parsed, dict):
            body = parsed
    except ValueError:
        pass

    detail = str(body.get("detail") or body.get("error") or body.get("message") or text[:200])
    if status == 429 or looks_rate_limited(detail):
        retry_after = parse_retry_after(resp.headers.get("retry-after"))
        if retry_after is None and body.get("retry_after") is not None:
            retry_after = parse_retry_after(str(body.get("retry_after")))
        if retry_after is None:
            retry_after = retry_after_from_text(detail)
        return RateLimitError(f"{provider}: rate limited ({status})", provider, retry_after=retry_after)
    if status in (401, 403):
        return AuthError(f"{provider}: permission denied ({status})", provider)
    if status == 402:
        return ProviderError(f"{provider}: credits exhausted", provider, retryable=False, status_code=status)
    if status in (408, 504):
        return ProviderTimeoutError(f"{provider}: upstream timeout ({status})", provider, responded=True)
    if status >= 500:
        return ProviderError(f"{provider}: server error {status}: {detail[:120]}", provider, retryable=True, status_code=status)
    return ProviderError(f"{provider}: error {status}: {detail[:120]}", provider, retryable=False, status_code=status)


def guidance_for(error: BaseException) -> RetryGuidance:
    if isinstance(error, RateLimitError):
        return RetryGuidance(retry_after_seconds=error.retry_after, is_rate_limited=True, is_terminal=False)
    if isinstance(error, (AuthError, ProviderNotConfigured)):
        return RetryGuidance(is_terminal=True)
    if isinstance(error, (ProviderTimeoutError, RequestCancelled)):
        return RetryGuidance()
    if isinstance(error, TryOnError):
        return RetryGuidance(is_terminal=not error.retryable)
    if isinstance(error, requests.RequestException):
        return RetryGuidance()
    return RetryGuidance(is_terminal=True)


def outcome_for_error(provider: str, error: BaseException, duration_ms: Optional[int] = None) -> GenerationOutcome:
    if isinstance(error, requests.Timeout):
        error = ProviderTimeoutError(f"{provider}: no response before timeout", provider, responded=False)
    elif isinstance(error, requests.RequestException):
        error = ProviderError(f"{provider}: network error: {error}", provider, retryable=True)

    if isinstance(error, ProviderTimeoutError):
        status = OutcomeStatus.FAILED if error.responded else OutcomeStatus.SKIPPED
    elif isinstance(error, (RequestCancelled, ProviderNotConfigured)):
        status = OutcomeStatus.SKIPPED
    else:
        status = OutcomeStatus.FAILED

    kind = error.kind if isinstance(error, TryOnError) else "internal"
    message = error.message if isinstance(error, TryOnError) else f"{type(error).__name__}: {error}"
    return GenerationOutcome(
        provider=provider,
        status=status,
        duration_ms=duration_ms,
        error_kind=kind,
        error_message=message,
        guidance=guidance_for(error),
    )


class RetryGovernor:
    """
    Runs one adapter call and turns whatever happens into a GenerationOutcome.
    - Never retries: retry policy belongs to the strategy and the caller.
    - Adapters that ignore cancellation or their deadline are abandoned after
      a grace period and reported as skipped.
    """

    def __init__(self, force_grace_s: float = 10.0, poll_s: float = 0.05) -> None:
        self.force_grace_s = force_grace_s
        self.poll_s = poll_s

    def execute(
        self,
        adapter,
        ctx: CallContext,
        avatar: bytes,
        garment: bytes,
        category: GarmentCategory,
    ) -> GenerationOutcome:
        provider = adapter.provider_id
        grace = float(getattr(adapter, "cancel_grace_s", None) or self.force_grace_s)
        done = threading.Event()
        box: dict = {}
        started = time.monotonic()

        def run() -> None:
            try:
                box["outcome"] = adapter.invoke(ctx, avatar, garment, category)
            except BaseException as e:  # noqa: BLE001
                box["error"] = e
            finally:
                done.set()

        worker = threading.Thread(target=run, name=f"provider-{provider}", daemon=True)
        worker.start()
        while not done.wait(self.poll_s):
            if ctx.cancelled or ctx.expired:
                if not done.wait(grace):
                    return self._abandoned(provider, ctx, started)
                break

        duration_ms = int((time.monotonic() - started) * 1000)
        if "error" in box:
            outcome = outcome_for_error(provider, box["error"], duration_ms)
            if outcome.error_kind == "internal":
                logger.error("%s raised unexpectedly", provider, exc_info=box["error"])
            else:
                logger.warning("%s %s: %s", provider, outcome.status.value, outcome.error_message)
            return outcome

        outcome: GenerationOutcome = box["outcome"]
        if outcome.duration_ms is None:
            outcome.duration_ms = duration_ms
        return outcome

    def _abandoned(self, provider: str, ctx: CallContext, started: float) -> GenerationOutcome:
        duration_ms = int((time.monotonic() - started) * 1000)
        if ctx.cancelled:
            error: TryOnError = RequestCancelled(f"{provider}: ignored cancellation, abandoned", provider)
        else:
            error = ProviderTimeoutError(f"{provider}: no response before deadline, abandoned", provider)
        logger.warning("%s force-stopped after %dms", provider, duration_ms)
        return outcome_for_error(provider, error, duration_ms)
