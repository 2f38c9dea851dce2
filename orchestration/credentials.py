from __future__ import annotations

import json
import logging
import os
import threading
import time
from typing import Callable, Optional

import requests
from google.auth import crypt, jwt

from .context import CallContext
from .errors import AuthError
from .io_types import Credential
from .singleflight import SingleFlight


logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"


def load_service_account(raw: Optional[str]) -> Optional[dict]:
    """Accept inline service-account JSON or a path to a JSON key file."""
    if not raw:
        return None
    raw = raw.strip()
    if not raw.startswith("{") and os.path.exists(raw):
        with open(raw, "r", encoding="utf-8") as f:
            raw = f.read()
    try:
        info = json.loads(raw)
    except ValueError as e:
        raise AuthError("service account credentials are not valid JSON") from e
    if not isinstance(info, dict) or not info.get("client_email") or not info.get("private_key"):
        raise AuthError("service account credentials missing client_email/private_key")
    return info


class CredentialBroker:
    """
    Short-lived bearer tokens for providers authenticated with a service account.
    - Builds an RS256 signed assertion and trades it at the token endpoint.
    - Caches one token per provider until `refresh_margin_s` before expiry.
    - Concurrent refreshes for the same provider share a single exchange.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        scope: str = CLOUD_PLATFORM_SCOPE,
        refresh_margin_s: float = 300.0,
        assertion_lifetime_s: int = 3600,
        http_timeout_s: float = 20.0,
        clock: Callable[[], float] = time.time,
        on_exchange: Optional[Callable[[str, bool], None]] = None,
        wait_poll_s: float = 0.05,
    ) -> None:
        self.session = session or requests.Session()
        self.scope = scope
        self.refresh_margin_s = refresh_margin_s
        self.assertion_lifetime_s = assertion_lifetime_s
        self.http_timeout_s = http_timeout_s
        self.clock = clock
        self.on_exchange = on_exchange
        self.wait_poll_s = wait_poll_s
        self._accounts: dict[str, dict] = {}
        self._cache: dict[str, Credential] = {}
        self._flight: SingleFlight[Credential] = SingleFlight()

    def register(self, provider: str, info: dict) -> None:
        self._accounts[provider] = info
        self._cache.pop(provider, None)

    def has_account(self, provider: str) -> bool:
        return provider in self._accounts

    def account(self, provider: str) -> dict:
        info = self._accounts.get(provider)
        if info is None:
            raise AuthError(f"no service account registered for {provider}", provider)
        return info

    def get_token(self, provider: str, ctx: Optional[CallContext] = None) -> Credential:
        """Cached token for `provider`, refreshing it when close to expiry.

        The exchange itself is bounded by `http_timeout_s` only. `ctx` bounds how
        long this caller waits for it, so one caller's deadline or cancellation
        never fails the others sharing the same refresh.
        """
        # Lock-free fast path: a dict read of an immutable Credential
        cached = self._cache.get(provider)
        if cached is not None and cached.is_fresh(self.refresh_margin_s, self.clock()):
            return cached
        if ctx is None:
            cred, _shared = self._flight.do(provider, lambda: self._refresh(provider))
            return cred

        ctx.check(provider)
        box: dict = {}
        done = threading.Event()

        def run() -> None:
            try:
                box["cred"], _ = self._flight.do(provider, lambda: self._refresh(provider))
            except BaseException as e:  # noqa: BLE001
                box["error"] = e
            finally:
                done.set()

        threading.Thread(target=run, name=f"token-{provider}", daemon=True).start()
        while not done.wait(self.wait_poll_s):
            ctx.check(provider)
        if "error" in box:
            raise box["error"]
        return box["cred"]

    def invalidate(self, provider: str) -> None:
        self._cache.pop(provider, None)

    def build_assertion(self, provider: str) -> str:
        info = self.account(provider)
        token_uri = info.get("token_uri") or GOOGLE_TOKEN_URL
        now = int(self.clock())
        payload = {
            "iss": info["client_email"],
            "sub": info["client_email"],
            "aud": token_uri,
            "iat": now,
            "exp": now + min(self.assertion_lifetime_s, 3600),
            "scope": self.scope,
        }
        try:
            signer = crypt.RSASigner.from_service_account_info(info)
            signed = jwt.encode(signer, payload)
        except (ValueError, TypeError, KeyError) as e:
            raise AuthError(f"could not sign assertion for {provider}: {e}", provider) from e
        return signed.decode("utf-8") if isinstance(signed, bytes) else signed

    def _refresh(self, provider: str) -> Credential:
        # A leader that finished just before we queued may have refreshed already
        cached = self._cache.get(provider)
        if cached is not None and cached.is_fresh(self.refresh_margin_s, self.clock()):
            return cached
        cred = self._exchange(provider)
        self._cache[provider] = cred
        return cred

    def _exchange(self, provider: str) -> Credential:
        info = self.account(provider)
        token_uri = info.get("token_uri") or GOOGLE_TOKEN_URL
        assertion = self.build_assertion(provider)
        logger.info("exchanging service account assertion for %s", provider)
        try:
            resp = self.session.post(
                token_uri,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.http_timeout_s,
            )
        except requests.RequestException as e:
            self._notify(provider, False)
            raise AuthError(f"token endpoint unreachable for {provider}: {e}", provider) from e

        if resp.status_code >= 400:
            self._notify(provider, False)
            logger.error("token exchange for %s rejected: %s %s", provider, resp.status_code, (resp.text or "")[:200])
            raise AuthError(f"token exchange rejected ({resp.status_code})", provider)
        try:
            data = resp.json()
            token = data["access_token"]
        except (ValueError, KeyError, TypeError) as e:
            self._notify(provider, False)
            raise AuthError("token endpoint returned no access_token", provider) from e

        expires_in = float(data.get("expires_in") or 3600)
        self._notify(provider, True)
        return Credential(provider=provider, token=token, expires_at=self.clock() + expires_in)

    def _notify(self, provider: str, ok: bool) -> None:
        if self.on_exchange is not None:
            self.on_exchange(provider, ok)
