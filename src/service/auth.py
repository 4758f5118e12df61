from __future__ import annotations

import hashlib
import hmac
import logging
import time
from collections import deque
from typing import Any

from fastapi import Header, HTTPException, Request, Security, status
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader

logger = logging.getLogger(__name__)

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

UNMETERED_PATHS = frozenset({"/health", "/healthz", "/ready"})


def _digest(key: str) -> str:
    return hashlib.sha256(key.encode()).hexdigest()


def parse_api_keys(raw: str) -> dict[str, str]:
    """Parse ``API_KEYS`` into {key: principal}.

    Entries are comma separated, either ``principal=key`` or a bare key,
    which is then its own principal label (``key-1``, ``key-2``...).
    """
    keys: dict[str, str] = {}
    for n, entry in enumerate((e.strip() for e in raw.split(",")), start=1):
        if not entry:
            continue
        principal, sep, key = entry.partition("=")
        if sep:
            keys[key.strip()] = principal.strip() or f"key-{n}"
        else:
            keys[entry] = f"key-{n}"
    return keys


class APIKeyAuth:
    """Resolve the X-API-Key header to the calling integration's principal.

    Only SHA-256 digests are held. With no keys configured every caller is
    let through as an anonymous principal.
    """

    def __init__(self, allowed_keys: dict[str, str] | list[str] | None = None) -> None:
        if isinstance(allowed_keys, dict):
            named = allowed_keys
        else:
            named = {k.strip(): f"key-{n}" for n, k in enumerate(allowed_keys or [], start=1) if k.strip()}
        self._principals: dict[str, str] = {_digest(k.strip()): p for k, p in named.items() if k.strip()}
        self.enabled = bool(self._principals)

    def principal_for(self, api_key: str | None) -> str | None:
        if not api_key:
            return None
        candidate = _digest(api_key)
        for known, principal in self._principals.items():
            if hmac.compare_digest(candidate, known):
                return principal
        return None

    def validate(self, api_key: str | None) -> bool:
        return not self.enabled or self.principal_for(api_key) is not None

    async def __call__(self, api_key: str | None = Security(_api_key_header)) -> str | None:
        if not self.enabled:
            return None
        principal = self.principal_for(api_key)
        if principal is None:
            logger.warning("Rejected request with invalid API key")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or missing API key",
            )
        return principal


async def require_actor(x_actor_id: str | None = Header(default=None, alias="X-Actor-ID")) -> str:
    """The user changing a declaration is named on every write."""
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Actor-ID header is required",
        )
    return x_actor_id.strip()


class RateLimiter:
    """Per-caller sliding window over the last minute.

    Callers are bucketed by API key when one is sent, otherwise by client IP.
    Health checks are never metered. Buckets whose window has emptied are
    dropped, at most once per window, so one-off callers do not accumulate.
    """

    def __init__(self, requests_per_minute: int = 60, window_seconds: float = 60.0) -> None:
        self.rpm = requests_per_minute
        self.window_seconds = window_seconds
        self._hits: dict[str, deque[float]] = {}
        self._last_eviction = time.monotonic()

    @property
    def enabled(self) -> bool:
        return self.rpm > 0

    def retry_after(self, caller: str, now: float | None = None) -> int:
        hits = self._hits.get(caller)
        if not hits:
            return 0
        now = time.monotonic() if now is None else now
        return max(1, int(hits[0] + self.window_seconds - now) + 1)

    def _evict_idle(self, now: float) -> None:
        cutoff = now - self.window_seconds
        idle = [caller for caller, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for caller in idle:
            del self._hits[caller]
        self._last_eviction = now

    def check(self, caller: str, now: float | None = None) -> bool:
        if not self.enabled:
            return True
        now = time.monotonic() if now is None else now
        if now - self._last_eviction >= self.window_seconds:
            self._evict_idle(now)
        hits = self._hits.get(caller)
        if hits is not None:
            while hits and hits[0] <= now - self.window_seconds:
                hits.popleft()
            if len(hits) >= self.rpm:
                return False
        else:
            hits = self._hits[caller] = deque()
        hits.append(now)
        return True

    @staticmethod
    def caller_of(request: Request) -> str:
        api_key = request.headers.get("X-API-Key")
        if api_key:
            return f"key:{_digest(api_key)[:16]}"
        return f"ip:{request.client.host if request.client else 'unknown'}"

    async def middleware(self, request: Request, call_next: Any) -> Any:
        if not self.enabled or request.url.path in UNMETERED_PATHS:
            return await call_next(request)

        caller = self.caller_of(request)
        if not self.check(caller):
            logger.info("Rate limit hit for %s on %s", caller, request.url.path)
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"detail": "Rate limit exceeded"},
                headers={"Retry-After": str(self.retry_after(caller))},
            )
        return await call_next(request)
