from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping

from kb_ingest.core.logging import log_event


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_seconds: float


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    retry_after_ms: int = 0


@dataclass
class _Window:
    count: int
    reset_at: float


class FixedWindowRateLimiter:
    """Process-local fixed-window counter.

    A window opens on the first request for an identity and closes ``window_seconds``
    later; the next request after that opens a fresh one. Expired windows are swept
    opportunistically from ``check`` and never influence a live count.
    """

    def __init__(self, sweep_interval_seconds: float | None = None, clock: Callable[[], float] = time.time):
        if sweep_interval_seconds is None:
            from kb_ingest.core.config import settings

            sweep_interval_seconds = settings.RATE_LIMIT_SWEEP_INTERVAL_SECONDS
        self.sweep_interval_seconds = max(1.0, float(sweep_interval_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, _Window] = {}
        self._last_sweep = clock()

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self.sweep_interval_seconds:
            return
        expired = [key for key, window in self._windows.items() if window.reset_at <= now]
        for key in expired:
            self._windows.pop(key, None)
        self._last_sweep = now
        if expired:
            log_event("rate_limit.swept", payload={"expired_windows": len(expired), "live_windows": len(self._windows)})

    def check(self, identity: str, config: RateLimitConfig) -> RateLimitResult:
        key = (identity or "anonymous").strip() or "anonymous"
        max_requests = max(1, int(config.max_requests))
        with self._lock:
            now = self._clock()
            self._sweep(now)
            window = self._windows.get(key)
            if window is None or window.reset_at <= now:
                window = _Window(count=1, reset_at=now + float(config.window_seconds))
                self._windows[key] = window
                return RateLimitResult(allowed=True, remaining=max_requests - 1, reset_at=window.reset_at)

            if window.count >= max_requests:
                retry_after_ms = max(1, int((window.reset_at - now) * 1000))
                return RateLimitResult(allowed=False, remaining=0, reset_at=window.reset_at, retry_after_ms=retry_after_ms)

            window.count += 1
            return RateLimitResult(allowed=True, remaining=max_requests - window.count, reset_at=window.reset_at)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def __len__(self) -> int:
        return len(self._windows)


def rate_limit_presets() -> dict[str, RateLimitConfig]:
    from kb_ingest.core.config import settings

    return {
        "ingest": RateLimitConfig(settings.RATE_LIMIT_INGEST_MAX_REQUESTS, settings.RATE_LIMIT_INGEST_WINDOW_SECONDS),
        "scrape": RateLimitConfig(settings.RATE_LIMIT_SCRAPE_MAX_REQUESTS, settings.RATE_LIMIT_SCRAPE_WINDOW_SECONDS),
    }


def client_identifier(headers: Mapping[str, str], fallback_host: str | None = None) -> str:
    caller = (headers.get("x-caller-id") or "").strip()
    if caller:
        return f"caller:{caller}"
    forwarded = (headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        return f"ip:{forwarded}"
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return f"ip:{real_ip}"
    return f"ip:{fallback_host or 'unknown'}"
