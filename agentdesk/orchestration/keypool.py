"""Provider key pool.

Holds the credentials for each model, selects one per call and keeps its
accounting:

- selection: among active keys bound to the model whose sliding window can
  admit one more request, pick the least recently used one
- admission: the window slot is taken in the same critical section as the
  selection, so concurrent callers cannot over-admit a key
- usage: success counters only move forward, and only after a successful
  upstream response; failures have their own counter
- exhaustion: a key rejected upstream for auth/quota reasons goes inactive
  and stays inactive until an explicit ``reactivate``
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from threading import Lock

from pydantic import ValidationError as PydanticValidationError

from agentdesk.errors import KeyNotFound, ProviderUnavailable, RateLimitExceeded, ValidationError
from agentdesk.logging import get_logger
from agentdesk.metrics import record_key_exhausted
from agentdesk.orchestration.models import KeyRateLimits, KeyUsage, ProviderKey

logger = get_logger(__name__)


def build_rate_limits(requests_per_window: int, tokens_per_window: int) -> KeyRateLimits:
    """Validated window limits; non-positive values raise ``ValidationError``."""
    try:
        return KeyRateLimits(requests_per_window=requests_per_window, tokens_per_window=tokens_per_window)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Rate limits must be positive integers",
            requests_per_window=requests_per_window,
            tokens_per_window=tokens_per_window,
        ) from exc


class SlidingWindow:
    """Admitted requests and spent tokens over the trailing ``window_seconds``."""

    def __init__(self, window_seconds: float) -> None:
        self.window_seconds = window_seconds
        self._requests: deque[float] = deque()
        self._tokens: deque[tuple[float, int]] = deque()
        self._token_total = 0

    def _evict(self, now: float) -> None:
        horizon = now - self.window_seconds
        while self._requests and self._requests[0] <= horizon:
            self._requests.popleft()
        while self._tokens and self._tokens[0][0] <= horizon:
            _, spent = self._tokens.popleft()
            self._token_total -= spent

    def request_count(self, now: float) -> int:
        self._evict(now)
        return len(self._requests)

    def token_count(self, now: float) -> int:
        self._evict(now)
        return self._token_total

    def has_capacity(self, limits: KeyRateLimits, now: float) -> bool:
        return (
            self.request_count(now) < limits.requests_per_window
            and self.token_count(now) < limits.tokens_per_window
        )

    def admit(self, now: float) -> None:
        self._requests.append(now)

    def spend_tokens(self, now: float, tokens: int) -> None:
        if tokens > 0:
            self._tokens.append((now, tokens))
            self._token_total += tokens


class KeyPool:
    """Registry of provider keys with per-key usage and rate-limit windows."""

    def __init__(
        self,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        # Guards the key table and every select-and-admit
        self._lock = Lock()
        self._keys: dict[str, ProviderKey] = {}
        self._windows: dict[str, SlidingWindow] = {}
        self._key_locks: dict[str, Lock] = {}

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def add_key(self, key: ProviderKey) -> ProviderKey:
        with self._lock:
            if key.id in self._keys:
                raise ValueError(f"Duplicate key id: {key.id}")
            self._keys[key.id] = key
            self._windows[key.id] = SlidingWindow(self.window_seconds)
            self._key_locks[key.id] = Lock()
        logger.info(
            "provider_key_added",
            key_id=key.id,
            provider=key.provider.value,
            model_id=key.model_id,
        )
        return key

    def remove_key(self, key_id: str) -> ProviderKey:
        with self._lock:
            key = self._keys.pop(key_id, None)
            if key is None:
                raise KeyNotFound(f"Provider key '{key_id}' not found", key_id=key_id)
            self._windows.pop(key_id, None)
            self._key_locks.pop(key_id, None)
        logger.info("provider_key_removed", key_id=key_id)
        return key

    def get(self, key_id: str) -> ProviderKey:
        with self._lock:
            key = self._keys.get(key_id)
        if key is None:
            raise KeyNotFound(f"Provider key '{key_id}' not found", key_id=key_id)
        return key

    def list_keys(self, model_id: str | None = None) -> list[ProviderKey]:
        with self._lock:
            keys = list(self._keys.values())
        if model_id is not None:
            keys = [key for key in keys if key.model_id == model_id]
        return keys

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    def acquire_key(self, model_id: str) -> ProviderKey:
        """Select and admit an eligible key for ``model_id``.

        Raises:
            ProviderUnavailable: no key is bound to the model, or none is active.
            RateLimitExceeded: active keys exist but every window is full.
        """
        with self._lock:
            now = self._clock()
            bound = [key for key in self._keys.values() if key.model_id == model_id]
            active = [key for key in bound if key.active]
            if not active:
                logger.warning("provider_key_unavailable", model_id=model_id, bound=len(bound))
                raise ProviderUnavailable(
                    f"No active provider key for model '{model_id}'",
                    model_id=model_id,
                    bound_keys=len(bound),
                )

            eligible = []
            for key in active:
                with self._key_locks[key.id]:
                    if self._windows[key.id].has_capacity(key.rate_limits, now):
                        eligible.append(key)
            if not eligible:
                logger.warning("provider_keys_rate_limited", model_id=model_id, active=len(active))
                raise RateLimitExceeded(
                    f"All {len(active)} active key(s) for model '{model_id}' are at their rate limit",
                    model_id=model_id,
                    window_seconds=self.window_seconds,
                )

            # Never-used keys first, then least recently used
            chosen = min(eligible, key=lambda key: (key.last_used is not None, key.last_used or 0.0))
            with self._key_locks[chosen.id]:
                self._windows[chosen.id].admit(now)
                chosen.last_used = now
        logger.debug("provider_key_acquired", key_id=chosen.id, model_id=model_id)
        return chosen

    # -------------------------------------------------------------------------
    # Accounting
    # -------------------------------------------------------------------------

    def record_usage(
        self,
        key: ProviderKey,
        request_delta: int = 1,
        token_delta: int = 0,
        cost_delta: float = 0.0,
    ) -> KeyUsage:
        """Add a successful call's usage to the key. Deltas must be non-negative."""
        if request_delta < 0 or token_delta < 0 or cost_delta < 0:
            raise ValueError("Usage deltas must be non-negative")
        lock = self._lock_for(key.id)
        with lock:
            key.usage.requests += request_delta
            key.usage.tokens += token_delta
            key.usage.cost += cost_delta
            self._windows[key.id].spend_tokens(self._clock(), token_delta)
            return key.usage.model_copy()

    def record_failure(self, key: ProviderKey) -> int:
        with self._lock_for(key.id):
            key.failures += 1
            return key.failures

    def mark_exhausted(self, key: ProviderKey, reason: str) -> None:
        """Deactivate a key. It stays inactive until ``reactivate`` is called."""
        with self._lock_for(key.id):
            if not key.active:
                return
            key.active = False
            key.deactivated_reason = reason
        record_key_exhausted(key.provider.value, key.model_id)
        logger.warning(
            "provider_key_exhausted",
            key_id=key.id,
            provider=key.provider.value,
            model_id=key.model_id,
            reason=reason,
        )

    def deactivate(self, key_id: str, reason: str = "deactivated by admin") -> ProviderKey:
        key = self.get(key_id)
        self.mark_exhausted(key, reason)
        return key

    def reactivate(self, key_id: str) -> ProviderKey:
        """Explicit external action returning an inactive key to service."""
        key = self.get(key_id)
        with self._lock_for(key.id):
            key.active = True
            key.deactivated_reason = None
        logger.info("provider_key_reactivated", key_id=key_id, model_id=key.model_id)
        return key

    def update_limits(
        self,
        key_id: str,
        requests_per_window: int | None = None,
        tokens_per_window: int | None = None,
    ) -> ProviderKey:
        """Replace the key's window limits; omitted values keep their current setting."""
        key = self.get(key_id)
        current = key.rate_limits
        limits = build_rate_limits(
            current.requests_per_window if requests_per_window is None else requests_per_window,
            current.tokens_per_window if tokens_per_window is None else tokens_per_window,
        )
        with self._lock_for(key.id):
            key.rate_limits = limits
        logger.info(
            "provider_key_limits_updated",
            key_id=key_id,
            requests_per_window=limits.requests_per_window,
            tokens_per_window=limits.tokens_per_window,
        )
        return key

    def window_usage(self, key_id: str) -> dict[str, int]:
        """Requests and tokens currently counted in the key's window."""
        key = self.get(key_id)
        now = self._clock()
        with self._lock_for(key.id):
            window = self._windows[key.id]
            return {"requests": window.request_count(now), "tokens": window.token_count(now)}

    def usage_by_model(self) -> dict[str, KeyUsage]:
        totals: dict[str, KeyUsage] = {}
        for key in self.list_keys():
            total = totals.setdefault(key.model_id, KeyUsage())
            total.requests += key.usage.requests
            total.tokens += key.usage.tokens
            total.cost += key.usage.cost
        return totals

    def _lock_for(self, key_id: str) -> Lock:
        with self._lock:
            lock = self._key_locks.get(key_id)
        if lock is None:
            raise KeyNotFound(f"Provider key '{key_id}' not found", key_id=key_id)
        return lock
