"""Tests for the provider key pool."""

import threading

import pytest

from agentdesk.errors import KeyNotFound, ProviderUnavailable, RateLimitExceeded, ValidationError
from agentdesk.metrics import metrics
from agentdesk.orchestration.keypool import KeyPool, SlidingWindow
from agentdesk.orchestration.models import KeyRateLimits, ProviderKey, ProviderName


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_key(model_id="gpt-4o", requests=60, tokens=10000, **kwargs) -> ProviderKey:
    return ProviderKey(
        name=kwargs.pop("name", "test key"),
        provider=kwargs.pop("provider", ProviderName.OPENAI),
        model_id=model_id,
        credential=kwargs.pop("credential", "sk-test-credential-1234"),
        rate_limits=KeyRateLimits(requests_per_window=requests, tokens_per_window=tokens),
        **kwargs,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pool(clock):
    return KeyPool(window_seconds=60.0, clock=clock)


class TestSlidingWindow:
    """Tests for the per-key sliding window."""

    def test_requests_expire_after_window(self):
        """Admitted requests stop counting once they leave the window."""
        window = SlidingWindow(10.0)
        window.admit(0.0)
        window.admit(5.0)
        assert window.request_count(9.0) == 2
        assert window.request_count(10.0) == 1
        assert window.request_count(15.0) == 0

    def test_token_ceiling_blocks_admission(self):
        """A window whose token total reached the ceiling has no capacity."""
        window = SlidingWindow(10.0)
        limits = KeyRateLimits(requests_per_window=10, tokens_per_window=100)
        window.spend_tokens(0.0, 100)
        assert not window.has_capacity(limits, 1.0)
        assert window.has_capacity(limits, 10.0)


class TestAcquireKey:
    """Tests for key selection."""

    def test_no_key_bound_is_unavailable(self, pool):
        """A model without keys raises ProviderUnavailable."""
        with pytest.raises(ProviderUnavailable) as exc_info:
            pool.acquire_key("gpt-4o")
        assert not isinstance(exc_info.value, RateLimitExceeded)

    def test_inactive_keys_are_never_returned(self, pool):
        """Only inactive keys bound means unavailable."""
        key = pool.add_key(make_key())
        pool.mark_exhausted(key, "quota")
        with pytest.raises(ProviderUnavailable):
            pool.acquire_key("gpt-4o")

    def test_least_recently_used_key_is_selected(self, pool, clock):
        """Selection spreads load across keys in LRU order."""
        first = pool.add_key(make_key(name="first"))
        second = pool.add_key(make_key(name="second"))

        picked = []
        for _ in range(4):
            picked.append(pool.acquire_key("gpt-4o").id)
            clock.advance(1.0)

        assert picked == [first.id, second.id, first.id, second.id]

    def test_keys_for_other_models_are_ignored(self, pool):
        """A key bound to another model is not eligible."""
        pool.add_key(make_key(model_id="gpt-4-turbo"))
        with pytest.raises(ProviderUnavailable):
            pool.acquire_key("gpt-4o")

    def test_full_window_raises_rate_limit(self, pool, clock):
        """Active keys with full windows raise RateLimitExceeded."""
        pool.add_key(make_key(requests=2))
        pool.acquire_key("gpt-4o")
        pool.acquire_key("gpt-4o")
        with pytest.raises(RateLimitExceeded):
            pool.acquire_key("gpt-4o")

        clock.advance(61.0)
        assert pool.acquire_key("gpt-4o") is not None

    def test_rate_limited_key_is_skipped_for_one_with_capacity(self, pool):
        """A full key is passed over while another key still has capacity."""
        small = pool.add_key(make_key(name="small", requests=1))
        large = pool.add_key(make_key(name="large", requests=10))

        assert pool.acquire_key("gpt-4o").id == small.id
        assert pool.acquire_key("gpt-4o").id == large.id
        assert pool.acquire_key("gpt-4o").id == large.id

    def test_concurrent_acquire_never_over_admits(self, pool):
        """Concurrent callers cannot exceed a key's request ceiling."""
        key = pool.add_key(make_key(requests=25))
        admitted = []
        rejected = []
        barrier = threading.Barrier(50)

        def worker():
            barrier.wait()
            try:
                admitted.append(pool.acquire_key("gpt-4o").id)
            except RateLimitExceeded:
                rejected.append(1)

        threads = [threading.Thread(target=worker) for _ in range(50)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(admitted) == 25
        assert len(rejected) == 25
        assert pool.window_usage(key.id)["requests"] == 25


class TestUsageAccounting:
    """Tests for usage and failure counters."""

    def test_record_usage_accumulates(self, pool):
        """Usage counters add up across calls."""
        key = pool.add_key(make_key())
        pool.record_usage(key, request_delta=1, token_delta=100, cost_delta=0.5)
        usage = pool.record_usage(key, request_delta=1, token_delta=50, cost_delta=0.25)
        assert usage.requests == 2
        assert usage.tokens == 150
        assert usage.cost == pytest.approx(0.75)

    def test_negative_deltas_are_rejected(self, pool):
        """Counters never decrease."""
        key = pool.add_key(make_key())
        with pytest.raises(ValueError):
            pool.record_usage(key, request_delta=-1)
        with pytest.raises(ValueError):
            pool.record_usage(key, request_delta=0, token_delta=-5)
        assert key.usage.requests == 0

    def test_tokens_feed_the_window(self, pool):
        """Recorded tokens count against the token ceiling."""
        key = pool.add_key(make_key(tokens=100))
        pool.acquire_key("gpt-4o")
        pool.record_usage(key, token_delta=100)
        with pytest.raises(RateLimitExceeded):
            pool.acquire_key("gpt-4o")

    def test_failures_do_not_touch_usage(self, pool):
        """A failed call only bumps the failure counter."""
        key = pool.add_key(make_key())
        assert pool.record_failure(key) == 1
        assert pool.record_failure(key) == 2
        assert key.usage.requests == 0
        assert key.usage.tokens == 0


class TestActivation:
    """Tests for exhaustion and reactivation."""

    def test_mark_exhausted_deactivates(self, pool):
        """An exhausted key goes inactive with a reason and is counted."""
        key = pool.add_key(make_key())
        pool.mark_exhausted(key, "HTTP 401")
        assert key.active is False
        assert key.deactivated_reason == "HTTP 401"
        assert metrics.counter_value(
            "agentdesk_keys_exhausted_total",
            {"provider": "openai", "model": "gpt-4o"},
        ) == 1

    def test_exhausted_key_stays_inactive_over_time(self, pool, clock):
        """No automatic reactivation, even after the window passes."""
        key = pool.add_key(make_key())
        pool.mark_exhausted(key, "quota")
        clock.advance(3600.0)
        with pytest.raises(ProviderUnavailable):
            pool.acquire_key("gpt-4o")

    def test_reactivate_returns_key_to_rotation(self, pool):
        """Explicit reactivation makes the key eligible again."""
        key = pool.add_key(make_key())
        pool.deactivate(key.id)
        pool.reactivate(key.id)
        assert key.active is True
        assert key.deactivated_reason is None
        assert pool.acquire_key("gpt-4o").id == key.id

    def test_unknown_key_raises(self, pool):
        """Admin operations on unknown ids raise KeyNotFound."""
        with pytest.raises(KeyNotFound):
            pool.reactivate("key_missing")
        with pytest.raises(KeyNotFound):
            pool.remove_key("key_missing")


class TestAdministration:
    """Tests for key listing and limits."""

    def test_duplicate_key_id_rejected(self, pool):
        key = pool.add_key(make_key())
        with pytest.raises(ValueError):
            pool.add_key(make_key(id=key.id))

    def test_list_keys_filters_by_model(self, pool):
        pool.add_key(make_key(model_id="gpt-4o"))
        pool.add_key(make_key(model_id="gpt-4-turbo"))
        assert len(pool.list_keys()) == 2
        assert [key.model_id for key in pool.list_keys("gpt-4-turbo")] == ["gpt-4-turbo"]

    def test_update_limits(self, pool):
        """Raising the ceiling admits more requests in the same window."""
        key = pool.add_key(make_key(requests=1))
        pool.acquire_key("gpt-4o")
        pool.update_limits(key.id, requests_per_window=2)
        assert pool.acquire_key("gpt-4o").id == key.id
        assert key.rate_limits.tokens_per_window == 10000

    def test_update_limits_rejects_zero(self, pool):
        key = pool.add_key(make_key(requests=5, tokens=500))
        with pytest.raises(ValidationError):
            pool.update_limits(key.id, requests_per_window=0)
        with pytest.raises(ValidationError):
            pool.update_limits(key.id, tokens_per_window=-1)
        assert key.rate_limits.requests_per_window == 5
        assert key.rate_limits.tokens_per_window == 500

    def test_update_limits_keeps_omitted_values(self, pool):
        key = pool.add_key(make_key(requests=5, tokens=500))
        pool.update_limits(key.id, tokens_per_window=800)
        assert key.rate_limits.requests_per_window == 5
        assert key.rate_limits.tokens_per_window == 800

    def test_usage_by_model_sums_keys(self, pool):
        first = pool.add_key(make_key())
        second = pool.add_key(make_key())
        pool.record_usage(first, token_delta=10)
        pool.record_usage(second, token_delta=5)
        totals = pool.usage_by_model()
        assert totals["gpt-4o"].requests == 2
        assert totals["gpt-4o"].tokens == 15

    def test_masked_credential_hides_secret(self):
        key = make_key(credential="sk-abcdefghijklmnop")
        assert key.masked_credential() == "sk-a...mnop"
        assert "abcdefghijklmnop" not in repr(key)
