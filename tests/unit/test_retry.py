"""Unit tests for the retry policy."""

import pytest

from index_sync.service_layer.retry import RetryPolicy


@pytest.mark.unit
class TestRetryPolicy:
    def test_should_retry_until_budget_is_spent(self):
        policy = RetryPolicy(max_attempts=3)

        assert policy.should_retry(1)
        assert policy.should_retry(2)
        assert not policy.should_retry(3)

    def test_delays_grow_exponentially_and_are_capped(self):
        policy = RetryPolicy(initial_delay=0.5, multiplier=2.0, max_delay=3.0, jitter=0.0)

        assert [policy.delay_for(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]

    def test_no_delay_before_first_attempt(self):
        assert RetryPolicy().delay_for(0) == 0.0

    def test_jitter_scales_delay_down(self):
        policy = RetryPolicy(initial_delay=1.0, jitter=0.5, random_source=lambda: 1.0)

        assert policy.delay_for(1) == pytest.approx(0.5)

    def test_jitter_zero_random_keeps_full_delay(self):
        policy = RetryPolicy(initial_delay=1.0, jitter=0.5, random_source=lambda: 0.0)

        assert policy.delay_for(1) == pytest.approx(1.0)

    def test_immediate_policy_never_sleeps(self):
        policy = RetryPolicy.immediate(max_attempts=4)

        assert policy.max_attempts == 4
        assert all(policy.delay_for(n) == 0.0 for n in range(1, 5))

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0},
            {"initial_delay": -1},
            {"multiplier": 0.5},
            {"jitter": 1.5},
        ],
    )
    def test_invalid_parameters_rejected(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)
