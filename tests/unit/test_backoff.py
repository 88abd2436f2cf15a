"""
Unit tests for the backoff policy.
"""

import random

import pytest

from certkeeper.core.backoff import BackoffPolicy


class TestBackoffCeiling:
    def test_doubles_from_base(self):
        policy = BackoffPolicy(base=1, cap=8, jitter=False)
        assert [policy.delay(n) for n in range(1, 6)] == [1, 2, 4, 8, 8]

    def test_ceiling_is_monotonic_up_to_cap(self):
        policy = BackoffPolicy(base=300, cap=21600)
        ceilings = [policy.ceiling(n) for n in range(1, 40)]
        assert ceilings == sorted(ceilings)
        assert max(ceilings) == 21600

    def test_huge_failure_count_stays_at_cap(self):
        policy = BackoffPolicy(base=1, cap=3600, jitter=False)
        assert policy.delay(10_000) == 3600

    def test_no_failures_no_delay(self):
        assert BackoffPolicy(base=5, cap=10).ceiling(0) == 0.0


class TestBackoffJitter:
    def test_jittered_delay_within_ceiling(self):
        policy = BackoffPolicy(base=2, cap=64, jitter=True, rng=random.Random(42))
        for failures in range(1, 12):
            for _ in range(20):
                assert 0 <= policy.delay(failures) <= policy.ceiling(failures)

    def test_seeded_rng_is_reproducible(self):
        first = BackoffPolicy(base=2, cap=64, rng=random.Random(7))
        second = BackoffPolicy(base=2, cap=64, rng=random.Random(7))
        assert [first.delay(n) for n in range(1, 6)] == [second.delay(n) for n in range(1, 6)]


class TestBackoffValidation:
    @pytest.mark.parametrize("base,cap", [(0, 10), (-1, 10), (10, 5)])
    def test_invalid_parameters(self, base, cap):
        with pytest.raises(ValueError):
            BackoffPolicy(base=base, cap=cap)
