"""
Tests for reliability — backoff schedule.
"""

from rush.core.reliability.backoff import BackoffPolicy, no_wait


class TestBackoffPolicy:
    def test_delays_double_up_to_cap(self):
        policy = BackoffPolicy(base_delay=1.0, max_delay=5.0, jitter=0.0)
        assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_in_bounds(self):
        policy = BackoffPolicy(base_delay=1.0, jitter=0.5)
        for _ in range(20):
            assert 1.0 <= policy.delay_for(1) <= 1.5

    def test_attempts_sleep_between(self):
        slept = []
        policy = BackoffPolicy(max_attempts=3, base_delay=0.5, jitter=0.0, sleep=slept.append)
        assert list(policy.attempts()) == [1, 2, 3]
        assert slept == [0.5, 1.0]

    def test_break_stops_early(self):
        slept = []
        policy = BackoffPolicy(max_attempts=5, jitter=0.0, sleep=slept.append)
        for attempt in policy.attempts():
            if attempt == 2:
                break
        assert len(slept) == 1

    def test_no_wait(self):
        policy = no_wait(3)
        assert list(policy.attempts()) == [1, 2, 3]
        assert policy.jitter == 0.0
