import pytest

from opsflow.config import RetryConfig
from opsflow.utils.retry import backoff_for, compute_backoff


def test_backoff_grows_exponentially_without_jitter():
    delays = [compute_backoff(n, base=1.0, jitter=0, multiplier=2.0) for n in (1, 2, 3, 4)]
    assert delays == [1.0, 2.0, 4.0, 8.0]


def test_backoff_is_capped():
    assert compute_backoff(10, base=1.0, jitter=0, max_delay=30) == 30


def test_jitter_stays_within_bounds():
    for _ in range(20):
        delay = compute_backoff(1, base=2.0, jitter=0.5)
        assert 2.0 <= delay <= 2.5


def test_backoff_for_reads_policy():
    policy = RetryConfig(base_delay=0.5, multiplier=3.0, jitter=0, max_delay=100)
    assert backoff_for(3, policy) == pytest.approx(4.5)
