from datetime import datetime, timezone

from opsflow.breaker import BreakerRegistry, CircuitBreaker
from opsflow.utils.clock import ManualClock


def _breaker(threshold=3):
    clock = ManualClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))
    return CircuitBreaker("wf", threshold=threshold, cooldown_seconds=60, clock=clock), clock


def test_opens_after_threshold_consecutive_failures():
    breaker, _ = _breaker()
    for _ in range(2):
        breaker.record_failure()
        assert breaker.allow()
    breaker.record_failure()

    assert breaker.state == "open"
    assert not breaker.allow()
    assert "3 consecutive failed runs" in breaker.describe_rejection()


def test_success_resets_streak():
    breaker, _ = _breaker()
    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()

    assert breaker.state == "closed"
    assert breaker.consecutive_failures == 1


def test_half_open_allows_a_single_trial_run():
    breaker, clock = _breaker(threshold=1)
    breaker.record_failure()
    clock.advance(61)

    assert breaker.state == "half_open"
    assert breaker.allow()
    assert not breaker.allow()

    breaker.record_success()
    assert breaker.state == "closed"


def test_failed_trial_run_reopens():
    breaker, clock = _breaker(threshold=1)
    breaker.record_failure()
    clock.advance(61)
    assert breaker.allow()

    breaker.record_failure()

    assert breaker.state == "open"
    assert breaker.snapshot().retry_at == clock.now() + breaker.cooldown


def test_registry_keys_breakers_by_workflow():
    registry = BreakerRegistry(threshold=1)
    registry.get("a").record_failure()

    states = registry.snapshot()
    assert states["a"].state == "open"
    assert registry.get("b").state == "closed"

    registry.reset("a")
    assert registry.get("a").allow()
