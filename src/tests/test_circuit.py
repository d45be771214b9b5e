from datetime import timedelta

from engine.circuit import CircuitBreaker


def test_opens_after_consecutive_failures(clock):
    breaker = CircuitBreaker(threshold=3, reset_seconds=300, clock=clock)
    breaker.record_failure("reddit")
    breaker.record_failure("reddit")
    assert breaker.open_until("reddit") is None

    breaker.record_failure("reddit")
    assert breaker.open_until("reddit") == clock.now + timedelta(seconds=300)
    assert breaker.open_until("twitter") is None


def test_half_open_trial_reopens_on_failure(clock):
    breaker = CircuitBreaker(threshold=2, reset_seconds=60, clock=clock)
    breaker.record_failure("g2")
    breaker.record_failure("g2")

    clock.advance(60)
    assert breaker.open_until("g2") is None
    breaker.record_failure("g2")
    assert breaker.open_until("g2") == clock.now + timedelta(seconds=60)


def test_success_resets_the_count(clock):
    breaker = CircuitBreaker(threshold=3, reset_seconds=60, clock=clock)
    breaker.record_failure("reddit")
    breaker.record_failure("reddit")
    breaker.record_success("reddit")
    breaker.record_failure("reddit")

    assert breaker.open_until("reddit") is None
    assert breaker.snapshot() == {"reddit": {"failures": 1, "open": False, "opened_at": None}}


def test_zero_threshold_disables_the_breaker(clock):
    breaker = CircuitBreaker(threshold=0, clock=clock)
    for _ in range(10):
        breaker.record_failure("reddit")
    assert breaker.open_until("reddit") is None
    assert breaker.snapshot() == {}
