"""
Unit tests for RetryPolicy.
"""

import random

import pytest

from durable_relay.coordinator import ErrorClass, RetryPolicy, default_error_classifier
from durable_relay.errors import RetryableSinkError, TerminalSinkError


def test_default_error_classifier():
    """Only explicit terminal rejections are terminal."""
    assert default_error_classifier(TerminalSinkError("bad payload")) == ErrorClass.TERMINAL
    assert default_error_classifier(RetryableSinkError("503")) == ErrorClass.RETRYABLE
    assert default_error_classifier(TimeoutError("socket timeout")) == ErrorClass.RETRYABLE
    assert default_error_classifier(ValueError("unknown")) == ErrorClass.RETRYABLE


def test_backoff_curve_monotonic_with_cap():
    """Exponential backoff grows by the multiplier and stops at the cap."""
    rp = RetryPolicy(
        initial_backoff_ms=50,
        max_backoff_ms=200,
        backoff_multiplier=2.0,
        jitter=False,
    )
    vals = [rp.next_backoff_ms(i) for i in range(1, 10)]
    # 50, 100, 200, 200, 200...
    assert vals[:4] == [50, 100, 200, 200]
    assert all(v <= 200 for v in vals)


def test_default_backoff_values():
    rp = RetryPolicy(jitter=False)
    assert [rp.next_backoff_ms(i) for i in range(1, 5)] == [500, 1000, 2000, 4000]
    assert rp.next_backoff_ms(50) == 60_000
    assert rp.next_delay(1) == pytest.approx(0.5)


def test_backoff_with_jitter_stays_in_band():
    """Jitter spreads delays by +/-20% around the capped value."""
    rp = RetryPolicy(
        initial_backoff_ms=1000, max_backoff_ms=1000, jitter_ratio=0.2, rng=random.Random(7)
    )
    vals = [rp.next_backoff_ms(3) for _ in range(200)]
    assert all(800 <= v <= 1200 for v in vals)
    assert len(set(vals)) > 10


def test_huge_attempt_numbers_do_not_overflow():
    rp = RetryPolicy(jitter=False)
    assert rp.next_backoff_ms(10_000) == rp.max_backoff_ms


def test_exhausted():
    rp = RetryPolicy(max_attempts=3)
    assert not rp.exhausted(2)
    assert rp.exhausted(3)


def test_custom_classifier_can_defer():
    """A classifier returning None falls back to the default."""

    def value_errors_are_terminal(exc: BaseException):
        if isinstance(exc, ValueError):
            return ErrorClass.TERMINAL
        return None

    rp = RetryPolicy(classifier=value_errors_are_terminal)
    assert rp.classify(ValueError("bad")) == ErrorClass.TERMINAL
    assert rp.classify(RuntimeError("flaky")) == ErrorClass.RETRYABLE
    assert rp.classify(TerminalSinkError("no")) == ErrorClass.TERMINAL


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_attempts": 0},
        {"initial_backoff_ms": 100, "max_backoff_ms": 50},
        {"backoff_multiplier": 0.5},
        {"jitter_ratio": 1.5},
    ],
)
def test_invalid_configuration_rejected(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)
