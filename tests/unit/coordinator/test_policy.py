"""
Unit tests for RetryPolicy.
"""

from es_sink.coordinator import RetryPolicy, default_retry_classifier
from es_sink.errors import ConnectorError


def test_default_retry_classifier():
    """Transient errors are recognized by type or message."""
    assert default_retry_classifier(TimeoutError("socket timeout"))
    assert default_retry_classifier(ConnectionError("reset by peer"))
    assert default_retry_classifier(Exception("Temporary failure in name resolution"))
    assert not default_retry_classifier(Exception("permission denied"))
    assert not default_retry_classifier(ValueError("invalid argument"))


def test_backoff_curve_monotonic_with_cap():
    rp = RetryPolicy(retry_backoff_ms=50, max_retry_backoff_ms=200, jitter=False)
    vals = [rp.next_backoff_ms(i) for i in range(1, 10)]
    # 50, 100, 200, 200, 200...
    assert vals[:3] == [50, 100, 200]
    assert all(v <= 200 for v in vals)


def test_backoff_with_jitter():
    """Jitter keeps delays within 50-150% of the exponential value."""
    rp = RetryPolicy(retry_backoff_ms=100, max_retry_backoff_ms=10_000)
    vals = [rp.next_backoff_ms(2) for _ in range(50)]
    assert all(100 <= v <= 300 for v in vals)


def test_jitter_rounds_up_to_lower_bound():
    rp = RetryPolicy(retry_backoff_ms=3, max_retry_backoff_ms=10_000)
    assert all(2 <= rp.next_backoff_ms(1) <= 5 for _ in range(100))


def test_jitter_never_exceeds_cap():
    rp = RetryPolicy(retry_backoff_ms=100, max_retry_backoff_ms=150)
    assert all(rp.next_backoff_ms(n) <= 150 for n in range(1, 20) for _ in range(5))


def test_retry_limit():
    rp = RetryPolicy(max_retries=2)
    assert rp.max_attempts == 3
    assert [rp.should_retry(n) for n in (1, 2, 3)] == [True, True, False]
    assert not RetryPolicy(max_retries=0).should_retry(1)


def test_exhausted_message():
    err = RetryPolicy().exhausted("SocketTimeoutException: 1,000 milliseconds timeout", 3)
    assert isinstance(err, ConnectorError)
    assert err.attempts == 3
    assert err.kind == "exhausted"
    assert str(err) == (
        "Failed to execute bulk request due to "
        "'SocketTimeoutException: 1,000 milliseconds timeout' after 3 attempt(s)"
    )
