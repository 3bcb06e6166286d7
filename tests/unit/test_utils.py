import pytest

from stepwise.utils.durations import parse_duration
from stepwise.utils.retry import compute_backoff


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2s", 2.0),
        ("1.5m", 90.0),
        ("250ms", 0.25),
        ("1h", 3600.0),
        ("1d", 86400.0),
        ("3", 3.0),
        (4, 4.0),
        (0.5, 0.5),
    ],
)
def test_parse_duration(value, expected):
    assert parse_duration(value) == pytest.approx(expected)


@pytest.mark.parametrize("value", ["", "soon", "-1s", "2 weeks", True, -3])
def test_parse_duration_rejects_invalid(value):
    with pytest.raises(ValueError):
        parse_duration(value)


def test_compute_backoff_doubles_per_attempt():
    assert compute_backoff(1, base=0.1, jitter=0) == pytest.approx(0.1)
    assert compute_backoff(3, base=0.1, jitter=0) == pytest.approx(0.4)
    delay = compute_backoff(2, base=0.1, jitter=0.05)
    assert 0.2 <= delay <= 0.25
