import pytest

from hbcontrol.durations import format_delay_short, parse_duration


@pytest.mark.parametrize("text, seconds", [
    ("90", 90),
    ("45s", 45),
    ("10 min", 600),
    ("1h 30m", 5400),
    ("2 hours", 7200),
    ("1d", 86400),
    (" 3 Days ", 259200),
])
def test_parse_duration(text, seconds):
    assert parse_duration(text) == seconds


@pytest.mark.parametrize("text", ["", "   ", "0", "soon", "5 fortnights", None])
def test_parse_duration_rejects(text):
    assert parse_duration(text) is None


@pytest.mark.parametrize("seconds, label", [
    (0, "0s"),
    (-4, "0s"),
    (12, "12s"),
    (90, "2m"),
    (3600, "1h"),
    (5 * 86400, "5d"),
])
def test_format_delay_short(seconds, label):
    assert format_delay_short(seconds) == label
