import re
from typing import Optional

_UNITS = {
    "d": 86400, "day": 86400, "days": 86400,
    "h": 3600, "hr": 3600, "hrs": 3600, "hour": 3600, "hours": 3600,
    "m": 60, "min": 60, "mins": 60, "minute": 60, "minutes": 60,
    "s": 1, "sec": 1, "secs": 1, "second": 1, "seconds": 1,
}
_TOKEN = re.compile(r"(\d+)\s*(" + "|".join(sorted(_UNITS, key=len, reverse=True)) + r")\b")

def parse_duration(text: str) -> Optional[int]:
    """``"90"`` -> 90, ``"1h 30m"`` -> 5400; ``None`` when nothing positive parses."""
    raw = (text or "").strip().lower()
    if not raw:
        return None
    if raw.isdigit():
        return int(raw) or None
    total = sum(int(n) * _UNITS[unit] for n, unit in _TOKEN.findall(raw))
    return total or None

def format_delay_short(seconds: float) -> str:
    if seconds <= 0:
        return "0s"
    if seconds < 60:
        return f"{round(seconds)}s"
    if seconds < 3600:
        return f"{round(seconds / 60)}m"
    if seconds < 86400:
        return f"{round(seconds / 3600)}h"
    return f"{round(seconds / 86400)}d"
