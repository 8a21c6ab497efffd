"""Duration parsing and resolution of time parameters such as ``now-15m``."""
from datetime import datetime, timezone
from typing import Optional, Union
import math
import re

MS_PER_SECOND = 1000

_UNIT_MS = {
    "ms": 1,
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "w": 7 * 24 * 60 * 60 * 1000,
    "y": 365 * 24 * 60 * 60 * 1000,
}

_DURATION_PART = re.compile(r"(\d+)(ms|s|m|h|d|w|y)")
_DURATION_FULL = re.compile(r"^(?:\d+(?:ms|s|m|h|d|w|y))+$")
_RELATIVE = re.compile(r"^now(?:\s*([+-])\s*(\S+))?$")
_FRACTION = re.compile(r"\.(\d+)")


def parse_duration(text: str) -> int:
    """Parse a Prometheus duration (``30s``, ``5m``, ``1h30m``) into milliseconds."""
    text = text.strip()
    if not _DURATION_FULL.match(text):
        raise ValueError(f"invalid duration: {text!r}")
    return sum(int(n) * _UNIT_MS[unit] for n, unit in _DURATION_PART.findall(text))


def parse_step(text: str) -> int:
    """Parse a range-query step: a duration or a (fractional) number of seconds."""
    text = text.strip()
    try:
        seconds = float(text)
    except ValueError:
        return parse_duration(text)
    return seconds_to_ms(seconds, "step")


def seconds_to_ms(seconds: Union[int, float], what: str = "time") -> int:
    """Unix seconds to milliseconds; fails with ValueError on overflow or NaN."""
    if isinstance(seconds, int):
        return seconds * MS_PER_SECOND
    ms = seconds * MS_PER_SECOND
    if not math.isfinite(ms):
        raise ValueError(f"invalid {what}: {seconds!r}")
    return int(round(ms))


def datetime_to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(round(value.timestamp() * MS_PER_SECOND))


def ms_to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / MS_PER_SECOND, tz=timezone.utc)


def parse_rfc3339(text: str) -> datetime:
    text = text.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # fromisoformat before 3.11 only takes 3 or 6 fractional digits
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    return datetime.fromisoformat(text)


def to_ms(value: Union[int, float, str, datetime]) -> int:
    """Convert an absolute instant (unix seconds, RFC3339 or datetime) to milliseconds."""
    if isinstance(value, datetime):
        return datetime_to_ms(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return seconds_to_ms(value)
    if isinstance(value, str):
        text = value.strip()
        try:
            seconds = float(text)
        except ValueError:
            return datetime_to_ms(parse_rfc3339(text))
        return seconds_to_ms(seconds)
    raise ValueError(f"invalid time: {value!r}")


def is_relative(text: str) -> bool:
    return bool(_RELATIVE.match(text.strip()))


def resolve_time(value: Union[int, float, str, datetime], now_ms: Optional[int]) -> int:
    """Resolve a time parameter to milliseconds.

    Accepts everything ``to_ms`` does plus ``now``, ``now-15m`` and ``now+1h``,
    which are evaluated against ``now_ms``.

    Raises:
        ValueError: If the value cannot be parsed or is relative and no
            reference instant was given.
    """
    if isinstance(value, str):
        match = _RELATIVE.match(value.strip())
        if match:
            if now_ms is None:
                raise ValueError(f"relative time {value!r} needs a reference instant")
            sign, duration = match.groups()
            if sign is None:
                return now_ms
            delta = parse_duration(duration)
            return now_ms - delta if sign == "-" else now_ms + delta
    return to_ms(value)


def duration_to_ms(value: Union[int, float, str, None]) -> Optional[int]:
    """Coerce a configured duration to milliseconds.

    Strings use duration syntax (``100ms``, ``1s``); bare numbers are seconds.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"invalid duration: {value!r}")
        return seconds_to_ms(value, "duration")
    text = str(value).strip()
    try:
        return duration_to_ms(float(text))
    except ValueError:
        return parse_duration(text)
