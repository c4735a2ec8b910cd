"""Value semantics shared by the engine, the history evaluator and the offline index.

String comparisons are case-insensitive. A dict value (such as an assignee
``{"id": "user:ava", "name": ...}``) compares by its ``id``. Date-only
strings denote midnight UTC; as an upper bound they cover the whole day.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TEXT_TOKEN_RE = re.compile(r"[a-z0-9]+")
_DAY = timedelta(days=1)
_EPSILON = timedelta(microseconds=1)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_date_only(value: Any) -> bool:
    if isinstance(value, datetime):
        return False
    if isinstance(value, date):
        return True
    return isinstance(value, str) and bool(_DATE_ONLY_RE.match(value.strip()))


def to_datetime(value: Any) -> datetime | None:
    """Coerce ``value`` to an aware UTC datetime, or ``None`` if it is not a time."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text or not text[0].isdigit():
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def upper_bound(value: Any) -> datetime | None:
    """Like :func:`to_datetime`, but a date-only value extends to the end of that day."""
    parsed = to_datetime(value)
    if parsed is not None and is_date_only(value):
        return parsed + _DAY - _EPSILON
    return parsed


def as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, set, frozenset, dict)):
        return len(value) == 0
    return False


def scalar(value: Any) -> Any:
    """Reduce a reference-like dict to its identifier."""
    if isinstance(value, dict):
        for key in ("id", "entity_id", "entityId", "value"):
            if key in value:
                return value[key]
        return None
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_number(value: Any) -> float | None:
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def values_equal(actual: Any, expected: Any) -> bool:
    """Scalar equality with case-insensitive strings and numeric/temporal coercion."""
    actual = scalar(actual)
    expected = scalar(expected)
    if actual is None or expected is None:
        return actual is None and expected is None
    if isinstance(actual, bool) or isinstance(expected, bool):
        return _as_bool(actual) == _as_bool(expected)
    if _is_number(actual) or _is_number(expected):
        left, right = _as_number(actual), _as_number(expected)
        return left is not None and left == right
    if isinstance(actual, str) and isinstance(expected, str):
        if actual.casefold() == expected.casefold():
            return True
    left_dt, right_dt = to_datetime(actual), to_datetime(expected)
    if left_dt is not None and right_dt is not None:
        if is_date_only(expected) and not is_date_only(actual):
            return left_dt.date() == right_dt.date()
        return left_dt == right_dt
    return False


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    if _is_number(value):
        return bool(value)
    return None


def compare(actual: Any, expected: Any) -> int | None:
    """Three-way compare; ``None`` when the values are not comparable."""
    actual = scalar(actual)
    expected = scalar(expected)
    if actual is None or expected is None:
        return None
    if _is_number(actual) or _is_number(expected):
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return None
        return (left > right) - (left < right)
    left_dt, right_dt = to_datetime(actual), to_datetime(expected)
    if left_dt is not None and right_dt is not None:
        return (left_dt > right_dt) - (left_dt < right_dt)
    left_s, right_s = str(actual).casefold(), str(expected).casefold()
    return (left_s > right_s) - (left_s < right_s)


def display_text(value: Any) -> str:
    """Text used for CONTAINS/MATCH/LIKE and ranking."""
    if value is None:
        return ""
    if isinstance(value, dict):
        parts = [str(value[k]) for k in ("name", "title", "id", "email") if value.get(k)]
        return " ".join(parts)
    if isinstance(value, (list, tuple, set, frozenset)):
        return " ".join(display_text(v) for v in value)
    return str(value)


def quote_literal(value: str) -> str:
    """Render ``value`` as a single-quoted OPQL string literal."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def text_tokens(text: str) -> list[str]:
    """Lowercase alphanumeric tokens used by MATCH and BM25 ranking."""
    return _TEXT_TOKEN_RE.findall(text.casefold())


def text_terms(value: Any) -> list[str]:
    """Whitespace-separated, casefolded search terms of a query value."""
    return [t for t in display_text(value).casefold().split() if t]


def like_pattern(pattern: str) -> re.Pattern[str]:
    """Compile an SQL LIKE pattern (``%`` and ``_`` wildcards) to a regex."""
    parts = []
    for ch in pattern:
        if ch == "%":
            parts.append(".*")
        elif ch == "_":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("^" + "".join(parts) + "$", re.IGNORECASE | re.DOTALL)


def sort_key(value: Any) -> tuple[int, Any]:
    """A total ordering key over mixed values; callers handle ``None`` separately."""
    value = scalar(value)
    if isinstance(value, (list, tuple)):
        return sort_key(value[0]) if value else (3, "")
    if isinstance(value, bool):
        return (0, float(value))
    if _is_number(value):
        return (0, float(value))
    parsed = to_datetime(value)
    if parsed is not None:
        return (1, parsed.timestamp())
    return (2, str(value).casefold())


# --- value functions ---


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _start_of_week(now: datetime) -> datetime:
    return _start_of_day(now) - timedelta(days=now.weekday())


def _start_of_month(now: datetime) -> datetime:
    return _start_of_day(now).replace(day=1)


def _end_of_month(now: datetime) -> datetime:
    start = _start_of_month(now)
    next_month = (start + timedelta(days=32)).replace(day=1)
    return next_month - _EPSILON


VALUE_FUNCTIONS: dict[str, Callable[[str | None, datetime], Any]] = {
    "me": lambda principal_id, now: principal_id,
    "currentuser": lambda principal_id, now: principal_id,
    "now": lambda principal_id, now: now,
    "today": lambda principal_id, now: _start_of_day(now),
    "yesterday": lambda principal_id, now: _start_of_day(now) - _DAY,
    "tomorrow": lambda principal_id, now: _start_of_day(now) + _DAY,
    "startofweek": lambda principal_id, now: _start_of_week(now),
    "endofweek": lambda principal_id, now: _start_of_week(now) + 7 * _DAY - _EPSILON,
    "startofmonth": lambda principal_id, now: _start_of_month(now),
    "endofmonth": lambda principal_id, now: _end_of_month(now),
}


def is_known_function(name: str) -> bool:
    return name.lower() in VALUE_FUNCTIONS


def call_function(name: str, principal_id: str | None, now: datetime) -> Any:
    """Evaluate a value function; ``name`` must satisfy :func:`is_known_function`."""
    return VALUE_FUNCTIONS[name.lower()](principal_id, ensure_utc(now))
