"""
Record converters - map dataclasses to and from camelCase JSON documents.
"""

from dataclasses import fields, is_dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

T = TypeVar("T")


def snake_to_camel(name: str) -> str:
    """Convert a snake_case attribute name to its camelCase wire name."""
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def dataclass_to_dict(obj: Any) -> dict:
    """Serialize a dataclass (recursively) using camelCase keys."""
    result = {}
    for f in fields(obj):
        if f.name == "extra":
            continue
        value = getattr(obj, f.name)
        if is_dataclass(value):
            value = dataclass_to_dict(value)
        result[snake_to_camel(f.name)] = value
    return result


def dataclass_from_dict(cls: type[T], data: Any, nested: dict[str, type] | None = None) -> T | None:
    """
    Build a dataclass from a camelCase document.

    Unknown keys are ignored unless the class declares an ``extra`` field,
    in which case they are kept there so a later write does not drop them.
    Values listed in ``nested`` are converted with the given dataclass type.
    """
    if not isinstance(data, dict):
        return None

    nested = nested or {}
    kwargs: dict[str, Any] = {}
    known: set[str] = set()
    has_extra = False

    for f in fields(cls):
        if f.name == "extra":
            has_extra = True
            continue
        key = snake_to_camel(f.name)
        known.add(key)
        if key not in data:
            continue
        value = data[key]
        if f.name in nested:
            value = dataclass_from_dict(nested[f.name], value)
        kwargs[f.name] = value

    if has_extra:
        kwargs["extra"] = {k: v for k, v in data.items() if k not in known}

    return cls(**kwargs)


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return to_iso(datetime.now(timezone.utc))


def to_iso(value: datetime) -> str:
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO timestamp, returning None for missing or malformed values."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def add_seconds(value: str, seconds: float) -> str:
    base = parse_iso(value) or datetime.now(timezone.utc)
    return to_iso(base + timedelta(seconds=seconds))
