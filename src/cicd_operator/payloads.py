from __future__ import annotations

from datetime import datetime, timezone
from typing import cast


class PayloadError(RuntimeError):
    """A provider response or webhook body did not have the expected shape."""


def as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def require_object_dict(value: object, *, what: str) -> dict[str, object]:
    obj = as_object_dict(value)
    if obj is None:
        raise PayloadError(f"Unexpected payload: expected object for {what}")
    return obj


def require_list(value: object, *, what: str) -> list[object]:
    if not isinstance(value, list):
        raise PayloadError(f"Unexpected payload: expected list for {what}")
    return value


def as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise PayloadError(f"Unexpected payload type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise PayloadError(f"Unexpected payload value for {field}: {value}") from exc
    raise PayloadError(f"Unexpected payload type for {field}")


def as_optional_int(value: object, *, field: str) -> int | None:
    if value is None:
        return None
    return as_int(value, field=field)


def as_bool(value: object, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    return default


def nested(obj: dict[str, object] | None, *keys: str) -> object:
    current: object = obj
    for key in keys:
        current_obj = as_object_dict(current)
        if current_obj is None:
            return None
        current = current_obj.get(key)
    return current


def parse_timestamp(value: object) -> datetime | None:
    """Parse GitHub (``2021-01-02T03:04:05Z``) and GitLab (``2021-01-02 03:04:05 UTC``) times."""
    raw = as_string(value).strip()
    if not raw:
        return None
    normalized = raw
    if normalized.endswith(" UTC"):
        normalized = normalized[: -len(" UTC")] + "+00:00"
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise PayloadError(f"Unexpected timestamp: {raw!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
