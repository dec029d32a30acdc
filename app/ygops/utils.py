from __future__ import annotations

import json
from datetime import date, datetime, timezone
from typing import Any


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime(timezone=False) columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_datetime(raw: str | None) -> datetime | None:
    """
    Parse an ISO-8601 string into a naive UTC datetime.
    Raises TypeError for anything that is not a string, e.g. a JSON number.
    """
    if raw is None or raw == "":
        return None
    if not isinstance(raw, str):
        raise TypeError(f"Expected an ISO-8601 string, got {type(raw).__name__}")
    raw = raw.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    value = datetime.fromisoformat(raw)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_date(raw: str | None) -> date | None:
    if not raw:
        return None
    raw = raw.strip()
    return date.fromisoformat(raw) if raw else None


def isoformat(value: datetime | date | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def load_json(raw: str | None, default: Any = None) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


def dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


def request_payload(req) -> dict:
    """JSON body if present, otherwise the submitted form as a flat dict."""
    if req.is_json:
        data = req.get_json(silent=True)
        return data if isinstance(data, dict) else {}
    return {k: v for k, v in req.form.items()}
