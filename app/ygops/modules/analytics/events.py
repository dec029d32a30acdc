from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta
from typing import Any

import redis
from sqlalchemy.orm import Session

from app.ygops.cache import CacheBackend
from app.ygops.errors import ValidationError
from app.ygops.models import User
from app.ygops.modules.analytics.models import Event
from app.ygops.modules.analytics.realtime import RealtimeMetrics
from app.ygops.utils import dump_json, parse_datetime, utcnow

logger = logging.getLogger(__name__)

EVENT_TYPES = ("view", "click", "conversion", "engagement", "download", "share", "signup", "login")
EVENT_SOURCES = ("web", "api", "mobile", "system")
MAX_BATCH = 100
MAX_CLOCK_SKEW = timedelta(minutes=5)
MAX_EVENT_AGE = timedelta(days=30)
DEDUP_TTL_SECONDS = 60
IDEMPOTENCY_TTL_SECONDS = 86400


def _optional_int(payload: dict, name: str) -> int | None:
    value = payload.get(name)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be an integer", code="INVALID_EVENT") from e


def normalize_event(payload: dict[str, Any], *, actor: User | None, now: datetime) -> dict[str, Any]:
    event_type = str(payload.get("event_type") or "").strip().lower()
    if event_type not in EVENT_TYPES:
        raise ValidationError(
            f"event_type must be one of {', '.join(EVENT_TYPES)}", code="INVALID_EVENT", details={"event_type": event_type}
        )
    source = str(payload.get("source") or "web").lower()
    if source not in EVENT_SOURCES:
        raise ValidationError(f"source must be one of {', '.join(EVENT_SOURCES)}", code="INVALID_EVENT")

    try:
        occurred_at = parse_datetime(payload.get("occurred_at")) or now
    except (TypeError, ValueError) as e:
        raise ValidationError("occurred_at must be an ISO-8601 datetime", code="INVALID_EVENT") from e
    if occurred_at > now + MAX_CLOCK_SKEW:
        raise ValidationError("occurred_at is in the future", code="INVALID_EVENT")
    if occurred_at < now - MAX_EVENT_AGE:
        raise ValidationError("occurred_at is too old", code="INVALID_EVENT")

    value_cents = _optional_int(payload, "value_cents")
    if value_cents is not None and value_cents < 0:
        raise ValidationError("value_cents must not be negative", code="INVALID_EVENT")
    engagement = _optional_int(payload, "engagement_seconds")
    if engagement is not None and engagement < 0:
        raise ValidationError("engagement_seconds must not be negative", code="INVALID_EVENT")

    props = payload.get("props") or {}
    if not isinstance(props, dict):
        raise ValidationError("props must be an object", code="INVALID_EVENT")

    return {
        "event_type": event_type,
        "source": source,
        "occurred_at": occurred_at,
        "actor_id": actor.id if actor else None,
        "project_id": _optional_int(payload, "project_id"),
        "ip_asset_id": _optional_int(payload, "ip_asset_id"),
        "license_id": _optional_int(payload, "license_id"),
        "session_id": (str(payload["session_id"])[:128] if payload.get("session_id") else None),
        "value_cents": value_cents,
        "engagement_seconds": engagement,
        "props": props,
        "idempotency_key": payload.get("idempotency_key"),
    }


def fingerprint(event: dict[str, Any]) -> str:
    """Same type, visitor, target and second means the same event."""
    parts = [
        event["event_type"],
        str(event["actor_id"] or event["session_id"] or ""),
        str(event["project_id"] or ""),
        str(event["ip_asset_id"] or ""),
        str(event["license_id"] or ""),
        event["occurred_at"].replace(microsecond=0).isoformat(),
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


class EventIngestor:
    def __init__(self, s: Session, backend: CacheBackend) -> None:
        self.s = s
        self.backend = backend
        self.realtime = RealtimeMetrics(s, backend)

    def _seen(self, key: str, ttl_seconds: int) -> bool:
        try:
            if self.backend.exists(key):
                return True
            self.backend.set(key, "1", ttl_seconds=ttl_seconds)
        except redis.RedisError as e:
            logger.warning("Event dedup check unavailable: %s", e)
        return False

    def ingest(self, payloads: list[dict[str, Any]], *, actor: User | None, now: datetime | None = None) -> dict[str, Any]:
        if not payloads:
            raise ValidationError("At least one event is required", code="INVALID_EVENT")
        if len(payloads) > MAX_BATCH:
            raise ValidationError(f"At most {MAX_BATCH} events per request", code="BATCH_TOO_LARGE")

        now = now or utcnow()
        normalized = [normalize_event(p if isinstance(p, dict) else {}, actor=actor, now=now) for p in payloads]

        created: list[Event] = []
        duplicates = 0
        for ev in normalized:
            idem = ev.pop("idempotency_key")
            if idem and self._seen(f"analytics:idempotency:{idem}", IDEMPOTENCY_TTL_SECONDS):
                duplicates += 1
                continue
            if self._seen(f"analytics:dedup:{fingerprint(ev)}", DEDUP_TTL_SECONDS):
                duplicates += 1
                continue
            props = ev.pop("props")
            row = Event(**ev, props_json=dump_json(props) if props else None)
            self.s.add(row)
            created.append(row)
        self.s.flush()

        for row in created:
            self.realtime.increment_counter(f"events.{row.event_type}")
            if row.ip_asset_id:
                self.realtime.increment_counter(f"events.{row.event_type}", dimensions={"asset": str(row.ip_asset_id)})
            if row.event_type == "conversion" and row.value_cents:
                self.realtime.increment_counter("revenue.cents", row.value_cents)
        if created:
            self.realtime.record_rate("events.ingested")

        logger.info("Ingested %s events (%s duplicates)", len(created), duplicates)
        return {"accepted": len(created), "duplicates": duplicates, "events": created}
