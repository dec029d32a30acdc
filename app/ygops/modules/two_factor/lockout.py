from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.ygops.audit import record_event
from app.ygops.errors import NotFoundError
from app.ygops.models import User
from app.ygops.utils import utcnow

logger = logging.getLogger(__name__)

FAILED_ATTEMPTS_THRESHOLD = 5
LOCKOUT_WINDOW_MINUTES = 15
# (minimum failures, lock minutes), highest threshold first
LOCKOUT_STEPS = ((15, 1440), (10, 60), (5, 30))


@dataclass(frozen=True)
class LockoutStatus:
    is_locked: bool
    failed_attempts: int
    locked_until: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "is_locked": self.is_locked,
            "failed_attempts": self.failed_attempts,
            "locked_until": self.locked_until.isoformat() if self.locked_until else None,
        }


def lockout_minutes(failed_attempts: int) -> int:
    for minimum, minutes in LOCKOUT_STEPS:
        if failed_attempts >= minimum:
            return minutes
    return 0


def get_status(user: User, *, now: datetime | None = None) -> LockoutStatus:
    now = now or utcnow()
    if user.is_locked(now):
        return LockoutStatus(True, user.failed_login_count, user.locked_until)
    return LockoutStatus(False, user.failed_login_count)


def record_failed_attempt(s: Session, user: User, *, now: datetime | None = None, ip: str | None = None) -> LockoutStatus:
    """
    Count a failed login or 2FA attempt. The counter restarts when the previous
    failure is older than the window; reaching the threshold sets locked_until.
    """
    now = now or utcnow()
    window_cutoff = now - timedelta(minutes=LOCKOUT_WINDOW_MINUTES)
    count = (user.failed_login_count or 0) + 1
    if user.last_failed_login_at and user.last_failed_login_at < window_cutoff:
        count = 1
    user.failed_login_count = count
    user.last_failed_login_at = now

    if count < FAILED_ATTEMPTS_THRESHOLD:
        return LockoutStatus(False, count)

    minutes = lockout_minutes(count)
    user.locked_until = now + timedelta(minutes=minutes)
    record_event(
        s,
        actor=None,
        action="auth.account_locked",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"failed_attempts": count, "lockout_minutes": minutes, "ip": ip},
    )
    logger.warning("Account %s locked for %s minutes after %s failures", user.id, minutes, count)
    return LockoutStatus(True, count, user.locked_until)


def reset_failed_attempts(user: User) -> None:
    user.failed_login_count = 0
    user.last_failed_login_at = None
    user.locked_until = None


def unlock_account(s: Session, user_id: int, *, actor: User | None) -> User:
    user = s.get(User, user_id)
    if not user:
        raise NotFoundError("User not found", code="USER_NOT_FOUND")
    reset_failed_attempts(user)
    record_event(
        s,
        actor=actor,
        action="auth.account_unlocked",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"unlocked_by": actor.id if actor else None},
    )
    return user


def unlock_expired_accounts(s: Session, *, now: datetime | None = None) -> int:
    now = now or utcnow()
    result = s.execute(
        update(User)
        .where(User.locked_until.is_not(None), User.locked_until < now)
        .values(locked_until=None, failed_login_count=0)
    )
    count = result.rowcount or 0
    if count:
        logger.info("Unlocked %s accounts whose lockout expired", count)
    return count


def get_lockout_stats(s: Session, *, now: datetime | None = None) -> dict:
    now = now or utcnow()
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    currently_locked = s.execute(select(func.count()).select_from(User).where(User.locked_until > now)).scalar_one()
    locked_today = s.execute(
        select(func.count()).select_from(User).where(User.locked_until >= today_start)
    ).scalar_one()
    return {
        "currently_locked": currently_locked,
        "locked_today": locked_today,
        "threshold": FAILED_ATTEMPTS_THRESHOLD,
        "window_minutes": LOCKOUT_WINDOW_MINUTES,
    }
