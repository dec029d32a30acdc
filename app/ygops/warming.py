"""
Cache warming.

Fills the entries the API reads most (signed-in user profiles, asset version
listings) so the first requests after a deploy or a cache flush are hits.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from functools import partial

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.ygops.cache import CacheService, asset_key, user_key
from app.ygops.models import User
from app.ygops.modules.assets import versioning
from app.ygops.modules.assets.models import IpAsset
from app.ygops.utils import utcnow

logger = logging.getLogger(__name__)

ACTIVE_USER_DAYS = 7
MAX_WARM_ENTRIES = 100


def warm_user_profiles(s: Session, cache: CacheService, *, now: datetime | None = None, limit: int = MAX_WARM_ENTRIES) -> int:
    since = (now or utcnow()) - timedelta(days=ACTIVE_USER_DAYS)
    users = s.execute(
        select(User)
        .where(User.is_active.is_(True), User.deleted_at.is_(None), User.last_login_at >= since)
        .order_by(User.last_login_at.desc())
        .limit(limit)
    ).scalars().all()
    return cache.warm({user_key(u.id, "profile"): u.to_dict for u in users}, ttl=CacheService.TTL_SHORT)


def warm_asset_versions(s: Session, cache: CacheService, *, limit: int = MAX_WARM_ENTRIES) -> int:
    roots = s.execute(
        select(IpAsset.id)
        .where(IpAsset.parent_asset_id.is_(None), IpAsset.deleted_at.is_(None))
        .order_by(IpAsset.updated_at.desc(), IpAsset.id.desc())
        .limit(limit)
    ).scalars().all()
    loaders = {asset_key(root_id, "versions", "desc", "live"): partial(versioning.version_history, s, root_id) for root_id in roots}
    return cache.warm(loaders, ttl=CacheService.TTL_SHORT)


def warm_critical_caches(s: Session, cache: CacheService, *, now: datetime | None = None) -> dict[str, int]:
    out = {
        "user_profiles": warm_user_profiles(s, cache, now=now),
        "asset_versions": warm_asset_versions(s, cache),
    }
    logger.info("Cache warming finished: %s", out)
    return out
