"""
Seed the permission catalogue, the "admin" role and the first admin user.

Safe to re-run: missing rows are added, an existing admin's password is left alone.

Usage:
  ADMIN_EMAIL=ops@example.com ADMIN_PASSWORD=... python scripts/init_db.py
"""
import logging
import os
import sys
from pathlib import Path

from sqlalchemy import select
from werkzeug.security import generate_password_hash

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.ygops.db import url_session_scope  # noqa: E402
from app.ygops.models import Permission, Role, User  # noqa: E402
from app.ygops.modules.admin_roles.permissions import PERMISSIONS  # noqa: E402

logger = logging.getLogger("ygops.seed")


def _permission_name(const: str) -> str:
    # IP_ASSETS_VIEW_ALL -> "Ip: assets view all"
    namespace, _, rest = const.partition("_")
    return f"{namespace.title()}: {rest.replace('_', ' ').lower() or namespace.lower()}"


def seed_only(*, database_url: str | None = None) -> dict:
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@yesgoddess.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///ygops.db").strip()

    created_permissions = 0
    with url_session_scope(db_url) as s:
        by_key = {p.key: p for p in s.execute(select(Permission)).scalars()}
        for const, key in PERMISSIONS.items():
            if key in by_key:
                continue
            by_key[key] = Permission(key=key, name=_permission_name(const))
            s.add(by_key[key])
            created_permissions += 1

        admin_role = s.execute(select(Role).where(Role.key == "admin")).scalar_one_or_none()
        if admin_role is None:
            admin_role = Role(key="admin", name="Administrator")
            s.add(admin_role)
        admin_role.permissions.extend(p for p in by_key.values() if p not in admin_role.permissions)

        admin = s.execute(select(User).where(User.email == admin_email)).scalar_one_or_none()
        created_admin = admin is None
        if created_admin:
            admin = User(
                email=admin_email,
                name="Administrator",
                password_hash=generate_password_hash(admin_password),
                role="ADMIN",
                is_active=True,
            )
            s.add(admin)
        if admin_role not in admin.roles:
            admin.roles.append(admin_role)

    logger.info(
        "Seeded %d new permission(s) (%d total); admin %s %s",
        created_permissions,
        len(PERMISSIONS),
        admin_email,
        "created" if created_admin else "already present",
    )
    return {"permissions_created": created_permissions, "admin_created": created_admin}


def main() -> None:
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper(), format="%(levelname)s %(name)s: %(message)s")
    seed_only()


if __name__ == "__main__":
    main()
