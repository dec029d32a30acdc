"""
Permission catalogue for the platform.

Keys are namespaced strings. Platform roles (ADMIN/CREATOR/BRAND/VIEWER) map to
fixed sets; admin departments map to baseline sets that individual AdminRole rows
may narrow. Holding a permission implies everything listed for it in
PERMISSION_HIERARCHY, transitively.
"""
from __future__ import annotations

from collections.abc import Iterable

PERMISSIONS: dict[str, str] = {
    # Users
    "USERS_VIEW_ALL": "users.view_all",
    "USERS_VIEW_OWN": "users.view_own",
    "USERS_CREATE": "users.create",
    "USERS_EDIT": "users.edit",
    "USERS_EDIT_OWN": "users.edit_own",
    "USERS_DELETE": "users.delete",
    "USERS_VIEW_SENSITIVE": "users.view_sensitive",
    "USERS_MANAGE_ROLES": "users:manage_roles",
    "USERS_SUSPEND": "users:suspend",
    "USERS_ACTIVATE": "users:activate",
    "USERS_VIEW_ACTIVITY": "users:view_activity",
    "USERS_MANAGE_2FA": "users:manage_2fa",
    "USERS_DELETE_USER": "users:delete",
    "USERS_IMPERSONATE": "users:impersonate",
    # Creators
    "CREATORS_VIEW_ALL": "creators.view_all",
    "CREATORS_VIEW_OWN": "creators.view_own",
    "CREATORS_VIEW_PUBLIC": "creators.view_public",
    "CREATORS_EDIT_OWN": "creators.edit_own",
    "CREATORS_EDIT_ALL": "creators.edit_all",
    "CREATORS_APPROVE": "creators.approve",
    # Brands
    "BRANDS_VIEW_ALL": "brands.view_all",
    "BRANDS_VIEW_OWN": "brands.view_own",
    "BRANDS_VIEW_PUBLIC": "brands.view_public",
    "BRANDS_EDIT_OWN": "brands.edit_own",
    "BRANDS_EDIT_ALL": "brands.edit_all",
    "BRANDS_VERIFY": "brands.verify",
    # IP assets
    "IP_ASSETS_VIEW_ALL": "ip_assets.view_all",
    "IP_ASSETS_VIEW_OWN": "ip_assets.view_own",
    "IP_ASSETS_VIEW_PUBLIC": "ip_assets.view_public",
    "IP_ASSETS_CREATE": "ip_assets.create",
    "IP_ASSETS_EDIT_OWN": "ip_assets.edit_own",
    "IP_ASSETS_EDIT_ALL": "ip_assets.edit_all",
    "IP_ASSETS_DELETE_OWN": "ip_assets.delete_own",
    "IP_ASSETS_DELETE_ALL": "ip_assets.delete_all",
    "IP_ASSETS_APPROVE": "ip_assets.approve",
    "IP_ASSETS_PUBLISH": "ip_assets.publish",
    # Licenses
    "LICENSES_VIEW_ALL": "licenses.view_all",
    "LICENSES_VIEW_OWN": "licenses.view_own",
    "LICENSES_CREATE": "licenses.create",
    "LICENSES_EDIT_OWN": "licenses.edit_own",
    "LICENSES_EDIT_ALL": "licenses.edit_all",
    "LICENSES_APPROVE": "licenses.approve",
    "LICENSES_TERMINATE_ALL": "licenses.terminate_all",
    # Royalties / payouts
    "ROYALTIES_VIEW_ALL": "royalties.view_all",
    "ROYALTIES_VIEW_OWN": "royalties.view_own",
    "ROYALTIES_RUN": "royalties.run",
    "PAYOUTS_VIEW_ALL": "payouts.view_all",
    "PAYOUTS_VIEW_OWN": "payouts.view_own",
    "PAYOUTS_PROCESS": "payouts.process",
    # Projects
    "PROJECTS_VIEW_ALL": "projects.view_all",
    "PROJECTS_VIEW_OWN": "projects.view_own",
    "PROJECTS_VIEW_PUBLIC": "projects.view_public",
    "PROJECTS_CREATE": "projects.create",
    "PROJECTS_EDIT_OWN": "projects.edit_own",
    "PROJECTS_EDIT_ALL": "projects.edit_all",
    # Analytics / audit
    "ANALYTICS_VIEW_PLATFORM": "analytics.view_platform",
    "ANALYTICS_VIEW_OWN": "analytics.view_own",
    "ANALYTICS_VIEW_FINANCIAL": "analytics.view_financial",
    "ANALYTICS_EXPORT": "analytics.export",
    "AUDIT_VIEW_ALL": "audit.view_all",
    "AUDIT_VIEW_OWN": "audit.view_own",
    # Content (blog, media)
    "CONTENT_READ": "content:read",
    "CONTENT_CREATE": "content:create",
    "CONTENT_EDIT": "content:edit",
    "CONTENT_APPROVE": "content:approve",
    "CONTENT_DELETE": "content:delete",
    "CONTENT_MODERATE": "content:moderate",
    # Finance
    "FINANCE_VIEW_ALL": "finance:view_all",
    "FINANCE_VIEW_REPORTS": "finance:view_reports",
    "FINANCE_GENERATE_REPORTS": "finance:generate_reports",
    "FINANCE_PROCESS_PAYOUTS": "finance:process_payouts",
    "FINANCE_APPROVE_TRANSACTIONS": "finance:approve_transactions",
    # Licensing
    "LICENSING_VIEW": "licensing:view",
    "LICENSING_CREATE": "licensing:create",
    "LICENSING_EDIT": "licensing:edit",
    "LICENSING_APPROVE": "licensing:approve",
    "LICENSING_TERMINATE": "licensing:terminate",
    # Applications
    "APPLICATIONS_VIEW_ALL": "applications:view_all",
    "APPLICATIONS_REVIEW": "applications:review",
    "APPLICATIONS_APPROVE": "applications:approve",
    "APPLICATIONS_REJECT": "applications:reject",
    # Admin roles
    "ADMIN_ROLES_VIEW": "admin_roles:view",
    "ADMIN_ROLES_MANAGE": "admin_roles:manage",
    # System
    "SYSTEM_SETTINGS": "system:settings",
    "SYSTEM_MANAGE_CACHE": "system:manage_cache",
    "SYSTEM_VIEW_LOGS": "system:view_logs",
    "SYSTEM_MONITOR": "system:monitor",
}

P = PERMISSIONS
ALL_PERMISSIONS: tuple[str, ...] = tuple(PERMISSIONS.values())
WILDCARD_ALL = "*:*"

PERMISSION_HIERARCHY: dict[str, list[str]] = {
    P["USERS_EDIT"]: [P["USERS_VIEW_ALL"], P["USERS_VIEW_OWN"]],
    P["USERS_EDIT_OWN"]: [P["USERS_VIEW_OWN"]],
    P["USERS_DELETE"]: [P["USERS_VIEW_ALL"], P["USERS_EDIT"]],
    P["CREATORS_EDIT_ALL"]: [P["CREATORS_VIEW_ALL"], P["CREATORS_VIEW_OWN"]],
    P["CREATORS_EDIT_OWN"]: [P["CREATORS_VIEW_OWN"]],
    P["BRANDS_EDIT_ALL"]: [P["BRANDS_VIEW_ALL"], P["BRANDS_VIEW_OWN"]],
    P["BRANDS_EDIT_OWN"]: [P["BRANDS_VIEW_OWN"]],
    P["IP_ASSETS_EDIT_ALL"]: [P["IP_ASSETS_VIEW_ALL"]],
    P["IP_ASSETS_EDIT_OWN"]: [P["IP_ASSETS_VIEW_OWN"]],
    P["IP_ASSETS_DELETE_ALL"]: [P["IP_ASSETS_VIEW_ALL"], P["IP_ASSETS_EDIT_ALL"]],
    P["IP_ASSETS_DELETE_OWN"]: [P["IP_ASSETS_VIEW_OWN"], P["IP_ASSETS_EDIT_OWN"]],
    P["LICENSES_EDIT_ALL"]: [P["LICENSES_VIEW_ALL"]],
    P["LICENSES_EDIT_OWN"]: [P["LICENSES_VIEW_OWN"]],
    P["LICENSES_TERMINATE_ALL"]: [P["LICENSES_VIEW_ALL"]],
    P["PROJECTS_EDIT_ALL"]: [P["PROJECTS_VIEW_ALL"]],
    P["PROJECTS_EDIT_OWN"]: [P["PROJECTS_VIEW_OWN"]],
    P["ROYALTIES_RUN"]: [P["ROYALTIES_VIEW_ALL"]],
    P["CONTENT_DELETE"]: [P["CONTENT_EDIT"], P["CONTENT_READ"]],
    P["CONTENT_EDIT"]: [P["CONTENT_READ"]],
    P["CONTENT_CREATE"]: [P["CONTENT_READ"]],
    P["CONTENT_APPROVE"]: [P["CONTENT_READ"]],
    P["CONTENT_MODERATE"]: [P["CONTENT_READ"]],
    P["FINANCE_APPROVE_TRANSACTIONS"]: [P["FINANCE_VIEW_ALL"]],
    P["FINANCE_PROCESS_PAYOUTS"]: [P["FINANCE_VIEW_ALL"]],
    P["FINANCE_GENERATE_REPORTS"]: [P["FINANCE_VIEW_REPORTS"]],
    P["FINANCE_VIEW_REPORTS"]: [P["FINANCE_VIEW_ALL"]],
    P["LICENSING_CREATE"]: [P["LICENSING_VIEW"]],
    P["LICENSING_EDIT"]: [P["LICENSING_VIEW"]],
    P["LICENSING_APPROVE"]: [P["LICENSING_VIEW"]],
    P["LICENSING_TERMINATE"]: [P["LICENSING_VIEW"]],
    P["APPLICATIONS_APPROVE"]: [P["APPLICATIONS_REVIEW"], P["APPLICATIONS_VIEW_ALL"]],
    P["APPLICATIONS_REJECT"]: [P["APPLICATIONS_REVIEW"], P["APPLICATIONS_VIEW_ALL"]],
    P["APPLICATIONS_REVIEW"]: [P["APPLICATIONS_VIEW_ALL"]],
    P["ADMIN_ROLES_MANAGE"]: [P["ADMIN_ROLES_VIEW"]],
    P["USERS_MANAGE_ROLES"]: [P["ADMIN_ROLES_VIEW"]],
    P["ANALYTICS_EXPORT"]: [P["ANALYTICS_VIEW_PLATFORM"]],
}

PLATFORM_ROLES = ("ADMIN", "CREATOR", "BRAND", "VIEWER")

ROLE_PERMISSIONS: dict[str, list[str]] = {
    "ADMIN": list(ALL_PERMISSIONS),
    "CREATOR": [
        P["CREATORS_VIEW_OWN"],
        P["CREATORS_VIEW_PUBLIC"],
        P["CREATORS_EDIT_OWN"],
        P["IP_ASSETS_VIEW_OWN"],
        P["IP_ASSETS_VIEW_PUBLIC"],
        P["IP_ASSETS_CREATE"],
        P["IP_ASSETS_EDIT_OWN"],
        P["IP_ASSETS_DELETE_OWN"],
        P["LICENSES_VIEW_OWN"],
        P["LICENSES_APPROVE"],
        P["ROYALTIES_VIEW_OWN"],
        P["PAYOUTS_VIEW_OWN"],
        P["ANALYTICS_VIEW_OWN"],
        P["AUDIT_VIEW_OWN"],
        P["BRANDS_VIEW_PUBLIC"],
        P["PROJECTS_VIEW_PUBLIC"],
        P["USERS_VIEW_OWN"],
        P["USERS_EDIT_OWN"],
    ],
    "BRAND": [
        P["BRANDS_VIEW_OWN"],
        P["BRANDS_VIEW_PUBLIC"],
        P["BRANDS_EDIT_OWN"],
        P["PROJECTS_VIEW_OWN"],
        P["PROJECTS_CREATE"],
        P["PROJECTS_EDIT_OWN"],
        P["LICENSES_VIEW_OWN"],
        P["LICENSES_CREATE"],
        P["LICENSES_EDIT_OWN"],
        P["ANALYTICS_VIEW_OWN"],
        P["AUDIT_VIEW_OWN"],
        P["IP_ASSETS_VIEW_PUBLIC"],
        P["CREATORS_VIEW_PUBLIC"],
        P["PROJECTS_VIEW_PUBLIC"],
        P["USERS_VIEW_OWN"],
        P["USERS_EDIT_OWN"],
    ],
    "VIEWER": [
        P["IP_ASSETS_VIEW_PUBLIC"],
        P["PROJECTS_VIEW_PUBLIC"],
        P["CREATORS_VIEW_PUBLIC"],
        P["BRANDS_VIEW_PUBLIC"],
        P["USERS_VIEW_OWN"],
    ],
}

DEPARTMENTS = (
    "SUPER_ADMIN",
    "CONTENT_MANAGER",
    "FINANCE_LICENSING",
    "CREATOR_APPLICATIONS",
    "BRAND_APPLICATIONS",
    "CUSTOMER_SERVICE",
    "OPERATIONS",
    "CONTRACTOR",
)
SENIORITIES = ("JUNIOR", "SENIOR")

_SELF_SERVICE = [P["USERS_VIEW_OWN"], P["USERS_EDIT_OWN"], P["AUDIT_VIEW_OWN"]]

DEPARTMENT_PERMISSIONS: dict[str, list[str]] = {
    "SUPER_ADMIN": list(ALL_PERMISSIONS),
    "CONTENT_MANAGER": [
        P["CONTENT_READ"],
        P["CONTENT_CREATE"],
        P["CONTENT_EDIT"],
        P["CONTENT_APPROVE"],
        P["CONTENT_DELETE"],
        P["CONTENT_MODERATE"],
        P["IP_ASSETS_VIEW_ALL"],
        P["IP_ASSETS_APPROVE"],
        P["IP_ASSETS_PUBLISH"],
        *_SELF_SERVICE,
    ],
    "FINANCE_LICENSING": [
        P["FINANCE_VIEW_ALL"],
        P["FINANCE_VIEW_REPORTS"],
        P["FINANCE_GENERATE_REPORTS"],
        P["FINANCE_PROCESS_PAYOUTS"],
        P["FINANCE_APPROVE_TRANSACTIONS"],
        P["LICENSING_VIEW"],
        P["LICENSING_CREATE"],
        P["LICENSING_EDIT"],
        P["LICENSING_APPROVE"],
        P["LICENSING_TERMINATE"],
        P["LICENSES_VIEW_ALL"],
        P["ROYALTIES_VIEW_ALL"],
        P["ROYALTIES_RUN"],
        P["PAYOUTS_VIEW_ALL"],
        P["PAYOUTS_PROCESS"],
        P["ANALYTICS_VIEW_FINANCIAL"],
        P["ANALYTICS_EXPORT"],
        *_SELF_SERVICE,
    ],
    "CREATOR_APPLICATIONS": [
        P["APPLICATIONS_VIEW_ALL"],
        P["APPLICATIONS_REVIEW"],
        P["APPLICATIONS_APPROVE"],
        P["APPLICATIONS_REJECT"],
        P["CREATORS_VIEW_ALL"],
        P["CREATORS_APPROVE"],
        *_SELF_SERVICE,
    ],
    "BRAND_APPLICATIONS": [
        P["APPLICATIONS_VIEW_ALL"],
        P["APPLICATIONS_REVIEW"],
        P["APPLICATIONS_APPROVE"],
        P["APPLICATIONS_REJECT"],
        P["BRANDS_VIEW_ALL"],
        P["BRANDS_VERIFY"],
        *_SELF_SERVICE,
    ],
    "CUSTOMER_SERVICE": [
        P["USERS_VIEW_ALL"],
        P["USERS_VIEW_ACTIVITY"],
        P["CREATORS_VIEW_ALL"],
        P["BRANDS_VIEW_ALL"],
        P["CONTENT_READ"],
        *_SELF_SERVICE,
    ],
    "OPERATIONS": [
        P["USERS_VIEW_ALL"],
        P["USERS_SUSPEND"],
        P["USERS_ACTIVATE"],
        P["USERS_VIEW_ACTIVITY"],
        P["USERS_MANAGE_2FA"],
        P["CONTENT_READ"],
        P["ANALYTICS_VIEW_PLATFORM"],
        P["SYSTEM_MANAGE_CACHE"],
        P["SYSTEM_VIEW_LOGS"],
        P["SYSTEM_MONITOR"],
        *_SELF_SERVICE,
    ],
    "CONTRACTOR": [
        P["CONTENT_READ"],
        P["CONTENT_CREATE"],
        P["PROJECTS_VIEW_OWN"],
        P["PROJECTS_CREATE"],
        P["PROJECTS_EDIT_OWN"],
        P["ANALYTICS_VIEW_OWN"],
        P["CREATORS_VIEW_PUBLIC"],
        P["BRANDS_VIEW_PUBLIC"],
        P["IP_ASSETS_VIEW_PUBLIC"],
    ],
}

CONTRACTOR_ALLOWED_PERMISSIONS: frozenset[str] = frozenset(DEPARTMENT_PERMISSIONS["CONTRACTOR"])

# Prefix match: "system:" blocks every system permission.
CONTRACTOR_PROHIBITED_PREFIXES: tuple[str, ...] = (
    "users:manage_roles",
    "users:delete",
    "users:impersonate",
    "admin_roles:",
    "system:",
    "finance:",
    "payouts.",
    "royalties.",
    "licenses.approve",
    "licenses.terminate_all",
    "content:approve",
    "content:delete",
    "creators.approve",
    "brands.verify",
    "applications:approve",
)

# Permissions an update may not strip from these departments.
CRITICAL_PERMISSIONS: dict[str, tuple[str, ...]] = {
    "SUPER_ADMIN": (P["USERS_MANAGE_ROLES"], P["ADMIN_ROLES_MANAGE"], P["SYSTEM_SETTINGS"]),
    "CONTENT_MANAGER": (P["CONTENT_READ"], P["CONTENT_EDIT"]),
}

_JUNIOR_EXCLUDED_SUFFIXES = (
    ":approve",
    ":delete",
    ":moderate",
    ".approve",
    ".publish",
    ":terminate",
    ":process_payouts",
    ":approve_transactions",
    ".process",
    ".run",
    ".verify",
)


def _junior(perms: list[str]) -> list[str]:
    return [p for p in perms if not p.endswith(_JUNIOR_EXCLUDED_SUFFIXES)]


# (department, seniority) -> permissions the role may hold.
ROLE_TEMPLATES: dict[tuple[str, str], list[str]] = {}
for _dept, _perms in DEPARTMENT_PERMISSIONS.items():
    ROLE_TEMPLATES[(_dept, "SENIOR")] = list(_perms)
    ROLE_TEMPLATES[(_dept, "JUNIOR")] = list(_perms) if _dept == "SUPER_ADMIN" else _junior(_perms)


def expand_permissions(perms: Iterable[str]) -> set[str]:
    """Transitive closure over PERMISSION_HIERARCHY."""
    out: set[str] = set()
    stack = list(perms)
    while stack:
        perm = stack.pop()
        if perm in out:
            continue
        out.add(perm)
        stack.extend(PERMISSION_HIERARCHY.get(perm, ()))
    return out


def get_role_permissions(role: str | None) -> set[str]:
    return expand_permissions(ROLE_PERMISSIONS.get((role or "").upper(), []))


def role_has_any(role: str, perms: Iterable[str]) -> bool:
    granted = get_role_permissions(role)
    return any(p in granted for p in perms)


def role_has_all(role: str, perms: Iterable[str]) -> bool:
    granted = get_role_permissions(role)
    return all(p in granted for p in perms)


def permission_namespace(perm: str) -> str:
    for sep in (":", "."):
        if sep in perm:
            return perm.split(sep, 1)[0]
    return perm


def permissions_by_category() -> dict[str, list[str]]:
    out: dict[str, list[str]] = {}
    for perm in ALL_PERMISSIONS:
        out.setdefault(permission_namespace(perm), []).append(perm)
    return out


def template_for(department: str, seniority: str | None) -> list[str]:
    return ROLE_TEMPLATES.get((department, (seniority or "JUNIOR").upper()), [])


def grants(granted: Iterable[str], required: str) -> bool:
    """
    `*:*` grants everything, `ns:*` grants every key in that namespace,
    anything else must match after hierarchy expansion.
    """
    granted = set(granted)
    if WILDCARD_ALL in granted:
        return True
    if f"{permission_namespace(required)}:*" in granted:
        return True
    return required in expand_permissions(p for p in granted if not p.endswith(":*"))


def is_prohibited_for_contractor(perm: str) -> bool:
    return any(perm == pre or perm.startswith(pre) for pre in CONTRACTOR_PROHIBITED_PREFIXES)
