"""
Role and permission tables.

Permissions are ``resource:action`` strings (``order:update:status`` is
still resource ``order``). A role list may hold the global wildcard ``*``
or a resource wildcard such as ``order:*``.
"""
from types import MappingProxyType
from typing import Iterable, List, Optional

ADMIN = "admin"
MANAGER = "manager"
WAITER = "waiter"
KITCHEN = "kitchen"
CUSTOMER = "customer"

ROLES = (ADMIN, MANAGER, WAITER, KITCHEN, CUSTOMER)

# Higher level = more authority
ROLE_HIERARCHY = MappingProxyType({
    CUSTOMER: 1,
    KITCHEN: 2,
    WAITER: 3,
    MANAGER: 4,
    ADMIN: 5,
})

ROLE_PERMISSIONS = MappingProxyType({
    CUSTOMER: (
        "order:create",
        "order:view:own",
        "menu:view",
        "profile:view:own",
        "profile:update:own",
    ),
    KITCHEN: (
        "order:view",
        "order:update:status",
        "kitchen:view",
        "kitchen:update",
        "menu:view",
        "inventory:view",
    ),
    WAITER: (
        "order:create",
        "order:view",
        "order:update",
        "order:delete",
        "table:view",
        "table:update",
        "menu:view",
        "customer:view",
        "customer:create",
        "payment:process",
        "inventory:view",
    ),
    MANAGER: (
        "order:*",
        "table:*",
        "menu:*",
        "customer:*",
        "payment:*",
        "inventory:*",
        "employee:view",
        "employee:create",
        "employee:update",
        "analytics:view",
        "reports:view",
        "settings:view",
        "settings:update",
    ),
    ADMIN: ("*",),
})

# Roles that bypass ownership checks
PRIVILEGED_ROLES = frozenset({ADMIN, MANAGER})


def role_permissions(role: str) -> tuple:
    return ROLE_PERMISSIONS.get(role, ())


def role_level(role: str) -> int:
    return ROLE_HIERARCHY.get(role, 0)


def meets_role_level(role: str, minimum_role: str) -> bool:
    if minimum_role not in ROLE_HIERARCHY:
        return False
    return role_level(role) >= role_level(minimum_role)


def has_permission(role: str, permission: str, extra_permissions: Optional[Iterable[str]] = None) -> bool:
    if role == ADMIN:
        return True

    granted = role_permissions(role)
    if "*" in granted:
        return True

    if permission in granted:
        return True

    if ":" in permission:
        resource = permission.split(":", 1)[0]
        if f"{resource}:*" in granted:
            return True

    if extra_permissions and permission in extra_permissions:
        return True

    return False


def missing_permissions(role: str, permissions: Iterable[str], extra_permissions: Optional[Iterable[str]] = None) -> List[str]:
    extra = list(extra_permissions or [])
    return [p for p in permissions if not has_permission(role, p, extra)]


def get_user_permissions(role: str, extra_permissions: Optional[Iterable[str]] = None) -> List[str]:
    """Role permissions followed by identity-specific grants, without duplicates."""
    merged = list(role_permissions(role)) + list(extra_permissions or [])
    return list(dict.fromkeys(merged))
