from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, List


class Role(str, Enum):
    CUSTOMER = "customer"
    COURIER = "courier"
    STAFF = "staff"
    MANAGER = "manager"
    OWNER = "owner"


class Permission(str, Enum):
    ORDERS_VIEW = "orders:view"
    ORDERS_UPDATE = "orders:update"
    ORDERS_CREATE = "orders:create"
    ORDERS_DELETE = "orders:delete"
    MENU_VIEW = "menu:view"
    MENU_MANAGE = "menu:manage"
    MENU_CREATE = "menu:create"
    MENU_UPDATE = "menu:update"
    MENU_DELETE = "menu:delete"
    USERS_VIEW = "users:view"
    USERS_MANAGE = "users:manage"
    USERS_CREATE = "users:create"
    USERS_UPDATE = "users:update"
    USERS_DELETE = "users:delete"
    ANALYTICS_VIEW = "analytics:view"
    ANALYTICS_EXPORT = "analytics:export"
    SETTINGS_VIEW = "settings:view"
    SETTINGS_MANAGE = "settings:manage"
    DELIVERY_VIEW = "delivery:view"
    DELIVERY_MANAGE = "delivery:manage"
    COUPONS_VIEW = "coupons:view"
    COUPONS_MANAGE = "coupons:manage"
    SYSTEM_ADMIN = "system:admin"


P = Permission

ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.CUSTOMER: frozenset({P.MENU_VIEW, P.ORDERS_CREATE, P.ORDERS_VIEW}),
    Role.COURIER: frozenset(
        {P.ORDERS_VIEW, P.ORDERS_UPDATE, P.DELIVERY_VIEW, P.DELIVERY_MANAGE}
    ),
    Role.STAFF: frozenset(
        {P.ORDERS_VIEW, P.ORDERS_UPDATE, P.MENU_VIEW, P.DELIVERY_VIEW, P.DELIVERY_MANAGE}
    ),
    Role.MANAGER: frozenset(
        {
            P.ORDERS_VIEW,
            P.ORDERS_UPDATE,
            P.ORDERS_DELETE,
            P.MENU_VIEW,
            P.MENU_MANAGE,
            P.MENU_CREATE,
            P.MENU_UPDATE,
            P.MENU_DELETE,
            P.ANALYTICS_VIEW,
            P.DELIVERY_VIEW,
            P.DELIVERY_MANAGE,
            P.COUPONS_VIEW,
            P.COUPONS_MANAGE,
            P.USERS_VIEW,
            P.SETTINGS_VIEW,
        }
    ),
    Role.OWNER: frozenset(p for p in Permission if p is not P.SYSTEM_ADMIN),
}

ROLE_LEVELS: Dict[Role, int] = {
    Role.CUSTOMER: 1,
    Role.COURIER: 2,
    Role.STAFF: 3,
    Role.MANAGER: 4,
    Role.OWNER: 5,
}

_ADMIN_ROLES = frozenset({Role.OWNER, Role.MANAGER, Role.STAFF})
# Roles that only exist inside a restaurant tenant
TENANT_BOUND_ROLES = frozenset({Role.STAFF, Role.MANAGER, Role.COURIER})


def parse_role(value: str | Role) -> Role:
    """Coerce a stored role string; raises ValueError for unknown roles."""
    return value if isinstance(value, Role) else Role(value)


def permissions_for(role: str | Role) -> FrozenSet[Permission]:
    return ROLE_PERMISSIONS[parse_role(role)]


def has_permission(role: str | Role, permission: Permission) -> bool:
    try:
        return permission in permissions_for(role)
    except ValueError:
        return False


def permission_names(role: str | Role) -> List[str]:
    return sorted(p.value for p in permissions_for(role))


def can_access_admin(role: str | Role) -> bool:
    try:
        return parse_role(role) in _ADMIN_ROLES
    except ValueError:
        return False


def role_level(role: str | Role) -> int:
    try:
        return ROLE_LEVELS[parse_role(role)]
    except ValueError:
        return 0


def can_manage_role(manager_role: str | Role, target_role: str | Role) -> bool:
    """Owners manage everyone but owners; managers manage staff and couriers.

    Both still need ``users:manage``, which managers do not hold by default.
    """
    if not has_permission(manager_role, P.USERS_MANAGE):
        return False
    manager = parse_role(manager_role)
    try:
        target = parse_role(target_role)
    except ValueError:
        return False
    if manager is Role.OWNER:
        return target is not Role.OWNER
    if manager is Role.MANAGER:
        return target in {Role.STAFF, Role.COURIER}
    return False
