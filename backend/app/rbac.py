"""
Keystone Backend — Role-Based Access Control
============================================

What:  The fixed permission set of each role and the wildcard-aware check.
How:   Permissions are `resource:action[:scope]` strings. `*` grants
       everything; `resource:*` grants every action on a resource. Roles
       inherit: admin ⊇ moderator ⊇ user.

    admin       *
    moderator   examples:*, users:read, audit:read      (+ user)
    user        examples:read, examples:create, examples:update:own,
                examples:delete:own, uploads:create, payments:manage:own
"""

from typing import Dict, FrozenSet, Union

from app.models.enums import UserRole

_OWN: Dict[UserRole, FrozenSet[str]] = {
    UserRole.USER: frozenset({
        "examples:read",
        "examples:create",
        "examples:update:own",
        "examples:delete:own",
        "uploads:create",
        "payments:manage:own",
    }),
    UserRole.MODERATOR: frozenset({"examples:*", "users:read", "audit:read"}),
    UserRole.ADMIN: frozenset({"*"}),
}

_INHERITS = {
    UserRole.ADMIN: UserRole.MODERATOR,
    UserRole.MODERATOR: UserRole.USER,
    UserRole.USER: None,
}


def permissions_for(role: Union[UserRole, str]) -> FrozenSet[str]:
    """Own permissions plus everything inherited from lower roles."""
    role = UserRole(role)
    granted = set()
    current = role
    while current is not None:
        granted |= _OWN[current]
        current = _INHERITS[current]
    return frozenset(granted)


ROLE_PERMISSIONS = {role: permissions_for(role) for role in UserRole}


def has_permission(role: Union[UserRole, str], permission: str) -> bool:
    try:
        granted = ROLE_PERMISSIONS[UserRole(role)]
    except ValueError:
        return False
    if "*" in granted or permission in granted:
        return True
    resource = permission.split(":", 1)[0]
    return f"{resource}:*" in granted
