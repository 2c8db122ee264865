"""
Role-Based Access Control: the permission layer of the Authorization Engine.

Answers one question for every action: does this principal hold the
named permission?  A permission is held iff the principal's role grants
it in the ``PermissionRegistry`` and the user has not had it disabled.

Ownership of a specific record is a separate, independent check; see
``careflow.access``.

Denials carry a stable, user-safe message (``missing permission: X``)
and never describe what other roles or users may do.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from careflow.exceptions import AuthenticationRequired, PermissionDenied
from careflow.models import Decision, Principal, Role
from careflow.registry import PermissionRegistry, default_registry

logger = logging.getLogger(__name__)


def _registry(registry: Optional[PermissionRegistry]) -> PermissionRegistry:
    return registry if registry is not None else default_registry()


def require_authenticated(principal: Optional[Principal]) -> Principal:
    """Reject a missing principal.

    Raises:
        AuthenticationRequired: If ``principal`` is None.
    """
    if principal is None:
        raise AuthenticationRequired("Authentication required.")
    return principal


def check_permission(
    principal: Principal,
    permission: str,
    registry: Optional[PermissionRegistry] = None,
) -> bool:
    """Check whether a principal effectively holds a permission.

    Args:
        principal: The acting principal.
        permission: Permission name (e.g. ``'cancel_lab_orders'``).
        registry: Registry to consult; defaults to the process registry.

    Returns:
        True if the role grants it and the user has not had it disabled.
        Unknown permission names return False.
    """
    return _registry(registry).is_granted(principal, permission)


def has_any_permission(
    principal: Principal,
    permissions: Iterable[str],
    registry: Optional[PermissionRegistry] = None,
) -> bool:
    reg = _registry(registry)
    return any(reg.is_granted(principal, p) for p in permissions)


def evaluate_permission(
    principal: Optional[Principal],
    permission: str,
    registry: Optional[PermissionRegistry] = None,
) -> Decision:
    """Non-raising form of ``require_permission``."""
    if principal is None:
        return Decision.deny("Authentication required.", status_code=401)
    if check_permission(principal, permission, registry):
        return Decision.allow()
    return Decision.deny(f"missing permission: {permission}")


def require_permission(
    principal: Optional[Principal],
    permission: str,
    registry: Optional[PermissionRegistry] = None,
) -> Decision:
    """Enforce a permission check; raise if denied.

    Raises:
        AuthenticationRequired: If ``principal`` is None.
        PermissionDenied: If the permission is not effectively granted.
    """
    principal = require_authenticated(principal)
    decision = evaluate_permission(principal, permission, registry)
    if not decision.allowed:
        logger.warning(
            "Permission denied: user=%s role=%s permission=%s",
            principal.user_id, principal.role.value, permission,
        )
        raise PermissionDenied(decision.reason)
    return decision


def require_any_permission(
    principal: Optional[Principal],
    permissions: Iterable[str],
    registry: Optional[PermissionRegistry] = None,
) -> str:
    """Require at least one of several permissions.

    Returns:
        The first permission (in the given order) that is held.

    Raises:
        AuthenticationRequired: If ``principal`` is None.
        PermissionDenied: If none is held; the message names the first.
    """
    principal = require_authenticated(principal)
    names = list(permissions)
    reg = _registry(registry)
    for name in names:
        if reg.is_granted(principal, name):
            return name
    logger.warning(
        "Permission denied: user=%s role=%s permissions=%s",
        principal.user_id, principal.role.value, names,
    )
    if not names:
        raise PermissionDenied("missing permission")
    raise PermissionDenied(f"missing permission: {names[0]}")


def effective_permissions(
    principal: Principal,
    registry: Optional[PermissionRegistry] = None,
) -> frozenset[str]:
    """The role's permission set minus the user's disabled permissions."""
    granted = _registry(registry).permissions_of(principal.role)
    return granted - principal.disabled_permissions


def get_permissions_for_role(
    role: Role,
    registry: Optional[PermissionRegistry] = None,
) -> dict[str, bool]:
    """Return every catalogued permission mapped to whether the role grants it."""
    reg = _registry(registry)
    granted = reg.permissions_of(role)
    return {p.name: p.name in granted for p in reg.permissions}
