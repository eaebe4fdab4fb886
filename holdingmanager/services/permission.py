"""
Role-Based Access Control (RBAC) gate.

Pure functions over two static tables:
  - ROLE_LEVELS: numeric authority rank per role (level comparisons gate
    workflow steps and routes)
  - ROLE_PERMISSIONS: module × action matrix (fine-grained UI/API checks)

The caller's identity is always passed in explicitly as an ``Actor``.

Usage:
    from holdingmanager.services.permission import Actor, check_permission, role_level_at_least

    actor = Actor(user_id="u-17", role="directeur")
    check_permission(actor, "workflows", "approve")      # raises ForbiddenError
    if role_level_at_least(actor.role, "responsable"):
        ...
"""

from dataclasses import dataclass

from holdingmanager.core.exceptions import ForbiddenError


ROLE_LEVELS = {
    "super_admin": 100,
    "admin": 80,
    "directeur": 60,
    "manager": 40,
    "responsable": 40,
    "chef_service": 40,
    "rh": 40,
    "employe": 20,
}

MODULES = frozenset({
    "dashboard", "filiales", "employes", "clients", "factures", "contrats",
    "transactions", "workflows", "alertes", "services", "admin", "rapports",
})
ACTIONS = frozenset({"view", "create", "edit", "delete", "approve", "export"})

_CRUD = frozenset({"view", "create", "edit", "delete"})
_FINANCE_MANAGE = frozenset({"view", "create", "edit"})
_APPROVER_WORKFLOWS = frozenset({"view", "create", "approve"})

ROLE_PERMISSIONS = {
    "super_admin": {
        "dashboard": frozenset({"view"}),
        "filiales": _CRUD,
        "employes": _CRUD,
        "clients": _CRUD,
        "factures": _CRUD | {"export"},
        "contrats": _CRUD,
        "transactions": _CRUD | {"export"},
        "workflows": _CRUD | {"approve"},
        "alertes": frozenset({"view", "edit"}),
        "services": _CRUD,
        "admin": _CRUD,
        "rapports": frozenset({"view", "export"}),
    },
    "admin": {
        "dashboard": frozenset({"view"}),
        "filiales": _FINANCE_MANAGE,
        "employes": _CRUD,
        "clients": _CRUD,
        "factures": _CRUD | {"export"},
        "contrats": _CRUD,
        "transactions": _FINANCE_MANAGE | {"export"},
        "workflows": _APPROVER_WORKFLOWS,
        "alertes": frozenset({"view", "edit"}),
        "services": frozenset({"view", "edit"}),
        "admin": frozenset({"view"}),
        "rapports": frozenset({"view", "export"}),
    },
    "directeur": {
        "dashboard": frozenset({"view"}),
        "filiales": frozenset({"view"}),
        "employes": _FINANCE_MANAGE,
        "clients": _FINANCE_MANAGE,
        "factures": _FINANCE_MANAGE | {"export"},
        "contrats": _FINANCE_MANAGE,
        "transactions": _FINANCE_MANAGE,
        "workflows": _APPROVER_WORKFLOWS,
        "alertes": frozenset({"view"}),
        "services": frozenset({"view"}),
        "rapports": frozenset({"view", "export"}),
    },
    "employe": {
        "dashboard": frozenset({"view"}),
        "employes": frozenset({"view"}),
        "clients": frozenset({"view"}),
        "factures": frozenset({"view"}),
        "workflows": frozenset({"view", "create"}),
        "alertes": frozenset({"view"}),
    },
}

# Level-40 roles share the same matrix.
_LINE_MANAGER_PERMISSIONS = {
    "dashboard": frozenset({"view"}),
    "employes": frozenset({"view"}),
    "clients": _FINANCE_MANAGE,
    "factures": _FINANCE_MANAGE,
    "contrats": frozenset({"view"}),
    "transactions": frozenset({"view", "create"}),
    "workflows": _APPROVER_WORKFLOWS,
    "alertes": frozenset({"view"}),
    "services": frozenset({"view"}),
}
for _role in ("manager", "responsable", "chef_service", "rh"):
    ROLE_PERMISSIONS[_role] = _LINE_MANAGER_PERMISSIONS

# Minimum level per dashboard route prefix.
PROTECTED_ROUTES = {
    "/admin": 80,
    "/filiales/nouveau": 80,
    "/filiales": 60,
    "/employes/nouveau": 60,
    "/employes": 20,
    "/finance/contrats/nouveau": 60,
    "/finance/contrats": 40,
    "/finance/factures": 40,
    "/finance/clients": 40,
    "/finance/transactions": 40,
    "/services": 40,
    "/workflows": 20,
    "/alertes": 20,
    "/": 20,
}
_DEFAULT_ROUTE_LEVEL = 20

# Roles allowed to manage requests they did not submit.
ELEVATED_ROLE = "directeur"


@dataclass(frozen=True)
class Actor:
    """Identity of the caller, as asserted by the identity provider."""

    user_id: str
    role: str


def role_level(role: str | None) -> int:
    """Numeric level of a role; unknown or missing roles rank 0."""
    if not role:
        return 0
    return ROLE_LEVELS.get(role, 0)


def role_level_at_least(role: str | None, required_role: str) -> bool:
    """True when ``role`` ranks at or above ``required_role``."""
    return role_level(role) >= role_level(required_role)


def has_permission(role: str | None, module: str, action: str) -> bool:
    """Check the module × action matrix for a role."""
    if not role:
        return False
    return action in ROLE_PERMISSIONS.get(role, {}).get(module, ())


def check_permission(actor: Actor, module: str, action: str) -> None:
    """Assert the actor's role grants ``action`` on ``module``.

    Raises:
        ForbiddenError: If the matrix does not grant it.
    """
    if not has_permission(actor.role, module, action):
        raise ForbiddenError(actor.user_id, f"{action} {module}")


def can_access_route(role: str | None, path: str) -> bool:
    """Route gating by level: the most specific matching prefix wins."""
    if not role:
        return False
    required = _DEFAULT_ROUTE_LEVEL
    for route, level in PROTECTED_ROUTES.items():
        if len(route) > 1 and path.startswith(route):
            required = max(required, level)
    if path in PROTECTED_ROUTES:
        required = PROTECTED_ROUTES[path]
    return role_level(role) >= required


def accessible_modules(role: str | None) -> list[str]:
    if not role:
        return []
    return sorted(ROLE_PERMISSIONS.get(role, {}))


def can_manage(actor: Actor, submitter_id: str) -> bool:
    """Submitter of a request, or someone ranking at least ELEVATED_ROLE."""
    return actor.user_id == submitter_id or role_level_at_least(actor.role, ELEVATED_ROLE)
