"""
Permission Registry.

A static, declarative catalogue of named permissions (grouped by
category) and of the roles that bundle them.  The catalogue lives in a
versioned YAML file and is loaded once at process start into an
immutable ``PermissionRegistry``; nothing mutates it afterwards.

Grant rule: a permission is effectively granted to a principal iff it is
in the role's permission set AND not in the principal's
``disabled_permissions``.  An override naming a permission the role
never had is a no-op.  Unknown permission names are never granted.

Example YAML structure::

    version: 1
    permissions:
      - {name: view_own_record, description: ..., category: patient_records}
    roles:
      - name: patient
        description: ...
        permissions: [view_own_record]
      - name: admin
        permissions: "*"      # every permission in the catalogue
"""

from __future__ import annotations

import functools
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator

from careflow.config import get_settings
from careflow.exceptions import RegistryError
from careflow.models import Principal, Role


ALL_PERMISSIONS = "*"


# ---------------------------------------------------------------------------
# Catalogue models
# ---------------------------------------------------------------------------

class PermissionDefinition(BaseModel):
    """An immutable catalogue entry."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, pattern=r"^[a-z][a-z0-9_]*$")
    description: str = ""
    category: str = Field(..., min_length=1)


class RoleDefinition(BaseModel):
    """A role and the fixed set of permission names it grants."""

    model_config = ConfigDict(frozen=True)

    name: Role
    description: str = ""
    permissions: frozenset[str] = Field(default_factory=frozenset)


class PermissionRegistry(BaseModel):
    """Immutable permission catalogue and role mapping.

    Validated on construction: permission names are unique, every role
    grant names a catalogued permission, and every ``Role`` is defined
    exactly once.
    """

    model_config = ConfigDict(frozen=True)

    version: int = Field(default=1, ge=1)
    permissions: tuple[PermissionDefinition, ...]
    roles: tuple[RoleDefinition, ...]

    _catalogue: dict[str, PermissionDefinition] = PrivateAttr(default_factory=dict)
    _grants: dict[Role, frozenset[str]] = PrivateAttr(default_factory=dict)

    @model_validator(mode="after")
    def check_consistency(self) -> "PermissionRegistry":
        seen: set[str] = set()
        for perm in self.permissions:
            if perm.name in seen:
                raise ValueError(f"Duplicate permission '{perm.name}' in registry.")
            seen.add(perm.name)

        defined_roles: set[Role] = set()
        for role in self.roles:
            if role.name in defined_roles:
                raise ValueError(f"Role '{role.name.value}' defined more than once.")
            defined_roles.add(role.name)
            unknown = sorted(role.permissions - seen)
            if unknown:
                raise ValueError(
                    f"Role '{role.name.value}' grants unknown permissions: {unknown}"
                )

        missing = sorted(r.value for r in Role if r not in defined_roles)
        if missing:
            raise ValueError(f"Registry does not define roles: {missing}")
        return self

    def model_post_init(self, __context: Any) -> None:
        self._catalogue = {p.name: p for p in self.permissions}
        self._grants = {r.name: r.permissions for r in self.roles}

    # -- lookups --

    def permissions_of(self, role: Role) -> frozenset[str]:
        """Return the declared permission names for a role."""
        return self._grants.get(Role(role), frozenset())

    def is_granted(self, principal: Principal, permission_name: str) -> bool:
        """True iff the role grants the permission and the user has not had it disabled."""
        if permission_name not in self._catalogue:
            return False
        if permission_name not in self.permissions_of(principal.role):
            return False
        return permission_name not in principal.disabled_permissions

    def get_permission(self, name: str) -> Optional[PermissionDefinition]:
        return self._catalogue.get(name)

    def categories(self) -> list[str]:
        return sorted({p.category for p in self.permissions})

    def permissions_in_category(self, category: str) -> list[str]:
        return [p.name for p in self.permissions if p.category == category]

    def describe_role(self, role: Role) -> RoleDefinition:
        for definition in self.roles:
            if definition.name == role:
                return definition
        raise KeyError(f"No definition for role '{role}'")

    def __contains__(self, permission_name: str) -> bool:
        return permission_name in self._catalogue

    def __len__(self) -> int:
        return len(self.permissions)


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------

def registry_from_mapping(raw: Any) -> PermissionRegistry:
    """Build a registry from the parsed YAML structure.

    Expands ``permissions: "*"`` on a role to the full catalogue.

    Raises:
        RegistryError: If the top-level structure is malformed.
        pydantic.ValidationError: If the catalogue is inconsistent.
    """
    if not isinstance(raw, dict):
        raise RegistryError("Registry must be a mapping with 'permissions' and 'roles'.")
    for key in ("permissions", "roles"):
        if not isinstance(raw.get(key), list):
            raise RegistryError(f"Registry key '{key}' must be a list.")

    permissions = [PermissionDefinition(**entry) for entry in raw["permissions"]]
    all_names = frozenset(p.name for p in permissions)

    roles: list[RoleDefinition] = []
    for idx, entry in enumerate(raw["roles"]):
        if not isinstance(entry, dict):
            raise RegistryError(f"Role entry at index {idx} must be a mapping.")
        entry = dict(entry)
        granted = entry.get("permissions") or []
        if granted == ALL_PERMISSIONS:
            entry["permissions"] = all_names
        elif not isinstance(granted, list):
            raise RegistryError(
                f"Role entry at index {idx}: 'permissions' must be a list or '*'."
            )
        roles.append(RoleDefinition(**entry))

    return PermissionRegistry(
        version=raw.get("version", 1),
        permissions=tuple(permissions),
        roles=tuple(roles),
    )


def load_registry_from_yaml(path: str | Path) -> PermissionRegistry:
    """Load and validate a permission registry from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        RegistryError: If the YAML structure is invalid.
        pydantic.ValidationError: If the catalogue is inconsistent.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Registry file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    return registry_from_mapping(raw)


@functools.lru_cache(maxsize=1)
def default_registry() -> PermissionRegistry:
    """The process-wide registry, loaded on first use and cached."""
    return load_registry_from_yaml(get_settings().resolved_registry_path())
