"""
Value types for grants: scopes, permission keys and immutable role snapshots.

Scope is a closed sum of ``AllScope`` and ``InstanceScope``. Code that
reasons about grants goes through the helpers here, which raise on any
other type, so adding a scope kind fails loudly at every call site.
"""
from dataclasses import dataclass, field
from typing import ClassVar, Iterable, Mapping, NamedTuple, Optional, Union

from rbac_admin.core.errors import ValidationError


# ============================================================================
# Scope
# ============================================================================

@dataclass(frozen=True)
class AllScope:
    """Grant applies to every instance of the resource."""
    kind: ClassVar[str] = "all"

    @property
    def value(self) -> None:
        return None

    def __str__(self) -> str:
        return "all"


@dataclass(frozen=True)
class InstanceScope:
    """Grant applies to one named instance (e.g. a single node)."""
    value: str
    kind: ClassVar[str] = "instance"

    def __post_init__(self) -> None:
        if not isinstance(self.value, str) or not self.value.strip():
            raise ValidationError("Instance scope requires a non-empty value")

    def __str__(self) -> str:
        return f"instance:{self.value}"


Scope = Union[AllScope, InstanceScope]

ALL = AllScope()

SCOPE_TYPES = (AllScope.kind, InstanceScope.kind)


def scope_to_columns(scope: Scope) -> tuple[str, str]:
    """Map a scope onto the (scope_type, scope_value) storage columns."""
    if isinstance(scope, AllScope):
        # Stored as "" rather than NULL so the unique constraint sees duplicates
        return AllScope.kind, ""
    if isinstance(scope, InstanceScope):
        return InstanceScope.kind, scope.value
    raise TypeError(f"Unsupported scope: {scope!r}")


def scope_from_columns(scope_type: str, scope_value: Optional[str]) -> Scope:
    """Inverse of scope_to_columns; also used to parse request parameters."""
    if scope_type == AllScope.kind:
        return ALL
    if scope_type == InstanceScope.kind:
        return InstanceScope(scope_value or "")
    raise ValidationError(
        f"Unknown scope type '{scope_type}'",
        details={"allowed": list(SCOPE_TYPES)},
    )


def scope_to_dict(scope: Scope) -> dict:
    if isinstance(scope, AllScope):
        return {"type": AllScope.kind}
    if isinstance(scope, InstanceScope):
        return {"type": InstanceScope.kind, "value": scope.value}
    raise TypeError(f"Unsupported scope: {scope!r}")


# ============================================================================
# Permission keys and snapshots
# ============================================================================

class PermissionKey(NamedTuple):
    """The (resource, action, scope) tuple that is unique within one role."""
    resource: str
    action: str
    scope: Scope

    def __str__(self) -> str:
        return f"{self.resource}:{self.action}@{self.scope}"


@dataclass(frozen=True)
class PermissionSnapshot:
    """A permission as last read from the system of record."""
    id: str
    resource: str
    action: str
    scope: Scope = ALL

    @property
    def key(self) -> PermissionKey:
        return PermissionKey(self.resource, self.action, self.scope)


@dataclass(frozen=True)
class RoleSnapshot:
    """
    Immutable copy of a role and its permission set.

    Staging sessions hold these as their baseline, so nothing a caller
    does with ORM objects afterwards can leak into a session.
    """
    id: str
    name: str
    display_name: str
    description: Optional[str] = None
    is_system: bool = False
    permissions: tuple[PermissionSnapshot, ...] = ()
    _index: Mapping[PermissionKey, str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_index", {p.key: p.id for p in self.permissions})

    def has(self, key: PermissionKey) -> bool:
        return key in self._index

    def permission_id(self, key: PermissionKey) -> Optional[str]:
        return self._index.get(key)

    @classmethod
    def from_model(cls, role) -> "RoleSnapshot":
        """Build a snapshot from a loaded ``Role`` ORM object."""
        return cls(
            id=role.id,
            name=role.name,
            display_name=role.display_name,
            description=role.description,
            is_system=role.is_system,
            permissions=tuple(
                PermissionSnapshot(p.id, p.resource, p.action, p.scope)
                for p in role.permissions
            ),
        )


def index_roles(roles: Iterable[RoleSnapshot]) -> dict[str, RoleSnapshot]:
    return {role.id: role for role in roles}
