"""
Presentation-ready permission matrix.

Rows are catalog (resource, action) pairs at scope "all", plus any
instance-scoped grant that appears in the baseline or in pending edits;
columns are roles. Each cell carries the effective state and whether it
has a pending edit.
"""
from dataclasses import dataclass
from typing import List, Mapping, Optional

from rbac_admin.features.catalog.catalog import Resource, StaticCatalog
from rbac_admin.features.permissions.domain import ALL, PermissionKey, RoleSnapshot
from rbac_admin.features.staging.engine import CellKey, CellState, PendingEdit, effective_state


@dataclass(frozen=True)
class MatrixCell:
    key: PermissionKey
    granted: bool
    pending: bool


@dataclass(frozen=True)
class MatrixColumn:
    role: RoleSnapshot
    cells: tuple[MatrixCell, ...]


@dataclass(frozen=True)
class MatrixView:
    resources: tuple[Resource, ...]
    columns: tuple[MatrixColumn, ...]


def _row_keys(catalog: StaticCatalog, role: RoleSnapshot, pending: Mapping[CellKey, PendingEdit]) -> List[PermissionKey]:
    keys = [
        PermissionKey(resource.name, action, ALL)
        for resource in catalog.list_resources()
        for action in resource.actions
    ]
    seen = set(keys)
    extra = [p.key for p in role.permissions] + [c.permission_key for c in pending if c.role_id == role.id]
    for key in extra:
        if key not in seen:
            seen.add(key)
            keys.append(key)
    return keys


def build_matrix(
    catalog: StaticCatalog,
    baseline: Mapping[str, RoleSnapshot],
    pending: Optional[Mapping[CellKey, PendingEdit]] = None,
) -> MatrixView:
    pending = pending or {}
    columns = []
    for role in sorted(baseline.values(), key=lambda r: r.name):
        cells = []
        for key in _row_keys(catalog, role, pending):
            cell = CellKey(role.id, key.resource, key.action, key.scope)
            state = effective_state(baseline, pending, cell)
            cells.append(MatrixCell(key, state is CellState.GRANTED, cell in pending))
        columns.append(MatrixColumn(role, tuple(cells)))
    return MatrixView(tuple(catalog.list_resources()), tuple(columns))
