"""
Staging engine: batch edits of role permissions, applied as one unit.

An operator toggles matrix cells; each toggle is recorded as a pending
grant or revoke against an immutable baseline snapshot of roles and
permissions. Nothing touches the system of record until ``apply()``,
which sends the minimal diff to a ``PermissionBackend`` and then
re-reads the baseline.

Effective cell state is never stored. It is always derived as::

    granted = baseline_has(cell) XOR cell in pending

where ``pending`` only ever holds cells that differ from the baseline
(toggling a cell twice removes its pending edit).

Session status:
    CLEAN     no pending edits
    DIRTY     one or more pending edits
    APPLYING  an apply is in flight; toggles are queued for the next cycle

Apply outcome:
    all operations succeed      -> new baseline, CLEAN
    some operations fail        -> new baseline, DIRTY with only the failed edits
    apply cancelled by caller   -> DIRTY, needs_resync set; refresh required
No compensating operations are ever issued for partially applied batches.
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional, Protocol, Sequence

from rbac_admin.core.errors import (
    NotFoundError,
    ProtectedResourceError,
    RbacError,
    SessionBusyError,
    StaleSessionError,
)
from rbac_admin.features.catalog.catalog import StaticCatalog
from rbac_admin.features.permissions.domain import (
    PermissionKey,
    PermissionSnapshot,
    RoleSnapshot,
    Scope,
    index_roles,
)
from rbac_admin.utils import get_logger


log = get_logger(__name__)


class SessionStatus(str, Enum):
    CLEAN = "clean"
    DIRTY = "dirty"
    APPLYING = "applying"


class EditKind(str, Enum):
    GRANT = "grant"
    REVOKE = "revoke"


class CellState(str, Enum):
    GRANTED = "granted"
    NOT_GRANTED = "not_granted"


@dataclass(frozen=True)
class CellKey:
    """One matrix cell: a role crossed with a (resource, action, scope) grant."""
    role_id: str
    resource: str
    action: str
    scope: Scope

    @property
    def permission_key(self) -> PermissionKey:
        return PermissionKey(self.resource, self.action, self.scope)


@dataclass(frozen=True)
class PendingEdit:
    kind: EditKind
    cell: CellKey


@dataclass(frozen=True)
class EditOutcome:
    """Result of the single backend operation issued for one pending edit."""
    edit: PendingEdit
    succeeded: bool
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass(frozen=True)
class ApplyReport:
    status: SessionStatus
    outcomes: tuple[EditOutcome, ...] = ()

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.succeeded)


class PermissionBackend(Protocol):
    """The system-of-record operations a staging session needs."""

    async def list_roles(self) -> Sequence[RoleSnapshot]: ...

    async def add_permission(
        self, role_id: str, resource: str, action: str, scope: Scope
    ) -> PermissionSnapshot: ...

    async def remove_permission(self, role_id: str, permission_id: str) -> None: ...


# ============================================================================
# Pure projection
# ============================================================================

def baseline_has(baseline: Mapping[str, RoleSnapshot], cell: CellKey) -> bool:
    role = baseline.get(cell.role_id)
    return role is not None and role.has(cell.permission_key)


def effective_state(
    baseline: Mapping[str, RoleSnapshot],
    pending: Mapping[CellKey, PendingEdit],
    cell: CellKey,
) -> CellState:
    """Baseline XOR pending toggle; no side effects."""
    granted = baseline_has(baseline, cell) != (cell in pending)
    return CellState.GRANTED if granted else CellState.NOT_GRANTED


def reconcile_pending(
    baseline: Mapping[str, RoleSnapshot],
    edits: Iterable[PendingEdit],
) -> dict[CellKey, PendingEdit]:
    """
    Keep only edits that still change something against ``baseline``.

    A grant survives if the baseline lacks the cell, a revoke if it holds
    it; edits for roles no longer in the baseline are dropped.
    """
    kept: dict[CellKey, PendingEdit] = {}
    for edit in edits:
        if edit.cell.role_id not in baseline:
            continue
        has = baseline_has(baseline, edit.cell)
        if (edit.kind is EditKind.GRANT and not has) or (edit.kind is EditKind.REVOKE and has):
            kept[edit.cell] = edit
    return kept


# ============================================================================
# Session
# ============================================================================

@dataclass
class StagingSession:
    """
    One editing session over a baseline snapshot.

    A session assumes a single editor; it is not safe to drive the same
    session from several concurrent tasks except for the documented
    toggle-while-applying queueing.
    """
    id: str
    catalog: StaticCatalog
    baseline: Mapping[str, RoleSnapshot] = field(default_factory=dict)
    apply_concurrency: int = 8
    _pending: Mapping[CellKey, PendingEdit] = field(default_factory=dict, init=False)
    _queued: List[CellKey] = field(default_factory=list, init=False)
    _applying: bool = field(default=False, init=False)
    needs_resync: bool = field(default=False, init=False)
    last_outcomes: tuple[EditOutcome, ...] = field(default=(), init=False)

    def __post_init__(self) -> None:
        self.baseline = MappingProxyType(dict(self.baseline))
        self._pending = MappingProxyType({})

    @classmethod
    async def open(
        cls,
        session_id: str,
        backend: PermissionBackend,
        catalog: StaticCatalog,
        apply_concurrency: int = 8,
    ) -> "StagingSession":
        roles = await backend.list_roles()
        log.debug(f"Opened staging session {session_id} over {len(roles)} roles")
        return cls(
            id=session_id,
            catalog=catalog,
            baseline=index_roles(roles),
            apply_concurrency=apply_concurrency,
        )

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    @property
    def status(self) -> SessionStatus:
        if self._applying:
            return SessionStatus.APPLYING
        return SessionStatus.DIRTY if self._pending else SessionStatus.CLEAN

    @property
    def pending(self) -> Mapping[CellKey, PendingEdit]:
        return self._pending

    @property
    def queued(self) -> tuple[CellKey, ...]:
        return tuple(self._queued)

    @property
    def failed_outcomes(self) -> tuple[EditOutcome, ...]:
        return tuple(o for o in self.last_outcomes if not o.succeeded)

    def effective_state(self, role_id: str, resource: str, action: str, scope: Scope) -> CellState:
        return effective_state(self.baseline, self._pending, CellKey(role_id, resource, action, scope))

    def is_pending(self, role_id: str, resource: str, action: str, scope: Scope) -> bool:
        return CellKey(role_id, resource, action, scope) in self._pending

    # ------------------------------------------------------------------ #
    # Edits
    # ------------------------------------------------------------------ #

    def _check_cell(self, cell: CellKey) -> None:
        role = self.baseline.get(cell.role_id)
        if role is None:
            raise NotFoundError("Role not found", details={"role_id": cell.role_id})
        if role.is_system:
            raise ProtectedResourceError(
                "Cannot modify system role permissions",
                details={"role_id": role.id, "role": role.name},
            )
        self.catalog.validate(cell.resource, cell.action)

    def _stage(self, cell: CellKey) -> None:
        pending = dict(self._pending)
        if cell in pending:
            # Second toggle returns the cell to baseline
            del pending[cell]
        else:
            kind = EditKind.REVOKE if baseline_has(self.baseline, cell) else EditKind.GRANT
            pending[cell] = PendingEdit(kind, cell)
        self._pending = MappingProxyType(pending)

    def toggle_cell(self, role_id: str, resource: str, action: str, scope: Scope) -> bool:
        """
        Flip the effective state of one cell.

        Returns True when the toggle was staged in this cycle, False when
        an apply is in flight and the toggle was queued for the next one.

        Raises:
            StaleSessionError: a cancelled apply left the baseline untrusted
            NotFoundError / ProtectedResourceError / ValidationError: bad cell
        """
        if self.needs_resync:
            raise StaleSessionError(
                "Session baseline must be refreshed before further edits",
                details={"session_id": self.id},
            )
        cell = CellKey(role_id, resource, action, scope)
        self._check_cell(cell)

        if self._applying:
            self._queued.append(cell)
            log.debug(f"Session {self.id}: queued toggle {cell} during apply")
            return False

        self._stage(cell)
        return True

    def discard(self) -> None:
        """Drop all pending edits and queued toggles; baseline is untouched."""
        if self._applying:
            raise SessionBusyError("Cannot discard while an apply is in flight", details={"session_id": self.id})
        self._pending = MappingProxyType({})
        self._queued.clear()
        log.debug(f"Session {self.id}: discarded pending edits")

    def forget_role(self, role_id: str) -> None:
        """Remove a deleted role from the baseline, pending edits and queue."""
        if role_id not in self.baseline and not any(c.role_id == role_id for c in self._queued):
            return
        self.baseline = MappingProxyType({k: v for k, v in self.baseline.items() if k != role_id})
        self._pending = MappingProxyType({c: e for c, e in self._pending.items() if c.role_id != role_id})
        self._queued = [c for c in self._queued if c.role_id != role_id]
        log.info(f"Session {self.id}: dropped edits for deleted role {role_id}")

    async def refresh(self, backend: PermissionBackend) -> None:
        """
        Replace the baseline with the current system-of-record state.

        Only allowed while Clean; refreshing a Dirty session would silently
        re-base its pending edits.
        """
        if self._applying:
            raise SessionBusyError("Cannot refresh while an apply is in flight", details={"session_id": self.id})
        if self._pending:
            raise StaleSessionError(
                "Cannot refresh a session with pending edits; apply or discard them first",
                details={"session_id": self.id, "pending": len(self._pending)},
            )
        roles = await backend.list_roles()
        self.baseline = MappingProxyType(index_roles(roles))
        self.needs_resync = False
        log.debug(f"Session {self.id}: baseline refreshed ({len(roles)} roles)")

    # ------------------------------------------------------------------ #
    # Apply
    # ------------------------------------------------------------------ #

    async def _dispatch(
        self,
        backend: PermissionBackend,
        edit: PendingEdit,
        limiter: asyncio.Semaphore,
    ) -> EditOutcome:
        cell = edit.cell
        async with limiter:
            try:
                if edit.kind is EditKind.GRANT:
                    await backend.add_permission(cell.role_id, cell.resource, cell.action, cell.scope)
                else:
                    permission_id = self.baseline[cell.role_id].permission_id(cell.permission_key)
                    if permission_id is None:
                        raise NotFoundError(
                            "Permission not found on role",
                            details={"role_id": cell.role_id},
                        )
                    await backend.remove_permission(cell.role_id, permission_id)
            except RbacError as e:
                return EditOutcome(edit, False, e.message, e.code)
        return EditOutcome(edit, True)

    async def apply(self, backend: PermissionBackend) -> ApplyReport:
        """
        Send the pending diff to the backend and reconcile with the result.

        One backend operation is issued per pending edit, concurrently,
        and the session stays APPLYING until every operation settles.
        Errors outside the domain taxonomy (e.g. a dropped database
        connection) are reported per edit with code ``internal_error``.
        ``last_outcomes`` is set as soon as the fan-out settles, so it is
        available even when the baseline re-fetch afterwards raises.

        Raises:
            SessionBusyError: another apply is in flight
            StaleSessionError: a previous apply was cancelled
        """
        if self._applying:
            raise SessionBusyError("An apply is already in flight", details={"session_id": self.id})
        if self.needs_resync:
            raise StaleSessionError(
                "Session baseline must be refreshed before applying",
                details={"session_id": self.id},
            )
        self.last_outcomes = ()
        if not self._pending:
            return ApplyReport(self.status)

        submitted = list(self._pending.values())
        self._applying = True
        log.info(f"Session {self.id}: applying {len(submitted)} edits")
        limiter = asyncio.Semaphore(max(1, self.apply_concurrency))
        try:
            results = await asyncio.gather(
                *(self._dispatch(backend, edit, limiter) for edit in submitted),
                return_exceptions=True,
            )
            outcomes = []
            for edit, result in zip(submitted, results):
                if isinstance(result, EditOutcome):
                    outcomes.append(result)
                elif isinstance(result, Exception):
                    log.exception(f"Session {self.id}: backend error applying {edit.cell}", exc_info=result)
                    outcomes.append(EditOutcome(edit, False, str(result) or type(result).__name__, "internal_error"))
                else:
                    raise result
            self.last_outcomes = tuple(outcomes)

            failed = [o.edit for o in outcomes if not o.succeeded]
            try:
                roles = await backend.list_roles()
            except Exception:
                # Baseline is unknown: keep only the failed edits and force a refresh
                self._pending = MappingProxyType({e.cell: e for e in failed})
                self.needs_resync = True
                raise
            self.baseline = MappingProxyType(index_roles(roles))
            self._pending = MappingProxyType(reconcile_pending(self.baseline, failed))
        except asyncio.CancelledError:
            self.needs_resync = True
            log.warning(f"Session {self.id}: apply cancelled; baseline must be refreshed")
            raise
        finally:
            self._applying = False

        if failed:
            log.warning(f"Session {self.id}: {len(failed)} of {len(submitted)} edits failed")
        else:
            log.info(f"Session {self.id}: applied {len(submitted)} edits")

        self._replay_queued()
        return ApplyReport(self.status, self.last_outcomes)

    def _replay_queued(self) -> None:
        queued, self._queued = self._queued, []
        for cell in queued:
            try:
                self._check_cell(cell)
            except RbacError as e:
                log.warning(f"Session {self.id}: dropped queued toggle {cell}: {e.message}")
                continue
            self._stage(cell)
