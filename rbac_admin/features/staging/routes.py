"""
Staging session routes.

A client opens a session, toggles cells against its baseline snapshot,
inspects effective state or the whole matrix, then applies or discards.
Sessions are addressed by the id returned from ``POST /staging``.
"""
from typing import Any, Dict, List, Optional, Sequence
from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from rbac_admin.core import config
from rbac_admin.core.database.engine import get_db
from rbac_admin.core.rate_limit import limiter
from rbac_admin.features.catalog.catalog import StaticCatalog, get_catalog
from rbac_admin.features.permissions.dependencies import (
    AuditContext,
    create_audit_log,
    get_permission_backend,
    get_staging_manager,
)
from rbac_admin.features.permissions.domain import AllScope, scope_from_columns, scope_to_dict
from rbac_admin.features.permissions.schemas import PermissionMatrixResponse, scope_schema
from rbac_admin.features.staging.backend import DatabasePermissionBackend
from rbac_admin.features.staging.engine import CellState, EditOutcome
from rbac_admin.features.staging.manager import StagingSessionManager
from rbac_admin.features.staging.matrix import build_matrix
from rbac_admin.features.staging.schemas import (
    ApplyReportResponse,
    CellStateResponse,
    CellToggle,
    StagingSessionResponse,
    ToggleResponse,
)


router = APIRouter()


# ============================================================================
# Session lifecycle
# ============================================================================

@router.post("/", response_model=StagingSessionResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(config.STAGING_RATE_LIMIT)
async def open_session(request: Request, sessions: StagingSessionManager = Depends(get_staging_manager)):
    """Open a session over a fresh baseline snapshot."""
    session = await sessions.open()
    return StagingSessionResponse.from_session(session)


@router.get("/", response_model=List[StagingSessionResponse])
async def list_sessions(sessions: StagingSessionManager = Depends(get_staging_manager)):
    return [StagingSessionResponse.from_session(s) for s in sessions.list()]


@router.get("/{session_id}", response_model=StagingSessionResponse)
async def get_session(session_id: str, sessions: StagingSessionManager = Depends(get_staging_manager)):
    return StagingSessionResponse.from_session(sessions.get(session_id))


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def close_session(session_id: str, sessions: StagingSessionManager = Depends(get_staging_manager)):
    """Forget a session and any edits it still holds."""
    sessions.close(session_id)
    return None


# ============================================================================
# Edits and reads
# ============================================================================

@router.post("/{session_id}/toggle", response_model=ToggleResponse)
async def toggle_cell(
    session_id: str,
    toggle: CellToggle,
    sessions: StagingSessionManager = Depends(get_staging_manager),
):
    """
    Flip one cell.

    ``staged`` is false when an apply is in flight and the toggle was
    queued for the next cycle.
    """
    session = sessions.get(session_id)
    scope = toggle.scope.to_scope()
    staged = session.toggle_cell(toggle.role_id, toggle.resource, toggle.action, scope)
    return ToggleResponse(
        staged=staged,
        state=session.effective_state(toggle.role_id, toggle.resource, toggle.action, scope),
        pending=session.is_pending(toggle.role_id, toggle.resource, toggle.action, scope),
        status=session.status,
    )


@router.get("/{session_id}/cells", response_model=CellStateResponse)
async def get_cell_state(
    session_id: str,
    role_id: str,
    resource: str,
    action: str,
    scope_type: str = Query(AllScope.kind),
    scope_value: Optional[str] = None,
    sessions: StagingSessionManager = Depends(get_staging_manager),
):
    """Effective state of one cell: baseline with the pending toggle applied."""
    session = sessions.get(session_id)
    scope = scope_from_columns(scope_type, scope_value)
    action = action.lower()
    state: CellState = session.effective_state(role_id, resource, action, scope)
    return CellStateResponse(
        role_id=role_id,
        resource=resource,
        action=action,
        scope=scope_schema(scope),
        state=state,
        pending=session.is_pending(role_id, resource, action, scope),
    )


@router.get("/{session_id}/matrix", response_model=PermissionMatrixResponse)
async def get_session_matrix(
    session_id: str,
    sessions: StagingSessionManager = Depends(get_staging_manager),
    catalog: StaticCatalog = Depends(get_catalog),
):
    """The permission matrix as it would look after applying."""
    session = sessions.get(session_id)
    return PermissionMatrixResponse.from_view(build_matrix(catalog, session.baseline, session.pending))


# ============================================================================
# Apply / discard / refresh
# ============================================================================

def apply_audit_details(outcomes: Sequence[EditOutcome]) -> Dict[str, Any]:
    return {
        "succeeded": sum(1 for o in outcomes if o.succeeded),
        "failed": sum(1 for o in outcomes if not o.succeeded),
        "edits": [
            {
                "kind": o.edit.kind.value,
                "role_id": o.edit.cell.role_id,
                "resource": o.edit.cell.resource,
                "action": o.edit.cell.action,
                "scope": scope_to_dict(o.edit.cell.scope),
                "succeeded": o.succeeded,
                "error_code": o.error_code,
            }
            for o in outcomes
        ],
    }


@router.post("/{session_id}/apply", response_model=ApplyReportResponse)
@limiter.limit(config.APPLY_RATE_LIMIT)
async def apply_session(
    session_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    sessions: StagingSessionManager = Depends(get_staging_manager),
    backend: DatabasePermissionBackend = Depends(get_permission_backend),
):
    """
    Send every pending edit to the database.

    Partial failures are reported per edit; the failed edits stay pending
    and the succeeded ones are not rolled back.
    """
    session = sessions.get(session_id)
    previous = session.last_outcomes
    try:
        report = await session.apply(backend)
    finally:
        # Operations already sent are audited even if the apply raised afterwards
        if session.last_outcomes and session.last_outcomes is not previous:
            await create_audit_log(
                db,
                AuditContext(request),
                action="apply",
                resource_type="staging_session",
                resource_id=session_id,
                details=apply_audit_details(session.last_outcomes),
            )
    return ApplyReportResponse.from_report(report)


@router.post("/{session_id}/discard", response_model=StagingSessionResponse)
async def discard_session(session_id: str, sessions: StagingSessionManager = Depends(get_staging_manager)):
    """Drop all pending edits; the baseline is kept."""
    session = sessions.get(session_id)
    session.discard()
    return StagingSessionResponse.from_session(session)


@router.post("/{session_id}/refresh", response_model=StagingSessionResponse)
async def refresh_session(
    session_id: str,
    sessions: StagingSessionManager = Depends(get_staging_manager),
    backend: DatabasePermissionBackend = Depends(get_permission_backend),
):
    """Re-read the baseline. Only allowed when the session has no pending edits."""
    session = sessions.get(session_id)
    await session.refresh(backend)
    return StagingSessionResponse.from_session(session)
