"""
Pydantic schemas for staging sessions.
"""
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

from rbac_admin.features.permissions.schemas import AllScopeSchema, ScopeSchema, scope_schema
from rbac_admin.features.staging.engine import (
    ApplyReport,
    CellState,
    EditKind,
    EditOutcome,
    PendingEdit,
    SessionStatus,
    StagingSession,
)


class CellToggle(BaseModel):
    """One matrix cell to flip."""
    role_id: str
    resource: str = Field(..., min_length=1, max_length=100)
    action: str = Field(..., min_length=1, max_length=50)
    scope: ScopeSchema = Field(default_factory=AllScopeSchema)

    @field_validator("action")
    @classmethod
    def action_lowercase(cls, v: str) -> str:
        return v.lower()


class PendingEditResponse(BaseModel):
    kind: EditKind
    role_id: str
    resource: str
    action: str
    scope: ScopeSchema

    @classmethod
    def from_edit(cls, edit: PendingEdit) -> "PendingEditResponse":
        cell = edit.cell
        return cls(
            kind=edit.kind,
            role_id=cell.role_id,
            resource=cell.resource,
            action=cell.action,
            scope=scope_schema(cell.scope),
        )


class EditOutcomeResponse(BaseModel):
    edit: PendingEditResponse
    succeeded: bool
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: EditOutcome) -> "EditOutcomeResponse":
        return cls(
            edit=PendingEditResponse.from_edit(outcome.edit),
            succeeded=outcome.succeeded,
            error=outcome.error,
            error_code=outcome.error_code,
        )


class StagingSessionResponse(BaseModel):
    """Current state of one staging session."""
    id: str
    status: SessionStatus
    needs_resync: bool
    role_count: int
    pending: List[PendingEditResponse]
    queued: int
    last_outcomes: List[EditOutcomeResponse] = []

    @classmethod
    def from_session(cls, session: StagingSession) -> "StagingSessionResponse":
        return cls(
            id=session.id,
            status=session.status,
            needs_resync=session.needs_resync,
            role_count=len(session.baseline),
            pending=[PendingEditResponse.from_edit(e) for e in session.pending.values()],
            queued=len(session.queued),
            last_outcomes=[EditOutcomeResponse.from_outcome(o) for o in session.last_outcomes],
        )


class ToggleResponse(BaseModel):
    """Effective state of the toggled cell after the toggle."""
    staged: bool
    state: CellState
    pending: bool
    status: SessionStatus


class CellStateResponse(BaseModel):
    role_id: str
    resource: str
    action: str
    scope: ScopeSchema
    state: CellState
    pending: bool


class ApplyReportResponse(BaseModel):
    status: SessionStatus
    total: int
    succeeded: int
    failed: int
    outcomes: List[EditOutcomeResponse]

    @classmethod
    def from_report(cls, report: ApplyReport) -> "ApplyReportResponse":
        return cls(
            status=report.status,
            total=len(report.outcomes),
            succeeded=report.succeeded,
            failed=report.failed,
            outcomes=[EditOutcomeResponse.from_outcome(o) for o in report.outcomes],
        )
