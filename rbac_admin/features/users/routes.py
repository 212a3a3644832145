"""
User-role assignment routes.
"""
from typing import Annotated, Optional
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from rbac_admin.core.database.engine import get_db
from rbac_admin.features.permissions.dependencies import AuditContext, create_audit_log
from rbac_admin.features.users.assignments import UserRoleAssignments
from rbac_admin.features.users.schemas import UserResponse, UserRole, UserRolesAssign


router = APIRouter(tags=["users"])


def get_assignments(db: Annotated[AsyncSession, Depends(get_db)]) -> UserRoleAssignments:
    return UserRoleAssignments(db)


@router.get("/", response_model=list[UserResponse])
async def list_users(
    assignments: Annotated[UserRoleAssignments, Depends(get_assignments)],
    role_id: Optional[str] = None,
):
    """List active users, optionally only those holding a role."""
    return await assignments.list_users(role_id)


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: str,
    assignments: Annotated[UserRoleAssignments, Depends(get_assignments)],
):
    return await assignments.get_user(user_id)


@router.get("/{user_id}/roles", response_model=list[UserRole])
async def get_user_roles(
    user_id: str,
    assignments: Annotated[UserRoleAssignments, Depends(get_assignments)],
):
    """Roles currently held by a user."""
    return await assignments.get_user_roles(user_id)


@router.put("/{user_id}/roles", response_model=UserResponse)
async def assign_roles(
    user_id: str,
    payload: UserRolesAssign,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    assignments: Annotated[UserRoleAssignments, Depends(get_assignments)],
):
    """Replace a user's roles."""
    user = await assignments.assign_roles(user_id, payload.role_ids)
    response = UserResponse.model_validate(user)

    await create_audit_log(
        db,
        AuditContext(request),
        action="assign_roles",
        resource_type="user",
        resource_id=user_id,
        details={"role_ids": [r.id for r in response.roles]},
    )
    return response


@router.post("/{user_id}/roles/{role_id}", response_model=UserResponse)
async def add_role_to_user(
    user_id: str,
    role_id: str,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    assignments: Annotated[UserRoleAssignments, Depends(get_assignments)],
):
    user = await assignments.add_role(user_id, role_id)
    response = UserResponse.model_validate(user)

    await create_audit_log(
        db,
        AuditContext(request),
        action="add_role",
        resource_type="user",
        resource_id=user_id,
        details={"role_id": role_id},
    )
    return response


@router.delete("/{user_id}/roles/{role_id}", response_model=UserResponse)
async def remove_role_from_user(
    user_id: str,
    role_id: str,
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    assignments: Annotated[UserRoleAssignments, Depends(get_assignments)],
):
    user = await assignments.remove_role(user_id, role_id)
    response = UserResponse.model_validate(user)

    await create_audit_log(
        db,
        AuditContext(request),
        action="remove_role",
        resource_type="user",
        resource_id=user_id,
        details={"role_id": role_id},
    )
    return response
