"""
Pydantic schemas for user-role assignment requests and responses.
"""
from datetime import datetime
from pydantic import BaseModel, Field


class UserRole(BaseModel):
    """A role as seen from a user."""
    id: str
    name: str
    display_name: str
    is_system: bool

    model_config = {"from_attributes": True}


class UserResponse(BaseModel):
    """Schema for user responses."""
    id: str
    username: str
    email: str | None = None
    display_name: str | None = None
    is_active: bool
    created_at: datetime
    roles: list[UserRole] = []

    model_config = {"from_attributes": True}


class UserRolesAssign(BaseModel):
    """Replace a user's roles with exactly these."""
    role_ids: list[str] = Field(default_factory=list)
