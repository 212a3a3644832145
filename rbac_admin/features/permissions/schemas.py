"""
Pydantic schemas for role and permission management.

Request and response models for roles, permissions, bulk operations,
the permission matrix and audit logs.
"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator

from rbac_admin.features.permissions.domain import ALL, InstanceScope, Scope


# ============================================================================
# Scope Schemas
# ============================================================================

class AllScopeSchema(BaseModel):
    """Grant across every instance of the resource."""
    type: Literal["all"] = "all"

    def to_scope(self) -> Scope:
        return ALL


class InstanceScopeSchema(BaseModel):
    """Grant restricted to one named instance."""
    type: Literal["instance"] = "instance"
    value: str = Field(..., min_length=1, max_length=255, description="Instance identifier (opaque)")

    @field_validator("value")
    @classmethod
    def value_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Instance scope value must not be blank")
        return v

    def to_scope(self) -> Scope:
        return InstanceScope(self.value)


ScopeSchema = Annotated[Union[AllScopeSchema, InstanceScopeSchema], Field(discriminator="type")]


def scope_schema(scope: Scope) -> Union[AllScopeSchema, InstanceScopeSchema]:
    if isinstance(scope, InstanceScope):
        return InstanceScopeSchema(value=scope.value)
    return AllScopeSchema()


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionGrant(BaseModel):
    """A (resource, action, scope) tuple."""
    resource: str = Field(..., min_length=1, max_length=100, description="Resource name (e.g., 'nodes')")
    action: str = Field(..., min_length=1, max_length=50, description="Action name (e.g., 'read')")
    scope: ScopeSchema = Field(default_factory=AllScopeSchema)

    @field_validator("action")
    @classmethod
    def action_lowercase(cls, v: str) -> str:
        """Ensure action is lowercase."""
        return v.lower()


class PermissionCreate(PermissionGrant):
    """Schema for granting a permission to a role."""
    pass


class PermissionResponse(BaseModel):
    """Schema for permission response."""
    id: str
    role_id: str
    resource: str
    action: str
    scope: ScopeSchema

    @classmethod
    def from_model(cls, permission) -> "PermissionResponse":
        return cls(
            id=permission.id,
            role_id=permission.role_id,
            resource=permission.resource,
            action=permission.action,
            scope=scope_schema(permission.scope),
        )


class PermissionWithRole(PermissionResponse):
    """Permission annotated with its owning role's name."""
    role_name: str


class RolePermissionsReplace(BaseModel):
    """Schema for replacing every permission on a role."""
    permissions: List[PermissionGrant] = []


# ============================================================================
# Role Schemas
# ============================================================================

class RoleBase(BaseModel):
    """Base role schema."""
    display_name: str = Field(..., min_length=1, max_length=100, description="Human-readable name")
    description: Optional[str] = Field(None, max_length=1000, description="Role description")


class RoleCreate(RoleBase):
    """Schema for creating a new role. Name format is checked by the registry."""
    name: str = Field(..., max_length=100, description="Unique lowercase token, e.g. 'deployer'")


class RoleUpdate(BaseModel):
    """Schema for updating a role."""
    display_name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)


class RoleResponse(RoleBase):
    """Schema for role response."""
    id: str
    name: str
    is_system: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleWithPermissions(RoleResponse):
    """Schema for role with permissions."""
    permissions: List[PermissionResponse] = []

    @classmethod
    def from_model(cls, role) -> "RoleWithPermissions":
        base = RoleResponse.model_validate(role)
        return cls(
            **base.model_dump(),
            permissions=[PermissionResponse.from_model(p) for p in role.permissions],
        )


# ============================================================================
# Bulk Schemas
# ============================================================================

class BulkOperation(BaseModel):
    """A single add/remove operation against one role."""
    op: Literal["add", "remove"]
    role_id: str
    permission: PermissionGrant


class BulkPermissionRequest(BaseModel):
    operations: List[BulkOperation] = Field(..., min_length=1)


class BulkOperationResult(BaseModel):
    index: int
    success: bool
    error: Optional[str] = None
    error_code: Optional[str] = None


class BulkPermissionResult(BaseModel):
    total: int
    succeeded: int
    failed: int
    results: List[BulkOperationResult]


# ============================================================================
# Matrix Schemas
# ============================================================================

class MatrixRole(BaseModel):
    id: str
    name: str
    display_name: str
    is_system: bool


class MatrixResource(BaseModel):
    name: str
    display_name: str
    actions: List[str]


class MatrixCellResponse(BaseModel):
    resource: str
    action: str
    scope: ScopeSchema
    granted: bool
    pending: bool = False


class MatrixColumnResponse(BaseModel):
    role: MatrixRole
    cells: List[MatrixCellResponse]


class PermissionMatrixResponse(BaseModel):
    resources: List[MatrixResource]
    columns: List[MatrixColumnResponse]

    @classmethod
    def from_view(cls, view) -> "PermissionMatrixResponse":
        return cls(
            resources=[
                MatrixResource(name=r.name, display_name=r.display_name, actions=list(r.actions))
                for r in view.resources
            ],
            columns=[
                MatrixColumnResponse(
                    role=MatrixRole(
                        id=column.role.id,
                        name=column.role.name,
                        display_name=column.role.display_name,
                        is_system=column.role.is_system,
                    ),
                    cells=[
                        MatrixCellResponse(
                            resource=cell.key.resource,
                            action=cell.key.action,
                            scope=scope_schema(cell.key.scope),
                            granted=cell.granted,
                            pending=cell.pending,
                        )
                        for cell in column.cells
                    ],
                )
                for column in view.columns
            ],
        )


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    actor: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    details: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int
