"""
Role, Permission and AuditLog models.

This module is the system of record for role-based access control:
- Roles, system-defined (``is_system``) or user-defined
- Permissions owned by a single role, each a (resource, action, scope) grant
- User-role assignments
- Audit trail of administrative changes
"""
from datetime import datetime
from typing import Any, Dict
from sqlalchemy import (
    String, ForeignKey, Table, Column, JSON, Text, DateTime, Boolean, UniqueConstraint, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rbac_admin.core.database.base import Base, TimestampMixin, generate_ulid
from rbac_admin.features.permissions.domain import (
    PermissionKey,
    Scope,
    scope_from_columns,
)


# ============================================================================
# Association Tables
# ============================================================================

# User-Role assignment
user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", String(26), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", String(26), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    Column("assigned_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)


# ============================================================================
# Core Models
# ============================================================================

class Role(Base, TimestampMixin):
    """
    Named bundle of permissions assignable to users.

    System roles (admin, operator, viewer, ...) are seeded at startup and
    cannot be renamed, deleted, or have their permissions changed.
    """
    __tablename__ = "roles"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Lower-cased token, unique across all roles
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    permissions: Mapped[list["Permission"]] = relationship(
        "Permission",
        back_populates="role",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
        order_by="Permission.created_at",
    )

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r}, system={self.is_system})>"


class Permission(Base):
    """
    A grant of one action on one resource to one role.

    Examples:
    - resource="nodes", action="read", scope all
    - resource="nodes", action="classify", scope instance "web01.example.com"
    """
    __tablename__ = "permissions"
    __table_args__ = (
        UniqueConstraint(
            "role_id", "resource", "action", "scope_type", "scope_value",
            name="uq_permissions_role_grant",
        ),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    role_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    resource: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    scope_type: Mapped[str] = mapped_column(String(20), nullable=False, default="all")
    scope_value: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    role: Mapped["Role"] = relationship("Role", back_populates="permissions")

    @property
    def scope(self) -> Scope:
        return scope_from_columns(self.scope_type, self.scope_value)

    @property
    def key(self) -> PermissionKey:
        return PermissionKey(self.resource, self.action, self.scope)

    def __repr__(self) -> str:
        return (
            f"<Permission(id={self.id}, role_id={self.role_id}, "
            f"{self.resource}:{self.action}@{self.scope})>"
        )


class AuditLog(Base, TimestampMixin):
    """
    Audit log for administrative changes to roles and permissions.

    Tracks who did what, when, and from where.
    """
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Actor as reported by the caller (X-Actor header); not authenticated here
    actor: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)

    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, actor={self.actor}, action={self.action}, resource={self.resource_type})>"
