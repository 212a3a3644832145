"""
User model with ULID primary keys.

Users are owned by the surrounding product (identity provider, signup
flow); this service only reads them and manages their role assignments.
"""
from sqlalchemy import String, Boolean
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rbac_admin.core.database.base import Base, TimestampMixin, generate_ulid
from rbac_admin.features.permissions.models import user_roles


class User(Base, TimestampMixin):
    """A principal that can hold roles."""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    roles: Mapped[list["Role"]] = relationship(  # type: ignore
        "Role",
        secondary=user_roles,
        lazy="selectin",
        order_by="Role.name",
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username={self.username!r})>"
