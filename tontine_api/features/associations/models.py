"""
Association and membership models.

An Association is the tenant boundary: it owns its permission catalog, its
roles and its memberships. AssociationMember is the single record linking a
user to an association; it carries the admin flag, the assigned role ids and
the per-member permission overrides.
"""
from datetime import datetime
import enum
from typing import Any, Dict, List
from sqlalchemy import String, ForeignKey, Boolean, JSON, Text, DateTime, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tontine_api.core.database.base import Base, TimestampMixin, generate_ulid


class PermissionModel(str, enum.Enum):
    """Which resolver an association uses."""
    CATALOG = "catalog"
    LEGACY = "legacy"


class MemberStatus(str, enum.Enum):
    """Membership lifecycle. Members are never deleted, only moved between states."""
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    EXCLUDED = "excluded"
    DEPARTED = "departed"


class Association(Base, TimestampMixin):
    """
    Diaspora association (tenant).
    """
    __tablename__ = "associations"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)

    # Migration flag: "catalog" associations use dynamic roles, "legacy" ones
    # still resolve through role-name hierarchy and permissions_matrix.
    permission_model: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=PermissionModel.CATALOG.value
    )

    # Legacy only: {"view_finances": {"allowed_roles": ["president", "tresorier"]}}
    permissions_matrix: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Association(id={self.id}, name={self.name!r}, model={self.permission_model})>"


class AssociationMember(Base, TimestampMixin):
    """
    Membership of a user in an association.

    `assigned_roles` holds Role ids of the same association. There is no
    database foreign key behind it; services check it. The JSON list columns
    must be reassigned (never mutated in place) for changes to be persisted.
    """
    __tablename__ = "association_members"
    __table_args__ = (
        UniqueConstraint("user_id", "association_id", name="uq_association_members_user_association"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    user_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    association_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("associations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=MemberStatus.PENDING.value,
        index=True
    )
    status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    validated_by_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)

    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    assigned_roles: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # Per-member overrides layered over role permissions
    granted_permissions: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    revoked_permissions: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    association: Mapped["Association"] = relationship(
        "Association",
        lazy="selectin"
    )
    user: Mapped["User"] = relationship(  # type: ignore
        "User",
        foreign_keys=[user_id],
        lazy="selectin"
    )

    @property
    def is_active_member(self) -> bool:
        return self.status == MemberStatus.ACTIVE.value

    def __repr__(self) -> str:
        return (
            f"<AssociationMember(id={self.id}, user_id={self.user_id}, "
            f"association_id={self.association_id}, status={self.status}, admin={self.is_admin})>"
        )
