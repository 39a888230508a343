"""
Permission catalog, Role and AuditLog models for association-scoped RBAC.

This module implements:
- A permission catalog per association (seeded at creation, extendable)
- Named roles per association, each bundling catalog permission ids
- An audit trail of role and permission mutations
"""
from typing import Any, Dict, List
from sqlalchemy import String, ForeignKey, JSON, Text, Boolean, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from tontine_api.core.database.base import Base, TimestampMixin, generate_ulid


DEFAULT_ROLE_COLOR = "#6B7280"
DEFAULT_ROLE_ICON = "👤"


class Permission(Base, TimestampMixin):
    """
    Catalog entry: one capability an association can hand out.

    Keyed by (association_id, id), where id is the dotted identifier used
    everywhere else, e.g. "finances.view_treasury". Entries are never edited
    once created so that roles referencing them keep their meaning.
    """
    __tablename__ = "permissions"

    association_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("associations.id", ondelete="CASCADE"),
        primary_key=True
    )
    id: Mapped[str] = mapped_column(String(100), primary_key=True)

    name: Mapped[str] = mapped_column(String(150), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Catalog order
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<Permission(association_id={self.association_id}, id={self.id!r}, category={self.category})>"


class Role(Base, TimestampMixin):
    """
    Named bundle of permissions, scoped to one association.

    `permissions` is an ordered list of catalog ids of the same association.
    `is_unique` roles can be held by at most one active member at a time;
    that is enforced when assigning, not here.
    """
    __tablename__ = "roles"
    __table_args__ = (
        UniqueConstraint("association_id", "name", name="uq_roles_association_name"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    association_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("associations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    name: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    permissions: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    color: Mapped[str] = mapped_column(String(7), nullable=False, default=DEFAULT_ROLE_COLOR)
    icon: Mapped[str] = mapped_column(String(10), nullable=False, default=DEFAULT_ROLE_ICON)

    is_unique: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_be_renamed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    can_be_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_by_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)
    updated_by_id: Mapped[str | None] = mapped_column(String(26), ForeignKey("users.id"), nullable=True)

    def __repr__(self) -> str:
        return f"<Role(id={self.id}, name={self.name!r}, association_id={self.association_id})>"


class AuditLog(Base, TimestampMixin):
    """
    Audit log for role, permission and admin changes.

    Tracks who did what, when, and from where.
    """
    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    user_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)

    association_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("associations.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    details: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, user_id={self.user_id}, action={self.action}, resource={self.resource_type})>"
