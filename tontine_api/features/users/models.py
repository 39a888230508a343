"""
User model with ULID primary keys.
"""
from datetime import datetime
from sqlalchemy import String, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from tontine_api.core.database.base import Base, TimestampMixin, generate_ulid


PLATFORM_MEMBER = "member"
PLATFORM_SUPER_ADMIN = "super_admin"


class User(Base, TimestampMixin):
    """
    Platform user authenticated through Appwrite.

    Association-level authority lives on AssociationMember, not here.
    `platform_role` is only consulted by the legacy permission model.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Appwrite user ID (for linking with Appwrite authentication)
    appwrite_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)

    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    email: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True, index=True)
    phone_number: Mapped[str | None] = mapped_column(String(30), nullable=True)

    # member, super_admin
    platform_role: Mapped[str] = mapped_column(String(30), nullable=False, default=PLATFORM_MEMBER)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    last_login_at: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def __repr__(self) -> str:
        return f"<User(id={self.id}, name={self.full_name!r})>"
