"""
Pydantic schemas for associations and memberships.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import Field, field_validator

from tontine_api.features.permissions.schemas import ApiModel


class AssociationCreate(ApiModel):
    name: str = Field(..., min_length=2, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)

    @field_validator("name")
    @classmethod
    def name_stripped(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Association name must be at least 2 characters")
        return v


class AssociationResponse(ApiModel):
    id: str
    name: str
    description: Optional[str] = None
    permission_model: str
    is_active: bool
    created_at: datetime


class AssociationSummary(AssociationResponse):
    members_count: int
    roles_count: int
    permissions_count: int


class MembershipResponse(ApiModel):
    id: str
    user_id: str
    association_id: str
    status: str
    status_reason: Optional[str] = None
    is_admin: bool
    assigned_roles: List[str]
    validated_at: Optional[datetime] = None
    created_at: datetime


class AssociationCreated(ApiModel):
    association: AssociationResponse
    membership: MembershipResponse


class MemberValidation(ApiModel):
    """Decision on a pending membership request."""
    approve: bool
    reason: Optional[str] = Field(None, max_length=500)


class MyPermissionsResponse(ApiModel):
    member_id: str
    is_admin: bool
    permission_model: str
    roles: List[str]
    permissions: List[str]
