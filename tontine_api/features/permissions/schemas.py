"""
Pydantic schemas for role and permission management.

Request bodies use the camelCase field names of the public API
(`roleIds`, `permissionId`, `isUnique`, ...); snake_case is accepted too.
"""
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Base for API payloads: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


def _strip_ids(values: List[str]) -> List[str]:
    cleaned = [v.strip() for v in values]
    if any(not v for v in cleaned):
        raise ValueError("Identifiers must be non-empty strings")
    return cleaned


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionCreate(ApiModel):
    """Catalog extension entry."""
    id: str = Field(..., min_length=3, max_length=100, pattern=r"^[a-z0-9_]+\.[a-z0-9_]+$",
                    description="Dotted identifier, e.g. 'events.publish'")
    name: str = Field(..., min_length=1, max_length=150)
    category: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=1000)


class PermissionCatalogExtend(ApiModel):
    permissions: List[PermissionCreate] = Field(..., min_length=1)


class PermissionResponse(ApiModel):
    id: str
    name: str
    category: str
    description: Optional[str] = None


class PermissionCatalogResponse(ApiModel):
    permissions: List[PermissionResponse]
    grouped: Dict[str, List[PermissionResponse]]
    total: int


# ============================================================================
# Role Schemas
# ============================================================================

class RoleCreate(ApiModel):
    """Schema for creating a role."""
    name: str = Field(..., min_length=2, max_length=50)
    description: Optional[str] = Field(None, max_length=500)
    permissions: List[str] = Field(..., description="Catalog permission ids")
    color: Optional[str] = Field(None, pattern=r"^#[0-9A-Fa-f]{6}$")
    icon: Optional[str] = Field(None, min_length=1, max_length=10)
    is_unique: bool = False

    @field_validator("name")
    @classmethod
    def name_stripped(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Role name must be 2-50 characters")
        return v

    @field_validator("permissions")
    @classmethod
    def permissions_non_empty(cls, v: List[str]) -> List[str]:
        return _strip_ids(v)


class RoleUpdate(ApiModel):
    """Partial update: only fields present in the body change."""
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    description: Optional[str] = Field(None, max_length=500)
    permissions: Optional[List[str]] = None
    color: Optional[str] = Field(None, pattern=r"^#[0-9A-Fa-f]{6}$")
    icon: Optional[str] = Field(None, min_length=1, max_length=10)
    is_unique: Optional[bool] = None

    @field_validator("name")
    @classmethod
    def name_stripped(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Role name must be 2-50 characters")
        return v

    @field_validator("permissions")
    @classmethod
    def permissions_non_empty(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _strip_ids(v) if v is not None else v


class RoleResponse(ApiModel):
    id: str
    association_id: str
    name: str
    description: str
    permissions: List[str]
    color: str
    icon: str
    is_unique: bool
    can_be_renamed: bool
    can_be_deleted: bool
    created_at: datetime
    updated_at: datetime


class RoleWithUsage(RoleResponse):
    members_count: int = 0


class RoleListResponse(ApiModel):
    roles: List[RoleWithUsage]
    available_permissions: List[PermissionResponse]
    total_roles: int
    total_permissions: int


class RoleHolder(ApiModel):
    id: str
    user_id: str
    name: str
    phone_number: Optional[str] = None
    assigned_at: datetime


class RoleDetailsResponse(ApiModel):
    role: RoleResponse
    members: List[RoleHolder]
    members_count: int


class RoleDeleteResponse(ApiModel):
    deleted_role_id: str
    members_affected: int


# ============================================================================
# Member Role / Permission Schemas
# ============================================================================

class AssignRoles(ApiModel):
    """Replaces the member's whole role set."""
    role_ids: List[str]

    @field_validator("role_ids")
    @classmethod
    def role_ids_non_empty(cls, v: List[str]) -> List[str]:
        return _strip_ids(v)


class PermissionChange(ApiModel):
    permission_id: str = Field(..., min_length=1, max_length=100)

    @field_validator("permission_id")
    @classmethod
    def permission_id_stripped(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Permission ID is required")
        return v


class CustomPermissions(ApiModel):
    granted: List[str] = []
    revoked: List[str] = []


class MemberRolesResponse(ApiModel):
    member_id: str
    user_id: str
    name: Optional[str] = None
    is_admin: bool
    status: str
    assigned_roles: List[RoleResponse]
    custom_permissions: CustomPermissions
    effective_permissions: List[str]


class MemberAccessResponse(ApiModel):
    """Membership after a role or permission change."""
    member_id: str
    assigned_roles: List[str]
    custom_permissions: CustomPermissions
    evicted_from: List[str] = Field(default_factory=list,
                                    description="Member ids that lost a unique role to this assignment")


# ============================================================================
# Admin Transfer
# ============================================================================

class TransferAdmin(ApiModel):
    new_admin_member_id: str = Field(..., min_length=1, max_length=26)


class TransferAdminResponse(ApiModel):
    previous_admin_member_id: str
    new_admin_member_id: str


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditLogResponse(ApiModel):
    id: str
    user_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    association_id: Optional[str]
    details: Optional[dict]
    ip_address: Optional[str]
    created_at: datetime


class AuditLogListResponse(ApiModel):
    """Paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int
