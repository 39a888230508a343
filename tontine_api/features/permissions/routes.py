"""
Role and permission management API routes.

Mounted under /api/v1/associations; every route is scoped to the
association in the `{id}` path segment.
"""
from typing import Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from tontine_api.core.database.engine import get_db
from tontine_api.features.associations.models import AssociationMember
from tontine_api.features.permissions import catalog, services
from tontine_api.features.permissions.audit import AuditTrail, get_audit_trail
from tontine_api.features.permissions.models import AuditLog
from tontine_api.features.permissions.dependencies import (
    AccessContext,
    require_admin_or_self,
    require_association_admin,
    require_membership,
)
from tontine_api.features.permissions.schemas import (
    AssignRoles,
    AuditLogListResponse,
    AuditLogResponse,
    CustomPermissions,
    MemberAccessResponse,
    MemberRolesResponse,
    PermissionCatalogExtend,
    PermissionCatalogResponse,
    PermissionChange,
    RoleCreate,
    RoleDeleteResponse,
    RoleDetailsResponse,
    RoleHolder,
    RoleListResponse,
    RoleResponse,
    RoleUpdate,
    RoleWithUsage,
    TransferAdmin,
    TransferAdminResponse,
)
from tontine_api.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


def _member_access(member: AssociationMember, evicted_from=None) -> MemberAccessResponse:
    return MemberAccessResponse(
        member_id=member.id,
        assigned_roles=list(member.assigned_roles or []),
        custom_permissions=CustomPermissions(
            granted=list(member.granted_permissions or []),
            revoked=list(member.revoked_permissions or []),
        ),
        evicted_from=evicted_from or [],
    )


# ============================================================================
# Permission Catalog Routes
# ============================================================================

@router.get("/{id}/permissions", response_model=PermissionCatalogResponse)
async def list_permissions(
    db: AsyncSession = Depends(get_db),
    access: AccessContext = Depends(require_membership)
):
    """Permission catalog of the association, grouped by category."""
    entries = await catalog.list_permissions(db, access.association.id)
    return PermissionCatalogResponse(
        permissions=entries,
        grouped=catalog.group_by_category(entries),
        total=len(entries),
    )


@router.post("/{id}/permissions", response_model=PermissionCatalogResponse, status_code=status.HTTP_201_CREATED)
async def extend_permissions(
    payload: PermissionCatalogExtend,
    db: AsyncSession = Depends(get_db),
    access: AccessContext = Depends(require_association_admin)
):
    """Append entries to the association's catalog (admin only)."""
    entries = await catalog.extend_catalog(db, access.association.id, payload.permissions)
    return PermissionCatalogResponse(
        permissions=entries,
        grouped=catalog.group_by_category(entries),
        total=len(entries),
    )


# ============================================================================
# Role Routes
# ============================================================================

@router.get("/{id}/roles", response_model=RoleListResponse)
async def list_roles(
    db: AsyncSession = Depends(get_db),
    access: AccessContext = Depends(require_association_admin)
):
    """List roles with their active holder counts."""
    association_id = access.association.id
    roles = await services.list_roles(db, association_id)
    usage = await services.role_usage(db, association_id)
    available = await catalog.list_permissions(db, association_id)

    return RoleListResponse(
        roles=[
            RoleWithUsage.model_validate(role).model_copy(update={"members_count": usage.get(role.id, 0)})
            for role in roles
        ],
        available_permissions=available,
        total_roles=len(roles),
        total_permissions=len(available),
    )


@router.post("/{id}/roles", response_model=RoleResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    db: AsyncSession = Depends(get_db),
    access: AccessContext = Depends(require_association_admin),
    audit: AuditTrail = Depends(get_audit_trail)
):
    """Create a role (admin only)."""
    return await services.create_role(db, access.association.id, role, audit=audit)


@router.get("/{id}/roles/{role_id}", response_model=RoleDetailsResponse)
async def get_role(
    role_id: str,
    db: AsyncSession = Depends(get_db),
    access: AccessContext = Depends(require_association_admin)
):
    """A role and the active members holding it."""
    role, holders = await services.get_role_details(db, access.association.id, role_id)
    return RoleDetailsResponse(
        role=RoleResponse.model_validate(role),
        members=[
            RoleHolder(
                id=member.id,
                user_id=member.user_id,
                name=member.user.full_name if member.user else member.user_id,
                phone_number=member.user.phone_number if member.user else None,
                assigned_at=member.updated_at,
            )
            for member in holders
        ],
        members_count=len(holders),
    )


@router.put("/{id}/roles/{role_id}", response_model=RoleResponse)
async def update_role(
    role_id: str,
    role_update: RoleUpdate,
    db: AsyncSession = Depends(get_db),
    access: AccessContext = Depends(require_association_admin),
    audit: AuditTrail = Depends(get_audit_trail)
):
    """Partially update a role (admin only)."""
    return await services.update_role(db, access.association.id, role_id, role_update, audit=audit)


@router.delete("/{id}/roles/{role_id}", response_model=RoleDeleteResponse)
async def delete_role(
    role_id: str,
    force: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    access: AccessContext = Depends(require_association_admin),
    audit: AuditTrail = Depends(get_audit_trail)
):
    """Delete a role; `force=true` strips it from its holders first."""
    affected = await services.delete_role(db, access.association.id, role_id, force=force, audit=audit)
    return RoleDeleteResponse(deleted_role_id=role_id, members_affected=affected)


# ============================================================================
# Member Role / Permission Routes
# ============================================================================

@router.get("/{id}/members/{member_id}/roles", response_model=MemberRolesResponse)
async def get_member_roles(
    member_id: str,
    db: AsyncSession = Depends(get_db),
    access: AccessContext = Depends(require_admin_or_self)
):
    """Roles, overrides and effective permissions of a member (admin or the member)."""
    member = await services.get_member(db, access.association.id, member_id)
    roles = {role.id: role for role in await services.list_roles(db, access.association.id)}

    return MemberRolesResponse(
        member_id=member.id,
        user_id=member.user_id,
        name=member.user.full_name if member.user else None,
        is_admin=member.is_admin,
        status=member.status,
        assigned_roles=[
            RoleResponse.model_validate(roles[role_id])
            for role_id in member.assigned_roles or []
            if role_id in roles
        ],
        custom_permissions=CustomPermissions(
            granted=list(member.granted_permissions or []),
            revoked=list(member.revoked_permissions or []),
        ),
        effective_permissions=sorted(access.resolver.effective_permissions(member)),
    )


@router.post("/{id}/members/{member_id}/roles", response_model=MemberAccessResponse)
async def assign_member_roles(
    member_id: str,
    payload: AssignRoles,
    db: AsyncSession = Depends(get_db),
    access: AccessContext = Depends(require_association_admin),
    audit: AuditTrail = Depends(get_audit_trail)
):
    """Replace a member's roles (admin only)."""
    member, evicted = await services.assign_roles(
        db, access.association.id, member_id, payload.role_ids, audit=audit
    )
    return _member_access(member, evicted)


@router.delete("/{id}/members/{member_id}/roles/{role_id}", response_model=MemberAccessResponse)
async def remove_member_role(
    member_id: str,
    role_id: str,
    db: AsyncSession = Depends(get_db),
    access: AccessContext = Depends(require_association_admin),
    audit: AuditTrail = Depends(get_audit_trail)
):
    """Remove one role from a member (admin only)."""
    member = await services.remove_role(db, access.association.id, member_id, role_id, audit=audit)
    return _member_access(member)


@router.post("/{id}/members/{member_id}/permissions/grant", response_model=MemberAccessResponse)
async def grant_member_permission(
    member_id: str,
    payload: PermissionChange,
    db: AsyncSession = Depends(get_db),
    access: AccessContext = Depends(require_association_admin),
    audit: AuditTrail = Depends(get_audit_trail)
):
    member = await services.grant_permission(
        db, access.association.id, member_id, payload.permission_id, audit=audit
    )
    return _member_access(member)


@router.post("/{id}/members/{member_id}/permissions/revoke", response_model=MemberAccessResponse)
async def revoke_member_permission(
    member_id: str,
    payload: PermissionChange,
    db: AsyncSession = Depends(get_db),
    access: AccessContext = Depends(require_association_admin),
    audit: AuditTrail = Depends(get_audit_trail)
):
    member = await services.revoke_permission(
        db, access.association.id, member_id, payload.permission_id, audit=audit
    )
    return _member_access(member)


# ============================================================================
# Admin Transfer
# ============================================================================

@router.post("/{id}/transfer-admin", response_model=TransferAdminResponse)
async def transfer_admin(
    payload: TransferAdmin,
    db: AsyncSession = Depends(get_db),
    access: AccessContext = Depends(require_membership),
    audit: AuditTrail = Depends(get_audit_trail)
):
    """Hand the admin status to another active member (current admin only)."""
    previous, new = await services.transfer_admin(
        db, access.association.id, access.membership.id, payload.new_admin_member_id, audit=audit
    )
    return TransferAdminResponse(previous_admin_member_id=previous.id, new_admin_member_id=new.id)


# ============================================================================
# Audit Log Routes
# ============================================================================

@router.get("/{id}/audit-logs", response_model=AuditLogListResponse)
async def list_audit_logs(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    access: AccessContext = Depends(require_association_admin)
):
    """Audit trail of the association, newest first (admin only)."""
    stmt = select(AuditLog).where(AuditLog.association_id == access.association.id)

    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)

    total_result = await db.execute(select(func.count()).select_from(stmt.subquery()))
    total = total_result.scalar() or 0

    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    logs = result.scalars().all()

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=(skip // limit) + 1,
        page_size=limit,
        pages=(total + limit - 1) // limit,
    )
