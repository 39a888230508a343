"""
Association API routes.
"""
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from tontine_api.core.database.engine import get_db
from tontine_api.features.associations import services
from tontine_api.features.associations.schemas import (
    AssociationCreate,
    AssociationCreated,
    AssociationResponse,
    AssociationSummary,
    MemberValidation,
    MembershipResponse,
    MyPermissionsResponse,
)
from tontine_api.features.permissions.audit import AuditTrail, get_audit_trail
from tontine_api.features.permissions.dependencies import (
    AccessContext,
    require_membership,
    require_permission,
)
from tontine_api.features.users.dependencies import get_current_user
from tontine_api.features.users.models import User
from tontine_api.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


@router.post("/", response_model=AssociationCreated, status_code=status.HTTP_201_CREATED)
async def create_association(
    payload: AssociationCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    audit: AuditTrail = Depends(get_audit_trail)
):
    """Create an association; the caller becomes its administrator."""
    association, membership = await services.create_association(db, payload, current_user, audit=audit)
    return AssociationCreated(
        association=AssociationResponse.model_validate(association),
        membership=MembershipResponse.model_validate(membership),
    )


@router.get("/{id}", response_model=AssociationSummary)
async def get_association(
    db: AsyncSession = Depends(get_db),
    access: AccessContext = Depends(require_membership)
):
    counts = await services.association_counts(db, access.association.id)
    summary = AssociationResponse.model_validate(access.association).model_dump()
    return AssociationSummary(**summary, **counts)


@router.post("/{id}/join", response_model=MembershipResponse, status_code=status.HTTP_201_CREATED)
async def join_association(
    id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Request membership. An admin or a member with approval rights validates it."""
    return await services.request_membership(db, id, current_user)


@router.post("/{id}/members/{member_id}/validate", response_model=MembershipResponse)
async def validate_member(
    member_id: str,
    payload: MemberValidation,
    db: AsyncSession = Depends(get_db),
    access: AccessContext = Depends(require_permission("members.approve_members")),
    audit: AuditTrail = Depends(get_audit_trail)
):
    return await services.validate_membership(
        db, access.association.id, member_id, payload.approve, payload.reason, audit=audit
    )


@router.get("/{id}/me/permissions", response_model=MyPermissionsResponse)
async def my_permissions(
    access: AccessContext = Depends(require_membership)
):
    """The caller's roles and effective permissions in this association."""
    return MyPermissionsResponse(
        member_id=access.membership.id,
        is_admin=access.is_admin,
        permission_model=access.association.permission_model,
        roles=access.effective_roles(),
        permissions=access.effective_permissions(),
    )
