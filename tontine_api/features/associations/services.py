"""
Association lifecycle: creation, join requests and their validation.
"""
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tontine_api.core.errors import AlreadyMember, ValidationFailed
from tontine_api.features.associations.models import Association, AssociationMember, MemberStatus
from tontine_api.features.associations.schemas import AssociationCreate
from tontine_api.features.permissions.audit import AuditTrail
from tontine_api.features.permissions.catalog import seed_catalog
from tontine_api.features.permissions.models import Permission, Role
from tontine_api.features.permissions.services import (
    get_association,
    get_member,
    lock_association,
    settle_unique_roles,
)
from tontine_api.features.users.models import User
from tontine_api.utils import get_logger


log = get_logger(__name__)


async def create_association(
    db: AsyncSession,
    data: AssociationCreate,
    creator: User,
    audit: Optional[AuditTrail] = None
) -> Tuple[Association, AssociationMember]:
    """
    Create an association with the default catalog; the creator becomes its
    active admin. Everything commits together.
    """
    association = Association(
        name=data.name,
        description=data.description,
        created_by_id=creator.id,
    )
    db.add(association)
    await db.flush()

    await seed_catalog(db, association.id)
    membership = AssociationMember(
        user_id=creator.id,
        association_id=association.id,
        status=MemberStatus.ACTIVE.value,
        is_admin=True,
        assigned_roles=[],
        granted_permissions=[],
        revoked_permissions=[],
        validated_at=datetime.now(timezone.utc),
        validated_by_id=creator.id,
    )
    db.add(membership)

    if audit:
        audit.add(db, "create", "association", association.id, association.id, {"name": association.name})
    await db.commit()
    await db.refresh(association)
    await db.refresh(membership)

    log.info("Association %s (%r) created by user %s", association.id, association.name, creator.id)
    return association, membership


async def association_counts(db: AsyncSession, association_id: str) -> Dict[str, int]:
    members = await db.execute(
        select(func.count(AssociationMember.id)).where(
            AssociationMember.association_id == association_id,
            AssociationMember.status == MemberStatus.ACTIVE.value,
        )
    )
    roles = await db.execute(
        select(func.count(Role.id)).where(Role.association_id == association_id)
    )
    permissions = await db.execute(
        select(func.count(Permission.id)).where(Permission.association_id == association_id)
    )
    return {
        "members_count": members.scalar() or 0,
        "roles_count": roles.scalar() or 0,
        "permissions_count": permissions.scalar() or 0,
    }


async def request_membership(
    db: AsyncSession,
    association_id: str,
    user: User
) -> AssociationMember:
    """
    Ask to join an association. The membership starts pending.

    Raises:
        AssociationNotFound, AlreadyMember (any existing membership, whatever its status)
    """
    await get_association(db, association_id)

    existing = await db.execute(
        select(AssociationMember.id).where(
            AssociationMember.association_id == association_id,
            AssociationMember.user_id == user.id,
        )
    )
    if existing.first() is not None:
        raise AlreadyMember()

    membership = AssociationMember(
        user_id=user.id,
        association_id=association_id,
        status=MemberStatus.PENDING.value,
        assigned_roles=[],
        granted_permissions=[],
        revoked_permissions=[],
    )
    db.add(membership)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise AlreadyMember()
    await db.refresh(membership)

    log.info("User %s requested to join association %s", user.id, association_id)
    return membership


async def validate_membership(
    db: AsyncSession,
    association_id: str,
    member_id: str,
    approve: bool,
    reason: Optional[str] = None,
    audit: Optional[AuditTrail] = None,
    unique_policy: Optional[str] = None
) -> AssociationMember:
    """
    Approve (pending -> active) or reject (pending -> excluded) a join request.

    On approval, unique roles the applicant was given while pending and that
    an active member already holds are settled by the unique-role policy.
    """
    await lock_association(db, association_id)
    member = await get_member(db, association_id, member_id)
    if member.status != MemberStatus.PENDING.value:
        raise ValidationFailed(
            "Only pending membership requests can be validated",
            details={"status": member.status}
        )

    dropped = []
    if approve:
        dropped = await settle_unique_roles(db, association_id, member, unique_policy)

    member.status = MemberStatus.ACTIVE.value if approve else MemberStatus.EXCLUDED.value
    member.status_reason = reason
    member.validated_at = datetime.now(timezone.utc)
    member.validated_by_id = audit.user_id if audit else None

    if audit:
        audit.add(db, "approve_member" if approve else "reject_member", "member", member.id,
                  association_id, {"reason": reason, "droppedRoles": dropped})
    await db.commit()
    await db.refresh(member)

    log.info("Membership %s in %s is now %s", member.id, association_id, member.status)
    return member

