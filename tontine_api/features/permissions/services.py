"""
Role store and membership operations.

Every public coroutine here is one unit of work: it validates, mutates and
commits once. Operations that touch two memberships (unique-role eviction,
forced role deletion, admin transfer) do so inside that single commit, after
claiming the association row, so no partial state is ever visible.

Errors are raised as tontine_api.core.errors types and never swallowed.
"""
from typing import Dict, Iterable, List, Optional, Tuple
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tontine_api.core import config
from tontine_api.core.errors import (
    AssociationNotFound,
    DuplicateRoleName,
    InvalidPermission,
    MemberNotFound,
    NotAssociationMember,
    NotCurrentAdmin,
    RoleCannotBeDeleted,
    RoleCannotBeRenamed,
    RoleInUse,
    RoleNotFound,
    TargetNotActiveMember,
    UniqueRoleViolation,
    ValidationFailed,
)
from tontine_api.features.associations.models import Association, AssociationMember, MemberStatus
from tontine_api.features.permissions.audit import AuditTrail
from tontine_api.features.permissions.catalog import find_invalid_permissions
from tontine_api.features.permissions.models import Role, DEFAULT_ROLE_COLOR, DEFAULT_ROLE_ICON
from tontine_api.features.permissions.schemas import RoleCreate, RoleUpdate
from tontine_api.utils import get_logger


log = get_logger(__name__)

UNIQUE_ROLE_EVICT = "evict"
UNIQUE_ROLE_REJECT = "reject"


def _dedupe(values: Iterable[str]) -> List[str]:
    seen: List[str] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


# ============================================================================
# Lookups
# ============================================================================

async def get_association(db: AsyncSession, association_id: str) -> Association:
    result = await db.execute(select(Association).where(Association.id == association_id))
    association = result.scalar_one_or_none()
    if association is None:
        raise AssociationNotFound()
    return association


async def lock_association(db: AsyncSession, association_id: str) -> Association:
    """
    Claim the association for the rest of the transaction.

    The claim is a write on the association row, issued before any read:
    PostgreSQL holds the row lock and SQLite the database RESERVED lock
    until commit, so a concurrent mutation of the same association waits
    and then reads the committed result.
    """
    claimed = await db.execute(
        update(Association)
        .where(Association.id == association_id)
        .values(updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        await db.rollback()
        raise AssociationNotFound()
    return await get_association(db, association_id)


async def list_roles(db: AsyncSession, association_id: str) -> List[Role]:
    result = await db.execute(
        select(Role).where(Role.association_id == association_id).order_by(Role.created_at, Role.id)
    )
    return list(result.scalars().all())


async def get_role(db: AsyncSession, association_id: str, role_id: str) -> Role:
    result = await db.execute(
        select(Role).where(Role.id == role_id, Role.association_id == association_id)
    )
    role = result.scalar_one_or_none()
    if role is None:
        raise RoleNotFound(details={"roleId": role_id})
    return role


async def list_active_members(db: AsyncSession, association_id: str) -> List[AssociationMember]:
    result = await db.execute(
        select(AssociationMember).where(
            AssociationMember.association_id == association_id,
            AssociationMember.status == MemberStatus.ACTIVE.value,
        ).execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def role_usage(db: AsyncSession, association_id: str) -> Dict[str, int]:
    """Number of active members holding each role id."""
    usage: Dict[str, int] = {}
    for member in await list_active_members(db, association_id):
        for role_id in member.assigned_roles or []:
            usage[role_id] = usage.get(role_id, 0) + 1
    return usage


async def role_holders(db: AsyncSession, association_id: str, role_id: str) -> List[AssociationMember]:
    return [
        member for member in await list_active_members(db, association_id)
        if role_id in (member.assigned_roles or [])
    ]


async def get_role_details(
    db: AsyncSession,
    association_id: str,
    role_id: str
) -> Tuple[Role, List[AssociationMember]]:
    """A role and the active members currently holding it."""
    role = await get_role(db, association_id, role_id)
    return role, await role_holders(db, association_id, role_id)


async def get_active_membership(db: AsyncSession, user_id: str, association_id: str) -> AssociationMember:
    """
    The user's active membership in the association.

    Raises:
        NotAssociationMember: no membership, or one that is not active
    """
    result = await db.execute(
        select(AssociationMember).where(
            AssociationMember.user_id == user_id,
            AssociationMember.association_id == association_id,
            AssociationMember.status == MemberStatus.ACTIVE.value,
        )
    )
    membership = result.scalar_one_or_none()
    if membership is None:
        raise NotAssociationMember()
    return membership


async def get_member(db: AsyncSession, association_id: str, member_id: str) -> AssociationMember:
    result = await db.execute(
        select(AssociationMember).where(
            AssociationMember.id == member_id,
            AssociationMember.association_id == association_id,
        ).execution_options(populate_existing=True)
    )
    member = result.scalar_one_or_none()
    if member is None:
        raise MemberNotFound(details={"memberId": member_id})
    return member


async def _check_permissions(db: AsyncSession, association_id: str, permission_ids: Iterable[str]) -> None:
    invalid = await find_invalid_permissions(db, association_id, permission_ids)
    if invalid:
        raise InvalidPermission(
            "Unknown permissions for this association",
            details={"invalid": invalid}
        )


async def _check_name_available(
    db: AsyncSession,
    association_id: str,
    name: str,
    exclude_role_id: Optional[str] = None
) -> None:
    # Exact, case-sensitive match: "Treasurer" and "treasurer" may coexist
    stmt = select(Role.id).where(Role.association_id == association_id, Role.name == name)
    if exclude_role_id:
        stmt = stmt.where(Role.id != exclude_role_id)
    result = await db.execute(stmt)
    if result.first() is not None:
        raise DuplicateRoleName(details={"name": name})


# ============================================================================
# Role Definition Store
# ============================================================================

async def create_role(
    db: AsyncSession,
    association_id: str,
    data: RoleCreate,
    audit: Optional[AuditTrail] = None
) -> Role:
    """
    Create a role.

    Raises:
        AssociationNotFound, InvalidPermission (nothing is persisted), DuplicateRoleName
    """
    await get_association(db, association_id)
    permissions = _dedupe(data.permissions)
    await _check_permissions(db, association_id, permissions)
    await _check_name_available(db, association_id, data.name)

    role = Role(
        association_id=association_id,
        name=data.name,
        description=data.description or "",
        permissions=permissions,
        color=data.color or DEFAULT_ROLE_COLOR,
        icon=data.icon or DEFAULT_ROLE_ICON,
        is_unique=data.is_unique,
        created_by_id=audit.user_id if audit else None,
    )
    db.add(role)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise DuplicateRoleName(details={"name": data.name})

    if audit:
        audit.add(db, "create", "role", role.id, association_id,
                  {"name": role.name, "permissions": permissions, "isUnique": role.is_unique})
    await db.commit()
    await db.refresh(role)

    log.info("Role %r (%s) created in association %s", role.name, role.id, association_id)
    return role


async def update_role(
    db: AsyncSession,
    association_id: str,
    role_id: str,
    data: RoleUpdate,
    audit: Optional[AuditTrail] = None
) -> Role:
    """
    Apply the fields present in `data`; anything absent is left as is.
    """
    role = await get_role(db, association_id, role_id)
    changes = data.model_dump(exclude_unset=True)

    name = changes.get("name")
    renaming = name is not None and name != role.name
    if renaming:
        if not role.can_be_renamed:
            raise RoleCannotBeRenamed()
        await _check_name_available(db, association_id, name, exclude_role_id=role.id)

    permissions = None
    if changes.get("permissions") is not None:
        permissions = _dedupe(changes["permissions"])
        await _check_permissions(db, association_id, permissions)

    # Nothing is touched until every check has passed
    if renaming:
        role.name = name
    if permissions is not None:
        role.permissions = permissions
    if "description" in changes:
        role.description = changes["description"] or ""
    for field in ("color", "icon", "is_unique"):
        if changes.get(field) is not None:
            setattr(role, field, changes[field])

    role.updated_by_id = audit.user_id if audit else role.updated_by_id
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise DuplicateRoleName(details={"name": name})

    if audit:
        audit.add(db, "update", "role", role.id, association_id, changes)
    await db.commit()
    await db.refresh(role)

    log.info("Role %s updated in association %s: %s", role.id, association_id, sorted(changes))
    return role


async def delete_role(
    db: AsyncSession,
    association_id: str,
    role_id: str,
    force: bool = False,
    audit: Optional[AuditTrail] = None
) -> int:
    """
    Delete a role.

    Without `force`, fails while any active member holds it. With `force`,
    the role id is first stripped from every membership. Either way no
    membership is left referencing the deleted id.

    Returns:
        Number of active members that lost the role
    """
    await lock_association(db, association_id)
    role = await get_role(db, association_id, role_id)

    if not role.can_be_deleted:
        raise RoleCannotBeDeleted()

    active_holders = await role_holders(db, association_id, role_id)
    if active_holders and not force:
        raise RoleInUse(
            details={
                "membersCount": len(active_holders),
                "hint": "Remove this role from its members first or use force=true",
            }
        )

    result = await db.execute(
        select(AssociationMember).where(AssociationMember.association_id == association_id)
    )
    for member in result.scalars().all():
        if role_id in (member.assigned_roles or []):
            member.assigned_roles = [r for r in member.assigned_roles if r != role_id]

    await db.delete(role)
    if audit:
        audit.add(db, "delete", "role", role_id, association_id,
                  {"name": role.name, "force": force, "membersAffected": len(active_holders)})
    await db.commit()

    if active_holders:
        log.warning("Role %s force-deleted, removed from %d members", role_id, len(active_holders))
    else:
        log.info("Role %s deleted from association %s", role_id, association_id)
    return len(active_holders)


# ============================================================================
# Membership role and permission operations
# ============================================================================

async def assign_roles(
    db: AsyncSession,
    association_id: str,
    member_id: str,
    role_ids: Iterable[str],
    audit: Optional[AuditTrail] = None,
    unique_policy: Optional[str] = None
) -> Tuple[AssociationMember, List[str]]:
    """
    Replace a member's role set.

    Unique roles already held by another active member are moved to this
    member (policy "evict", the default) or refused with UniqueRoleViolation
    (policy "reject"). Eviction and assignment commit together. Holders that
    are not active are reconciled when they are activated (settle_unique_roles).

    Returns:
        (member, ids of members a unique role was evicted from)
    """
    policy = unique_policy or config.UNIQUE_ROLE_POLICY
    await lock_association(db, association_id)
    member = await get_member(db, association_id, member_id)

    wanted = _dedupe(role_ids)
    roles = {role.id: role for role in await list_roles(db, association_id)}
    unknown = [role_id for role_id in wanted if role_id not in roles]
    if unknown:
        raise RoleNotFound("Unknown roles for this association", details={"invalid": unknown})

    unique_ids = {role_id for role_id in wanted if roles[role_id].is_unique}
    evicted: List[str] = []
    if unique_ids:
        for other in await list_active_members(db, association_id):
            if other.id == member.id:
                continue
            clash = unique_ids.intersection(other.assigned_roles or [])
            if not clash:
                continue
            if policy == UNIQUE_ROLE_REJECT:
                role = roles[sorted(clash)[0]]
                raise UniqueRoleViolation(
                    f'The role "{role.name}" is unique and already held by another member',
                    details={"roleId": role.id, "roleName": role.name}
                )
            other.assigned_roles = [r for r in other.assigned_roles if r not in clash]
            evicted.append(other.id)
            log.info("Unique roles %s evicted from member %s", sorted(clash), other.id)

    previous = list(member.assigned_roles or [])
    member.assigned_roles = wanted
    if audit:
        audit.add(db, "assign_roles", "member", member.id, association_id,
                  {"previous": previous, "assigned": wanted, "evictedFrom": evicted})
    await db.commit()
    await db.refresh(member)

    log.info("Roles %s assigned to member %s", wanted, member.id)
    return member, evicted


async def settle_unique_roles(
    db: AsyncSession,
    association_id: str,
    member: AssociationMember,
    unique_policy: Optional[str] = None
) -> List[str]:
    """
    Reconcile a member about to become active with the unique roles already
    held by active members. The active holder keeps the role: it is dropped
    from `member` (policy "evict") or the activation is refused with
    UniqueRoleViolation (policy "reject").

    Call after lock_association; the caller commits.

    Returns:
        Role ids dropped from `member`
    """
    policy = unique_policy or config.UNIQUE_ROLE_POLICY
    roles = {role.id: role for role in await list_roles(db, association_id)}
    unique_ids = {
        role_id for role_id in member.assigned_roles or []
        if role_id in roles and roles[role_id].is_unique
    }
    if not unique_ids:
        return []

    taken = set()
    for other in await list_active_members(db, association_id):
        if other.id != member.id:
            taken.update(unique_ids.intersection(other.assigned_roles or []))
    if not taken:
        return []

    if policy == UNIQUE_ROLE_REJECT:
        role = roles[sorted(taken)[0]]
        raise UniqueRoleViolation(
            f'The role "{role.name}" is unique and already held by another member',
            details={"roleId": role.id, "roleName": role.name}
        )
    member.assigned_roles = [r for r in member.assigned_roles if r not in taken]
    log.info("Unique roles %s dropped from member %s on activation", sorted(taken), member.id)
    return sorted(taken)


async def remove_role(
    db: AsyncSession,
    association_id: str,
    member_id: str,
    role_id: str,
    audit: Optional[AuditTrail] = None
) -> AssociationMember:
    """Remove one role. Removing a role the member does not hold is a no-op."""
    member = await get_member(db, association_id, member_id)
    if role_id not in (member.assigned_roles or []):
        return member

    member.assigned_roles = [r for r in member.assigned_roles if r != role_id]
    if audit:
        audit.add(db, "remove_role", "member", member.id, association_id, {"roleId": role_id})
    await db.commit()
    await db.refresh(member)

    log.info("Role %s removed from member %s", role_id, member.id)
    return member


async def grant_permission(
    db: AsyncSession,
    association_id: str,
    member_id: str,
    permission_id: str,
    audit: Optional[AuditTrail] = None
) -> AssociationMember:
    """Add to the member's granted overrides and drop any matching revoke."""
    member = await get_member(db, association_id, member_id)
    await _check_permissions(db, association_id, [permission_id])

    granted = list(member.granted_permissions or [])
    if permission_id not in granted:
        granted.append(permission_id)
    member.granted_permissions = granted
    member.revoked_permissions = [p for p in (member.revoked_permissions or []) if p != permission_id]

    if audit:
        audit.add(db, "grant_permission", "member", member.id, association_id, {"permissionId": permission_id})
    await db.commit()
    await db.refresh(member)

    log.info("Permission %s granted to member %s", permission_id, member.id)
    return member


async def revoke_permission(
    db: AsyncSession,
    association_id: str,
    member_id: str,
    permission_id: str,
    audit: Optional[AuditTrail] = None
) -> AssociationMember:
    """Add to the member's revoked overrides and drop any matching grant."""
    member = await get_member(db, association_id, member_id)
    await _check_permissions(db, association_id, [permission_id])

    revoked = list(member.revoked_permissions or [])
    if permission_id not in revoked:
        revoked.append(permission_id)
    member.revoked_permissions = revoked
    member.granted_permissions = [p for p in (member.granted_permissions or []) if p != permission_id]

    if audit:
        audit.add(db, "revoke_permission", "member", member.id, association_id, {"permissionId": permission_id})
    await db.commit()
    await db.refresh(member)

    log.info("Permission %s revoked from member %s", permission_id, member.id)
    return member


# ============================================================================
# Admin transfer
# ============================================================================

async def transfer_admin(
    db: AsyncSession,
    association_id: str,
    current_admin_member_id: str,
    new_admin_member_id: str,
    audit: Optional[AuditTrail] = None
) -> Tuple[AssociationMember, AssociationMember]:
    """
    Move the admin flag from one membership to another, atomically.

    The source is demoted with a conditional UPDATE (only if it is still an
    active admin); if that matches nothing the transaction is rolled back, so
    two concurrent transfers can never leave two admins or none.

    Raises:
        ValidationFailed: source and target are the same membership
        NotCurrentAdmin: the source is not (or no longer) the admin
        TargetNotActiveMember: the target is missing or not active
    """
    if current_admin_member_id == new_admin_member_id:
        raise ValidationFailed("The new administrator must be a different member")

    await lock_association(db, association_id)

    current = await get_member(db, association_id, current_admin_member_id)
    if not current.is_admin or not current.is_active_member:
        raise NotCurrentAdmin()

    result = await db.execute(
        select(AssociationMember).where(
            AssociationMember.id == new_admin_member_id,
            AssociationMember.association_id == association_id,
            AssociationMember.status == MemberStatus.ACTIVE.value,
        )
    )
    target = result.scalar_one_or_none()
    if target is None:
        raise TargetNotActiveMember(details={"memberId": new_admin_member_id})

    demoted = await db.execute(
        update(AssociationMember)
        .where(
            AssociationMember.id == current.id,
            AssociationMember.association_id == association_id,
            AssociationMember.is_admin.is_(True),
            AssociationMember.status == MemberStatus.ACTIVE.value,
        )
        .values(is_admin=False)
        .execution_options(synchronize_session=False)
    )
    if demoted.rowcount != 1:
        await db.rollback()
        raise NotCurrentAdmin()

    await db.execute(
        update(AssociationMember)
        .where(AssociationMember.id == target.id)
        .values(is_admin=True)
        .execution_options(synchronize_session=False)
    )

    if audit:
        audit.add(db, "transfer_admin", "association", association_id, association_id,
                  {"from": current.id, "to": target.id})
    await db.commit()
    await db.refresh(current)
    await db.refresh(target)

    log.info("Admin of association %s transferred from member %s to %s", association_id, current.id, target.id)
    return current, target
