"""
Permission catalog.

Every association gets a copy of DEFAULT_PERMISSIONS when it is created and
may append its own entries later. Roles and member overrides may only
reference ids present in their association's catalog.
"""
from collections import OrderedDict
from typing import Dict, Iterable, List, Sequence

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from tontine_api.core import cache
from tontine_api.core.errors import DuplicatePermission
from tontine_api.features.permissions.models import Permission
from tontine_api.features.permissions.schemas import PermissionCreate, PermissionResponse
from tontine_api.utils import get_logger


log = get_logger(__name__)

UNCATEGORIZED = "other"

# (id, name, category, description)
DEFAULT_PERMISSIONS = [
    # Finances
    ("finances.view_treasury", "View treasury", "finances", "See the balance and transaction history"),
    ("finances.manage_budgets", "Manage budgets", "finances", "Create and edit the association budgets"),
    ("finances.validate_expenses", "Validate expenses", "finances", "Approve or refuse expense requests"),
    ("finances.create_income", "Record income", "finances", "Record income entries for the association"),
    ("finances.export_data", "Export financial data", "finances", "Download financial reports as Excel/PDF"),

    # Members
    ("members.view_list", "View member list", "members", "Access the full member list"),
    ("members.manage_members", "Manage members", "members", "Add, edit or remove members"),
    ("members.approve_members", "Approve members", "members", "Accept or reject membership requests"),
    ("members.view_details", "View member details", "members", "Access members' personal information"),

    # Administration
    ("administration.manage_roles", "Manage roles", "administration", "Create and edit roles and permissions"),
    ("administration.modify_settings", "Modify settings", "administration", "Change the association settings"),
    ("administration.view_reports", "View reports", "administration", "Access activity reports"),

    # Documents
    ("documents.upload", "Upload documents", "documents", "Add documents to the association"),
    ("documents.manage", "Manage documents", "documents", "Edit or delete documents"),
    ("documents.validate", "Validate documents", "documents", "Approve official documents"),

    # Events
    ("events.create", "Create events", "events", "Organise events for the association"),
    ("events.manage", "Manage events", "events", "Edit or cancel events"),
    ("events.view_attendance", "View attendance", "events", "See event attendance lists"),

    # Sections
    ("sections.view", "View sections", "sections", "See the geographic sections"),
    ("sections.manage", "Manage sections", "sections", "Create and administer geographic sections"),
]


async def list_permissions(db: AsyncSession, association_id: str) -> List[PermissionResponse]:
    """
    Catalog of an association in catalog order.

    An unknown association simply has no permissions configured, so the
    result is an empty list rather than an error.
    """
    key = cache.catalog_key(association_id)
    cached = await cache.get_json(key)
    if cached is not None:
        return [PermissionResponse.model_validate(entry) for entry in cached]

    result = await db.execute(
        select(Permission)
        .where(Permission.association_id == association_id)
        .order_by(Permission.position, Permission.id)
    )
    entries = [PermissionResponse.model_validate(p) for p in result.scalars().all()]

    if entries:
        await cache.set_json(key, [entry.model_dump() for entry in entries])
    return entries


async def catalog_ids(db: AsyncSession, association_id: str) -> List[str]:
    return [entry.id for entry in await list_permissions(db, association_id)]


async def is_valid_permission(db: AsyncSession, association_id: str, permission_id: str) -> bool:
    return permission_id in await catalog_ids(db, association_id)


async def find_invalid_permissions(
    db: AsyncSession,
    association_id: str,
    permission_ids: Iterable[str]
) -> List[str]:
    """Ids from `permission_ids` that are not in the catalog, in input order."""
    valid = set(await catalog_ids(db, association_id))
    return [p for p in permission_ids if p not in valid]


def group_by_category(entries: Sequence[PermissionResponse]) -> Dict[str, List[PermissionResponse]]:
    grouped: Dict[str, List[PermissionResponse]] = OrderedDict()
    for entry in entries:
        grouped.setdefault(entry.category or UNCATEGORIZED, []).append(entry)
    return grouped


async def seed_catalog(db: AsyncSession, association_id: str) -> int:
    """
    Copy the default catalog into a new association.

    Adds to the session without committing; the caller owns the transaction.
    """
    for position, (permission_id, name, category, description) in enumerate(DEFAULT_PERMISSIONS):
        db.add(Permission(
            association_id=association_id,
            id=permission_id,
            name=name,
            category=category,
            description=description,
            position=position,
        ))
    log.debug("Seeded %d permissions for association %s", len(DEFAULT_PERMISSIONS), association_id)
    return len(DEFAULT_PERMISSIONS)


async def extend_catalog(
    db: AsyncSession,
    association_id: str,
    entries: Sequence[PermissionCreate]
) -> List[PermissionResponse]:
    """
    Append entries to an association's catalog.

    Existing entries are never touched. Any id already present (or repeated
    in the request) fails the whole call.
    """
    existing = set(await catalog_ids(db, association_id))
    seen = set()
    for entry in entries:
        if entry.id in existing or entry.id in seen:
            raise DuplicatePermission(details={"permissionId": entry.id})
        seen.add(entry.id)

    result = await db.execute(
        select(func.max(Permission.position)).where(Permission.association_id == association_id)
    )
    last_position = result.scalar()
    next_position = 0 if last_position is None else last_position + 1

    for offset, entry in enumerate(entries):
        db.add(Permission(
            association_id=association_id,
            id=entry.id,
            name=entry.name,
            category=entry.category,
            description=entry.description,
            position=next_position + offset,
        ))
    await db.commit()
    await cache.invalidate(cache.catalog_key(association_id))

    log.info("Extended catalog of association %s with %s", association_id, [e.id for e in entries])
    return await list_permissions(db, association_id)
