"""
Seed script to backfill permission catalogs.

Associations created before the catalog existed have no permission rows.
This script copies the default catalog into every such association and
lists the associations still on the legacy permission model.

Usage:
    python -m scripts.seed_permissions
"""
import asyncio
from typing import List
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tontine_api.core.database.engine import get_db, init_db
from tontine_api.features.associations.models import Association, PermissionModel
from tontine_api.features.permissions.catalog import seed_catalog
from tontine_api.features.permissions.models import Permission
from tontine_api.utils import get_logger


log = get_logger(__name__)


async def seed_missing_catalogs(db: AsyncSession) -> List[str]:
    """
    Seed the default catalog where an association has none.

    Returns:
        Ids of the associations that were seeded
    """
    result = await db.execute(
        select(Association.id).where(
            ~select(Permission.id)
            .where(Permission.association_id == Association.id)
            .exists()
        )
    )
    association_ids = list(result.scalars().all())

    for association_id in association_ids:
        count = await seed_catalog(db, association_id)
        log.info("Seeded %d permissions for association %s", count, association_id)

    await db.commit()
    return association_ids


async def legacy_associations(db: AsyncSession) -> List[Association]:
    result = await db.execute(
        select(Association).where(Association.permission_model == PermissionModel.LEGACY.value)
    )
    return list(result.scalars().all())


async def main():
    log.info("Starting catalog backfill...")

    log.info("Initializing database tables...")
    await init_db()

    async for db in get_db():
        try:
            seeded = await seed_missing_catalogs(db)
            log.info("Catalog backfill completed: %d associations seeded", len(seeded))

            for association in await legacy_associations(db):
                log.info("  - %s (%s) still uses the legacy permission model", association.name, association.id)
        except Exception as e:
            log.error("Error seeding catalogs: %s", e, exc_info=True)
            await db.rollback()
            raise

        break  # Only use first session


if __name__ == "__main__":
    asyncio.run(main())
