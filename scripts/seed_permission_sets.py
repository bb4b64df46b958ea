"""
Seed script to populate default permission sets and profiles.

Run this script after database initialization to create:
- Default permission sets, with table grants for whichever of their tables
  exist in the managed schema
- Default profiles
- Initial profile-permission set assignments

Existing permission sets and profiles are left as they are, so the script
can be run repeatedly.

Usage:
    uv run python -m scripts.seed_permission_sets
"""
import asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db, init_db
from app.features.permission_sets.models import PermissionSet
from app.features.permission_sets.schemas import TableFlags
from app.features.permission_sets.service import GrantStore
from app.features.profiles.models import Profile
from app.features.profiles.service import ProfileService
from app.utils import get_logger


log = get_logger(__name__)


READ_ONLY = TableFlags(can_read=True)
READ_WRITE = TableFlags(can_create=True, can_read=True, can_update=True)
FULL = TableFlags(can_create=True, can_read=True, can_update=True, can_delete=True)


DEFAULT_PERMISSION_SETS = {
    "Sales Read": {
        "description": "View orders and customers",
        "tables": {"orders": READ_ONLY, "customers": READ_ONLY},
    },
    "Sales Edit": {
        "description": "Create and update orders and customers",
        "tables": {"orders": READ_WRITE, "customers": READ_WRITE},
    },
    "Catalog Admin": {
        "description": "Full control of products",
        "tables": {"products": FULL},
    },
    "Reporting": {
        "description": "Read access for reporting",
        "tables": {"orders": READ_ONLY, "customers": READ_ONLY, "products": READ_ONLY},
    },
}


DEFAULT_PROFILES = {
    "Manager": {
        "description": "Team managers",
        "permission_sets": ["Sales Edit", "Catalog Admin", "Reporting"],
    },
    "Sales Rep": {
        "description": "Sales staff",
        "permission_sets": ["Sales Edit"],
    },
    "Viewer": {
        "description": "Read-only users",
        "permission_sets": ["Sales Read", "Reporting"],
    },
}


async def seed_permission_sets(db: AsyncSession) -> dict[str, PermissionSet]:
    """
    Create default permission sets and attach their tables.

    Returns:
        Dictionary mapping permission set names to PermissionSet objects
    """
    log.info("Creating default permission sets...")
    store = GrantStore(db)
    available = set(await store.introspector.list_tables())
    permission_sets_map = {}

    for name, set_config in DEFAULT_PERMISSION_SETS.items():
        existing = (await db.execute(select(PermissionSet).where(PermissionSet.name == name))).scalars().first()
        if existing:
            log.debug("Permission set '%s' already exists, skipping", name)
            permission_sets_map[name] = existing
            continue

        permission_set = await store.create_permission_set(name, set_config["description"])
        for table_name, flags in set_config["tables"].items():
            if table_name not in available:
                log.warning("Table '%s' not in managed schema, not attached to '%s'", table_name, name)
                continue
            result = await store.attach_table(permission_set.id, table_name, flags)
            log.info("Attached %s to '%s' (%d fields)", table_name, name, result.fields_assigned)

        permission_sets_map[name] = permission_set
        log.info("Created permission set: %s", name)

    await db.commit()
    log.info("%d permission sets available", len(permission_sets_map))
    return permission_sets_map


async def seed_profiles(db: AsyncSession, permission_sets_map: dict[str, PermissionSet]):
    """
    Create default profiles and assign their permission sets.

    Args:
        db: Database session
        permission_sets_map: Dictionary of permission set name -> PermissionSet object
    """
    log.info("Creating default profiles...")
    store = GrantStore(db)
    profiles = ProfileService(db)

    for profile_name, profile_config in DEFAULT_PROFILES.items():
        existing = (await db.execute(select(Profile).where(Profile.name == profile_name))).scalars().first()
        if existing:
            log.debug("Profile '%s' already exists, skipping", profile_name)
            continue

        profile = await profiles.create_profile(profile_name, profile_config["description"])
        for set_name in profile_config["permission_sets"]:
            if set_name not in permission_sets_map:
                log.warning("Permission set '%s' not found for profile '%s'", set_name, profile_name)
                continue
            await store.assign_permission_set_to_profile(profile.id, permission_sets_map[set_name].id)
        log.info("Created profile '%s' with %d permission sets", profile_name, len(profile_config["permission_sets"]))

    await db.commit()
    log.info("Default profiles created successfully")


async def main():
    """Main function to seed permission sets and profiles."""
    log.info("Starting permission set seeding...")

    log.info("Initializing database tables...")
    await init_db()

    async for db in get_db():
        try:
            permission_sets_map = await seed_permission_sets(db)
            await seed_profiles(db, permission_sets_map)

            log.info("Permission set seeding completed successfully!")
            log.info("")
            log.info("Default profiles created:")
            for profile_name, profile_config in DEFAULT_PROFILES.items():
                log.info("  - %s: %s", profile_name, profile_config["description"])

        except Exception as e:
            log.error("Error seeding permission sets: %s", e, exc_info=True)
            await db.rollback()
            raise

        break  # Only use first session


if __name__ == "__main__":
    asyncio.run(main())
