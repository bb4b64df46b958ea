"""
Assignment resolver: which permission sets reach a user, and what they grant.

A permission set reaches a user through the user's current profile
(source "profile") or through a direct grant (source "direct"). Both are
reported, so a set reachable both ways appears twice; callers asking "does
the user have X" must look across the whole list.

Profile-derived rows are also stored denormalized in user_permission_sets so
the admin surface can list a user's set names cheaply. Those rows go stale
when the user's profile or the profile's sets change; sync_user rewrites
them. Effective reads never trust them and always follow the live edges.
"""
from collections import defaultdict
from typing import Dict, List, Optional, Tuple
from sqlalchemy import select, delete, insert, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.access.schemas import EffectivePermissionSet, EffectiveTableAccess
from app.features.permission_sets import hierarchy
from app.features.permission_sets.models import (
    PermissionSet,
    TableAccess,
    FieldAccess,
    profile_permission_sets,
    user_permission_sets,
    SOURCE_DIRECT,
    SOURCE_PROFILE,
)
from app.features.permission_sets.schemas import TableFlags, FieldFlags, AssignmentResult
from app.features.profiles.models import user_profiles
from app.features.profiles.service import ProfileService
from app.utils import get_logger


log = get_logger(__name__)


class AssignmentResolver:

    def __init__(self, db: AsyncSession, profiles: Optional[ProfileService] = None):
        self.db = db
        self.profiles = profiles or ProfileService(db)

    async def _profile_id(self, user_id: str) -> Optional[str]:
        return await self.db.scalar(
            select(user_profiles.c.profile_id).where(user_profiles.c.user_id == user_id)
        )

    async def effective_permission_sets(self, user_id: str) -> List[EffectivePermissionSet]:
        """Profile-derived sets first, then direct grants, each sorted by name."""
        profile_id = await self._profile_id(user_id)

        result: List[EffectivePermissionSet] = []
        if profile_id is not None:
            stmt = (
                select(PermissionSet.id, PermissionSet.name)
                .join(profile_permission_sets, profile_permission_sets.c.permission_set_id == PermissionSet.id)
                .where(profile_permission_sets.c.profile_id == profile_id)
                .order_by(PermissionSet.name)
            )
            for ps_id, name in (await self.db.execute(stmt)).all():
                result.append(EffectivePermissionSet(permission_set_id=ps_id, name=name, source_type=SOURCE_PROFILE))

        stmt = (
            select(PermissionSet.id, PermissionSet.name)
            .join(user_permission_sets, user_permission_sets.c.permission_set_id == PermissionSet.id)
            .where(
                and_(
                    user_permission_sets.c.user_id == user_id,
                    user_permission_sets.c.source_type == SOURCE_DIRECT
                )
            )
            .order_by(PermissionSet.name)
        )
        for ps_id, name in (await self.db.execute(stmt)).all():
            result.append(EffectivePermissionSet(permission_set_id=ps_id, name=name, source_type=SOURCE_DIRECT))
        return result

    async def has_permission_set(self, user_id: str, permission_set_id: str) -> bool:
        return any(
            entry.permission_set_id == permission_set_id
            for entry in await self.effective_permission_sets(user_id)
        )

    async def _permission_set_ids(self, user_id: str) -> set:
        return {entry.permission_set_id for entry in await self.effective_permission_sets(user_id)}

    async def _table_grants(self, user_id: str, table_name: Optional[str] = None) -> List[Tuple[str, TableFlags]]:
        """(table, flags) for every table grant reaching the user."""
        permission_set_ids = await self._permission_set_ids(user_id)
        if not permission_set_ids:
            return []

        stmt = (
            select(
                TableAccess.table_name,
                TableAccess.can_create,
                TableAccess.can_read,
                TableAccess.can_update,
                TableAccess.can_delete,
            )
            .where(TableAccess.permission_set_id.in_(permission_set_ids))
            .order_by(TableAccess.table_name)
        )
        if table_name is not None:
            stmt = stmt.where(TableAccess.table_name == table_name)

        return [
            (row.table_name, TableFlags(
                can_create=row.can_create,
                can_read=row.can_read,
                can_update=row.can_update,
                can_delete=row.can_delete,
            ))
            for row in (await self.db.execute(stmt)).all()
        ]

    async def _field_grants(
        self,
        user_id: str,
        table_name: Optional[str] = None,
        field_name: Optional[str] = None
    ) -> List[Tuple[str, str, FieldFlags]]:
        """(table, field, masked flags) for every field grant reaching the user."""
        permission_set_ids = await self._permission_set_ids(user_id)
        if not permission_set_ids:
            return []

        stmt = (
            select(
                TableAccess.table_name,
                TableAccess.can_read,
                TableAccess.can_update,
                FieldAccess.field_name,
                FieldAccess.can_view,
                FieldAccess.can_edit,
            )
            .join(FieldAccess, FieldAccess.table_access_id == TableAccess.id)
            .where(TableAccess.permission_set_id.in_(permission_set_ids))
            .order_by(TableAccess.table_name, FieldAccess.field_name)
        )
        if table_name is not None:
            stmt = stmt.where(TableAccess.table_name == table_name)
        if field_name is not None:
            stmt = stmt.where(FieldAccess.field_name == field_name)

        grants = []
        for row in (await self.db.execute(stmt)).all():
            masked = hierarchy.mask_field_flags(
                TableFlags(can_read=row.can_read, can_update=row.can_update),
                FieldFlags(can_view=row.can_view, can_edit=row.can_edit)
            )
            grants.append((row.table_name, row.field_name, masked))
        return grants

    async def effective_field_access(self, user_id: str, table_name: str, field_name: str) -> FieldFlags:
        """
        Mask each contributing set's field flags by its own table flags, then OR.

        Sets that do not grant the table, or have no row for the field,
        contribute nothing; with no contributors both flags are False.
        """
        grants = await self._field_grants(user_id, table_name, field_name)
        return hierarchy.union_field_flags(flags for _, _, flags in grants)

    async def effective_table_access(self, user_id: str, table_name: str) -> TableFlags:
        grants = await self._table_grants(user_id, table_name)
        return hierarchy.union_table_flags(flags for _, flags in grants)

    async def effective_access_summary(self, user_id: str) -> Dict[str, EffectiveTableAccess]:
        tables: Dict[str, List[TableFlags]] = defaultdict(list)
        for table_name, flags in await self._table_grants(user_id):
            tables[table_name].append(flags)

        fields: Dict[str, Dict[str, List[FieldFlags]]] = defaultdict(lambda: defaultdict(list))
        for table_name, field_name, flags in await self._field_grants(user_id):
            fields[table_name][field_name].append(flags)

        return {
            table_name: EffectiveTableAccess(
                table_name=table_name,
                permissions=hierarchy.union_table_flags(flags),
                fields={
                    name: hierarchy.union_field_flags(field_flags)
                    for name, field_flags in fields[table_name].items()
                },
            )
            for table_name, flags in tables.items()
        }

    async def sync_user(self, user_id: str) -> List[str]:
        """
        Rewrite the user's profile-derived rows from the current profile.

        Direct rows are never touched. Returns the user's effective
        permission set names, in display order.
        """
        profile_id = await self._profile_id(user_id)
        wanted = set()
        if profile_id is not None:
            wanted = set(
                (await self.db.execute(
                    select(profile_permission_sets.c.permission_set_id)
                    .where(profile_permission_sets.c.profile_id == profile_id)
                )).scalars().all()
            )
        stored = set(
            (await self.db.execute(
                select(user_permission_sets.c.permission_set_id).where(
                    and_(
                        user_permission_sets.c.user_id == user_id,
                        user_permission_sets.c.source_type == SOURCE_PROFILE
                    )
                )
            )).scalars().all()
        )

        stale = stored - wanted
        missing = wanted - stored
        if stale:
            await self.db.execute(
                delete(user_permission_sets).where(
                    and_(
                        user_permission_sets.c.user_id == user_id,
                        user_permission_sets.c.source_type == SOURCE_PROFILE,
                        user_permission_sets.c.permission_set_id.in_(stale)
                    )
                )
            )
        if missing:
            await self.db.execute(
                insert(user_permission_sets),
                [
                    {"user_id": user_id, "permission_set_id": ps_id, "source_type": SOURCE_PROFILE}
                    for ps_id in sorted(missing)
                ]
            )
        if stale or missing:
            log.info("Synced user %s: %d stale and %d missing profile rows", user_id, len(stale), len(missing))

        return [entry.name for entry in await self.effective_permission_sets(user_id)]

    async def sync_profile_members(self, profile_id: str) -> int:
        """Sync every user holding the profile; returns how many were synced."""
        members = await self.profiles.list_profile_users(profile_id)
        for user_id in members:
            await self.sync_user(user_id)
        return len(members)

    async def reassign_profile(self, user_id: str, profile_id: Optional[str]) -> AssignmentResult:
        """Set (or with None, clear) the user's profile and refresh the derived rows."""
        if profile_id is None:
            result = await self.profiles.clear_user_profile(user_id)
        else:
            result = await self.profiles.set_user_profile(user_id, profile_id)
        await self.sync_user(user_id)
        return result
