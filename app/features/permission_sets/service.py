"""
Grant store: persistence operations for permission sets, table grants,
field grants and permission-set assignment edges.

Every operation runs inside the caller's transaction. The store flushes so
later reads in the same transaction see its writes, but never commits:
a route or a staged edit session commits the whole logical change at once,
and any exception rolls all of it back. A cascade is therefore never
observable half-applied.
"""
import enum
from typing import Dict, Iterable, List, NamedTuple, Optional
from sqlalchemy import select, delete, insert, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFound, Conflict, DependencyBlocked, InvalidTransition
from app.features.audit.sink import AuditSink
from app.features.permission_sets import hierarchy
from app.features.permission_sets.introspection import SchemaIntrospector, DatabaseSchemaIntrospector
from app.features.permission_sets.models import (
    PermissionSet,
    TableAccess,
    FieldAccess,
    profile_permission_sets,
    user_permission_sets,
    SOURCE_DIRECT,
    SOURCE_TYPES,
)
from app.features.permission_sets.schemas import (
    TableFlags,
    TableFlagsUpdate,
    FieldFlags,
    FieldFlagsUpdate,
    DetachReport,
    PermissionSetDeleteReport,
    AssignmentResult,
)
from app.features.profiles.models import Profile
from app.utils import get_logger


log = get_logger(__name__)


class DeletePolicy(str, enum.Enum):
    """What a delete does when dependents exist."""
    CASCADE = "cascade"
    BLOCK = "block"


class AttachResult(NamedTuple):
    table: TableAccess
    created: bool
    fields_assigned: int


class GrantStore:
    """Grant store bound to one session (one transaction)."""

    def __init__(
        self,
        db: AsyncSession,
        introspector: Optional[SchemaIntrospector] = None,
        audit: Optional[AuditSink] = None
    ):
        self.db = db
        self.introspector = introspector or DatabaseSchemaIntrospector(db)
        self.audit = audit or AuditSink()

    # ────────────────────────────────
    # Lookups
    # ────────────────────────────────
    async def get_permission_set(self, permission_set_id: str) -> PermissionSet:
        permission_set = await self.db.get(PermissionSet, permission_set_id)
        if permission_set is None:
            raise NotFound("Permission set", permission_set_id)
        return permission_set

    async def get_table_access(self, table_access_id: str) -> TableAccess:
        table_access = await self.db.get(TableAccess, table_access_id)
        if table_access is None:
            raise NotFound("Table access", table_access_id)
        return table_access

    async def find_table_access(self, permission_set_id: str, table_name: str) -> Optional[TableAccess]:
        stmt = select(TableAccess).where(
            and_(
                TableAccess.permission_set_id == permission_set_id,
                TableAccess.table_name == table_name
            )
        )
        return (await self.db.execute(stmt)).scalars().first()

    async def get_table_access_by_name(self, permission_set_id: str, table_name: str) -> TableAccess:
        table_access = await self.find_table_access(permission_set_id, table_name)
        if table_access is None:
            raise NotFound("Table access", f"{permission_set_id}/{table_name}")
        return table_access

    async def get_field_access(self, field_access_id: str) -> FieldAccess:
        field_access = await self.db.get(FieldAccess, field_access_id)
        if field_access is None:
            raise NotFound("Field access", field_access_id)
        return field_access

    async def get_field_access_by_name(self, permission_set_id: str, table_name: str, field_name: str) -> FieldAccess:
        stmt = (
            select(FieldAccess)
            .join(TableAccess, TableAccess.id == FieldAccess.table_access_id)
            .where(
                and_(
                    TableAccess.permission_set_id == permission_set_id,
                    TableAccess.table_name == table_name,
                    FieldAccess.field_name == field_name
                )
            )
        )
        field_access = (await self.db.execute(stmt)).scalars().first()
        if field_access is None:
            raise NotFound("Field access", f"{permission_set_id}/{table_name}.{field_name}")
        return field_access

    async def _field_rows(self, table_access_id: str) -> List[FieldAccess]:
        stmt = (
            select(FieldAccess)
            .where(FieldAccess.table_access_id == table_access_id)
            .order_by(FieldAccess.field_name)
            .execution_options(populate_existing=True)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def _require_profile(self, profile_id: str) -> Profile:
        profile = await self.db.get(Profile, profile_id)
        if profile is None:
            raise NotFound("Profile", profile_id)
        return profile

    # ────────────────────────────────
    # Permission Sets
    # ────────────────────────────────
    async def create_permission_set(self, name: str, description: Optional[str] = None) -> PermissionSet:
        existing = await self.db.execute(select(PermissionSet.id).where(PermissionSet.name == name))
        if existing.first():
            raise Conflict(f"Permission set '{name}' already exists", {"name": name})

        permission_set = PermissionSet(name=name, description=description, table_count=0)
        self.db.add(permission_set)
        await self.db.flush()
        log.info("Created permission set %s (%s)", permission_set.id, name)
        return permission_set

    async def update_permission_set(
        self,
        permission_set_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None
    ) -> PermissionSet:
        permission_set = await self.get_permission_set(permission_set_id)

        if name is not None and name != permission_set.name:
            clash = await self.db.execute(
                select(PermissionSet.id).where(
                    and_(PermissionSet.name == name, PermissionSet.id != permission_set_id)
                )
            )
            if clash.first():
                raise Conflict(f"Permission set '{name}' already exists", {"name": name})
            permission_set.name = name
        if description is not None:
            permission_set.description = description

        await self.db.flush()
        return permission_set

    async def list_permission_sets(
        self,
        skip: int = 0,
        limit: int = 100,
        search: Optional[str] = None
    ) -> List[PermissionSet]:
        stmt = select(PermissionSet)
        if search:
            stmt = stmt.where(PermissionSet.name.ilike(f"%{search}%"))
        stmt = stmt.order_by(PermissionSet.name).offset(skip).limit(limit)
        return list((await self.db.execute(stmt)).scalars().all())

    async def list_tables(self, permission_set_id: str) -> List[TableAccess]:
        await self.get_permission_set(permission_set_id)
        stmt = (
            select(TableAccess)
            .where(TableAccess.permission_set_id == permission_set_id)
            .order_by(TableAccess.table_name)
            .execution_options(populate_existing=True)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def list_fields(self, table_access_id: str) -> List[FieldAccess]:
        await self.get_table_access(table_access_id)
        return await self._field_rows(table_access_id)

    async def recount_tables(self, permission_set_id: str) -> int:
        """Recompute the cached table_count from live TableAccess rows."""
        permission_set = await self.get_permission_set(permission_set_id)
        await self.db.flush()
        count = await self.db.scalar(
            select(func.count()).select_from(TableAccess).where(TableAccess.permission_set_id == permission_set_id)
        )
        permission_set.table_count = count or 0
        await self.db.flush()
        return permission_set.table_count

    async def delete_permission_set(
        self,
        permission_set_id: str,
        policy: DeletePolicy = DeletePolicy.CASCADE
    ) -> PermissionSetDeleteReport:
        """
        Delete a permission set and everything that references it.

        Field grants go first, then table grants, then profile and user
        assignment edges, then the permission set row.

        Raises:
            NotFound: unknown permission set
            DependencyBlocked: policy is BLOCK and assignment edges exist
        """
        permission_set = await self.get_permission_set(permission_set_id)
        name = permission_set.name

        profiles_assigned = await self.db.scalar(
            select(func.count()).select_from(profile_permission_sets)
            .where(profile_permission_sets.c.permission_set_id == permission_set_id)
        ) or 0
        users_assigned = await self.db.scalar(
            select(func.count()).select_from(user_permission_sets)
            .where(user_permission_sets.c.permission_set_id == permission_set_id)
        ) or 0

        if policy == DeletePolicy.BLOCK and (profiles_assigned or users_assigned):
            raise DependencyBlocked(
                f"Permission set '{name}' is still assigned",
                {"profiles_assigned": profiles_assigned, "users_assigned": users_assigned}
            )

        tables = await self.list_tables(permission_set_id)
        fields_removed = 0
        for table_access in tables:
            fields_removed += await self._delete_fields(table_access.id)
        for table_access in tables:
            await self.db.delete(table_access)
        await self.db.flush()

        profiles_result = await self.db.execute(
            delete(profile_permission_sets).where(profile_permission_sets.c.permission_set_id == permission_set_id)
        )
        users_result = await self.db.execute(
            delete(user_permission_sets).where(user_permission_sets.c.permission_set_id == permission_set_id)
        )

        await self.db.delete(permission_set)
        await self.db.flush()

        report = PermissionSetDeleteReport(
            permission_set_id=permission_set_id,
            name=name,
            tables_removed=len(tables),
            fields_removed=fields_removed,
            profiles_unassigned=profiles_result.rowcount,
            users_unassigned=users_result.rowcount,
        )
        log.info(
            "Deleted permission set %s: %d tables, %d fields, %d profile edges, %d user edges",
            permission_set_id, report.tables_removed, report.fields_removed,
            report.profiles_unassigned, report.users_unassigned
        )
        self.audit.record(
            "delete", "permission_set", permission_set_id,
            name=name,
            tables_removed=report.tables_removed,
            fields_removed=report.fields_removed,
            profiles_unassigned=report.profiles_unassigned,
            users_unassigned=report.users_unassigned,
        )
        return report

    # ────────────────────────────────
    # Table Grants
    # ────────────────────────────────
    async def attach_table(
        self,
        permission_set_id: str,
        table_name: str,
        flags: TableFlags,
        recount: bool = True
    ) -> AttachResult:
        """
        Attach a table to a permission set, or update its flags if already attached.

        Columns are introspected on every attach and a field grant is created
        for each column that has none yet, so columns added to the table since
        the last attach are picked up. Existing field grants are left alone
        apart from the cascade the new table flags imply.

        Raises:
            NotFound: unknown permission set, or table not in the managed schema
        """
        await self.get_permission_set(permission_set_id)
        columns = await self.introspector.list_columns(table_name)

        table_access = await self.find_table_access(permission_set_id, table_name)
        created = table_access is None
        if created:
            table_access = TableAccess(
                permission_set_id=permission_set_id,
                table_name=table_name,
                **flags.model_dump()
            )
            self.db.add(table_access)
            await self.db.flush()
        else:
            await self._apply_table_flags(table_access, flags)

        existing = set(
            (await self.db.execute(
                select(FieldAccess.field_name).where(FieldAccess.table_access_id == table_access.id)
            )).scalars().all()
        )
        defaults = hierarchy.default_field_flags(flags)
        new_fields = [
            FieldAccess(
                table_access_id=table_access.id,
                field_name=column,
                can_view=defaults.can_view,
                can_edit=defaults.can_edit,
            )
            for column in columns
            if column not in existing
        ]
        self.db.add_all(new_fields)
        await self.db.flush()
        await self.db.refresh(table_access, ["fields"])

        if recount:
            await self.recount_tables(permission_set_id)

        log.info(
            "%s table %s on permission set %s (%d new fields)",
            "Attached" if created else "Re-attached", table_name, permission_set_id, len(new_fields)
        )
        return AttachResult(table=table_access, created=created, fields_assigned=len(new_fields))

    async def detach_table(
        self,
        permission_set_id: str,
        table_access_id: str,
        recount: bool = True
    ) -> DetachReport:
        """
        Remove a table grant and its field grants.

        Raises:
            NotFound: the table access does not exist or belongs to another permission set
        """
        table_access = await self.db.get(TableAccess, table_access_id)
        if table_access is None or table_access.permission_set_id != permission_set_id:
            raise NotFound("Table access", table_access_id, {"permission_set_id": permission_set_id})

        table_name = table_access.table_name
        fields_removed = await self._delete_fields(table_access_id)
        await self.db.delete(table_access)
        await self.db.flush()

        table_count = await self.recount_tables(permission_set_id) if recount else -1

        log.info(
            "Detached table %s from permission set %s (%d fields removed)",
            table_name, permission_set_id, fields_removed
        )
        self.audit.record(
            "detach_table", "permission_set", permission_set_id,
            table_name=table_name, fields_removed=fields_removed
        )
        return DetachReport(
            table_access_id=table_access_id,
            table_name=table_name,
            fields_removed=fields_removed,
            table_count=table_count,
        )

    async def update_table_flags(self, table_access_id: str, update: TableFlagsUpdate) -> TableAccess:
        """Change table flags and cascade the change onto the table's field grants."""
        table_access = await self.get_table_access(table_access_id)
        current = TableFlags.model_validate(table_access)
        proposed = hierarchy.merge_table_flags(current, update)
        await self._apply_table_flags(table_access, proposed)
        await self.db.refresh(table_access, ["fields"])
        return table_access

    async def _apply_table_flags(self, table_access: TableAccess, proposed: TableFlags) -> int:
        current = TableFlags.model_validate(table_access)
        fields = await self._field_rows(table_access.id)
        mutations = hierarchy.cascade_table_change(
            current,
            proposed,
            {f.id: FieldFlags.model_validate(f) for f in fields}
        )

        by_id = {f.id: f for f in fields}
        for mutation in mutations:
            field_access = by_id[mutation.field_access_id]
            field_access.can_view = mutation.can_view
            field_access.can_edit = mutation.can_edit
        for key, value in proposed.model_dump().items():
            setattr(table_access, key, value)
        await self.db.flush()

        if mutations:
            log.info(
                "Table %s flags %s -> %s cascaded to %d fields",
                table_access.id, current.model_dump(), proposed.model_dump(), len(mutations)
            )
        return len(mutations)

    async def _delete_fields(self, table_access_id: str) -> int:
        fields = await self._field_rows(table_access_id)
        for field_access in fields:
            await self.db.delete(field_access)
        await self.db.flush()
        return len(fields)

    # ────────────────────────────────
    # Field Grants
    # ────────────────────────────────
    async def update_field_flags(self, field_access_id: str, update: FieldFlagsUpdate) -> FieldAccess:
        """
        Change one field grant.

        Raises:
            NotFound: unknown field access
            InvalidTransition: the change breaks the table/field hierarchy
        """
        field_access = await self.get_field_access(field_access_id)
        table_access = await self.get_table_access(field_access.table_access_id)
        resolved = self._resolve_field_change(table_access, field_access, update)
        field_access.can_view = resolved.can_view
        field_access.can_edit = resolved.can_edit
        await self.db.flush()
        return field_access

    async def bulk_update_field_flags(
        self,
        table_access_id: str,
        updates: Dict[str, FieldFlagsUpdate]
    ) -> List[FieldAccess]:
        """
        Change several fields of one table; either all changes apply or none.

        Raises:
            NotFound: unknown table access or field name
            InvalidTransition: any change breaks the hierarchy
        """
        table_access = await self.get_table_access(table_access_id)
        by_name = {f.field_name: f for f in await self._field_rows(table_access_id)}

        missing = sorted(set(updates) - set(by_name))
        if missing:
            raise NotFound("Field access", ", ".join(missing), {"table_access_id": table_access_id})

        # Every change is validated before any row is touched
        resolved = {
            field_name: self._resolve_field_change(table_access, by_name[field_name], update)
            for field_name, update in updates.items()
        }
        for field_name, flags in resolved.items():
            by_name[field_name].can_view = flags.can_view
            by_name[field_name].can_edit = flags.can_edit
        await self.db.flush()
        return [by_name[name] for name in updates]

    def _resolve_field_change(
        self,
        table_access: TableAccess,
        field_access: FieldAccess,
        update: FieldFlagsUpdate
    ) -> FieldFlags:
        try:
            return hierarchy.resolve_field_change(
                TableFlags.model_validate(table_access),
                FieldFlags.model_validate(field_access),
                update
            )
        except InvalidTransition as e:
            e.details.setdefault("table_name", table_access.table_name)
            e.details.setdefault("field_name", field_access.field_name)
            log.warning("Rejected field change on %s.%s: %s", table_access.table_name, field_access.field_name, e.message)
            raise

    # ────────────────────────────────
    # Assignment Edges
    # ────────────────────────────────
    async def assign_permission_set_to_profile(self, profile_id: str, permission_set_id: str) -> AssignmentResult:
        profile = await self._require_profile(profile_id)
        permission_set = await self.get_permission_set(permission_set_id)

        check_stmt = select(profile_permission_sets).where(
            and_(
                profile_permission_sets.c.profile_id == profile_id,
                profile_permission_sets.c.permission_set_id == permission_set_id
            )
        )
        if (await self.db.execute(check_stmt)).first():
            return AssignmentResult(
                changed=False,
                message=f"Permission set '{permission_set.name}' already assigned to profile '{profile.name}'"
            )

        await self.db.execute(
            insert(profile_permission_sets).values(profile_id=profile_id, permission_set_id=permission_set_id)
        )
        log.info("Assigned permission set %s to profile %s", permission_set_id, profile_id)
        return AssignmentResult(
            changed=True,
            message=f"Permission set '{permission_set.name}' assigned to profile '{profile.name}'"
        )

    async def unassign_permission_set_from_profile(self, profile_id: str, permission_set_id: str) -> AssignmentResult:
        """Remove a profile edge; removing an absent edge succeeds with changed=False."""
        result = await self.db.execute(
            delete(profile_permission_sets).where(
                and_(
                    profile_permission_sets.c.profile_id == profile_id,
                    profile_permission_sets.c.permission_set_id == permission_set_id
                )
            )
        )
        if not result.rowcount:
            return AssignmentResult(changed=False, message="Permission set was not assigned to profile")
        log.info("Unassigned permission set %s from profile %s", permission_set_id, profile_id)
        return AssignmentResult(changed=True, message="Permission set removed from profile")

    async def assign_permission_set_to_user(
        self,
        user_id: str,
        permission_set_id: str,
        source_type: str = SOURCE_DIRECT
    ) -> AssignmentResult:
        _check_source_type(source_type)
        permission_set = await self.get_permission_set(permission_set_id)

        check_stmt = select(user_permission_sets).where(
            and_(
                user_permission_sets.c.user_id == user_id,
                user_permission_sets.c.permission_set_id == permission_set_id,
                user_permission_sets.c.source_type == source_type
            )
        )
        if (await self.db.execute(check_stmt)).first():
            return AssignmentResult(
                changed=False,
                message=f"Permission set '{permission_set.name}' already assigned to user ({source_type})"
            )

        await self.db.execute(
            insert(user_permission_sets).values(
                user_id=user_id,
                permission_set_id=permission_set_id,
                source_type=source_type
            )
        )
        log.info("Assigned permission set %s to user %s (%s)", permission_set_id, user_id, source_type)
        return AssignmentResult(
            changed=True,
            message=f"Permission set '{permission_set.name}' assigned to user ({source_type})"
        )

    async def unassign_permission_set_from_user(
        self,
        user_id: str,
        permission_set_id: str,
        source_type: str = SOURCE_DIRECT
    ) -> AssignmentResult:
        """Remove a user edge of the given source type only; absent edges are a no-op success."""
        _check_source_type(source_type)
        result = await self.db.execute(
            delete(user_permission_sets).where(
                and_(
                    user_permission_sets.c.user_id == user_id,
                    user_permission_sets.c.permission_set_id == permission_set_id,
                    user_permission_sets.c.source_type == source_type
                )
            )
        )
        if not result.rowcount:
            return AssignmentResult(changed=False, message=f"Permission set was not assigned to user ({source_type})")
        log.info("Unassigned permission set %s from user %s (%s)", permission_set_id, user_id, source_type)
        return AssignmentResult(changed=True, message=f"Permission set removed from user ({source_type})")

    async def replace_direct_permission_sets(self, user_id: str, permission_set_ids: Iterable[str]) -> AssignmentResult:
        """Make the user's direct grants exactly the given permission sets."""
        wanted = list(dict.fromkeys(permission_set_ids))
        for permission_set_id in wanted:
            await self.get_permission_set(permission_set_id)

        current = set(
            (await self.db.execute(
                select(user_permission_sets.c.permission_set_id).where(
                    and_(
                        user_permission_sets.c.user_id == user_id,
                        user_permission_sets.c.source_type == SOURCE_DIRECT
                    )
                )
            )).scalars().all()
        )

        removed = current - set(wanted)
        added = [ps_id for ps_id in wanted if ps_id not in current]
        for permission_set_id in removed:
            await self.unassign_permission_set_from_user(user_id, permission_set_id, SOURCE_DIRECT)
        for permission_set_id in added:
            await self.assign_permission_set_to_user(user_id, permission_set_id, SOURCE_DIRECT)

        changed = bool(removed or added)
        return AssignmentResult(
            changed=changed,
            message=f"Direct permission sets updated ({len(added)} added, {len(removed)} removed)"
            if changed else "Direct permission sets unchanged"
        )


def _check_source_type(source_type: str) -> None:
    if source_type not in SOURCE_TYPES:
        raise ValueError(f"Unknown source type '{source_type}', expected one of {', '.join(SOURCE_TYPES)}")
