"""Assignment resolution, effective access and profile maintenance."""

import pytest
import pytest_asyncio
from sqlalchemy import select, and_

from app.core.exceptions import DependencyBlocked, NotFound
from app.features.access.resolver import AssignmentResolver
from app.features.permission_sets.models import user_permission_sets
from app.features.permission_sets.schemas import FieldFlags, FieldFlagsUpdate, TableFlags, TableFlagsUpdate
from app.features.permission_sets.service import DeletePolicy, GrantStore
from app.features.profiles.service import ProfileService


def as_pairs(entries):
    return [(entry.name, entry.source_type) for entry in entries]


async def stored_profile_rows(db, user_id):
    rows = await db.execute(
        select(user_permission_sets.c.permission_set_id).where(
            and_(
                user_permission_sets.c.user_id == user_id,
                user_permission_sets.c.source_type == "profile"
            )
        )
    )
    return set(rows.scalars().all())


@pytest_asyncio.fixture
async def catalog(store: GrantStore, profile_service: ProfileService):
    """Manager carries {A, B}, Viewer carries {D}; C is granted directly."""
    sets = {name: await store.create_permission_set(name) for name in ("A", "B", "C", "D")}
    manager = await profile_service.create_profile("Manager")
    viewer = await profile_service.create_profile("Viewer")
    await store.assign_permission_set_to_profile(manager.id, sets["A"].id)
    await store.assign_permission_set_to_profile(manager.id, sets["B"].id)
    await store.assign_permission_set_to_profile(viewer.id, sets["D"].id)
    return {"sets": sets, "manager": manager, "viewer": viewer}


class TestEffectivePermissionSets:

    async def test_manager_viewer_scenario(self, store: GrantStore, resolver: AssignmentResolver, catalog):
        sets = catalog["sets"]
        await resolver.reassign_profile("U", catalog["manager"].id)
        await store.assign_permission_set_to_user("U", sets["C"].id)

        assert as_pairs(await resolver.effective_permission_sets("U")) == [
            ("A", "profile"), ("B", "profile"), ("C", "direct"),
        ]

        await resolver.reassign_profile("U", catalog["viewer"].id)

        assert as_pairs(await resolver.effective_permission_sets("U")) == [
            ("D", "profile"), ("C", "direct"),
        ]

    async def test_same_set_through_both_sources_is_listed_twice(
        self, store: GrantStore, resolver: AssignmentResolver, catalog
    ):
        a = catalog["sets"]["A"]
        await resolver.reassign_profile("U", catalog["manager"].id)
        await store.assign_permission_set_to_user("U", a.id)

        entries = await resolver.effective_permission_sets("U")
        assert [e.source_type for e in entries if e.permission_set_id == a.id] == ["profile", "direct"]
        assert await resolver.has_permission_set("U", a.id)
        assert not await resolver.has_permission_set("U", catalog["sets"]["D"].id)

    async def test_user_without_assignments(self, resolver: AssignmentResolver):
        assert await resolver.effective_permission_sets("nobody") == []

    async def test_reassign_to_unknown_profile(self, resolver: AssignmentResolver):
        with pytest.raises(NotFound):
            await resolver.reassign_profile("U", "01HNOPE0000000000000000000")


class TestSync:

    async def test_sync_rewrites_profile_rows_only(
        self, store: GrantStore, resolver: AssignmentResolver, db_session, catalog
    ):
        sets = catalog["sets"]
        await resolver.reassign_profile("U", catalog["manager"].id)
        await store.assign_permission_set_to_user("U", sets["C"].id)
        assert await stored_profile_rows(db_session, "U") == {sets["A"].id, sets["B"].id}

        result = await resolver.reassign_profile("U", catalog["viewer"].id)

        assert result.changed is True
        assert await stored_profile_rows(db_session, "U") == {sets["D"].id}
        direct = (await db_session.execute(
            select(user_permission_sets.c.permission_set_id).where(
                and_(user_permission_sets.c.user_id == "U", user_permission_sets.c.source_type == "direct")
            )
        )).scalars().all()
        assert direct == [sets["C"].id]

    async def test_profile_change_reaches_members(
        self, store: GrantStore, resolver: AssignmentResolver, db_session, catalog
    ):
        sets = catalog["sets"]
        await resolver.reassign_profile("U1", catalog["manager"].id)
        await resolver.reassign_profile("U2", catalog["manager"].id)

        await store.unassign_permission_set_from_profile(catalog["manager"].id, sets["B"].id)
        synced = await resolver.sync_profile_members(catalog["manager"].id)

        assert synced == 2
        assert await stored_profile_rows(db_session, "U1") == {sets["A"].id}
        assert await stored_profile_rows(db_session, "U2") == {sets["A"].id}

    async def test_sync_returns_display_names(self, resolver: AssignmentResolver, catalog):
        await resolver.reassign_profile("U", catalog["manager"].id)
        assert await resolver.sync_user("U") == ["A", "B"]


class TestEffectiveFieldAccess:

    async def test_masked_then_ored_across_sets(self, store: GrantStore, resolver: AssignmentResolver, catalog):
        sets = catalog["sets"]
        # A: orders readable, total editable
        a_orders = await store.attach_table(sets["A"].id, "orders", TableFlags(can_read=True, can_update=True))
        total = await store.get_field_access_by_name(sets["A"].id, "orders", "total")
        await store.update_field_flags(total.id, FieldFlagsUpdate(can_edit=True))
        # C: orders readable only
        await store.attach_table(sets["C"].id, "orders", TableFlags(can_read=True))

        await store.assign_permission_set_to_user("U", sets["C"].id)
        assert await resolver.effective_field_access("U", "orders", "total") == FieldFlags(can_view=True, can_edit=False)

        await resolver.reassign_profile("U", catalog["manager"].id)
        assert await resolver.effective_field_access("U", "orders", "total") == FieldFlags(can_view=True, can_edit=True)

        # Turning UPDATE off on A removes the only source of edit
        await store.update_table_flags(a_orders.table.id, TableFlagsUpdate(can_update=False))
        assert await resolver.effective_field_access("U", "orders", "total") == FieldFlags(can_view=True, can_edit=False)

    async def test_no_grant_means_no_access(self, store: GrantStore, resolver: AssignmentResolver, catalog):
        await store.assign_permission_set_to_user("U", catalog["sets"]["C"].id)
        assert await resolver.effective_field_access("U", "orders", "total") == FieldFlags(can_view=False, can_edit=False)

    async def test_table_access_and_summary(self, store: GrantStore, resolver: AssignmentResolver, catalog):
        sets = catalog["sets"]
        await store.attach_table(sets["C"].id, "orders", TableFlags(can_read=True))
        await store.attach_table(sets["D"].id, "orders", TableFlags(can_create=True))
        await store.attach_table(sets["D"].id, "customers", TableFlags(can_read=True))
        await store.assign_permission_set_to_user("U", sets["C"].id)
        await resolver.reassign_profile("U", catalog["viewer"].id)

        orders = await resolver.effective_table_access("U", "orders")
        assert orders == TableFlags(can_create=True, can_read=True)

        summary = await resolver.effective_access_summary("U")
        assert sorted(summary) == ["customers", "orders"]
        assert summary["orders"].fields["total"] == FieldFlags(can_view=True, can_edit=False)
        assert summary["customers"].fields["email"] == FieldFlags(can_view=True, can_edit=False)


class TestProfileMaintenance:

    async def test_delete_profile_cascades(
        self, profile_service: ProfileService, resolver: AssignmentResolver, store: GrantStore, db_session, catalog
    ):
        sets = catalog["sets"]
        manager_id = catalog["manager"].id
        await resolver.reassign_profile("U", manager_id)
        await store.assign_permission_set_to_user("U", sets["C"].id)

        report = await profile_service.delete_profile(manager_id)

        assert report.permission_sets_unassigned == 2
        assert report.users_unassigned == 1
        assert await profile_service.get_user_profile("U") is None
        assert as_pairs(await resolver.effective_permission_sets("U")) == [("C", "direct")]
        assert await stored_profile_rows(db_session, "U") == set()

    async def test_delete_profile_blocked(self, profile_service: ProfileService, catalog):
        with pytest.raises(DependencyBlocked):
            await profile_service.delete_profile(catalog["manager"].id, DeletePolicy.BLOCK)

    async def test_purge_user_removes_every_edge(
        self, profile_service: ProfileService, resolver: AssignmentResolver, store: GrantStore, catalog
    ):
        await resolver.reassign_profile("U", catalog["manager"].id)
        await store.assign_permission_set_to_user("U", catalog["sets"]["C"].id)

        report = await profile_service.purge_user("U")

        assert report.direct_removed == 1
        assert report.profile_derived_removed == 2
        assert report.profile_cleared is True
        assert report.local_user_deleted is False
        assert await resolver.effective_permission_sets("U") == []

    async def test_set_same_profile_twice_is_informational(self, profile_service: ProfileService, catalog):
        first = await profile_service.set_user_profile("U", catalog["viewer"].id)
        second = await profile_service.set_user_profile("U", catalog["viewer"].id)
        assert first.changed is True
        assert second.changed is False
