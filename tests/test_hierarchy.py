"""Table/field hierarchy rules."""

import pytest

from app.core.exceptions import InvalidTransition
from app.features.permission_sets import hierarchy
from app.features.permission_sets.schemas import (
    TableFlags,
    TableFlagsUpdate,
    FieldFlags,
    FieldFlagsUpdate,
)


READ_ONLY = TableFlags(can_read=True)
READ_UPDATE = TableFlags(can_read=True, can_update=True)
NO_ACCESS = TableFlags()


class TestCascadeTableChange:

    def test_read_revoked_clears_view_and_edit(self):
        fields = {
            "f1": FieldFlags(can_view=True, can_edit=True),
            "f2": FieldFlags(can_view=True, can_edit=False),
            "f3": FieldFlags(can_view=False, can_edit=False),
        }
        mutations = hierarchy.cascade_table_change(READ_UPDATE, NO_ACCESS, fields)

        assert {m.field_access_id for m in mutations} == {"f1", "f2"}
        assert all(not m.can_view and not m.can_edit for m in mutations)

    def test_update_revoked_clears_edit_only(self):
        fields = {
            "f1": FieldFlags(can_view=True, can_edit=True),
            "f2": FieldFlags(can_view=True, can_edit=False),
        }
        mutations = hierarchy.cascade_table_change(READ_UPDATE, READ_ONLY, fields)

        assert len(mutations) == 1
        assert mutations[0].field_access_id == "f1"
        assert mutations[0].can_view is True
        assert mutations[0].can_edit is False

    def test_read_regained_resets_fields_to_defaults(self):
        fields = {"f1": FieldFlags(can_view=False, can_edit=False)}
        mutations = hierarchy.cascade_table_change(NO_ACCESS, READ_ONLY, fields)

        assert len(mutations) == 1
        assert (mutations[0].can_view, mutations[0].can_edit) == (True, False)

    def test_unrelated_flag_change_touches_nothing(self):
        fields = {"f1": FieldFlags(can_view=True, can_edit=True)}
        proposed = TableFlags(can_read=True, can_update=True, can_delete=True, can_create=True)

        assert hierarchy.cascade_table_change(READ_UPDATE, proposed, fields) == []


class TestResolveFieldChange:

    def test_edit_without_view_in_same_write_is_rejected(self):
        with pytest.raises(InvalidTransition):
            hierarchy.resolve_field_change(
                READ_UPDATE,
                FieldFlags(can_view=True, can_edit=False),
                FieldFlagsUpdate(can_view=False, can_edit=True),
            )

    def test_view_off_forces_edit_off(self):
        result = hierarchy.resolve_field_change(
            READ_UPDATE,
            FieldFlags(can_view=True, can_edit=True),
            FieldFlagsUpdate(can_view=False),
        )
        assert result == FieldFlags(can_view=False, can_edit=False)

    def test_edit_requires_table_update(self):
        with pytest.raises(InvalidTransition) as exc_info:
            hierarchy.resolve_field_change(READ_ONLY, FieldFlags(), FieldFlagsUpdate(can_edit=True))
        assert exc_info.value.status_code == 422

    def test_edit_allowed_with_read_and_update(self):
        result = hierarchy.resolve_field_change(READ_UPDATE, FieldFlags(), FieldFlagsUpdate(can_edit=True))
        assert result == FieldFlags(can_view=True, can_edit=True)

    def test_view_requires_table_read(self):
        with pytest.raises(InvalidTransition):
            hierarchy.resolve_field_change(
                NO_ACCESS,
                FieldFlags(can_view=False, can_edit=False),
                FieldFlagsUpdate(can_view=True),
            )

    def test_revoking_is_always_allowed(self):
        result = hierarchy.resolve_field_change(
            NO_ACCESS,
            FieldFlags(can_view=True, can_edit=False),
            FieldFlagsUpdate(can_view=False),
        )
        assert result == FieldFlags(can_view=False, can_edit=False)


class TestEffectiveFlags:

    def test_mask_hides_stored_flags_when_table_lacks_access(self):
        stored = FieldFlags(can_view=True, can_edit=True)

        assert hierarchy.mask_field_flags(NO_ACCESS, stored) == FieldFlags(can_view=False, can_edit=False)
        assert hierarchy.mask_field_flags(READ_ONLY, stored) == FieldFlags(can_view=True, can_edit=False)
        assert hierarchy.mask_field_flags(READ_UPDATE, stored) == stored

    def test_union_ors_flags(self):
        merged = hierarchy.union_field_flags([
            FieldFlags(can_view=True, can_edit=False),
            FieldFlags(can_view=False, can_edit=False),
            FieldFlags(can_view=True, can_edit=True),
        ])
        assert merged == FieldFlags(can_view=True, can_edit=True)

    def test_union_of_nothing_is_no_access(self):
        assert hierarchy.union_field_flags([]) == FieldFlags(can_view=False, can_edit=False)
        assert hierarchy.union_table_flags([]) == NO_ACCESS

    def test_merge_table_flags_keeps_unset_flags(self):
        merged = hierarchy.merge_table_flags(READ_ONLY, TableFlagsUpdate(can_delete=True))
        assert merged == TableFlags(can_read=True, can_delete=True)

    def test_default_field_flags_follow_table_read(self):
        assert hierarchy.default_field_flags(READ_ONLY) == FieldFlags(can_view=True, can_edit=False)
        assert hierarchy.default_field_flags(NO_ACCESS) == FieldFlags(can_view=False, can_edit=False)

    def test_update_revokes_field_access(self):
        assert hierarchy.update_revokes_field_access(TableFlagsUpdate(can_read=False))
        assert hierarchy.update_revokes_field_access(TableFlagsUpdate(can_update=False))
        assert not hierarchy.update_revokes_field_access(TableFlagsUpdate(can_update=True))
        assert not hierarchy.update_revokes_field_access(TableFlagsUpdate(can_delete=False))
