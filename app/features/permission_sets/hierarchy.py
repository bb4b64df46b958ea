"""
Table/field hierarchy rules.

Pure decision logic, no I/O. The grant store loads the current rows, asks
these functions what the consistent result is, and writes it.

Rules:
- a field can only be edited if it can be viewed;
- a field's view is only effective while the table grants READ;
- a field's edit is only effective while the table grants READ and UPDATE.

Stored flags are kept consistent by cascading table changes onto fields, and
effective reads additionally mask stored flags with the table flags.
"""
from typing import Iterable, List, Mapping

from app.core.exceptions import InvalidTransition
from app.features.permission_sets.schemas import (
    TableFlags,
    TableFlagsUpdate,
    FieldFlags,
    FieldFlagsUpdate,
    FieldMutation,
)


def merge_table_flags(current: TableFlags, update: TableFlagsUpdate) -> TableFlags:
    """Apply a partial table change."""
    return current.model_copy(update=update.model_dump(exclude_none=True))


def default_field_flags(table: TableFlags) -> FieldFlags:
    """Flags for a newly granted column: visible when the table is readable, never editable."""
    return FieldFlags(can_view=table.can_read, can_edit=False)


def cascade_table_change(
    current: TableFlags,
    proposed: TableFlags,
    fields: Mapping[str, FieldFlags]
) -> List[FieldMutation]:
    """
    Derive the field rows that must change when table flags change.

    Args:
        current: Table flags as stored
        proposed: Table flags after the change
        fields: Stored flags of every field under the table, by FieldAccess id

    Returns:
        One mutation per field whose flags change; unchanged fields are omitted.

    READ true->false turns view and edit off. UPDATE true->false turns edit
    off. READ false->true resets fields to their defaults, since the earlier
    READ revocation already overwrote whatever they held.
    """
    read_lost = current.can_read and not proposed.can_read
    read_gained = not current.can_read and proposed.can_read
    update_lost = current.can_update and not proposed.can_update

    mutations: List[FieldMutation] = []
    for field_id, flags in fields.items():
        view, edit = flags.can_view, flags.can_edit
        if read_lost:
            view, edit = False, False
        elif read_gained:
            defaults = default_field_flags(proposed)
            view, edit = defaults.can_view, defaults.can_edit
        if update_lost:
            edit = False
        if (view, edit) != (flags.can_view, flags.can_edit):
            mutations.append(FieldMutation(field_access_id=field_id, can_view=view, can_edit=edit))
    return mutations


def update_revokes_field_access(update: TableFlagsUpdate) -> bool:
    """
    True when a table change can rewrite field rows.

    Pending field edits made before such a change are stale and must be
    re-derived from stored state.
    """
    return update.can_read is not None or update.can_update is False


def resolve_field_change(
    table: TableFlags,
    current: FieldFlags,
    update: FieldFlagsUpdate
) -> FieldFlags:
    """
    Validate a field change against its table and return the flags to store.

    Raises:
        InvalidTransition: edit requested without view, or view/edit enabled
            beyond what the table grants
    """
    view = current.can_view if update.can_view is None else update.can_view
    edit = current.can_edit if update.can_edit is None else update.can_edit

    if update.can_edit and not view:
        raise InvalidTransition(
            "Edit access requires view access",
            {"can_view": view, "can_edit": True}
        )
    if not view:
        edit = False

    if view and not current.can_view and not table.can_read:
        raise InvalidTransition(
            "Cannot grant view on a field while the table has no read access",
            {"table": table.model_dump()}
        )
    if edit and not current.can_edit and not (table.can_read and table.can_update):
        raise InvalidTransition(
            "Cannot grant edit on a field while the table lacks read and update access",
            {"table": table.model_dump()}
        )

    return FieldFlags(can_view=view, can_edit=edit)


def mask_field_flags(table: TableFlags, field: FieldFlags) -> FieldFlags:
    """Effective field flags: stored flags limited by the table's READ and UPDATE."""
    view = field.can_view and table.can_read
    edit = field.can_edit and view and table.can_update
    return FieldFlags(can_view=view, can_edit=edit)


def union_field_flags(flags: Iterable[FieldFlags]) -> FieldFlags:
    """OR field flags contributed by several permission sets."""
    view = edit = False
    for f in flags:
        view = view or f.can_view
        edit = edit or f.can_edit
    return FieldFlags(can_view=view, can_edit=edit)


def union_table_flags(flags: Iterable[TableFlags]) -> TableFlags:
    """OR table flags contributed by several permission sets."""
    merged = dict(can_create=False, can_read=False, can_update=False, can_delete=False)
    for f in flags:
        for key, value in f.model_dump().items():
            merged[key] = merged[key] or value
    return TableFlags(**merged)
