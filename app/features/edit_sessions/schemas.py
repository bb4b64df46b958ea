"""
Pydantic schemas for committing a batch of staged edits over HTTP.
"""
from typing import List, Literal, Optional
from pydantic import BaseModel, Field, model_validator

from app.features.edit_sessions.session import CommitReport
from app.features.permission_sets.schemas import TableFlags, TableFlagsUpdate, FieldFlagsUpdate


# Request fields each op needs besides its own name
REQUIRED_FIELDS = {
    "attach_table": ("permission_set_id", "table_name"),
    "detach_table": ("permission_set_id", "table_name"),
    "update_table_flags": ("permission_set_id", "table_name", "table_flags"),
    "update_field_flags": ("permission_set_id", "table_name", "field_name", "field_flags"),
    "assign_profile_permission_set": ("profile_id", "permission_set_id"),
    "unassign_profile_permission_set": ("profile_id", "permission_set_id"),
    "assign_user_permission_set": ("user_id", "permission_set_id"),
    "unassign_user_permission_set": ("user_id", "permission_set_id"),
}


class StagedOpRequest(BaseModel):
    """One edit, as queued by the admin UI."""
    op: Literal[
        "attach_table",
        "detach_table",
        "update_table_flags",
        "update_field_flags",
        "assign_profile_permission_set",
        "unassign_profile_permission_set",
        "assign_user_permission_set",
        "unassign_user_permission_set",
    ]
    permission_set_id: str
    table_name: Optional[str] = None
    field_name: Optional[str] = None
    profile_id: Optional[str] = None
    user_id: Optional[str] = None
    table_flags: Optional[TableFlagsUpdate] = None
    field_flags: Optional[FieldFlagsUpdate] = None

    @model_validator(mode="after")
    def required_fields_present(self) -> "StagedOpRequest":
        missing = [name for name in REQUIRED_FIELDS[self.op] if getattr(self, name) is None]
        if missing:
            raise ValueError(f"{self.op} requires {', '.join(missing)}")
        return self

    def attach_flags(self) -> TableFlags:
        """Attach flags; a bare attach grants read only."""
        if self.table_flags is None:
            return TableFlags(can_read=True)
        return TableFlags(**self.table_flags.model_dump(exclude_none=True))


class CommitRequest(BaseModel):
    ops: List[StagedOpRequest] = Field(..., min_length=1)


class CommitResponse(BaseModel):
    staged: int = Field(..., description="Ops left after coalescing")
    report: CommitReport
