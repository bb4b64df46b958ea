"""
Pydantic schemas for effective access.
"""
from typing import Dict, List
from pydantic import BaseModel, Field

from app.features.permission_sets.schemas import TableFlags, FieldFlags


class EffectivePermissionSet(BaseModel):
    """One permission set reaching a user, tagged with how it reaches them."""
    permission_set_id: str
    name: str
    source_type: str


class EffectivePermissionSetsResponse(BaseModel):
    user_id: str
    profile_id: str | None = None
    permission_sets: List[EffectivePermissionSet]


class EffectiveTableAccess(BaseModel):
    """Effective CRUD flags on one table and the effective flags of each of its fields."""
    table_name: str
    permissions: TableFlags
    fields: Dict[str, FieldFlags] = Field(default_factory=dict)


class EffectiveFieldAccessResponse(BaseModel):
    user_id: str
    table_name: str
    field_name: str
    can_view: bool
    can_edit: bool


class EffectiveAccessSummary(BaseModel):
    """Everything a user can reach, keyed by table name."""
    user_id: str
    tables: Dict[str, EffectiveTableAccess]


class SyncResponse(BaseModel):
    """Permission set names shown for a user after a profile-derived refresh."""
    user_id: str
    permission_set_names: List[str]


class ReplaceDirectPermissionSets(BaseModel):
    permission_set_ids: List[str]


class AssignDirectPermissionSet(BaseModel):
    permission_set_id: str


class ProfileAssignmentResponse(BaseModel):
    """Outcome of setting or clearing a user's profile, with the refreshed set names."""
    changed: bool
    message: str
    permission_set_names: List[str]
