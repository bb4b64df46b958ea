"""
Pydantic schemas for profiles and user-profile assignment.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.features.permission_sets.schemas import PermissionSetResponse


class ProfileBase(BaseModel):
    """Base profile schema."""
    name: str = Field(..., min_length=2, max_length=100, description="Unique profile name")
    description: Optional[str] = Field(None, description="Profile description")

    @field_validator("name")
    @classmethod
    def name_trimmed(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Profile name must be at least 2 characters")
        return v


class ProfileCreate(ProfileBase):
    """Schema for creating a profile."""
    pass


class ProfileUpdate(BaseModel):
    """Schema for updating a profile."""
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = None

    @field_validator("name")
    @classmethod
    def name_trimmed(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Profile name must be at least 2 characters")
        return v


class ProfileResponse(ProfileBase):
    """Schema for profile response."""
    id: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ProfileWithPermissionSets(ProfileResponse):
    """Schema for a profile with its permission sets."""
    permission_sets: List[PermissionSetResponse] = []


class ProfileUsersResponse(BaseModel):
    """Users currently holding a profile."""
    profile_id: str
    user_ids: List[str]


class AssignPermissionSetToProfile(BaseModel):
    """Schema for assigning a permission set to a profile."""
    permission_set_id: str


class SetUserProfile(BaseModel):
    """Schema for setting a user's profile."""
    profile_id: str


# ============================================================================
# Reports
# ============================================================================

class ProfileDeleteReport(BaseModel):
    """Dependent rows removed by a profile delete."""
    profile_id: str
    name: str
    permission_sets_unassigned: int
    users_unassigned: int


class UserPurgeReport(BaseModel):
    """Assignment edges removed when a user is purged."""
    user_id: str
    direct_removed: int
    profile_derived_removed: int
    profile_cleared: bool
    local_user_deleted: bool
