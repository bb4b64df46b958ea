"""
Profile management API routes.

Changing which permission sets a profile carries refreshes the
profile-derived grants of every member in the same transaction.
"""
from typing import Annotated, List, Optional
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.access.dependencies import get_resolver
from app.features.access.resolver import AssignmentResolver
from app.features.permission_sets.dependencies import get_grant_store, profile_delete_policy
from app.features.permission_sets.schemas import AssignmentResult, PermissionSetResponse
from app.features.permission_sets.service import GrantStore, DeletePolicy
from app.features.profiles.dependencies import get_profile_service
from app.features.profiles.schemas import (
    ProfileCreate,
    ProfileUpdate,
    ProfileResponse,
    ProfileWithPermissionSets,
    ProfileUsersResponse,
    ProfileDeleteReport,
    AssignPermissionSetToProfile,
)
from app.features.profiles.service import ProfileService
from app.features.users.dependencies import get_current_admin_user


router = APIRouter(dependencies=[Depends(get_current_admin_user)])


@router.post("", response_model=ProfileResponse, status_code=status.HTTP_201_CREATED)
async def create_profile(
    profile: ProfileCreate,
    profiles: Annotated[ProfileService, Depends(get_profile_service)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Create a new profile."""
    db_profile = await profiles.create_profile(profile.name, profile.description)
    await db.refresh(db_profile)
    return db_profile


@router.get("", response_model=List[ProfileResponse])
async def list_profiles(
    profiles: Annotated[ProfileService, Depends(get_profile_service)],
    skip: int = 0,
    limit: int = 100,
    search: Optional[str] = None
):
    """List profiles, optionally filtered by name."""
    return await profiles.list_profiles(skip=skip, limit=limit, search=search)


@router.get("/{profile_id}", response_model=ProfileWithPermissionSets)
async def get_profile(
    profile_id: str,
    profiles: Annotated[ProfileService, Depends(get_profile_service)]
):
    """Get a profile with its permission sets."""
    profile = await profiles.get_profile(profile_id)
    permission_sets = await profiles.list_profile_permission_sets(profile_id)
    return ProfileWithPermissionSets(
        **ProfileResponse.model_validate(profile).model_dump(),
        permission_sets=[PermissionSetResponse.model_validate(ps) for ps in permission_sets],
    )


@router.patch("/{profile_id}", response_model=ProfileResponse)
async def update_profile(
    profile_id: str,
    profile_update: ProfileUpdate,
    profiles: Annotated[ProfileService, Depends(get_profile_service)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Rename a profile or change its description."""
    profile = await profiles.update_profile(
        profile_id,
        name=profile_update.name,
        description=profile_update.description
    )
    await db.refresh(profile)
    return profile


@router.delete("/{profile_id}", response_model=ProfileDeleteReport)
async def delete_profile(
    profile_id: str,
    profiles: Annotated[ProfileService, Depends(get_profile_service)],
    policy: Annotated[DeletePolicy, Depends(profile_delete_policy)]
):
    """Delete a profile; members lose their profile-derived grants."""
    return await profiles.delete_profile(profile_id, policy)


# ============================================================================
# Profile Permission Sets
# ============================================================================

@router.get("/{profile_id}/permission-sets", response_model=List[PermissionSetResponse])
async def list_profile_permission_sets(
    profile_id: str,
    profiles: Annotated[ProfileService, Depends(get_profile_service)]
):
    return await profiles.list_profile_permission_sets(profile_id)


@router.post("/{profile_id}/permission-sets", response_model=AssignmentResult)
async def assign_permission_set(
    profile_id: str,
    assignment: AssignPermissionSetToProfile,
    store: Annotated[GrantStore, Depends(get_grant_store)],
    resolver: Annotated[AssignmentResolver, Depends(get_resolver)]
):
    """Add a permission set to a profile. Already assigned is reported with changed=false."""
    result = await store.assign_permission_set_to_profile(profile_id, assignment.permission_set_id)
    if result.changed:
        await resolver.sync_profile_members(profile_id)
    return result


@router.delete("/{profile_id}/permission-sets/{permission_set_id}", response_model=AssignmentResult)
async def unassign_permission_set(
    profile_id: str,
    permission_set_id: str,
    store: Annotated[GrantStore, Depends(get_grant_store)],
    resolver: Annotated[AssignmentResolver, Depends(get_resolver)]
):
    """Remove a permission set from a profile. Not assigned is reported with changed=false."""
    result = await store.unassign_permission_set_from_profile(profile_id, permission_set_id)
    if result.changed:
        await resolver.sync_profile_members(profile_id)
    return result


@router.get("/{profile_id}/users", response_model=ProfileUsersResponse)
async def list_profile_users(
    profile_id: str,
    profiles: Annotated[ProfileService, Depends(get_profile_service)]
):
    await profiles.get_profile(profile_id)
    return ProfileUsersResponse(profile_id=profile_id, user_ids=await profiles.list_profile_users(profile_id))
