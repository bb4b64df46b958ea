"""
User feature routes: the signed-in user, and the permission sets, profile
and effective access of any user by identity-provider id.
"""
from typing import Annotated, Optional
from fastapi import APIRouter, Depends

from app.features.access.dependencies import get_resolver
from app.features.access.resolver import AssignmentResolver
from app.features.access.schemas import (
    EffectivePermissionSetsResponse,
    EffectiveAccessSummary,
    EffectiveTableAccess,
    EffectiveFieldAccessResponse,
    SyncResponse,
    ProfileAssignmentResponse,
    AssignDirectPermissionSet,
    ReplaceDirectPermissionSets,
)
from app.features.permission_sets.dependencies import get_grant_store
from app.features.permission_sets.schemas import AssignmentResult, TableFlags
from app.features.permission_sets.service import GrantStore
from app.features.profiles.dependencies import get_profile_service
from app.features.profiles.schemas import ProfileResponse, SetUserProfile, UserPurgeReport
from app.features.profiles.service import ProfileService
from app.features.users.dependencies import get_current_user, get_current_admin_user
from app.features.users.models import User
from app.features.users.schemas import UserResponse


router = APIRouter(tags=["users"])
admin_only = [Depends(get_current_admin_user)]


@router.get("/me", response_model=UserResponse)
async def get_current_user_profile(
    user: Annotated[User, Depends(get_current_user)]
):
    """Get current authenticated user."""
    return user


# ============================================================================
# Permission Sets
# ============================================================================

@router.get("/{user_id}/permission-sets", response_model=EffectivePermissionSetsResponse, dependencies=admin_only)
async def list_user_permission_sets(
    user_id: str,
    resolver: Annotated[AssignmentResolver, Depends(get_resolver)],
    profiles: Annotated[ProfileService, Depends(get_profile_service)]
):
    """Profile-derived and direct permission sets, each tagged with its source."""
    profile = await profiles.get_user_profile(user_id)
    return EffectivePermissionSetsResponse(
        user_id=user_id,
        profile_id=profile.id if profile else None,
        permission_sets=await resolver.effective_permission_sets(user_id),
    )


@router.post("/{user_id}/permission-sets", response_model=AssignmentResult, dependencies=admin_only)
async def assign_direct_permission_set(
    user_id: str,
    assignment: AssignDirectPermissionSet,
    store: Annotated[GrantStore, Depends(get_grant_store)]
):
    return await store.assign_permission_set_to_user(user_id, assignment.permission_set_id)


@router.put("/{user_id}/permission-sets", response_model=AssignmentResult, dependencies=admin_only)
async def replace_direct_permission_sets(
    user_id: str,
    replacement: ReplaceDirectPermissionSets,
    store: Annotated[GrantStore, Depends(get_grant_store)]
):
    """Make the user's direct grants exactly the listed permission sets."""
    return await store.replace_direct_permission_sets(user_id, replacement.permission_set_ids)


@router.delete("/{user_id}/permission-sets/{permission_set_id}", response_model=AssignmentResult, dependencies=admin_only)
async def unassign_direct_permission_set(
    user_id: str,
    permission_set_id: str,
    store: Annotated[GrantStore, Depends(get_grant_store)]
):
    """Remove a direct grant. Profile-derived grants are not affected."""
    return await store.unassign_permission_set_from_user(user_id, permission_set_id)


# ============================================================================
# Profile
# ============================================================================

@router.get("/{user_id}/profile", response_model=Optional[ProfileResponse], dependencies=admin_only)
async def get_user_profile(
    user_id: str,
    profiles: Annotated[ProfileService, Depends(get_profile_service)]
):
    return await profiles.get_user_profile(user_id)


@router.put("/{user_id}/profile", response_model=ProfileAssignmentResponse, dependencies=admin_only)
async def set_user_profile(
    user_id: str,
    assignment: SetUserProfile,
    resolver: Annotated[AssignmentResolver, Depends(get_resolver)]
):
    """Reassign the user's profile; the response lists the refreshed permission set names."""
    result = await resolver.reassign_profile(user_id, assignment.profile_id)
    names = [entry.name for entry in await resolver.effective_permission_sets(user_id)]
    return ProfileAssignmentResponse(changed=result.changed, message=result.message, permission_set_names=names)


@router.delete("/{user_id}/profile", response_model=ProfileAssignmentResponse, dependencies=admin_only)
async def clear_user_profile(
    user_id: str,
    resolver: Annotated[AssignmentResolver, Depends(get_resolver)]
):
    result = await resolver.reassign_profile(user_id, None)
    names = [entry.name for entry in await resolver.effective_permission_sets(user_id)]
    return ProfileAssignmentResponse(changed=result.changed, message=result.message, permission_set_names=names)


# ============================================================================
# Effective Access
# ============================================================================

@router.get("/{user_id}/access", response_model=EffectiveAccessSummary, dependencies=admin_only)
async def get_effective_access(
    user_id: str,
    resolver: Annotated[AssignmentResolver, Depends(get_resolver)]
):
    """Every table and field the user can reach, after masking and merging."""
    return EffectiveAccessSummary(user_id=user_id, tables=await resolver.effective_access_summary(user_id))


@router.get("/{user_id}/access/{table_name}", response_model=EffectiveTableAccess, dependencies=admin_only)
async def get_effective_table_access(
    user_id: str,
    table_name: str,
    resolver: Annotated[AssignmentResolver, Depends(get_resolver)]
):
    summary = await resolver.effective_access_summary(user_id)
    return summary.get(table_name) or EffectiveTableAccess(table_name=table_name, permissions=TableFlags())


@router.get(
    "/{user_id}/access/{table_name}/{field_name}",
    response_model=EffectiveFieldAccessResponse,
    dependencies=admin_only
)
async def get_effective_field_access(
    user_id: str,
    table_name: str,
    field_name: str,
    resolver: Annotated[AssignmentResolver, Depends(get_resolver)]
):
    flags = await resolver.effective_field_access(user_id, table_name, field_name)
    return EffectiveFieldAccessResponse(
        user_id=user_id,
        table_name=table_name,
        field_name=field_name,
        can_view=flags.can_view,
        can_edit=flags.can_edit,
    )


# ============================================================================
# Maintenance
# ============================================================================

@router.post("/{user_id}/sync", response_model=SyncResponse, dependencies=admin_only)
async def sync_user(
    user_id: str,
    resolver: Annotated[AssignmentResolver, Depends(get_resolver)]
):
    """Rewrite the user's profile-derived grants from their current profile."""
    return SyncResponse(user_id=user_id, permission_set_names=await resolver.sync_user(user_id))


@router.delete("/{user_id}/assignments", response_model=UserPurgeReport, dependencies=admin_only)
async def purge_user(
    user_id: str,
    profiles: Annotated[ProfileService, Depends(get_profile_service)]
):
    """Remove every assignment of a user that is being deleted from the identity provider."""
    return await profiles.purge_user(user_id)
