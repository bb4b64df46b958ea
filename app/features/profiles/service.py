"""
Profile store: profiles, the user-to-profile edge, and user purge.

Same transactional contract as the grant store: flush, never commit.
"""
from typing import List, Optional
from sqlalchemy import select, delete, insert, update, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFound, Conflict, DependencyBlocked
from app.features.audit.sink import AuditSink
from app.features.permission_sets.models import (
    PermissionSet,
    profile_permission_sets,
    user_permission_sets,
    SOURCE_DIRECT,
    SOURCE_PROFILE,
)
from app.features.permission_sets.schemas import AssignmentResult
from app.features.permission_sets.service import DeletePolicy
from app.features.profiles.models import Profile, user_profiles
from app.features.profiles.schemas import ProfileDeleteReport, UserPurgeReport
from app.features.users.models import User
from app.utils import get_logger


log = get_logger(__name__)


class ProfileService:

    def __init__(self, db: AsyncSession, audit: Optional[AuditSink] = None):
        self.db = db
        self.audit = audit or AuditSink()

    async def get_profile(self, profile_id: str) -> Profile:
        profile = await self.db.get(Profile, profile_id)
        if profile is None:
            raise NotFound("Profile", profile_id)
        return profile

    async def create_profile(self, name: str, description: Optional[str] = None) -> Profile:
        existing = await self.db.execute(select(Profile.id).where(Profile.name == name))
        if existing.first():
            raise Conflict(f"Profile '{name}' already exists", {"name": name})

        profile = Profile(name=name, description=description)
        self.db.add(profile)
        await self.db.flush()
        log.info("Created profile %s (%s)", profile.id, name)
        return profile

    async def update_profile(
        self,
        profile_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None
    ) -> Profile:
        profile = await self.get_profile(profile_id)
        if name is not None and name != profile.name:
            clash = await self.db.execute(
                select(Profile.id).where(and_(Profile.name == name, Profile.id != profile_id))
            )
            if clash.first():
                raise Conflict(f"Profile '{name}' already exists", {"name": name})
            profile.name = name
        if description is not None:
            profile.description = description
        await self.db.flush()
        return profile

    async def list_profiles(self, skip: int = 0, limit: int = 100, search: Optional[str] = None) -> List[Profile]:
        stmt = select(Profile)
        if search:
            stmt = stmt.where(Profile.name.ilike(f"%{search}%"))
        stmt = stmt.order_by(Profile.name).offset(skip).limit(limit)
        return list((await self.db.execute(stmt)).scalars().all())

    async def list_profile_permission_sets(self, profile_id: str) -> List[PermissionSet]:
        await self.get_profile(profile_id)
        stmt = (
            select(PermissionSet)
            .join(profile_permission_sets, profile_permission_sets.c.permission_set_id == PermissionSet.id)
            .where(profile_permission_sets.c.profile_id == profile_id)
            .order_by(PermissionSet.name)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def list_profile_users(self, profile_id: str) -> List[str]:
        stmt = (
            select(user_profiles.c.user_id)
            .where(user_profiles.c.profile_id == profile_id)
            .order_by(user_profiles.c.user_id)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def get_user_profile(self, user_id: str) -> Optional[Profile]:
        stmt = (
            select(Profile)
            .join(user_profiles, user_profiles.c.profile_id == Profile.id)
            .where(user_profiles.c.user_id == user_id)
        )
        return (await self.db.execute(stmt)).scalars().first()

    async def set_user_profile(self, user_id: str, profile_id: str) -> AssignmentResult:
        """
        Make profile_id the user's single active profile.

        Only the edge is written here; the user's profile-derived permission
        set rows are refreshed by AssignmentResolver.sync_user.
        """
        profile = await self.get_profile(profile_id)
        current = await self.db.scalar(
            select(user_profiles.c.profile_id).where(user_profiles.c.user_id == user_id)
        )
        if current == profile_id:
            return AssignmentResult(changed=False, message=f"User already has profile '{profile.name}'")

        if current is None:
            await self.db.execute(insert(user_profiles).values(user_id=user_id, profile_id=profile_id))
        else:
            await self.db.execute(
                update(user_profiles)
                .where(user_profiles.c.user_id == user_id)
                .values(profile_id=profile_id, assigned_at=func.now())
            )
        log.info("User %s profile %s -> %s", user_id, current, profile_id)
        return AssignmentResult(changed=True, message=f"Profile '{profile.name}' assigned to user")

    async def clear_user_profile(self, user_id: str) -> AssignmentResult:
        result = await self.db.execute(delete(user_profiles).where(user_profiles.c.user_id == user_id))
        if not result.rowcount:
            return AssignmentResult(changed=False, message="User had no profile")
        log.info("Cleared profile of user %s", user_id)
        return AssignmentResult(changed=True, message="Profile removed from user")

    async def delete_profile(self, profile_id: str, policy: DeletePolicy = DeletePolicy.CASCADE) -> ProfileDeleteReport:
        """
        Delete a profile after removing its edges.

        Members lose their profile and their profile-derived permission set
        rows; their direct grants stay.

        Raises:
            NotFound: unknown profile
            DependencyBlocked: policy is BLOCK and the profile has permission sets or members
        """
        profile = await self.get_profile(profile_id)
        name = profile.name
        members = await self.list_profile_users(profile_id)
        permission_set_count = await self.db.scalar(
            select(func.count()).select_from(profile_permission_sets)
            .where(profile_permission_sets.c.profile_id == profile_id)
        ) or 0

        if policy == DeletePolicy.BLOCK and (members or permission_set_count):
            raise DependencyBlocked(
                f"Profile '{name}' is still in use",
                {"permission_sets_assigned": permission_set_count, "users_assigned": len(members)}
            )

        if members:
            await self.db.execute(
                delete(user_permission_sets).where(
                    and_(
                        user_permission_sets.c.user_id.in_(members),
                        user_permission_sets.c.source_type == SOURCE_PROFILE
                    )
                )
            )
        await self.db.execute(delete(user_profiles).where(user_profiles.c.profile_id == profile_id))
        await self.db.execute(
            delete(profile_permission_sets).where(profile_permission_sets.c.profile_id == profile_id)
        )
        await self.db.delete(profile)
        await self.db.flush()

        report = ProfileDeleteReport(
            profile_id=profile_id,
            name=name,
            permission_sets_unassigned=permission_set_count,
            users_unassigned=len(members),
        )
        log.info(
            "Deleted profile %s: %d permission sets and %d users unassigned",
            profile_id, report.permission_sets_unassigned, report.users_unassigned
        )
        self.audit.record(
            "delete", "profile", profile_id,
            name=name,
            permission_sets_unassigned=report.permission_sets_unassigned,
            users_unassigned=report.users_unassigned,
        )
        return report

    async def purge_user(self, user_id: str) -> UserPurgeReport:
        """Remove every assignment edge of a user, then the local user row if one exists."""
        direct = await self.db.execute(
            delete(user_permission_sets).where(
                and_(user_permission_sets.c.user_id == user_id, user_permission_sets.c.source_type == SOURCE_DIRECT)
            )
        )
        derived = await self.db.execute(
            delete(user_permission_sets).where(
                and_(user_permission_sets.c.user_id == user_id, user_permission_sets.c.source_type == SOURCE_PROFILE)
            )
        )
        cleared = await self.db.execute(delete(user_profiles).where(user_profiles.c.user_id == user_id))

        local_user = (await self.db.execute(select(User).where(User.appwrite_id == user_id))).scalars().first()
        if local_user is not None:
            await self.db.delete(local_user)
        await self.db.flush()

        report = UserPurgeReport(
            user_id=user_id,
            direct_removed=direct.rowcount,
            profile_derived_removed=derived.rowcount,
            profile_cleared=bool(cleared.rowcount),
            local_user_deleted=local_user is not None,
        )
        self.audit.record(
            "purge", "user", user_id,
            direct_removed=report.direct_removed,
            profile_derived_removed=report.profile_derived_removed,
            profile_cleared=report.profile_cleared,
        )
        return report
