"""
FastAPI dependencies for the assignment resolver.
"""
from typing import Annotated
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.access.resolver import AssignmentResolver
from app.features.profiles.dependencies import get_profile_service
from app.features.profiles.service import ProfileService


def get_resolver(
    db: Annotated[AsyncSession, Depends(get_db)],
    profiles: Annotated[ProfileService, Depends(get_profile_service)]
) -> AssignmentResolver:
    return AssignmentResolver(db, profiles=profiles)
