"""
FastAPI dependencies for the profile store.
"""
from typing import Annotated
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.audit.sink import DatabaseAuditSink
from app.features.permission_sets.dependencies import get_audit_sink
from app.features.profiles.service import ProfileService


def get_profile_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    audit: Annotated[DatabaseAuditSink, Depends(get_audit_sink)]
) -> ProfileService:
    return ProfileService(db, audit=audit)
