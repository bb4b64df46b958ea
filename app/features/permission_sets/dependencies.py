"""
FastAPI dependencies wiring the grant store into routes.

All of them share the request's session, so one request is one transaction.
"""
from typing import Annotated
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.database.engine import get_db
from app.features.audit.sink import DatabaseAuditSink
from app.features.permission_sets.introspection import DatabaseSchemaIntrospector
from app.features.permission_sets.service import GrantStore, DeletePolicy
from app.features.users.dependencies import get_current_admin_user
from app.features.users.models import User


def get_audit_sink(
    db: Annotated[AsyncSession, Depends(get_db)],
    admin: Annotated[User, Depends(get_current_admin_user)]
) -> DatabaseAuditSink:
    return DatabaseAuditSink(db, actor_id=admin.appwrite_id)


def get_schema_introspector(db: Annotated[AsyncSession, Depends(get_db)]) -> DatabaseSchemaIntrospector:
    return DatabaseSchemaIntrospector(db)


def get_grant_store(
    db: Annotated[AsyncSession, Depends(get_db)],
    introspector: Annotated[DatabaseSchemaIntrospector, Depends(get_schema_introspector)],
    audit: Annotated[DatabaseAuditSink, Depends(get_audit_sink)]
) -> GrantStore:
    return GrantStore(db, introspector=introspector, audit=audit)


def permission_set_delete_policy() -> DeletePolicy:
    return DeletePolicy(config.PERMISSION_SET_DELETE_POLICY)


def profile_delete_policy() -> DeletePolicy:
    return DeletePolicy(config.PROFILE_DELETE_POLICY)
