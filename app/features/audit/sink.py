"""
Audit sink for cascade counts.

The grant store reports how many dependent rows a cascade touched so the
administrative surface can show "3 profiles unassigned" style confirmations.
The sink is a side channel: the store's result does not depend on it.
"""
from typing import Any, Optional
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.audit.models import AuditLog
from app.utils import get_logger


log = get_logger(__name__)


class AuditSink:
    """Log-only sink, used when no actor or session is available (scripts, tests)."""

    def record(
        self,
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        **details: Any
    ) -> None:
        log.info(
            "Audit: action=%s resource=%s:%s details=%s",
            action, resource_type, resource_id, details
        )


class DatabaseAuditSink(AuditSink):
    """
    Sink that also writes an AuditLog row into the caller's transaction.

    The row is only added to the session; it is persisted by the same commit
    as the change it describes and disappears with it on rollback.
    """

    def __init__(self, db: AsyncSession, actor_id: Optional[str] = None):
        self.db = db
        self.actor_id = actor_id

    def record(
        self,
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        **details: Any
    ) -> None:
        super().record(action, resource_type, resource_id, **details)
        self.db.add(AuditLog(
            actor_id=self.actor_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details or None,
        ))
