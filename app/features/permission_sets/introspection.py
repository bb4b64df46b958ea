"""
Schema introspection for granted tables.

Attaching a table to a permission set creates one field grant per physical
column, so the grant store needs the column list of the target table.
"""
from typing import List, Optional, Protocol
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncSession

from app.core import config
from app.core.database.base import Base
from app.core.exceptions import NotFound


class SchemaIntrospector(Protocol):
    """Enumerates tables and columns of the managed schema."""

    async def list_tables(self) -> List[str]:
        ...

    async def list_columns(self, table_name: str) -> List[str]:
        """Column names in ordinal order. Raises NotFound for unknown tables."""
        ...


class DatabaseSchemaIntrospector:
    """
    Introspector backed by SQLAlchemy's Inspector on the session's connection.

    Reads happen inside the caller's transaction, so a table created earlier
    in the same transaction is visible.
    """

    def __init__(self, db: AsyncSession, schema: Optional[str] = None):
        self.db = db
        self.schema = schema if schema is not None else config.MANAGED_SCHEMA

    async def list_tables(self) -> List[str]:
        """Managed tables, excluding the grant store's own tables."""
        internal = set(Base.metadata.tables)

        def _tables(session) -> List[str]:
            return inspect(session.connection()).get_table_names(schema=self.schema)

        names = await self.db.run_sync(_tables)
        return sorted(name for name in names if name not in internal)

    async def list_columns(self, table_name: str) -> List[str]:
        if table_name in Base.metadata.tables:
            raise NotFound("Table", table_name, {"schema": self.schema, "reason": "internal table"})

        def _columns(session) -> Optional[List[str]]:
            inspector = inspect(session.connection())
            if not inspector.has_table(table_name, schema=self.schema):
                return None
            return [column["name"] for column in inspector.get_columns(table_name, schema=self.schema)]

        columns = await self.db.run_sync(_columns)
        if columns is None:
            raise NotFound("Table", table_name, {"schema": self.schema})
        return columns
