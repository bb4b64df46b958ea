"""
Permission set management API routes.

Tables are attached to permission sets with CRUD flags and their columns
receive view/edit flags. Every route is admin only and runs as one
transaction; the grant store enforces the table/field hierarchy.
"""
from typing import Annotated, List, Optional
from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.core.exceptions import NotFound
from app.features.permission_sets.dependencies import (
    get_grant_store,
    get_schema_introspector,
    permission_set_delete_policy,
)
from app.features.permission_sets.introspection import DatabaseSchemaIntrospector
from app.features.permission_sets.models import TableAccess
from app.features.permission_sets.schemas import (
    PermissionSetCreate,
    PermissionSetUpdate,
    PermissionSetResponse,
    PermissionSetDetail,
    TableAccessResponse,
    TableAccessWithFields,
    FieldAccessResponse,
    TableFlagsUpdate,
    FieldFlagsUpdate,
    AttachTableRequest,
    AttachTableResponse,
    BulkFieldUpdateRequest,
    DetachReport,
    PermissionSetDeleteReport,
    AvailableTablesResponse,
)
from app.features.permission_sets.service import GrantStore, DeletePolicy
from app.features.users.dependencies import get_current_admin_user
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter(dependencies=[Depends(get_current_admin_user)])


async def _owned_table_access(store: GrantStore, permission_set_id: str, table_access_id: str) -> TableAccess:
    table_access = await store.get_table_access(table_access_id)
    if table_access.permission_set_id != permission_set_id:
        raise NotFound("Table access", table_access_id, {"permission_set_id": permission_set_id})
    return table_access


# ============================================================================
# Permission Set Routes
# ============================================================================

@router.post("", response_model=PermissionSetResponse, status_code=status.HTTP_201_CREATED)
async def create_permission_set(
    permission_set: PermissionSetCreate,
    store: Annotated[GrantStore, Depends(get_grant_store)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Create a new permission set."""
    db_permission_set = await store.create_permission_set(permission_set.name, permission_set.description)
    await db.refresh(db_permission_set)
    return db_permission_set


@router.get("", response_model=List[PermissionSetResponse])
async def list_permission_sets(
    store: Annotated[GrantStore, Depends(get_grant_store)],
    skip: int = 0,
    limit: int = 100,
    search: Optional[str] = None
):
    """List permission sets, optionally filtered by name."""
    return await store.list_permission_sets(skip=skip, limit=limit, search=search)


@router.get("/available-tables", response_model=AvailableTablesResponse)
async def list_available_tables(
    introspector: Annotated[DatabaseSchemaIntrospector, Depends(get_schema_introspector)]
):
    """Tables of the managed schema that can be attached."""
    return AvailableTablesResponse(tables=await introspector.list_tables())


@router.get("/{permission_set_id}", response_model=PermissionSetDetail)
async def get_permission_set(
    permission_set_id: str,
    store: Annotated[GrantStore, Depends(get_grant_store)]
):
    """Get a permission set with its tables and fields."""
    permission_set = await store.get_permission_set(permission_set_id)
    tables = await store.list_tables(permission_set_id)
    return PermissionSetDetail(
        **PermissionSetResponse.model_validate(permission_set).model_dump(),
        tables=[TableAccessWithFields.model_validate(t) for t in tables],
    )


@router.patch("/{permission_set_id}", response_model=PermissionSetResponse)
async def update_permission_set(
    permission_set_id: str,
    permission_set_update: PermissionSetUpdate,
    store: Annotated[GrantStore, Depends(get_grant_store)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Rename a permission set or change its description."""
    permission_set = await store.update_permission_set(
        permission_set_id,
        name=permission_set_update.name,
        description=permission_set_update.description
    )
    await db.refresh(permission_set)
    return permission_set


@router.delete("/{permission_set_id}", response_model=PermissionSetDeleteReport)
async def delete_permission_set(
    permission_set_id: str,
    store: Annotated[GrantStore, Depends(get_grant_store)],
    policy: Annotated[DeletePolicy, Depends(permission_set_delete_policy)]
):
    """
    Delete a permission set.

    Under the cascade policy its grants and assignments are removed and
    counted in the response; under the block policy assigned sets are refused.
    """
    return await store.delete_permission_set(permission_set_id, policy)


# ============================================================================
# Table Grant Routes
# ============================================================================

@router.get("/{permission_set_id}/tables", response_model=List[TableAccessResponse])
async def list_tables(
    permission_set_id: str,
    store: Annotated[GrantStore, Depends(get_grant_store)]
):
    """List the tables attached to a permission set."""
    return await store.list_tables(permission_set_id)


@router.post("/{permission_set_id}/tables", response_model=AttachTableResponse)
async def attach_table(
    permission_set_id: str,
    request: AttachTableRequest,
    response: Response,
    store: Annotated[GrantStore, Depends(get_grant_store)]
):
    """
    Attach a table, or update its flags when already attached.

    Responds 201 on first attach and 200 on repeat attach.
    """
    result = await store.attach_table(permission_set_id, request.table_name, request.permissions)
    if result.created:
        response.status_code = status.HTTP_201_CREATED
    return AttachTableResponse(
        table=TableAccessWithFields.model_validate(result.table),
        created=result.created,
        fields_assigned=result.fields_assigned,
    )


@router.patch("/{permission_set_id}/tables/{table_access_id}", response_model=TableAccessWithFields)
async def update_table_flags(
    permission_set_id: str,
    table_access_id: str,
    flags: TableFlagsUpdate,
    store: Annotated[GrantStore, Depends(get_grant_store)]
):
    """Change table flags; field flags follow the cascade rules."""
    await _owned_table_access(store, permission_set_id, table_access_id)
    return await store.update_table_flags(table_access_id, flags)


@router.delete("/{permission_set_id}/tables/{table_access_id}", response_model=DetachReport)
async def detach_table(
    permission_set_id: str,
    table_access_id: str,
    store: Annotated[GrantStore, Depends(get_grant_store)]
):
    """Detach a table and remove its field grants."""
    return await store.detach_table(permission_set_id, table_access_id)


# ============================================================================
# Field Grant Routes
# ============================================================================

@router.get("/{permission_set_id}/tables/{table_access_id}/fields", response_model=List[FieldAccessResponse])
async def list_fields(
    permission_set_id: str,
    table_access_id: str,
    store: Annotated[GrantStore, Depends(get_grant_store)]
):
    """List field grants of an attached table."""
    await _owned_table_access(store, permission_set_id, table_access_id)
    return await store.list_fields(table_access_id)


@router.patch("/{permission_set_id}/tables/{table_access_id}/fields", response_model=List[FieldAccessResponse])
async def bulk_update_fields(
    permission_set_id: str,
    table_access_id: str,
    request: BulkFieldUpdateRequest,
    store: Annotated[GrantStore, Depends(get_grant_store)]
):
    """Change several fields at once; nothing changes if any change is rejected."""
    await _owned_table_access(store, permission_set_id, table_access_id)
    return await store.bulk_update_field_flags(table_access_id, request.fields)


@router.patch("/fields/{field_access_id}", response_model=FieldAccessResponse)
async def update_field_flags(
    field_access_id: str,
    flags: FieldFlagsUpdate,
    store: Annotated[GrantStore, Depends(get_grant_store)]
):
    """Change one field grant."""
    return await store.update_field_flags(field_access_id, flags)
