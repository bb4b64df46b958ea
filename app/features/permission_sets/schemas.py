"""
Pydantic schemas for permission set management.

Flag value types (TableFlags, FieldFlags and their partial updates) are
shared by the hierarchy enforcer, the grant store and the request models.
"""
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator


# ============================================================================
# Flag value types
# ============================================================================

class TableFlags(BaseModel):
    """CRUD flags on one table."""
    can_create: bool = False
    can_read: bool = False
    can_update: bool = False
    can_delete: bool = False

    model_config = ConfigDict(from_attributes=True, frozen=True)


class TableFlagsUpdate(BaseModel):
    """Partial table flag change; None leaves a flag untouched."""
    can_create: Optional[bool] = None
    can_read: Optional[bool] = None
    can_update: Optional[bool] = None
    can_delete: Optional[bool] = None


class FieldFlags(BaseModel):
    """View/edit flags on one column."""
    can_view: bool = True
    can_edit: bool = False

    model_config = ConfigDict(from_attributes=True, frozen=True)


class FieldFlagsUpdate(BaseModel):
    """Partial field flag change; None leaves a flag untouched."""
    can_view: Optional[bool] = None
    can_edit: Optional[bool] = None


class FieldMutation(BaseModel):
    """New flags for one FieldAccess row, as derived by the hierarchy enforcer."""
    field_access_id: str
    can_view: bool
    can_edit: bool


# ============================================================================
# Permission Set Schemas
# ============================================================================

class PermissionSetBase(BaseModel):
    """Base permission set schema."""
    name: str = Field(..., min_length=2, max_length=100, description="Unique permission set name")
    description: Optional[str] = Field(None, max_length=500, description="Permission set description")

    @field_validator("name")
    @classmethod
    def name_trimmed(cls, v: str) -> str:
        """Names are compared after trimming, so store them trimmed."""
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Permission set name must be at least 2 characters")
        return v


class PermissionSetCreate(PermissionSetBase):
    """Schema for creating a new permission set."""
    pass


class PermissionSetUpdate(BaseModel):
    """Schema for updating a permission set."""
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=500)

    @field_validator("name")
    @classmethod
    def name_trimmed(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Permission set name must be at least 2 characters")
        return v


class PermissionSetResponse(PermissionSetBase):
    """Schema for permission set response."""
    id: str
    table_count: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class FieldAccessResponse(BaseModel):
    """Schema for field access response."""
    id: str
    table_access_id: str
    field_name: str
    can_view: bool
    can_edit: bool

    model_config = ConfigDict(from_attributes=True)


class TableAccessResponse(BaseModel):
    """Schema for table access response."""
    id: str
    permission_set_id: str
    table_name: str
    can_create: bool
    can_read: bool
    can_update: bool
    can_delete: bool

    model_config = ConfigDict(from_attributes=True)


class TableAccessWithFields(TableAccessResponse):
    """Schema for table access with its field grants."""
    fields: List[FieldAccessResponse] = []

    model_config = ConfigDict(from_attributes=True)


class PermissionSetDetail(PermissionSetResponse):
    """Schema for a permission set with its tables and fields."""
    tables: List[TableAccessWithFields] = []


# ============================================================================
# Table and Field Grant Requests
# ============================================================================

class AttachTableRequest(BaseModel):
    """Schema for attaching a table to a permission set."""
    table_name: str = Field(..., min_length=1, max_length=128, description="Physical table in the managed schema")
    permissions: TableFlags = Field(
        default_factory=lambda: TableFlags(can_read=True),
        description="Table flags; read-only when omitted"
    )


class AttachTableResponse(BaseModel):
    """Result of attaching a table."""
    table: TableAccessWithFields
    created: bool
    fields_assigned: int


class BulkFieldUpdateRequest(BaseModel):
    """Schema for updating several fields of one table at once."""
    fields: Dict[str, FieldFlagsUpdate] = Field(..., description="Field name to flag change")


# ============================================================================
# Reports
# ============================================================================

class DetachReport(BaseModel):
    """Dependent rows removed by a table detach."""
    table_access_id: str
    table_name: str
    fields_removed: int
    table_count: int


class PermissionSetDeleteReport(BaseModel):
    """Dependent rows removed by a permission set delete."""
    permission_set_id: str
    name: str
    tables_removed: int
    fields_removed: int
    profiles_unassigned: int
    users_unassigned: int

    @property
    def assignments_removed(self) -> int:
        return self.profiles_unassigned + self.users_unassigned


class AssignmentResult(BaseModel):
    """
    Outcome of an idempotent assign or unassign.

    changed=False means the edge was already in the requested state; this is
    informational, not an error.
    """
    changed: bool
    message: str


class AvailableTablesResponse(BaseModel):
    """Tables in the managed schema that can be granted."""
    tables: List[str]
