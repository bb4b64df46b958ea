"""
Pydantic schemas for user responses.
"""
from datetime import datetime
from pydantic import BaseModel


class UserResponse(BaseModel):
    """Schema for the signed-in user."""
    id: str
    appwrite_id: str
    email: str
    name: str
    is_active: bool
    is_admin: bool
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
