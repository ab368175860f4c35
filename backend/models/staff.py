"""
RepairDesk CRM - Staff models
Role decides capabilities and navigation (see services.permissions).
"""

from pydantic import BaseModel, field_validator
from typing import Optional


VALID_ROLES = ["super_admin", "manager", "sales_executive", "technician", "field_executive"]


class StaffCreate(BaseModel):
    auth_user_id: str
    full_name: str
    email: str
    role: str = "sales_executive"
    phone: Optional[str] = None

    @field_validator("role")
    @classmethod
    def validate_role(cls, v):
        if v not in VALID_ROLES:
            raise ValueError(f"Invalid role: {v}. Valid: {VALID_ROLES}")
        return v

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower()

    @field_validator("full_name")
    @classmethod
    def strip_name(cls, v):
        if not v.strip():
            raise ValueError("full_name must not be empty")
        return v.strip()


class StaffUpdate(BaseModel):
    full_name: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[str] = None

    @field_validator("role")
    @classmethod
    def validate_role(cls, v):
        if v is not None and v not in VALID_ROLES:
            raise ValueError(f"Invalid role: {v}")
        return v


class StaffActive(BaseModel):
    is_active: bool
