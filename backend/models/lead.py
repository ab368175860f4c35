"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RepairDesk CRM - Lead model                                                 ║
║                                                                              ║
║  RULES:                                                                      ║
║  1. A lead is never hard-deleted: "cancelled" is a terminal status           ║
║  2. status changes only through services.lead_lifecycle                      ║
║  3. invoice_id is set once, by the invoice generator, never by a client      ║
║  4. Remarks are append-only                                                  ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from config import validate_phone_in


class LeadStatus(str, Enum):
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    PICKUP_SCHEDULED = "pickup_scheduled"
    IN_REPAIR = "in_repair"
    COMPLETED = "completed"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"      # TERMINAL, reachable from any non-terminal status


VALID_LEAD_STATUSES = [s.value for s in LeadStatus]

IN_PROGRESS_STATUSES = ["contacted", "qualified", "pickup_scheduled", "in_repair"]
CONVERTED_STATUSES = ["completed", "delivered"]


class DeviceType(str, Enum):
    IPHONE = "iPhone"
    APPLE_WATCH = "Apple Watch"
    MACBOOK = "MacBook"
    IPAD = "iPad"


VALID_DEVICE_TYPES = [d.value for d in DeviceType]

LEAD_SOURCES = [
    "LP-1", "LP-2", "LP-3", "Website", "Referral", "Walk-in",
    "Social Media", "Google Ads", "Manual", "Other",
]


class RejectionReason(str, Enum):
    NOT_INTERESTED = "not_interested"
    WRONG_NUMBER = "wrong_number"
    DUPLICATE = "duplicate"
    PRICE_ISSUE = "price_issue"
    OTHER = "other"


REJECTION_REASON_LABELS = {
    "not_interested": "Not Interested",
    "wrong_number": "Wrong Number",
    "duplicate": "Duplicate Lead",
    "price_issue": "Price Issue",
    "other": "Other",
}

# Fields a PATCH may never set to null
REQUIRED_LEAD_FIELDS = {
    "customer_name", "contact_number", "device_type",
    "device_model", "issue_reported", "lead_source", "priority",
}

# Campaign tracking captured from the landing page URL
UTM_FIELDS = [
    "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content", "gclid", "fbclid",
]


def _required_text(v):
    if v is None or not str(v).strip():
        raise ValueError("must not be empty")
    return str(v).strip()


def _phone(v):
    is_valid, result = validate_phone_in(v)
    if not is_valid:
        raise ValueError(result)
    return result


class LeadCreate(BaseModel):
    """Intake payload (walk-in, phone call, landing page)"""
    customer_name: str
    contact_number: str
    email: Optional[str] = None
    area: Optional[str] = None
    pincode: Optional[str] = None
    device_type: DeviceType
    device_model: str
    issue_reported: str
    lead_source: str = "Manual"
    quoted_amount: Optional[float] = Field(default=None, ge=0)
    priority: int = Field(default=3, ge=1, le=5)
    assigned_to: Optional[str] = None
    follow_up_date: Optional[str] = None

    @field_validator("customer_name", "device_model", "issue_reported")
    @classmethod
    def not_blank(cls, v):
        return _required_text(v)

    @field_validator("contact_number")
    @classmethod
    def clean_phone(cls, v):
        return _phone(v)


class LeadUpdate(BaseModel):
    """
    Editable lead fields. status goes through the transition check,
    invoice_id through invoicing; neither is accepted here.
    Only the fields sent are applied; an explicit null clears an optional field.
    """
    customer_name: Optional[str] = None
    contact_number: Optional[str] = None
    email: Optional[str] = None
    area: Optional[str] = None
    pincode: Optional[str] = None
    device_type: Optional[DeviceType] = None
    device_model: Optional[str] = None
    issue_reported: Optional[str] = None
    lead_source: Optional[str] = None
    quoted_amount: Optional[float] = Field(default=None, ge=0)
    priority: Optional[int] = Field(default=None, ge=1, le=5)
    follow_up_date: Optional[str] = None
    # Optimistic concurrency: reject the write if the lead changed since
    expected_updated_at: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    # Defaults are not validated: these only run on values actually sent
    @field_validator("customer_name", "device_model", "issue_reported", "lead_source")
    @classmethod
    def not_blank(cls, v):
        return _required_text(v)

    @field_validator("contact_number")
    @classmethod
    def clean_phone(cls, v):
        if v is None:
            raise ValueError("must not be empty")
        return _phone(v)

    @field_validator("device_type", "priority")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("cannot be cleared")
        return v


class WebhookLead(BaseModel):
    """
    Landing-page submission. Field names vary between page builders,
    each field accepts its known aliases. Required fields are checked by
    the intake service so the error can list every missing one.
    """
    customer_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("name", "customer_name", "customerName"))
    contact_number: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("phone", "contact_number", "contactNumber", "mobile"))
    device: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("device", "device_type", "deviceType"))
    device_model: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("model", "device_model", "deviceModel"))
    issue_reported: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("issue", "issue_reported", "issueReported"))
    email: Optional[str] = None
    source: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("source", "lead_source", "leadSource"))
    landing_page_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("landingPage", "landing_page_url", "landingPageUrl", "url"))


class LeadRejection(BaseModel):
    reason: RejectionReason
    remarks: Optional[str] = None


class RemarkCreate(BaseModel):
    remark: str
    status_changed_to: Optional[LeadStatus] = None
    follow_up_date: Optional[str] = None


class StatusChange(BaseModel):
    status: LeadStatus
    follow_up_date: Optional[str] = None


class LeadAssign(BaseModel):
    staff_id: Optional[str] = None
