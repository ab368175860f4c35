"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RepairDesk CRM - Models Package                                             ║
║                                                                              ║
║  from models import LeadCreate, InvoiceFromLead, StaffCreate, etc.           ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

# Lead
from .lead import (
    LeadStatus,
    VALID_LEAD_STATUSES,
    IN_PROGRESS_STATUSES,
    CONVERTED_STATUSES,
    DeviceType,
    VALID_DEVICE_TYPES,
    LEAD_SOURCES,
    RejectionReason,
    REJECTION_REASON_LABELS,
    REQUIRED_LEAD_FIELDS,
    UTM_FIELDS,
    LeadCreate,
    LeadUpdate,
    WebhookLead,
    LeadRejection,
    RemarkCreate,
    StatusChange,
    LeadAssign,
)

# Invoice
from .invoice import (
    PaymentStatus,
    PaymentMethod,
    VALID_PAYMENT_STATUSES,
    VALID_PAYMENT_METHODS,
    LineItem,
    InvoiceTotals,
    InvoiceFromLead,
    InvoiceCreate,
    PaymentUpdate,
)

# Staff
from .staff import (
    VALID_ROLES,
    StaffCreate,
    StaffUpdate,
    StaffActive,
)

__all__ = [
    # Lead
    "LeadStatus",
    "VALID_LEAD_STATUSES",
    "IN_PROGRESS_STATUSES",
    "CONVERTED_STATUSES",
    "DeviceType",
    "VALID_DEVICE_TYPES",
    "LEAD_SOURCES",
    "RejectionReason",
    "REJECTION_REASON_LABELS",
    "REQUIRED_LEAD_FIELDS",
    "UTM_FIELDS",
    "LeadCreate",
    "LeadUpdate",
    "WebhookLead",
    "LeadRejection",
    "RemarkCreate",
    "StatusChange",
    "LeadAssign",
    # Invoice
    "PaymentStatus",
    "PaymentMethod",
    "VALID_PAYMENT_STATUSES",
    "VALID_PAYMENT_METHODS",
    "LineItem",
    "InvoiceTotals",
    "InvoiceFromLead",
    "InvoiceCreate",
    "PaymentUpdate",
    # Staff
    "VALID_ROLES",
    "StaffCreate",
    "StaffUpdate",
    "StaffActive",
]
