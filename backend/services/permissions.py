"""
RepairDesk CRM - Permission System
Roles are a fixed enumeration mapped to capability sets.
Capabilities are checked centrally by FastAPI dependencies, never per surface.
"""

import logging
from typing import Dict, FrozenSet, List
from fastapi import Depends, HTTPException

from models.staff import VALID_ROLES

logger = logging.getLogger("permissions")

# ════════════════════════════════════════════════════════════════════════
# ALL CAPABILITIES
# ════════════════════════════════════════════════════════════════════════

ALL_CAPABILITIES = [
    "dashboard.view",

    "leads.view",
    "leads.create",
    "leads.edit",
    "leads.edit_status",
    "leads.add_remark",
    "leads.assign",

    "invoices.view",
    "invoices.create",
    "invoices.update_payment",

    "staff.view",
    "staff.manage",

    "activity.view",

    "admin.maintenance",
]

# ════════════════════════════════════════════════════════════════════════
# ROLE -> CAPABILITIES
# ════════════════════════════════════════════════════════════════════════

_FIELD_WORK = {
    "dashboard.view",
    "leads.view", "leads.edit", "leads.edit_status", "leads.add_remark",
    "invoices.view", "invoices.create", "invoices.update_payment",
}

ROLE_CAPABILITIES: Dict[str, FrozenSet[str]] = {
    "super_admin": frozenset(ALL_CAPABILITIES),

    "manager": frozenset(ALL_CAPABILITIES) - {"staff.manage", "admin.maintenance"},

    "sales_executive": frozenset({
        "dashboard.view",
        "leads.view", "leads.create", "leads.edit", "leads.edit_status", "leads.add_remark",
    }),

    "technician": frozenset(_FIELD_WORK),

    "field_executive": frozenset(_FIELD_WORK | {"leads.create"}),
}

# Roles whose dashboards and lead lists only cover their own assigned leads
ASSIGNED_SCOPE_ROLES = {"sales_executive", "technician"}

# ════════════════════════════════════════════════════════════════════════
# ROLE -> NAVIGATION SURFACES
# ════════════════════════════════════════════════════════════════════════

NAVIGATION = [
    "Dashboard", "Enquiry", "Follow Up", "Order", "Not Interested",
    "Customers", "Invoice", "Team", "Users", "Opportunities",
]

_BASE_NAV = ["Dashboard", "Enquiry", "Follow Up", "Order", "Not Interested"]

ROLE_NAVIGATION: Dict[str, List[str]] = {
    "super_admin": list(NAVIGATION),
    "manager": _BASE_NAV + ["Customers", "Invoice", "Team", "Opportunities"],
    "sales_executive": list(_BASE_NAV),
    "technician": _BASE_NAV + ["Customers", "Invoice"],
    "field_executive": _BASE_NAV + ["Customers", "Invoice"],
}


def get_capabilities(role: str) -> FrozenSet[str]:
    """Capabilities of a role. Unknown roles get nothing."""
    return ROLE_CAPABILITIES.get(role, frozenset())


def get_navigation(role: str) -> List[str]:
    return list(ROLE_NAVIGATION.get(role, []))


# ════════════════════════════════════════════════════════════════════════
# PERMISSION CHECK HELPERS
# ════════════════════════════════════════════════════════════════════════

def staff_has_capability(staff: dict, capability: str) -> bool:
    if not staff.get("is_active", True):
        return False
    return capability in get_capabilities(staff.get("role", ""))


def assigned_scope(staff: dict):
    """
    staff_id to restrict lead queries to, or None for a full view.
    """
    if staff.get("role") in ASSIGNED_SCOPE_ROLES:
        return staff.get("id")
    return None


# ════════════════════════════════════════════════════════════════════════
# FASTAPI DEPENDENCIES
# ════════════════════════════════════════════════════════════════════════

def require_capability(capability: str):
    """
    FastAPI dependency factory.
    Usage: staff: dict = Depends(require_capability("leads.view"))
    """
    from routes.auth import get_current_staff

    async def _check(staff: dict = Depends(get_current_staff)):
        if not staff_has_capability(staff, capability):
            logger.warning(
                f"[PERMISSION_DENIED] staff={staff.get('email')} "
                f"capability={capability} role={staff.get('role')}"
            )
            raise HTTPException(
                status_code=403,
                detail=f"Permission required: {capability}"
            )
        return staff

    return _check
