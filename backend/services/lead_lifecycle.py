"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RepairDesk CRM - Lead Lifecycle                                             ║
║                                                                              ║
║  STATUS TRANSITION RULES                                                     ║
║                                                                              ║
║  new -> contacted -> qualified -> pickup_scheduled -> in_repair              ║
║      -> completed -> delivered                                               ║
║  cancelled reachable from any non-terminal status                            ║
║                                                                              ║
║  INVARIANTS:                                                                 ║
║  - delivered and cancelled are TERMINAL                                      ║
║  - every status change leaves a remark (append-only audit trail)             ║
║  - a remark is never lost because the lead update failed                     ║
║  - turnaround timestamps are set once, never overwritten                     ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
import re
import uuid
from typing import Any, Dict, List, Optional

import config
from config import now_iso, parse_iso, validate_phone_in
from models.lead import (
    REJECTION_REASON_LABELS,
    REQUIRED_LEAD_FIELDS,
    UTM_FIELDS,
    VALID_DEVICE_TYPES,
    VALID_LEAD_STATUSES,
)
from services.errors import (
    ConflictError,
    NotFoundError,
    PartialFailureWarning,
    PersistenceError,
    TransitionError,
    ValidationError,
)
from services.event_logger import log_activity

logger = logging.getLogger("lead_lifecycle")


# ════════════════════════════════════════════════════════════════════════════
# VALID STATE TRANSITIONS
# ════════════════════════════════════════════════════════════════════════════

LEAD_PROGRESSION = [
    "new",
    "contacted",
    "qualified",
    "pickup_scheduled",
    "in_repair",
    "completed",
    "delivered",
]

TERMINAL_STATUSES = {"delivered", "cancelled"}

# Forward moves (skipping steps is allowed) + cancellation
VALID_LEAD_TRANSITIONS: Dict[str, List[str]] = {
    status: LEAD_PROGRESSION[i + 1:] + ["cancelled"]
    for i, status in enumerate(LEAD_PROGRESSION)
    if status not in TERMINAL_STATUSES
}
VALID_LEAD_TRANSITIONS["delivered"] = []   # TERMINAL
VALID_LEAD_TRANSITIONS["cancelled"] = []   # TERMINAL

# status entered -> timestamp field stamped on first entry
TURNAROUND_FIELDS = {
    "pickup_scheduled": "pickup_scheduled_at",
    "in_repair": "repair_started_at",
    "delivered": "delivered_at",
    "cancelled": "cancelled_at",
}

LEAD_EDITABLE_FIELDS = {
    "customer_name", "contact_number", "email", "area", "pincode",
    "device_type", "device_model", "issue_reported", "lead_source",
    "quoted_amount", "priority", "follow_up_date",
}


def allowed_transitions(from_status: str, allow_regression: bool = False) -> List[str]:
    """Statuses a lead currently in from_status may move to."""
    if from_status in TERMINAL_STATUSES:
        return []
    if allow_regression:
        return [s for s in VALID_LEAD_STATUSES if s != from_status]
    return list(VALID_LEAD_TRANSITIONS.get(from_status, []))


def validate_transition(
    lead_id: str,
    from_status: str,
    to_status: str,
    allow_regression: bool = False,
) -> bool:
    """
    Raises TransitionError unless from_status -> to_status is permitted.
    Re-writing the current status of a non-terminal lead is a no-op and allowed.
    """
    if to_status not in VALID_LEAD_STATUSES:
        raise ValidationError(
            f"Invalid lead status: '{to_status}'. Valid statuses: {VALID_LEAD_STATUSES}"
        )

    valid_next = allowed_transitions(from_status, allow_regression)

    if to_status == from_status and from_status not in TERMINAL_STATUSES:
        return True

    if to_status not in valid_next:
        raise TransitionError(
            f"INVALID TRANSITION: lead {lead_id} cannot go from '{from_status}' to '{to_status}'. "
            f"Valid transitions from '{from_status}': {valid_next}",
            from_status=from_status,
            to_status=to_status,
            allowed=valid_next,
        )
    return True


def turnaround_patch(lead: Dict[str, Any], to_status: str, now: str) -> Dict[str, Any]:
    """Timestamp fields to stamp when lead enters to_status."""
    patch = {}

    def stamp(field):
        if not lead.get(field):
            patch[field] = now

    from_status = lead.get("status", "new")
    if to_status == from_status:
        return patch

    if from_status == "new":
        stamp("first_contact_at")

    if to_status in TURNAROUND_FIELDS:
        stamp(TURNAROUND_FIELDS[to_status])

    if to_status in ("completed", "delivered"):
        stamp("repair_completed_at")

    return patch


def _status_value(status) -> Optional[str]:
    if status is None or status == "":
        return None
    return getattr(status, "value", status)


def _check_date(value: Optional[str], field: str) -> Optional[str]:
    if not value:
        return None
    try:
        parse_iso(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}: '{value}' (ISO date expected)")
    return value


# ════════════════════════════════════════════════════════════════════════════
# LOOKUPS
# ════════════════════════════════════════════════════════════════════════════

async def resolve_active_staff(store, staff_id: Optional[str]) -> Dict[str, Any]:
    """Staff record for staff_id, NotFoundError if absent or deactivated."""
    if not staff_id:
        raise NotFoundError("Staff record not found", collection="staff")
    staff = await store.get("staff", {"id": staff_id})
    if not staff or not staff.get("is_active", False):
        raise NotFoundError(
            f"Active staff {staff_id} not found", collection="staff", record_id=staff_id
        )
    return staff


async def get_lead(store, lead_id: str) -> Dict[str, Any]:
    return await store.find_one("leads", {"id": lead_id})


async def get_lead_with_remarks(store, lead_id: str) -> Dict[str, Any]:
    lead = await get_lead(store, lead_id)
    remarks = await store.find(
        "lead_remarks", {"lead_id": lead_id}, sort=[("created_at", -1)], limit=500
    )
    return {"lead": lead, "remarks": remarks}


async def list_leads(
    store,
    status: Optional[str] = None,
    assigned_to: Optional[str] = None,
    device_type: Optional[str] = None,
    search: Optional[str] = None,
    follow_up_before: Optional[str] = None,
    limit: int = 100,
    skip: int = 0,
) -> Dict[str, Any]:
    query: Dict[str, Any] = {}

    if status:
        query["status"] = status
    if assigned_to:
        query["assigned_to"] = assigned_to
    if device_type:
        query["device_type"] = device_type
    if follow_up_before:
        query["follow_up_date"] = {"$ne": None, "$lte": follow_up_before}
    if search and len(search.strip()) >= 2:
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        query["$or"] = [
            {"customer_name": pattern},
            {"contact_number": pattern},
            {"device_model": pattern},
        ]

    limit = min(limit, 1000)
    leads = await store.find("leads", query, sort=[("created_at", -1)], limit=limit, skip=skip)
    total = await store.count("leads", query)
    return {"leads": leads, "count": len(leads), "total": total}


# ════════════════════════════════════════════════════════════════════════════
# INTAKE
# ════════════════════════════════════════════════════════════════════════════

async def create_lead(store, data: Dict[str, Any], created_by: Optional[str] = None) -> Dict[str, Any]:
    """Store a new lead with status 'new'."""
    if data.get("assigned_to"):
        await resolve_active_staff(store, data["assigned_to"])

    now = now_iso()
    lead = {
        "id": str(uuid.uuid4()),
        "customer_name": data["customer_name"],
        "contact_number": data["contact_number"],
        "email": data.get("email"),
        "area": data.get("area"),
        "pincode": data.get("pincode"),
        "device_type": _status_value(data.get("device_type")),
        "device_model": data["device_model"],
        "issue_reported": data["issue_reported"],
        "lead_source": data.get("lead_source") or "Manual",
        "quoted_amount": data.get("quoted_amount"),
        "priority": data.get("priority") or 3,
        "assigned_to": data.get("assigned_to"),
        "status": "new",
        "follow_up_date": _check_date(data.get("follow_up_date"), "follow_up_date"),
        "invoice_id": None,
        "landing_page_url": data.get("landing_page_url"),
        **{field: data.get(field) for field in UTM_FIELDS},
        "acceptance_status": None,
        "first_contact_at": None,
        "pickup_scheduled_at": None,
        "repair_started_at": None,
        "repair_completed_at": None,
        "delivered_at": None,
        "cancelled_at": None,
        "created_by": created_by,
        "created_at": now,
        "updated_at": now,
    }

    lead = await store.insert("leads", lead)
    logger.info(f"[LIFECYCLE] Lead {lead['id']} created ({lead['device_type']} {lead['device_model']})")

    await log_activity(
        store, "lead_created", "lead", lead["id"],
        user_id=created_by,
        entity_name=lead["customer_name"],
        new_value={"device": f"{lead['device_type']} {lead['device_model']}", "issue": lead["issue_reported"]},
        metadata={"source": lead["lead_source"]},
    )
    return lead


# ════════════════════════════════════════════════════════════════════════════
# REMARK + STATUS CHANGE (THE ONLY WAY TO CHANGE A LEAD STATUS)
# ════════════════════════════════════════════════════════════════════════════

async def apply_remark(
    store,
    lead_id: str,
    staff_id: str,
    remark: str,
    status_changed_to=None,
    follow_up_date: Optional[str] = None,
    lead_patch: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    🔒 Append a remark to a lead, optionally moving its status / follow-up date.

    Steps:
    1. Validate remark text, staff, lead and dates (nothing written yet)
    2. Insert the remark (failure is fatal: PersistenceError)
    3. Update the lead (failure is NOT fatal: reported as PartialFailureWarning)

    A status the transition table refuses does not cost the note: the remark
    is stored without the status change and the refusal comes back as a
    "lead_update" warning carrying the allowed statuses.

    lead_patch: extra lead fields written together with the status change.

    Returns:
        {"remark", "lead", "lead_updated", "warnings"}
    """
    text = (remark or "").strip()
    if not text:
        raise ValidationError("Remark is required")

    staff = await resolve_active_staff(store, staff_id)
    lead = await get_lead(store, lead_id)

    from_status = lead.get("status", "new")
    to_status = _status_value(status_changed_to)
    follow_up_date = _check_date(follow_up_date, "follow_up_date")

    warnings: List[PartialFailureWarning] = []
    if to_status:
        try:
            validate_transition(lead_id, from_status, to_status, config.LEAD_STATUS_ALLOW_REGRESSION)
        except TransitionError as e:
            logger.warning(f"[LIFECYCLE] Remark on {lead_id} kept without status change: {e.message}")
            warnings.append(PartialFailureWarning(
                "lead_update",
                f"Remark saved but status not changed: {e.message}",
                lead_id,
            ))
            to_status = None
            lead_patch = None

    now = now_iso()

    # 1. Remark first: the audit trail must survive whatever happens next
    remark_doc = await store.insert("lead_remarks", {
        "id": str(uuid.uuid4()),
        "lead_id": lead_id,
        "staff_id": staff["id"],
        "staff_name": staff.get("full_name", ""),
        "remark": text,
        "status_changed_to": to_status,
        "follow_up_date": follow_up_date,
        "created_at": now,
    })

    # 2. Lead update
    lead_updated = False

    if to_status or follow_up_date:
        patch: Dict[str, Any] = {"updated_at": now}
        lead_filter: Dict[str, Any] = {"id": lead_id}
        if to_status:
            patch["status"] = to_status
            patch.update(turnaround_patch(lead, to_status, now))
            patch.update(lead_patch or {})
            # Guard against a concurrent transition since validation
            lead_filter["status"] = from_status
        if follow_up_date:
            patch["follow_up_date"] = follow_up_date

        try:
            lead = await store.update("leads", lead_filter, patch)
            lead_updated = True
        except (PersistenceError, NotFoundError) as e:
            logger.warning(
                f"[LIFECYCLE] Remark {remark_doc['id']} saved but lead {lead_id} update failed: {e}"
            )
            warnings.append(PartialFailureWarning(
                "lead_update",
                f"Remark saved but lead update failed: {e.message}",
                lead_id,
            ))

    if lead_updated and to_status and to_status != from_status:
        logger.info(f"[LIFECYCLE] Lead {lead_id} {from_status} -> {to_status} by {staff['id']}")
        await log_activity(
            store, "lead_status_changed", "lead", lead_id,
            user_id=staff["id"],
            entity_name=lead.get("customer_name"),
            old_value={"status": from_status},
            new_value={"status": to_status},
            metadata={"remark_id": remark_doc["id"]},
        )
    else:
        await log_activity(
            store, "note_added", "lead", lead_id,
            user_id=staff["id"],
            entity_name=lead.get("customer_name"),
            metadata={"remark_id": remark_doc["id"], "follow_up_date": follow_up_date},
        )

    return {
        "remark": remark_doc,
        "lead": lead,
        "lead_updated": lead_updated,
        "warnings": warnings,
    }


async def change_status(
    store,
    lead_id: str,
    staff_id: str,
    status,
    follow_up_date: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Status change without caller text: an automatic remark keeps the trail complete.
    A refused transition raises here, there is no note worth keeping.
    """
    lead = await get_lead(store, lead_id)
    from_status = lead.get("status", "new")
    to_status = _status_value(status)
    validate_transition(lead_id, from_status, to_status, config.LEAD_STATUS_ALLOW_REGRESSION)
    text = f"Status changed from {from_status} to {to_status}"
    return await apply_remark(store, lead_id, staff_id, text, to_status, follow_up_date)


# ════════════════════════════════════════════════════════════════════════════
# ACCEPT / REJECT (first triage of an incoming lead)
# ════════════════════════════════════════════════════════════════════════════

async def accept_lead(store, lead_id: str, staff_id: str) -> Dict[str, Any]:
    """Mark a lead as taken on. Decided once: ConflictError if already accepted or rejected."""
    staff = await resolve_active_staff(store, staff_id)
    lead = await get_lead(store, lead_id)
    if lead.get("acceptance_status"):
        raise ConflictError(
            f"Lead {lead_id} already {lead['acceptance_status']}",
            acceptance_status=lead["acceptance_status"],
        )
    if lead.get("status") in TERMINAL_STATUSES:
        raise TransitionError(
            f"Lead {lead_id} is {lead['status']} and cannot be accepted",
            from_status=lead["status"],
            to_status=lead["status"],
        )

    try:
        lead = await store.update(
            "leads",
            {"id": lead_id, "acceptance_status": None},
            {
                "acceptance_status": "accepted",
                "accepted_at": now_iso(),
                "accepted_by": staff["id"],
                "updated_at": now_iso(),
            },
        )
    except NotFoundError:
        raise ConflictError(f"Lead {lead_id} was accepted or rejected concurrently")

    logger.info(f"[LIFECYCLE] Lead {lead_id} accepted by {staff['id']}")
    await log_activity(
        store, "lead_accepted", "lead", lead_id,
        user_id=staff["id"],
        entity_name=lead.get("customer_name"),
    )
    return lead


async def reject_lead(
    store,
    lead_id: str,
    staff_id: str,
    reason,
    remarks: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Reject a lead: it is cancelled through the remark path with the reason
    as remark text, and the reason is kept on the lead for reporting.
    """
    reason = _status_value(reason)
    if reason not in REJECTION_REASON_LABELS:
        raise ValidationError(
            f"Invalid rejection reason: '{reason}'. Valid reasons: {list(REJECTION_REASON_LABELS)}"
        )

    lead = await get_lead(store, lead_id)
    if lead.get("acceptance_status") == "rejected":
        raise ConflictError(f"Lead {lead_id} already rejected", acceptance_status="rejected")
    validate_transition(
        lead_id, lead.get("status", "new"), "cancelled", config.LEAD_STATUS_ALLOW_REGRESSION
    )

    remarks = (remarks or "").strip() or None
    text = f"Lead rejected: {REJECTION_REASON_LABELS[reason]}"
    if remarks:
        text = f"{text}. {remarks}"

    result = await apply_remark(
        store, lead_id, staff_id, text,
        status_changed_to="cancelled",
        lead_patch={
            "acceptance_status": "rejected",
            "rejection_reason": reason,
            "rejection_remarks": remarks,
            "rejected_at": now_iso(),
        },
    )
    if result["lead_updated"]:
        await log_activity(
            store, "lead_rejected", "lead", lead_id,
            user_id=staff_id,
            entity_name=result["lead"].get("customer_name"),
            metadata={"reason": reason, "remarks": remarks},
        )
    return result


# ════════════════════════════════════════════════════════════════════════════
# FIELD EDITS / ASSIGNMENT
# ════════════════════════════════════════════════════════════════════════════

def clean_lead_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    Same checks as intake for every field present. None clears optional
    fields; required fields cannot be cleared.
    """
    rejected = sorted(k for k in fields if k not in LEAD_EDITABLE_FIELDS)
    if rejected:
        raise ValidationError(f"Fields not editable: {rejected}")

    patch = {k: _status_value(v) for k, v in fields.items()}

    cleared = sorted(k for k, v in patch.items() if v is None and k in REQUIRED_LEAD_FIELDS)
    if cleared:
        raise ValidationError(f"Required fields cannot be cleared: {cleared}")

    for field in ("customer_name", "device_model", "issue_reported", "lead_source"):
        if field in patch:
            if not str(patch[field]).strip():
                raise ValidationError(f"{field} must not be empty")
            patch[field] = str(patch[field]).strip()

    if "contact_number" in patch:
        is_valid, result = validate_phone_in(str(patch["contact_number"]))
        if not is_valid:
            raise ValidationError(result)
        patch["contact_number"] = result

    if "device_type" in patch and patch["device_type"] not in VALID_DEVICE_TYPES:
        raise ValidationError(
            f"Invalid device type: '{patch['device_type']}'. Valid types: {VALID_DEVICE_TYPES}"
        )

    if patch.get("follow_up_date") is not None:
        _check_date(patch["follow_up_date"], "follow_up_date")

    return patch


async def update_lead_fields(
    store,
    lead_id: str,
    fields: Dict[str, Any],
    staff_id: Optional[str] = None,
    expected_updated_at: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Patch editable lead fields. Last writer wins unless expected_updated_at is
    given, in which case a lead modified since raises ConflictError.
    """
    patch = clean_lead_fields(fields)
    if not patch:
        raise ValidationError("No fields to update")

    lead = await get_lead(store, lead_id)

    lead_filter: Dict[str, Any] = {"id": lead_id}
    if expected_updated_at:
        if lead.get("updated_at") != expected_updated_at:
            raise ConflictError(
                f"Lead {lead_id} was modified at {lead.get('updated_at')}",
                current_updated_at=lead.get("updated_at"),
            )
        lead_filter["updated_at"] = expected_updated_at

    patch["updated_at"] = now_iso()

    try:
        updated = await store.update("leads", lead_filter, patch)
    except NotFoundError:
        # Record exists (read above): the conditional filter lost a race
        raise ConflictError(f"Lead {lead_id} was modified concurrently")

    await log_activity(
        store, "lead_updated", "lead", lead_id,
        user_id=staff_id,
        entity_name=updated.get("customer_name"),
        old_value={k: lead.get(k) for k in patch if k != "updated_at"},
        new_value={k: v for k, v in patch.items() if k != "updated_at"},
    )
    return updated


async def assign_lead(
    store,
    lead_id: str,
    assignee_id: Optional[str],
    staff_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Assign a lead to an active staff member (None clears the assignment)."""
    if assignee_id:
        await resolve_active_staff(store, assignee_id)

    lead = await store.update(
        "leads", {"id": lead_id}, {"assigned_to": assignee_id, "updated_at": now_iso()}
    )
    logger.info(f"[LIFECYCLE] Lead {lead_id} assigned to {assignee_id}")

    await log_activity(
        store, "lead_assigned", "lead", lead_id,
        user_id=staff_id,
        entity_name=lead.get("customer_name"),
        new_value={"assigned_to": assignee_id},
    )
    return lead
