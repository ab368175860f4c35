"""
RepairDesk CRM - Routes Leads
Intake (session or landing-page webhook), listing, field edits,
remarks / status changes, accept / reject, assignment.
Sales executives and technicians only see leads assigned to them.
"""

import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Response
from typing import Optional

import config
from models import (
    LeadCreate, LeadUpdate, RemarkCreate, StatusChange, LeadAssign,
    WebhookLead, LeadRejection,
)
from routes.auth import get_store
from services.errors import NotFoundError
from services.lead_lifecycle import (
    get_lead, get_lead_with_remarks, list_leads, create_lead,
    apply_remark, change_status, update_lead_fields, assign_lead,
    accept_lead, reject_lead,
)
from services.lead_intake import ingest_webhook_lead
from services.permissions import require_capability, assigned_scope

router = APIRouter(prefix="/leads", tags=["Leads"])
logger = logging.getLogger("routes.leads")


def _serialize(result: dict) -> dict:
    return {**result, "warnings": [w.to_dict() for w in result.get("warnings", [])]}


async def _visible_lead(store, lead_id: str, staff: dict) -> dict:
    """Lead by id, 404 when outside the caller's assigned scope."""
    lead = await get_lead(store, lead_id)
    scope = assigned_scope(staff)
    if scope and lead.get("assigned_to") != scope:
        raise NotFoundError(f"Lead {lead_id} not found", collection="leads", record_id=lead_id)
    return lead


async def verify_webhook_key(x_api_key: Optional[str] = Header(None)):
    """Validates the landing page key (X-API-Key header)"""
    if not config.LEAD_WEBHOOK_API_KEY:
        logger.error("[WEBHOOK] LEAD_WEBHOOK_API_KEY not configured")
        raise HTTPException(status_code=503, detail="Lead webhook not configured")
    if not x_api_key or not hmac.compare_digest(x_api_key, config.LEAD_WEBHOOK_API_KEY):
        logger.warning("[WEBHOOK] Invalid API key attempt")
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


# ==================== WEBHOOK (API key, no session) ====================

@router.post("/webhook", status_code=201)
async def post_webhook_lead(
    data: WebhookLead,
    response: Response,
    store=Depends(get_store),
    api_key: str = Depends(verify_webhook_key),
):
    """
    Landing page submission. Same phone within the duplicate window refreshes
    the existing lead (200) instead of creating one (201).
    """
    result = await ingest_webhook_lead(store, data.model_dump())
    if result["duplicate"]:
        response.status_code = 200
    return {
        "success": True,
        "lead_id": result["lead"]["id"],
        "duplicate": result["duplicate"],
    }


# ==================== READ ====================

@router.get("")
async def get_leads(
    status: Optional[str] = None,
    assigned_to: Optional[str] = None,
    device_type: Optional[str] = None,
    search: Optional[str] = None,
    follow_up_before: Optional[str] = None,
    limit: int = 100,
    skip: int = 0,
    store=Depends(get_store),
    staff: dict = Depends(require_capability("leads.view")),
):
    """Lead list (search on name / phone / model)."""
    scope = assigned_scope(staff)
    return await list_leads(
        store,
        status=status,
        assigned_to=scope or assigned_to,
        device_type=device_type,
        search=search,
        follow_up_before=follow_up_before,
        limit=limit,
        skip=skip,
    )


@router.get("/{lead_id}")
async def get_lead_detail(
    lead_id: str,
    store=Depends(get_store),
    staff: dict = Depends(require_capability("leads.view")),
):
    """Lead + remarks (newest first)."""
    await _visible_lead(store, lead_id, staff)
    return await get_lead_with_remarks(store, lead_id)


# ==================== WRITE ====================

@router.post("", status_code=201)
async def post_lead(
    data: LeadCreate,
    store=Depends(get_store),
    staff: dict = Depends(require_capability("leads.create")),
):
    lead = await create_lead(store, data.model_dump(mode="json"), created_by=staff["id"])
    return {"lead": lead}


@router.patch("/{lead_id}")
async def patch_lead(
    lead_id: str,
    data: LeadUpdate,
    store=Depends(get_store),
    staff: dict = Depends(require_capability("leads.edit")),
):
    await _visible_lead(store, lead_id, staff)
    fields = data.model_dump(mode="json", exclude_unset=True)
    expected = fields.pop("expected_updated_at", None)
    lead = await update_lead_fields(
        store, lead_id, fields, staff_id=staff["id"], expected_updated_at=expected
    )
    return {"lead": lead}


@router.post("/{lead_id}/remarks", status_code=201)
async def post_remark(
    lead_id: str,
    data: RemarkCreate,
    store=Depends(get_store),
    staff: dict = Depends(require_capability("leads.add_remark")),
):
    """
    Append a remark. A status change here needs leads.edit_status as well.
    The remark is kept even if the lead update fails (see warnings).
    """
    await _visible_lead(store, lead_id, staff)
    if data.status_changed_to is not None:
        await require_capability("leads.edit_status")(staff)
    result = await apply_remark(
        store, lead_id, staff["id"], data.remark,
        status_changed_to=data.status_changed_to,
        follow_up_date=data.follow_up_date,
    )
    return _serialize(result)


@router.post("/{lead_id}/status")
async def post_status(
    lead_id: str,
    data: StatusChange,
    store=Depends(get_store),
    staff: dict = Depends(require_capability("leads.edit_status")),
):
    await _visible_lead(store, lead_id, staff)
    result = await change_status(store, lead_id, staff["id"], data.status, data.follow_up_date)
    return _serialize(result)


@router.post("/{lead_id}/assign")
async def post_assign(
    lead_id: str,
    data: LeadAssign,
    store=Depends(get_store),
    staff: dict = Depends(require_capability("leads.assign")),
):
    lead = await assign_lead(store, lead_id, data.staff_id, staff_id=staff["id"])
    return {"lead": lead}


@router.post("/{lead_id}/accept")
async def post_accept(
    lead_id: str,
    store=Depends(get_store),
    staff: dict = Depends(require_capability("leads.edit_status")),
):
    await _visible_lead(store, lead_id, staff)
    lead = await accept_lead(store, lead_id, staff["id"])
    return {"lead": lead}


@router.post("/{lead_id}/reject")
async def post_reject(
    lead_id: str,
    data: LeadRejection,
    store=Depends(get_store),
    staff: dict = Depends(require_capability("leads.edit_status")),
):
    """Reject with a reason: the lead is cancelled and the reason kept as a remark."""
    await _visible_lead(store, lead_id, staff)
    result = await reject_lead(store, lead_id, staff["id"], data.reason, data.remarks)
    return _serialize(result)
