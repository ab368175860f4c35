"""
RepairDesk CRM - Landing page lead intake

Leads posted by landing pages / form builders through the API-key webhook.

Flow:
1. Map the loosely named payload (done by models.WebhookLead aliases)
2. Check required fields, normalise phone / device type / lead source
3. Same phone seen in the last WEBHOOK_DUPLICATE_WINDOW_HOURS -> refresh that lead
4. Otherwise create a new lead through the normal intake
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlparse

import config
from config import now_iso, validate_phone_in
from models.lead import UTM_FIELDS
from services.errors import ValidationError
from services.event_logger import log_activity
from services.lead_lifecycle import create_lead

logger = logging.getLogger("lead_intake")

WEBHOOK_REQUIRED_FIELDS = {
    "customer_name": "name",
    "contact_number": "phone",
    "device": "device",
    "device_model": "model",
    "issue_reported": "issue",
}

DEFAULT_WEBHOOK_SOURCE = "LP-1"
MAX_SOURCE_LENGTH = 50

_LP_SOURCE = re.compile(r"LP-\d+", re.IGNORECASE)
_LP_PATH = re.compile(r"/(lp-\d+)", re.IGNORECASE)


def normalize_device_type(device: str) -> str:
    """Free text device -> one of the four device types (iPhone when unclear)."""
    value = (device or "").lower()
    if "watch" in value:
        return "Apple Watch"
    if "iphone" in value:
        return "iPhone"
    if "mac" in value:
        return "MacBook"
    if "ipad" in value:
        return "iPad"
    return "iPhone"


def extract_lead_source(source: Optional[str] = None, landing_page: Optional[str] = None) -> str:
    """
    "LP-n" found in the source wins, then any other source (truncated),
    then "/lp-n" in the landing page path, then LP-1.
    """
    if source:
        match = _LP_SOURCE.search(source)
        if match:
            return match.group(0).upper()
        return source.strip()[:MAX_SOURCE_LENGTH]

    if landing_page:
        match = _LP_PATH.search(landing_page)
        if match:
            return match.group(1).upper()

    return DEFAULT_WEBHOOK_SOURCE


def extract_utm_params(url: Optional[str]) -> Dict[str, Optional[str]]:
    """UTM / click-id query parameters of the landing page URL (None when absent)."""
    params = parse_qs(urlparse(url).query) if url else {}
    return {field: (params.get(field) or [None])[0] for field in UTM_FIELDS}


async def ingest_webhook_lead(store, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create (or refresh) a lead from a landing page submission.

    Returns:
        {"lead", "duplicate"}: duplicate True when an existing lead was refreshed
    """
    missing = [label for field, label in WEBHOOK_REQUIRED_FIELDS.items()
               if not (payload.get(field) or "").strip()]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            missing_fields=missing,
        )

    is_valid, phone = validate_phone_in(payload["contact_number"])
    if not is_valid:
        logger.warning(f"[WEBHOOK] Rejected phone {payload['contact_number']!r}: {phone}")
        raise ValidationError(f"Invalid phone number format. {phone}")

    landing_page = payload.get("landing_page_url") or None
    fields = {
        "device_type": normalize_device_type(payload["device"]),
        "device_model": payload["device_model"].strip(),
        "issue_reported": payload["issue_reported"].strip(),
        "lead_source": extract_lead_source(payload.get("source"), landing_page),
        "landing_page_url": landing_page,
        **extract_utm_params(landing_page),
    }

    cutoff = (
        datetime.now(timezone.utc) - timedelta(hours=config.WEBHOOK_DUPLICATE_WINDOW_HOURS)
    ).isoformat()
    recent = await store.find(
        "leads",
        {"contact_number": phone, "created_at": {"$gte": cutoff}},
        sort=[("created_at", -1)],
        limit=1,
    )

    if recent:
        existing = recent[0]
        lead = await store.update("leads", {"id": existing["id"]}, {**fields, "updated_at": now_iso()})
        logger.info(f"[WEBHOOK] Duplicate within {config.WEBHOOK_DUPLICATE_WINDOW_HOURS}h, lead {lead['id']} refreshed")
        await log_activity(
            store, "lead_updated", "lead", lead["id"],
            entity_name=lead.get("customer_name"),
            new_value={k: fields[k] for k in ("device_type", "device_model", "issue_reported", "lead_source")},
            metadata={"source": "webhook", "duplicate": True},
        )
        return {"lead": lead, "duplicate": True}

    email = (payload.get("email") or "").strip().lower() or None
    lead = await create_lead(store, {
        **fields,
        "customer_name": payload["customer_name"].strip(),
        "contact_number": phone,
        "email": email,
    })
    logger.info(f"[WEBHOOK] Lead {lead['id']} created from {lead['lead_source']}")
    return {"lead": lead, "duplicate": False}
