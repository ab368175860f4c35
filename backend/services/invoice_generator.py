"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  RepairDesk CRM - Invoice Generator                                          ║
║                                                                              ║
║  INVARIANTS:                                                                 ║
║  - invoice_number = INV-##### , unique, strictly increasing                  ║
║  - numbers come from an atomic counter ($inc), never from count()+1          ║
║  - total_amount = subtotal + tax_amount - discount_amount                    ║
║  - lead.invoice_id is set at most once (conditional update)                  ║
║  - a failed lead back-link never rolls back the invoice                      ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
import re
import uuid
from typing import Any, Dict, List, Optional

from config import now_iso
from services.errors import (
    ConflictError,
    DuplicateRecordError,
    NotFoundError,
    PartialFailureWarning,
    PersistenceError,
    ValidationError,
)
from services.event_logger import log_activity

logger = logging.getLogger("invoice_generator")

INVOICE_SEQUENCE = "invoice_number"
INVOICE_NUMBER_PREFIX = "INV-"
INVOICE_NUMBER_WIDTH = 5
INVOICE_NUMBER_MAX_ATTEMPTS = 5

# Money comparisons (rupees, 2 decimals)
MONEY_TOLERANCE = 0.01

INITIAL_PAYMENT_STATUSES = ["pending", "partial", "paid"]


def format_invoice_number(seq: int) -> str:
    """1 -> INV-00001. Numbers wider than 5 digits are not truncated."""
    return f"{INVOICE_NUMBER_PREFIX}{seq:0{INVOICE_NUMBER_WIDTH}d}"


def _value(v):
    return getattr(v, "value", v)


def _field(item, name, default=None):
    if isinstance(item, dict):
        return item.get(name, default)
    return getattr(item, name, default)


# ════════════════════════════════════════════════════════════════════════════
# TOTALS
# ════════════════════════════════════════════════════════════════════════════

def normalize_line_items(items) -> List[Dict[str, Any]]:
    """
    Line items as stored: description, quantity, unit_price, amount.
    amount = quantity * unit_price; a caller-supplied amount must agree.
    """
    if not items:
        raise ValidationError("At least one line item is required")

    normalized = []
    for i, item in enumerate(items, start=1):
        description = (_field(item, "description") or "").strip()
        quantity = _field(item, "quantity", 1)
        unit_price = _field(item, "unit_price")
        if unit_price is None:
            unit_price = _field(item, "rate")

        if not description:
            raise ValidationError(f"Line item {i}: description is required")
        if quantity is None or quantity <= 0:
            raise ValidationError(f"Line item {i}: quantity must be > 0")
        if unit_price is None or unit_price < 0:
            raise ValidationError(f"Line item {i}: unit price must be >= 0")

        amount = round(quantity * unit_price, 2)
        supplied = _field(item, "amount")
        if supplied is not None and abs(supplied - amount) > MONEY_TOLERANCE:
            raise ValidationError(
                f"Line item {i}: amount {supplied} != quantity x unit price ({amount})"
            )

        normalized.append({
            "description": description,
            "quantity": quantity,
            "unit_price": unit_price,
            "amount": amount,
        })
    return normalized


def check_totals(
    items: List[Dict[str, Any]],
    subtotal: float,
    tax_amount: float,
    discount_amount: float,
    total: float,
):
    """Caller-computed totals must be consistent. Nothing is re-derived."""
    if tax_amount < 0:
        raise ValidationError("tax_amount must be >= 0")
    if discount_amount < 0:
        raise ValidationError("discount_amount must be >= 0")

    items_sum = round(sum(item["amount"] for item in items), 2)
    if abs(items_sum - subtotal) > MONEY_TOLERANCE:
        raise ValidationError(f"subtotal {subtotal} != sum of line items ({items_sum})")

    expected = round(subtotal + tax_amount - discount_amount, 2)
    if abs(expected - total) > MONEY_TOLERANCE:
        raise ValidationError(
            f"total {total} != subtotal + tax_amount - discount_amount ({expected})"
        )
    if total < 0:
        raise ValidationError("total must be >= 0")


# ════════════════════════════════════════════════════════════════════════════
# NUMBERING
# ════════════════════════════════════════════════════════════════════════════

async def reserve_invoice_number(store) -> str:
    """
    🔒 Atomically reserve the next invoice number.

    The counter is seeded from the current invoice count the first time, so a
    store already holding 5 invoices continues at INV-00006.
    """
    if not await store.sequence_exists(INVOICE_SEQUENCE):
        existing = await store.count("invoices")
        await store.ensure_sequence(INVOICE_SEQUENCE, existing)
    seq = await store.next_sequence(INVOICE_SEQUENCE)
    return format_invoice_number(seq)


async def _insert_numbered(store, invoice: Dict[str, Any]) -> Dict[str, Any]:
    """Insert with a fresh number, retrying when the unique index rejects it."""
    for attempt in range(1, INVOICE_NUMBER_MAX_ATTEMPTS + 1):
        invoice["invoice_number"] = await reserve_invoice_number(store)
        try:
            return await store.insert("invoices", invoice)
        except DuplicateRecordError:
            logger.warning(
                f"[INVOICE] {invoice['invoice_number']} already taken "
                f"(attempt {attempt}/{INVOICE_NUMBER_MAX_ATTEMPTS})"
            )
    raise PersistenceError(
        f"Could not reserve a unique invoice number after {INVOICE_NUMBER_MAX_ATTEMPTS} attempts"
    )


# ════════════════════════════════════════════════════════════════════════════
# GENERATION
# ════════════════════════════════════════════════════════════════════════════

def _build_invoice(
    snapshot: Dict[str, Any],
    totals: Dict[str, Any],
    lead_id: Optional[str],
    staff_id: Optional[str],
) -> Dict[str, Any]:
    items = normalize_line_items(totals.get("line_items"))

    subtotal = float(totals.get("subtotal") or 0)
    tax_rate = float(totals.get("tax_rate") or 0)
    tax_amount = float(totals.get("tax_amount") or 0)
    discount_amount = float(totals.get("discount_amount") or 0)
    total = float(totals.get("total") or 0)
    check_totals(items, subtotal, tax_amount, discount_amount, total)

    payment_status = _value(totals.get("payment_status")) or "pending"
    if payment_status not in INITIAL_PAYMENT_STATUSES:
        raise ValidationError(
            f"Invalid initial payment status: {payment_status}. Valid: {INITIAL_PAYMENT_STATUSES}"
        )

    now = now_iso()
    paid = payment_status == "paid"

    return {
        "id": str(uuid.uuid4()),
        "invoice_number": None,
        "lead_id": lead_id,
        # Customer snapshot
        "customer_name": snapshot.get("customer_name", ""),
        "customer_phone": snapshot.get("customer_phone", ""),
        "customer_email": snapshot.get("customer_email"),
        # Device snapshot
        "device_type": snapshot.get("device_type", ""),
        "device_model": snapshot.get("device_model", ""),
        "issue": snapshot.get("issue", ""),
        # Pricing
        "items": items,
        "subtotal": round(subtotal, 2),
        "tax_rate": tax_rate,
        "gst_included": tax_rate > 0 or tax_amount > 0,
        "tax_amount": round(tax_amount, 2),
        "discount_amount": round(discount_amount, 2),
        "total_amount": round(total, 2),
        # Payment
        "payment_status": payment_status,
        "payment_method": _value(totals.get("payment_method")),
        "paid_at": now if paid else None,
        "amount_paid": round(total, 2) if paid else 0,
        "notes": totals.get("notes"),
        "terms_conditions": totals.get("terms"),
        "invoice_date": now,
        "created_by": staff_id,
        "created_at": now,
        "updated_at": now,
    }


async def generate_invoice_from_lead(
    store,
    lead_id: str,
    totals: Dict[str, Any],
    staff_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Create an invoice from a lead (customer/device fields copied from the lead)
    and back-link lead.invoice_id.

    Returns:
        {"invoice", "lead_linked", "warnings"}
    Raises:
        NotFoundError (lead), ConflictError (lead already invoiced),
        ValidationError (totals), PersistenceError (insert failed: fatal)
    """
    lead = await store.find_one("leads", {"id": lead_id})
    if lead.get("invoice_id"):
        raise ConflictError(
            f"Lead {lead_id} already has invoice {lead['invoice_id']}",
            invoice_id=lead["invoice_id"],
        )

    snapshot = {
        "customer_name": lead.get("customer_name", ""),
        "customer_phone": lead.get("contact_number", ""),
        "customer_email": lead.get("email"),
        "device_type": lead.get("device_type", ""),
        "device_model": lead.get("device_model", ""),
        "issue": lead.get("issue_reported", ""),
    }
    invoice = _build_invoice(snapshot, totals, lead_id, staff_id)
    invoice = await _insert_numbered(store, invoice)

    logger.info(
        f"[INVOICE] {invoice['invoice_number']} created from lead {lead_id} "
        f"| total={invoice['total_amount']}"
    )

    # Back-link: only if still unlinked
    warnings: List[PartialFailureWarning] = []
    lead_linked = False
    try:
        await store.update(
            "leads",
            {"id": lead_id, "invoice_id": None},
            {"invoice_id": invoice["id"], "updated_at": now_iso()},
        )
        lead_linked = True
    except (PersistenceError, NotFoundError) as e:
        logger.error(
            f"[INVOICE] {invoice['invoice_number']} created but lead {lead_id} back-link failed: {e}"
        )
        warnings.append(PartialFailureWarning(
            "lead_backlink",
            f"Invoice created but linking it to the lead failed: {e.message}",
            lead_id,
        ))

    await log_activity(
        store, "invoice_generated", "invoice", invoice["id"],
        user_id=staff_id,
        entity_name=invoice["invoice_number"],
        metadata={
            "lead_id": lead_id,
            "customer_name": invoice["customer_name"],
            "total_amount": invoice["total_amount"],
            "lead_linked": lead_linked,
        },
    )
    return {"invoice": invoice, "lead_linked": lead_linked, "warnings": warnings}


async def generate_invoice(
    store,
    data: Dict[str, Any],
    staff_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Manual invoice from caller-supplied customer fields and line items."""
    customer_name = (data.get("customer_name") or "").strip()
    customer_phone = (data.get("customer_phone") or "").strip()
    if not customer_name or not customer_phone:
        raise ValidationError("customer_name and customer_phone are required")

    snapshot = {
        "customer_name": customer_name,
        "customer_phone": customer_phone,
        "customer_email": data.get("customer_email"),
        "device_type": data.get("device_type", ""),
        "device_model": data.get("device_model", ""),
        "issue": data.get("issue", ""),
    }
    invoice = _build_invoice(snapshot, data, None, staff_id)
    invoice = await _insert_numbered(store, invoice)

    logger.info(f"[INVOICE] {invoice['invoice_number']} created (manual) | total={invoice['total_amount']}")

    await log_activity(
        store, "invoice_generated", "invoice", invoice["id"],
        user_id=staff_id,
        entity_name=invoice["invoice_number"],
        metadata={"customer_name": customer_name, "total_amount": invoice["total_amount"]},
    )
    return {"invoice": invoice, "lead_linked": False, "warnings": []}


# ════════════════════════════════════════════════════════════════════════════
# READS
# ════════════════════════════════════════════════════════════════════════════

async def get_invoice(store, invoice_id: str) -> Dict[str, Any]:
    return await store.find_one("invoices", {"id": invoice_id})


async def list_invoices(
    store,
    payment_status: Optional[str] = None,
    customer_name: Optional[str] = None,
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
    limit: int = 100,
    skip: int = 0,
) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if payment_status:
        query["payment_status"] = payment_status
    if customer_name:
        query["customer_name"] = {"$regex": re.escape(customer_name), "$options": "i"}
    if from_date or to_date:
        query["invoice_date"] = {}
        if from_date:
            query["invoice_date"]["$gte"] = from_date
        if to_date:
            query["invoice_date"]["$lte"] = to_date

    invoices = await store.find(
        "invoices", query, sort=[("created_at", -1)], limit=min(limit, 1000), skip=skip
    )
    total = await store.count("invoices", query)
    return {"invoices": invoices, "count": len(invoices), "total": total}


# ════════════════════════════════════════════════════════════════════════════
# RECONCILIATION (orphaned back-links)
# ════════════════════════════════════════════════════════════════════════════

async def reconcile_invoice_links(store) -> Dict[str, Any]:
    """
    Repair leads left without invoice_id after a failed back-link.

    - invoice.lead_id -> lead with null invoice_id: link it (earliest invoice wins)
    - lead already linked to another invoice: reported as conflict
    - invoice.lead_id -> no such lead: reported as missing_lead
    - lead.invoice_id -> no such invoice: reported as dangling
    """
    report = {
        "checked": 0,
        "repaired": 0,
        "conflicts": [],
        "missing_leads": [],
        "dangling_links": [],
    }

    invoices = await store.find(
        "invoices",
        {"lead_id": {"$ne": None}},
        sort=[("created_at", 1), ("invoice_number", 1)],
        limit=100000,
    )

    for inv in invoices:
        report["checked"] += 1
        lead = await store.get("leads", {"id": inv["lead_id"]})

        if lead is None:
            report["missing_leads"].append(
                {"invoice_id": inv["id"], "invoice_number": inv["invoice_number"], "lead_id": inv["lead_id"]}
            )
            continue

        if lead.get("invoice_id") == inv["id"]:
            continue

        conflict = {
            "invoice_id": inv["id"],
            "invoice_number": inv["invoice_number"],
            "lead_id": lead["id"],
            "linked_invoice_id": lead.get("invoice_id"),
        }
        if lead.get("invoice_id"):
            report["conflicts"].append(conflict)
            continue

        try:
            await store.update(
                "leads",
                {"id": lead["id"], "invoice_id": None},
                {"invoice_id": inv["id"], "updated_at": now_iso()},
            )
        except NotFoundError:
            # Linked by someone else in the meantime
            report["conflicts"].append(conflict)
            continue

        report["repaired"] += 1
        logger.info(f"[RECONCILE] Lead {lead['id']} linked to {inv['invoice_number']}")

    linked_leads = await store.find("leads", {"invoice_id": {"$ne": None}}, limit=100000)
    for lead in linked_leads:
        if await store.get("invoices", {"id": lead["invoice_id"]}) is None:
            report["dangling_links"].append({"lead_id": lead["id"], "invoice_id": lead["invoice_id"]})

    if report["repaired"] or report["conflicts"] or report["missing_leads"] or report["dangling_links"]:
        logger.warning(
            f"[RECONCILE] repaired={report['repaired']} conflicts={len(report['conflicts'])} "
            f"missing_leads={len(report['missing_leads'])} dangling={len(report['dangling_links'])}"
        )
        await log_activity(
            store, "invoice_links_reconciled", "system",
            metadata={
                "repaired": report["repaired"],
                "conflicts": len(report["conflicts"]),
                "missing_leads": len(report["missing_leads"]),
                "dangling_links": len(report["dangling_links"]),
            },
        )
    return report
