"""
RepairDesk CRM - Payment Status Updater

Mutates payment fields of an invoice, independent of the lead lifecycle.
paid / refunded are terminal for ordinary updates; reversing them needs a reason.
"""

import logging
from typing import Any, Dict, Optional

from config import now_iso
from models.invoice import VALID_PAYMENT_METHODS, VALID_PAYMENT_STATUSES
from services.errors import ValidationError
from services.event_logger import log_activity

logger = logging.getLogger("payment_status")

# Forward moves allowed without a reason
PAYMENT_TRANSITIONS = {
    "pending": ["partial", "paid"],
    "partial": ["pending", "paid"],
    "paid": ["refunded"],
    "refunded": [],
}


def requires_reason(from_status: str, to_status: str) -> bool:
    """True when from -> to reverses a settled payment."""
    if from_status == to_status:
        return False
    return to_status not in PAYMENT_TRANSITIONS.get(from_status, [])


async def update_payment(
    store,
    invoice_id: str,
    payment_status,
    payment_method=None,
    amount_paid: Optional[float] = None,
    reason: Optional[str] = None,
    staff_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Set payment_status (and optionally payment_method / amount_paid).

    Raises:
        ValidationError: unknown status/method, reversal without reason
        NotFoundError: invoice_id does not resolve
        PersistenceError: write failed
    """
    to_status = getattr(payment_status, "value", payment_status)
    method = getattr(payment_method, "value", payment_method)

    if to_status not in VALID_PAYMENT_STATUSES:
        raise ValidationError(f"Invalid payment status: {to_status}. Valid: {VALID_PAYMENT_STATUSES}")
    if method is not None and method not in VALID_PAYMENT_METHODS:
        raise ValidationError(f"Invalid payment method: {method}. Valid: {VALID_PAYMENT_METHODS}")

    invoice = await store.find_one("invoices", {"id": invoice_id})
    from_status = invoice.get("payment_status", "pending")

    reason = (reason or "").strip()
    if requires_reason(from_status, to_status) and not reason:
        raise ValidationError(
            f"Payment status '{from_status}' -> '{to_status}' reverses a settled payment: reason required"
        )

    total = invoice.get("total_amount", 0)
    if amount_paid is not None and amount_paid > total + 0.01:
        raise ValidationError(f"amount_paid {amount_paid} exceeds invoice total {total}")

    now = now_iso()
    patch: Dict[str, Any] = {"payment_status": to_status, "updated_at": now}
    if method is not None:
        patch["payment_method"] = method

    if to_status == "paid":
        if from_status != "paid":
            patch["paid_at"] = now
        patch["amount_paid"] = amount_paid if amount_paid is not None else total
    else:
        if from_status == "paid" and to_status != "refunded":
            patch["paid_at"] = None
        if to_status == "refunded":
            patch["refunded_at"] = now
        if amount_paid is not None:
            patch["amount_paid"] = amount_paid
    if reason:
        patch["payment_reversal_reason"] = reason

    updated = await store.update("invoices", {"id": invoice_id}, patch)

    logger.info(
        f"[PAYMENT] {updated.get('invoice_number')} {from_status} -> {to_status}"
        + (f" ({method})" if method else "")
        + (f" | reason={reason}" if reason else "")
    )

    await log_activity(
        store,
        "payment_received" if to_status == "paid" and from_status != "paid" else "payment_status_changed",
        "invoice", invoice_id,
        user_id=staff_id,
        entity_name=updated.get("invoice_number"),
        old_value={"payment_status": from_status, "payment_method": invoice.get("payment_method")},
        new_value={"payment_status": to_status, "payment_method": updated.get("payment_method")},
        metadata={"reason": reason} if reason else None,
    )
    return updated
