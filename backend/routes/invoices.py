"""
RepairDesk CRM - Invoice Routes
Invoices: generated from a lead or created manually, numbered INV-#####.
Payment status is updated independently of the lead lifecycle.
"""

from fastapi import APIRouter, Depends
from typing import Optional

from models import InvoiceCreate, InvoiceFromLead, PaymentUpdate
from routes.auth import get_store
from services.invoice_generator import (
    generate_invoice, generate_invoice_from_lead,
    get_invoice, list_invoices, reconcile_invoice_links,
)
from services.payment_status import update_payment
from services.permissions import require_capability

router = APIRouter(prefix="/invoices", tags=["Invoices"])


def _serialize(result: dict) -> dict:
    return {**result, "warnings": [w.to_dict() for w in result.get("warnings", [])]}


# ════════════════════════════════════════════════════════════════════════
# CRUD
# ════════════════════════════════════════════════════════════════════════

@router.get("")
async def get_invoices(
    payment_status: Optional[str] = None,
    customer_name: Optional[str] = None,
    from_date: Optional[str] = None,
    to_date: Optional[str] = None,
    limit: int = 100,
    skip: int = 0,
    store=Depends(get_store),
    staff: dict = Depends(require_capability("invoices.view")),
):
    """List invoices, newest first."""
    return await list_invoices(
        store,
        payment_status=payment_status,
        customer_name=customer_name,
        from_date=from_date,
        to_date=to_date,
        limit=limit,
        skip=skip,
    )


@router.post("", status_code=201)
async def post_invoice(
    data: InvoiceCreate,
    store=Depends(get_store),
    staff: dict = Depends(require_capability("invoices.create")),
):
    """Manual invoice (no lead)."""
    result = await generate_invoice(store, data.model_dump(mode="json"), staff_id=staff["id"])
    return _serialize(result)


@router.post("/create-from-lead", status_code=201)
async def post_invoice_from_lead(
    data: InvoiceFromLead,
    store=Depends(get_store),
    staff: dict = Depends(require_capability("invoices.create")),
):
    """
    Generate an invoice from a lead and link it back.
    The invoice stands even if the back-link fails: see warnings.
    """
    totals = data.model_dump(mode="json", exclude={"lead_id"})
    result = await generate_invoice_from_lead(store, data.lead_id, totals, staff_id=staff["id"])
    return _serialize(result)


@router.post("/reconcile-links")
async def post_reconcile_links(
    store=Depends(get_store),
    staff: dict = Depends(require_capability("admin.maintenance")),
):
    """Repair leads whose invoice back-link was lost."""
    return await reconcile_invoice_links(store)


@router.get("/{invoice_id}")
async def get_invoice_detail(
    invoice_id: str,
    store=Depends(get_store),
    staff: dict = Depends(require_capability("invoices.view")),
):
    return {"invoice": await get_invoice(store, invoice_id)}


@router.patch("/{invoice_id}")
async def patch_invoice_payment(
    invoice_id: str,
    data: PaymentUpdate,
    store=Depends(get_store),
    staff: dict = Depends(require_capability("invoices.update_payment")),
):
    invoice = await update_payment(
        store, invoice_id,
        data.payment_status,
        payment_method=data.payment_method,
        amount_paid=data.amount_paid,
        reason=data.reason,
        staff_id=staff["id"],
    )
    return {"invoice": invoice}
