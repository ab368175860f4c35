"""
RepairDesk CRM - Invoice models
Invoices snapshot customer/device fields at generation time.
Totals are supplied by the caller and checked: total = subtotal + tax - discount.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    CASH = "cash"
    UPI = "upi"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"


VALID_PAYMENT_STATUSES = [s.value for s in PaymentStatus]
VALID_PAYMENT_METHODS = [m.value for m in PaymentMethod]


class LineItem(BaseModel):
    description: str
    quantity: float = 1
    unit_price: float = Field(alias="rate")
    amount: Optional[float] = None

    model_config = ConfigDict(populate_by_name=True)


class InvoiceTotals(BaseModel):
    line_items: List[LineItem] = Field(alias="lineItems")
    subtotal: float
    tax_rate: float = Field(default=0, alias="taxRate")
    tax_amount: float = Field(default=0, alias="taxAmount")
    discount_amount: float = Field(default=0, alias="discountAmount")
    total: float
    notes: Optional[str] = None
    terms: Optional[str] = None
    payment_status: PaymentStatus = Field(default=PaymentStatus.PENDING, alias="paymentStatus")
    payment_method: Optional[PaymentMethod] = Field(default=None, alias="paymentMethod")

    model_config = ConfigDict(populate_by_name=True)


class InvoiceFromLead(InvoiceTotals):
    """POST /invoices/create-from-lead"""
    lead_id: str = Field(alias="leadId")


class InvoiceCreate(InvoiceTotals):
    """Manual invoice (walk-in customer without a lead)"""
    customer_name: str = Field(alias="customerName")
    customer_phone: str = Field(alias="customerPhone")
    customer_email: Optional[str] = Field(default=None, alias="customerEmail")
    device_type: str = Field(default="", alias="deviceType")
    device_model: str = Field(default="", alias="deviceModel")
    issue: str = ""


class PaymentUpdate(BaseModel):
    payment_status: PaymentStatus
    payment_method: Optional[PaymentMethod] = None
    amount_paid: Optional[float] = Field(default=None, ge=0)
    reason: Optional[str] = None
