"""
RepairDesk CRM - Invoice generator tests
Tests: numbering, totals checks, generation from a lead, back-link failures,
manual invoices, reconciliation of orphaned links.
Run: cd backend && pytest tests/test_invoice_generator.py -v
"""

import asyncio

import pytest

from services.errors import ConflictError, NotFoundError, ValidationError
from services.invoice_generator import (
    format_invoice_number, normalize_line_items, check_totals,
    generate_invoice_from_lead, generate_invoice, list_invoices,
    reconcile_invoice_links,
)
from tests.conftest import run, make_lead, make_invoice, make_staff


def _totals(subtotal=1000.0, tax=180.0, discount=0.0, **extra):
    return {
        "line_items": [{"description": "Screen replacement", "quantity": 1, "unit_price": subtotal}],
        "subtotal": subtotal,
        "tax_rate": 18 if tax else 0,
        "tax_amount": tax,
        "discount_amount": discount,
        "total": subtotal + tax - discount,
        **extra,
    }


# ═══════════════════════════════════════════════════════════════
# 1. UNIT: numbering format + totals
# ═══════════════════════════════════════════════════════════════

class TestFormat:
    def test_padding(self):
        assert format_invoice_number(1) == "INV-00001"
        assert format_invoice_number(42) == "INV-00042"

    def test_overflow_not_truncated(self):
        assert format_invoice_number(123456) == "INV-123456"


class TestTotals:
    def test_line_item_amount_computed(self):
        items = normalize_line_items([{"description": "Battery", "quantity": 2, "rate": 1500}])
        assert items == [{"description": "Battery", "quantity": 2, "unit_price": 1500, "amount": 3000}]

    def test_line_item_amount_mismatch(self):
        with pytest.raises(ValidationError):
            normalize_line_items([{"description": "Battery", "quantity": 2, "unit_price": 1500, "amount": 2000}])

    def test_empty_items(self):
        with pytest.raises(ValidationError):
            normalize_line_items([])

    def test_blank_description(self):
        with pytest.raises(ValidationError):
            normalize_line_items([{"description": "  ", "quantity": 1, "unit_price": 10}])

    def test_total_must_match(self):
        items = normalize_line_items([{"description": "Labour", "quantity": 1, "unit_price": 1000}])
        check_totals(items, 1000, 180, 100, 1080)
        with pytest.raises(ValidationError):
            check_totals(items, 1000, 180, 0, 1000)

    def test_subtotal_must_match_items(self):
        items = normalize_line_items([{"description": "Labour", "quantity": 1, "unit_price": 900}])
        with pytest.raises(ValidationError):
            check_totals(items, 1000, 0, 0, 1000)

    def test_rounding_tolerance(self):
        items = normalize_line_items([{"description": "Part", "quantity": 3, "unit_price": 33.33}])
        check_totals(items, 99.99, 18.0, 0, 117.99)


# ═══════════════════════════════════════════════════════════════
# 2. NUMBERING
# ═══════════════════════════════════════════════════════════════

class TestNumbering:
    def test_sequential_from_empty(self, store):
        numbers = []
        for _ in range(3):
            lead = make_lead(store)
            result = run(generate_invoice_from_lead(store, lead["id"], _totals()))
            numbers.append(result["invoice"]["invoice_number"])
        assert numbers == ["INV-00001", "INV-00002", "INV-00003"]

    def test_concurrent_generation_continues_existing_count(self, store):
        """Five invoices already stored, two generations at once -> 6 and 7."""
        for n in range(1, 6):
            make_invoice(store, n)
        lead_a = make_lead(store)
        lead_b = make_lead(store)

        async def both():
            return await asyncio.gather(
                generate_invoice_from_lead(store, lead_a["id"], _totals()),
                generate_invoice_from_lead(store, lead_b["id"], _totals()),
            )

        results = run(both())
        numbers = sorted(r["invoice"]["invoice_number"] for r in results)
        assert numbers == ["INV-00006", "INV-00007"]

    def test_taken_number_is_skipped(self, store):
        """Counter lagging behind the stored numbers -> retry with the next one."""
        run(store.ensure_sequence("invoice_number", 0))
        make_invoice(store, 1)
        result = run(generate_invoice(store, {
            "customer_name": "Walk-in", "customer_phone": "9876543210", **_totals(tax=0),
        }))
        assert result["invoice"]["invoice_number"] == "INV-00002"


# ═══════════════════════════════════════════════════════════════
# 3. GENERATION FROM A LEAD
# ═══════════════════════════════════════════════════════════════

class TestGenerateFromLead:
    def test_snapshot_totals_and_backlink(self, store):
        staff = make_staff(store)
        lead = make_lead(store, customer_name="Priya", device_model="MacBook Pro 14", device_type="MacBook")

        result = run(generate_invoice_from_lead(store, lead["id"], _totals(), staff_id=staff["id"]))
        invoice = result["invoice"]

        assert result["lead_linked"] is True
        assert result["warnings"] == []
        assert invoice["total_amount"] == 1180
        assert invoice["gst_included"] is True
        assert invoice["customer_name"] == "Priya"
        assert invoice["customer_phone"] == lead["contact_number"]
        assert invoice["device_model"] == "MacBook Pro 14"
        assert invoice["issue"] == lead["issue_reported"]
        assert invoice["lead_id"] == lead["id"]
        assert invoice["payment_status"] == "pending"
        assert invoice["created_by"] == staff["id"]

        linked = run(store.find_one("leads", {"id": lead["id"]}))
        assert linked["invoice_id"] == invoice["id"]
        # Generating does not move the lead status
        assert linked["status"] == lead["status"]

    def test_paid_at_creation(self, store):
        lead = make_lead(store)
        result = run(generate_invoice_from_lead(
            store, lead["id"], _totals(payment_status="paid", payment_method="upi")
        ))
        invoice = result["invoice"]
        assert invoice["payment_status"] == "paid"
        assert invoice["paid_at"] is not None
        assert invoice["amount_paid"] == invoice["total_amount"]

    def test_refunded_not_allowed_at_creation(self, store):
        lead = make_lead(store)
        with pytest.raises(ValidationError):
            run(generate_invoice_from_lead(store, lead["id"], _totals(payment_status="refunded")))

    def test_unknown_lead(self, store):
        with pytest.raises(NotFoundError):
            run(generate_invoice_from_lead(store, "missing", _totals()))
        assert run(store.count("invoices")) == 0

    def test_already_invoiced(self, store):
        lead = make_lead(store)
        run(generate_invoice_from_lead(store, lead["id"], _totals()))
        with pytest.raises(ConflictError):
            run(generate_invoice_from_lead(store, lead["id"], _totals()))
        assert run(store.count("invoices")) == 1

    def test_invalid_totals_write_nothing(self, store):
        lead = make_lead(store)
        bad = _totals()
        bad["total"] = 999
        with pytest.raises(ValidationError):
            run(generate_invoice_from_lead(store, lead["id"], bad))
        assert run(store.count("invoices")) == 0
        assert run(store.find_one("leads", {"id": lead["id"]}))["invoice_id"] is None

    def test_backlink_failure_keeps_invoice(self, flaky_store):
        store = flaky_store("leads")
        lead = make_lead(store)

        result = run(generate_invoice_from_lead(store, lead["id"], _totals()))

        assert result["lead_linked"] is False
        assert result["warnings"][0].step == "lead_backlink"
        assert run(store.count("invoices")) == 1
        assert run(store.find_one("leads", {"id": lead["id"]}))["invoice_id"] is None

        log = run(store.find("activity_logs", {"action_type": "invoice_generated"}))[0]
        assert log["metadata"]["lead_linked"] is False


class TestManualInvoice:
    def test_manual(self, store):
        result = run(generate_invoice(store, {
            "customer_name": " Walk-in Customer ",
            "customer_phone": "9876543210",
            "device_type": "iPad",
            **_totals(subtotal=500, tax=0, discount=50),
        }))
        invoice = result["invoice"]
        assert invoice["lead_id"] is None
        assert invoice["customer_name"] == "Walk-in Customer"
        assert invoice["total_amount"] == 450
        assert invoice["gst_included"] is False

    def test_customer_required(self, store):
        with pytest.raises(ValidationError):
            run(generate_invoice(store, {"customer_name": "", "customer_phone": "1", **_totals()}))

    def test_list_filters(self, store):
        make_invoice(store, 1, payment_status="paid", customer_name="Anil")
        make_invoice(store, 2, customer_name="Sunita")
        assert run(list_invoices(store, payment_status="paid"))["total"] == 1
        assert run(list_invoices(store, customer_name="suni"))["invoices"][0]["invoice_number"] == "INV-00002"


# ═══════════════════════════════════════════════════════════════
# 4. RECONCILIATION
# ═══════════════════════════════════════════════════════════════

class TestReconcile:
    def test_repairs_orphaned_backlink(self, store):
        lead = make_lead(store)
        invoice = make_invoice(store, 1, lead_id=lead["id"])

        report = run(reconcile_invoice_links(store))

        assert report["checked"] == 1
        assert report["repaired"] == 1
        assert run(store.find_one("leads", {"id": lead["id"]}))["invoice_id"] == invoice["id"]

        again = run(reconcile_invoice_links(store))
        assert again["repaired"] == 0

    def test_reports_conflicts_and_missing(self, store):
        lead = make_lead(store)
        first = make_invoice(store, 1, lead_id=lead["id"])
        make_invoice(store, 2, lead_id=lead["id"])
        make_invoice(store, 3, lead_id="ghost-lead")
        make_lead(store, invoice_id="ghost-invoice")

        report = run(reconcile_invoice_links(store))

        assert report["repaired"] == 1
        assert run(store.find_one("leads", {"id": lead["id"]}))["invoice_id"] == first["id"]
        assert [c["invoice_number"] for c in report["conflicts"]] == ["INV-00002"]
        assert [m["lead_id"] for m in report["missing_leads"]] == ["ghost-lead"]
        assert [d["invoice_id"] for d in report["dangling_links"]] == ["ghost-invoice"]

    def test_nightly_job(self, store):
        from scheduler_service import TaskScheduler, RECONCILE_HOUR, RECONCILE_MINUTE

        lead = make_lead(store)
        make_invoice(store, 1, lead_id=lead["id"])

        scheduler = TaskScheduler(store=store)
        report = run(scheduler.reconcile_links())

        assert (RECONCILE_HOUR, RECONCILE_MINUTE) == (2, 30)
        assert report["repaired"] == 1
        assert run(store.count("activity_logs", {"action_type": "invoice_links_reconciled"})) == 1
