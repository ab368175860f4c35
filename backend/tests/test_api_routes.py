"""
RepairDesk CRM - HTTP API tests
The store dependency is overridden with an in-memory database; sessions are
inserted directly as the identity provider would.
Run: cd backend && pytest tests/test_api_routes.py -v
"""

import os
import uuid
from datetime import datetime, timedelta, timezone

os.environ.setdefault("ENABLE_SCHEDULER", "false")

import pytest
from fastapi.testclient import TestClient

import config
from routes.auth import get_store
from server import app
from tests.conftest import run, make_staff, make_lead, make_invoice, iso


def login(store, staff, expires_in=timedelta(hours=8)):
    token = uuid.uuid4().hex
    run(store.insert("sessions", {
        "token": token,
        "staff_id": staff["id"],
        "expires_at": iso(datetime.now(timezone.utc) + expires_in),
    }))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    # No context manager: startup would touch the real database
    yield TestClient(app)
    app.dependency_overrides.clear()


LEAD_PAYLOAD = {
    "customer_name": "Rahul Verma",
    "contact_number": "+91 98765 43210",
    "device_type": "iPhone",
    "device_model": "iPhone 12",
    "issue_reported": "Battery swelling",
    "lead_source": "Website",
}

INVOICE_PAYLOAD = {
    "lineItems": [{"description": "Battery replacement", "quantity": 1, "rate": 1000}],
    "subtotal": 1000,
    "taxRate": 18,
    "taxAmount": 180,
    "discountAmount": 0,
    "total": 1180,
    "notes": "Thank you",
    "terms": "30 day warranty on parts",
}


# ═══════════════════════════════════════════════════════════════
# 1. AUTH
# ═══════════════════════════════════════════════════════════════

class TestAuth:
    def test_health_is_public(self, client):
        r = client.get("/api/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"

    def test_missing_token(self, client):
        assert client.get("/api/leads").status_code == 401

    def test_expired_session(self, client, store):
        staff = make_staff(store)
        headers = login(store, staff, expires_in=timedelta(hours=-1))
        assert client.get("/api/leads", headers=headers).status_code == 401

    def test_inactive_staff(self, client, store):
        staff = make_staff(store, is_active=False)
        assert client.get("/api/leads", headers=login(store, staff)).status_code == 403

    def test_me_includes_navigation(self, client, store):
        tech = make_staff(store, role="technician")
        r = client.get("/api/staff/me", headers=login(store, tech))
        assert r.status_code == 200
        body = r.json()
        assert body["id"] == tech["id"]
        assert "Invoice" in body["navigation"]
        assert "Users" not in body["navigation"]
        assert "staff.manage" not in body["capabilities"]


# ═══════════════════════════════════════════════════════════════
# 2. LEADS
# ═══════════════════════════════════════════════════════════════

class TestLeadRoutes:
    def test_create_and_remark(self, client, store):
        staff = make_staff(store, role="manager")
        headers = login(store, staff)

        r = client.post("/api/leads", json=LEAD_PAYLOAD, headers=headers)
        assert r.status_code == 201
        lead = r.json()["lead"]
        assert lead["contact_number"] == "9876543210"
        assert lead["status"] == "new"

        r = client.post(
            f"/api/leads/{lead['id']}/remarks",
            json={"remark": "Called customer, interested", "status_changed_to": "contacted"},
            headers=headers,
        )
        assert r.status_code == 201
        body = r.json()
        assert body["lead"]["status"] == "contacted"
        assert body["warnings"] == []

        r = client.get(f"/api/leads/{lead['id']}", headers=headers)
        assert len(r.json()["remarks"]) == 1

    def test_bad_phone_is_422(self, client, store):
        headers = login(store, make_staff(store))
        r = client.post("/api/leads", json={**LEAD_PAYLOAD, "contact_number": "12345"}, headers=headers)
        assert r.status_code == 422

    def test_blank_remark_is_400(self, client, store):
        headers = login(store, make_staff(store))
        lead = make_lead(store)
        r = client.post(f"/api/leads/{lead['id']}/remarks", json={"remark": "   "}, headers=headers)
        assert r.status_code == 400
        assert r.json()["error"] == "ValidationError"

    def test_forbidden_transition_is_400(self, client, store):
        headers = login(store, make_staff(store))
        lead = make_lead(store, status="cancelled")
        r = client.post(f"/api/leads/{lead['id']}/status", json={"status": "contacted"}, headers=headers)
        assert r.status_code == 400
        body = r.json()
        assert body["error"] == "TransitionError"
        assert body["allowed"] == []

    def test_unknown_lead_is_404(self, client, store):
        headers = login(store, make_staff(store))
        r = client.get("/api/leads/nope", headers=headers)
        assert r.status_code == 404
        assert r.json()["error"] == "NotFoundError"

    def test_patch_rejects_status(self, client, store):
        headers = login(store, make_staff(store))
        lead = make_lead(store)
        r = client.patch(f"/api/leads/{lead['id']}", json={"status": "delivered"}, headers=headers)
        assert r.status_code == 422

    def test_patch_stale_is_409(self, client, store):
        headers = login(store, make_staff(store))
        lead = make_lead(store)
        r = client.patch(
            f"/api/leads/{lead['id']}",
            json={"area": "Powai", "expected_updated_at": "2020-01-01T00:00:00+00:00"},
            headers=headers,
        )
        assert r.status_code == 409

    def test_sales_executive_sees_only_assigned(self, client, store):
        sales = make_staff(store, role="sales_executive")
        mine = make_lead(store, assigned_to=sales["id"])
        other = make_lead(store)
        headers = login(store, sales)

        r = client.get("/api/leads", headers=headers)
        assert [l["id"] for l in r.json()["leads"]] == [mine["id"]]
        assert client.get(f"/api/leads/{other['id']}", headers=headers).status_code == 404

    def test_sales_executive_cannot_assign(self, client, store):
        sales = make_staff(store, role="sales_executive")
        lead = make_lead(store, assigned_to=sales["id"])
        r = client.post(f"/api/leads/{lead['id']}/assign", json={"staff_id": sales["id"]}, headers=login(store, sales))
        assert r.status_code == 403

    def test_patch_bad_phone_is_422(self, client, store):
        headers = login(store, make_staff(store))
        lead = make_lead(store)
        r = client.patch(f"/api/leads/{lead['id']}", json={"contact_number": "abc"}, headers=headers)
        assert r.status_code == 422
        r = client.patch(f"/api/leads/{lead['id']}", json={"customer_name": "   "}, headers=headers)
        assert r.status_code == 422

    def test_patch_clears_email(self, client, store):
        headers = login(store, make_staff(store))
        lead = make_lead(store, email="old@example.in")
        r = client.patch(f"/api/leads/{lead['id']}", json={"email": None}, headers=headers)
        assert r.status_code == 200
        assert r.json()["lead"]["email"] is None

    def test_reject_then_accept(self, client, store):
        headers = login(store, make_staff(store))
        lead = make_lead(store)

        r = client.post(f"/api/leads/{lead['id']}/reject", json={"reason": "not_interested"}, headers=headers)
        assert r.status_code == 200
        assert r.json()["lead"]["status"] == "cancelled"
        assert r.json()["lead"]["rejection_reason"] == "not_interested"

        r = client.post(f"/api/leads/{lead['id']}/accept", headers=headers)
        assert r.status_code == 409

    def test_accept(self, client, store):
        headers = login(store, make_staff(store))
        lead = make_lead(store)
        r = client.post(f"/api/leads/{lead['id']}/accept", headers=headers)
        assert r.status_code == 200
        assert r.json()["lead"]["acceptance_status"] == "accepted"


class TestLeadWebhook:
    BODY = {
        "name": "Neha Joshi",
        "phone": "98200 12345",
        "device": "iPhone",
        "model": "iPhone 11",
        "issue": "Not charging",
        "source": "LP-3",
    }

    def test_key_required(self, client, monkeypatch):
        monkeypatch.setattr(config, "LEAD_WEBHOOK_API_KEY", "secret-key")
        assert client.post("/api/leads/webhook", json=self.BODY).status_code == 401
        r = client.post("/api/leads/webhook", json=self.BODY, headers={"X-API-Key": "wrong"})
        assert r.status_code == 401

    def test_not_configured(self, client, monkeypatch):
        monkeypatch.setattr(config, "LEAD_WEBHOOK_API_KEY", "")
        r = client.post("/api/leads/webhook", json=self.BODY, headers={"X-API-Key": "anything"})
        assert r.status_code == 503

    def test_create_then_duplicate(self, client, store, monkeypatch):
        monkeypatch.setattr(config, "LEAD_WEBHOOK_API_KEY", "secret-key")
        headers = {"X-API-Key": "secret-key"}

        r = client.post("/api/leads/webhook", json=self.BODY, headers=headers)
        assert r.status_code == 201
        body = r.json()
        assert body["duplicate"] is False
        lead = run(store.find_one("leads", {"id": body["lead_id"]}))
        assert lead["lead_source"] == "LP-3"
        assert lead["contact_number"] == "9820012345"

        r = client.post("/api/leads/webhook", json={**self.BODY, "issue": "Battery"}, headers=headers)
        assert r.status_code == 200
        assert r.json() == {"success": True, "lead_id": body["lead_id"], "duplicate": True}

    def test_missing_fields_is_400(self, client, monkeypatch):
        monkeypatch.setattr(config, "LEAD_WEBHOOK_API_KEY", "secret-key")
        r = client.post("/api/leads/webhook", json={"name": "A"}, headers={"X-API-Key": "secret-key"})
        assert r.status_code == 400
        assert r.json()["missing_fields"] == ["phone", "device", "model", "issue"]


# ═══════════════════════════════════════════════════════════════
# 3. INVOICES
# ═══════════════════════════════════════════════════════════════

class TestInvoiceRoutes:
    def test_create_from_lead(self, client, store):
        headers = login(store, make_staff(store, role="field_executive"))
        lead = make_lead(store)

        r = client.post("/api/invoices/create-from-lead", json={"leadId": lead["id"], **INVOICE_PAYLOAD}, headers=headers)
        assert r.status_code == 201
        body = r.json()
        assert body["invoice"]["invoice_number"] == "INV-00001"
        assert body["invoice"]["total_amount"] == 1180
        assert body["invoice"]["terms_conditions"] == "30 day warranty on parts"
        assert body["lead_linked"] is True

        r = client.post("/api/invoices/create-from-lead", json={"leadId": lead["id"], **INVOICE_PAYLOAD}, headers=headers)
        assert r.status_code == 409

    def test_inconsistent_total_is_400(self, client, store):
        headers = login(store, make_staff(store))
        lead = make_lead(store)
        r = client.post(
            "/api/invoices/create-from-lead",
            json={"leadId": lead["id"], **INVOICE_PAYLOAD, "total": 1000},
            headers=headers,
        )
        assert r.status_code == 400

    def test_sales_executive_cannot_invoice(self, client, store):
        headers = login(store, make_staff(store, role="sales_executive"))
        r = client.post("/api/invoices", json={"customerName": "A", "customerPhone": "1", **INVOICE_PAYLOAD}, headers=headers)
        assert r.status_code == 403

    def test_payment_update(self, client, store):
        headers = login(store, make_staff(store))
        invoice = make_invoice(store, 1, total=1180)

        r = client.patch(f"/api/invoices/{invoice['id']}", json={"payment_status": "paid", "payment_method": "upi"}, headers=headers)
        assert r.status_code == 200
        assert r.json()["invoice"]["payment_status"] == "paid"

        r = client.patch(f"/api/invoices/{invoice['id']}", json={"payment_status": "pending"}, headers=headers)
        assert r.status_code == 400

    def test_payment_unknown_invoice(self, client, store):
        headers = login(store, make_staff(store))
        r = client.patch("/api/invoices/missing", json={"payment_status": "paid"}, headers=headers)
        assert r.status_code == 404

    def test_reconcile_requires_maintenance(self, client, store):
        lead = make_lead(store)
        make_invoice(store, 1, lead_id=lead["id"])

        r = client.post("/api/invoices/reconcile-links", headers=login(store, make_staff(store, role="manager")))
        assert r.status_code == 403

        r = client.post("/api/invoices/reconcile-links", headers=login(store, make_staff(store, role="super_admin")))
        assert r.status_code == 200
        assert r.json()["repaired"] == 1


# ═══════════════════════════════════════════════════════════════
# 4. STATS / STAFF / ACTIVITY
# ═══════════════════════════════════════════════════════════════

class TestOtherRoutes:
    def test_dashboard(self, client, store):
        headers = login(store, make_staff(store))
        make_lead(store, status="completed")
        r = client.get("/api/stats/dashboard?days=7", headers=headers)
        assert r.status_code == 200
        body = r.json()
        assert body["window"]["days"] == 7
        assert body["leads"]["total"] == 1
        assert body["timeline"][0]["date"] == body["window"]["start"][:10]
        assert sum(d["new_leads"] for d in body["timeline"]) == 1

    def test_dashboard_days_bounds(self, client, store):
        headers = login(store, make_staff(store))
        assert client.get("/api/stats/dashboard?days=0", headers=headers).status_code == 422

    def test_technician_cannot_create_staff(self, client, store):
        headers = login(store, make_staff(store, role="technician"))
        r = client.post("/api/staff", json={
            "auth_user_id": "idp-1", "full_name": "New Tech", "email": "tech@repairdesk.test",
        }, headers=headers)
        assert r.status_code == 403

    def test_super_admin_manages_staff(self, client, store):
        admin = make_staff(store, role="super_admin")
        headers = login(store, admin)
        payload = {"auth_user_id": "idp-2", "full_name": "Kiran", "email": "Kiran@RepairDesk.test", "role": "technician"}

        r = client.post("/api/staff", json=payload, headers=headers)
        assert r.status_code == 201
        created = r.json()["staff"]
        assert created["email"] == "kiran@repairdesk.test"

        assert client.post("/api/staff", json=payload, headers=headers).status_code == 409

        r = client.post(f"/api/staff/{created['id']}/active", json={"is_active": False}, headers=headers)
        assert r.json()["staff"]["is_active"] is False

        r = client.post(f"/api/staff/{admin['id']}/active", json={"is_active": False}, headers=headers)
        assert r.status_code == 400

    def test_activity_log(self, client, store):
        headers = login(store, make_staff(store, role="manager"))
        client.post("/api/leads", json=LEAD_PAYLOAD, headers=headers)
        r = client.get("/api/activity?entity_type=lead", headers=headers)
        assert r.status_code == 200
        assert r.json()["logs"][0]["action_type"] == "lead_created"
