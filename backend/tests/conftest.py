"""
RepairDesk CRM - test fixtures
MongoDB is replaced by mongomock-motor (in-memory, same async API as Motor).
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from mongomock_motor import AsyncMongoMockClient

from services.errors import PersistenceError
from services.store import Store


def run(coro):
    """Run async DB operation in a fresh event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class FlakyStore(Store):
    """Store whose updates on the given collections always fail."""

    def __init__(self, database, fail_updates=()):
        super().__init__(database)
        self.fail_updates = set(fail_updates)

    async def update(self, collection, filter, patch):
        if collection in self.fail_updates:
            raise PersistenceError(f"Update on {collection} failed: simulated outage")
        return await super().update(collection, filter, patch)


def _database():
    return AsyncMongoMockClient()[f"repairdesk_test_{uuid.uuid4().hex[:8]}"]


@pytest.fixture
def store():
    s = Store(_database())
    run(s.ensure_indexes())
    return s


@pytest.fixture
def flaky_store():
    """Factory: flaky_store("leads") -> store whose lead updates fail."""
    def _make(*collections):
        s = FlakyStore(_database(), fail_updates=collections)
        run(s.ensure_indexes())
        return s
    return _make


def iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def make_staff(store, role="manager", is_active=True, full_name=None, **extra):
    staff_id = str(uuid.uuid4())
    doc = {
        "id": staff_id,
        "auth_user_id": f"auth-{staff_id[:8]}",
        "full_name": full_name or f"{role.title()} {staff_id[:4]}",
        "email": f"{staff_id[:8]}@repairdesk.test",
        "phone": None,
        "role": role,
        "is_active": is_active,
        "created_at": iso(datetime.now(timezone.utc)),
        "updated_at": iso(datetime.now(timezone.utc)),
        **extra,
    }
    return run(store.insert("staff", doc))


def make_lead(store, created_at=None, **fields):
    """Insert a lead record directly (bypasses intake validation)."""
    created = created_at or datetime.now(timezone.utc) - timedelta(hours=1)
    doc = {
        "id": str(uuid.uuid4()),
        "customer_name": "Test Customer",
        "contact_number": "9876543210",
        "email": None,
        "device_type": "iPhone",
        "device_model": "iPhone 13",
        "issue_reported": "Screen broken",
        "lead_source": "Manual",
        "priority": 3,
        "assigned_to": None,
        "status": "new",
        "follow_up_date": None,
        "invoice_id": None,
        "first_contact_at": None,
        "pickup_scheduled_at": None,
        "repair_started_at": None,
        "repair_completed_at": None,
        "delivered_at": None,
        "cancelled_at": None,
        "created_at": iso(created),
        "updated_at": iso(created),
    }
    doc.update(fields)
    return run(store.insert("leads", doc))


def make_invoice(store, number, total=1000.0, payment_status="pending", invoice_date=None, **fields):
    """Insert an invoice record directly with a given sequence number."""
    date = invoice_date or datetime.now(timezone.utc) - timedelta(hours=1)
    doc = {
        "id": str(uuid.uuid4()),
        "invoice_number": f"INV-{number:05d}",
        "lead_id": None,
        "customer_name": "Walk-in",
        "customer_phone": "9876543210",
        "items": [{"description": "Service", "quantity": 1, "unit_price": total, "amount": total}],
        "subtotal": total,
        "tax_rate": 0,
        "tax_amount": 0,
        "discount_amount": 0,
        "total_amount": total,
        "payment_status": payment_status,
        "payment_method": None,
        "paid_at": iso(date) if payment_status == "paid" else None,
        "amount_paid": total if payment_status == "paid" else 0,
        "invoice_date": iso(date),
        "created_at": iso(date),
        "updated_at": iso(date),
    }
    doc.update(fields)
    return run(store.insert("invoices", doc))
