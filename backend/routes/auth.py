"""
RepairDesk CRM - Routes Auth
Session resolution only: tokens are issued by the external identity
provider, stored in `sessions`, and resolved here to an active staff record.
"""

from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

import config
from config import now_iso
from services.store import Store

security = HTTPBearer(auto_error=False)


# ==================== HELPERS ====================

def get_store() -> Store:
    """Store bound to the configured database (overridden in tests)."""
    return Store(config.db)


async def get_current_staff(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    store: Store = Depends(get_store),
):
    """Resolves the signed-in staff member from the bearer token."""
    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    session = await store.get("sessions", {
        "token": credentials.credentials,
        "expires_at": {"$gt": now_iso()},
    })
    if not session:
        raise HTTPException(status_code=401, detail="Session expired")

    staff = await store.get("staff", {"id": session["staff_id"]})
    if not staff:
        raise HTTPException(status_code=401, detail="Staff record not found")

    if not staff.get("is_active", False):
        raise HTTPException(status_code=403, detail="Account deactivated")

    return staff
