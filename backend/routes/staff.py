"""
RepairDesk CRM - Routes Staff
Staff records (linked to the identity provider by auth_user_id), the
current staff member with capabilities and navigation.
"""

from fastapi import APIRouter, Depends, HTTPException
from typing import Optional
import uuid

from config import now_iso
from models import StaffCreate, StaffUpdate, StaffActive
from routes.auth import get_current_staff, get_store
from services.errors import ConflictError, DuplicateRecordError
from services.event_logger import log_activity
from services.permissions import (
    require_capability, get_capabilities, get_navigation, VALID_ROLES,
)

router = APIRouter(tags=["Staff"])


# ==================== CURRENT STAFF ====================

@router.get("/staff/me")
async def get_me(staff: dict = Depends(get_current_staff)):
    """Staff record + capabilities + sidebar entries for the role."""
    role = staff.get("role", "")
    return {
        **staff,
        "capabilities": sorted(get_capabilities(role)),
        "navigation": get_navigation(role),
    }


# ==================== STAFF CRUD ====================

@router.get("/staff")
async def list_staff(
    role: Optional[str] = None,
    is_active: Optional[bool] = None,
    store=Depends(get_store),
    staff: dict = Depends(require_capability("staff.view")),
):
    query = {}
    if role:
        query["role"] = role
    if is_active is not None:
        query["is_active"] = is_active
    members = await store.find("staff", query, sort=[("full_name", 1)], limit=500)
    return {"staff": members, "count": len(members), "roles": VALID_ROLES}


@router.get("/staff/{staff_id}")
async def get_staff(
    staff_id: str,
    store=Depends(get_store),
    staff: dict = Depends(require_capability("staff.view")),
):
    return {"staff": await store.find_one("staff", {"id": staff_id})}


@router.post("/staff", status_code=201)
async def create_staff(
    data: StaffCreate,
    store=Depends(get_store),
    staff: dict = Depends(require_capability("staff.manage")),
):
    if await store.get("staff", {"email": data.email}):
        raise ConflictError(f"Staff with email {data.email} already exists")
    if await store.get("staff", {"auth_user_id": data.auth_user_id}):
        raise ConflictError(f"auth_user_id {data.auth_user_id} already linked to a staff record")

    now = now_iso()
    member = {
        "id": str(uuid.uuid4()),
        "auth_user_id": data.auth_user_id,
        "full_name": data.full_name,
        "email": data.email,
        "phone": data.phone,
        "role": data.role,
        "is_active": True,
        "created_at": now,
        "updated_at": now,
    }
    try:
        member = await store.insert("staff", member)
    except DuplicateRecordError as e:
        raise ConflictError(e.message) from e

    await log_activity(
        store, "staff_created", "staff", member["id"],
        user_id=staff["id"],
        entity_name=member["email"],
        new_value={"role": member["role"]},
    )
    return {"staff": member}


@router.patch("/staff/{staff_id}")
async def update_staff(
    staff_id: str,
    data: StaffUpdate,
    store=Depends(get_store),
    staff: dict = Depends(require_capability("staff.manage")),
):
    target = await store.find_one("staff", {"id": staff_id})
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        return {"staff": target}

    patch["updated_at"] = now_iso()
    updated = await store.update("staff", {"id": staff_id}, patch)

    await log_activity(
        store, "staff_updated", "staff", staff_id,
        user_id=staff["id"],
        entity_name=target.get("email"),
        old_value={k: target.get(k) for k in patch if k != "updated_at"},
        new_value={k: v for k, v in patch.items() if k != "updated_at"},
    )
    return {"staff": updated}


@router.post("/staff/{staff_id}/active")
async def set_staff_active(
    staff_id: str,
    data: StaffActive,
    store=Depends(get_store),
    staff: dict = Depends(require_capability("staff.manage")),
):
    """Activate / deactivate. Inactive staff cannot log remarks or receive leads."""
    if staff_id == staff["id"] and not data.is_active:
        raise HTTPException(status_code=400, detail="Cannot deactivate your own account")

    target = await store.find_one("staff", {"id": staff_id})
    updated = await store.update(
        "staff", {"id": staff_id}, {"is_active": data.is_active, "updated_at": now_iso()}
    )

    await log_activity(
        store, "staff_activated" if data.is_active else "staff_deactivated", "staff", staff_id,
        user_id=staff["id"],
        entity_name=target.get("email"),
        old_value={"is_active": target.get("is_active")},
        new_value={"is_active": data.is_active},
    )
    return {"staff": updated}

