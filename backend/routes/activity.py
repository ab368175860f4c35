"""
RepairDesk CRM - Routes Activity Log (audit trail)
"""

from fastapi import APIRouter, Depends
from typing import Optional

from routes.auth import get_store
from services.event_logger import get_activity_logs
from services.permissions import require_capability

router = APIRouter(prefix="/activity", tags=["Activity"])


@router.get("")
async def list_activity(
    user_id: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    action_type: Optional[str] = None,
    limit: int = 100,
    skip: int = 0,
    store=Depends(get_store),
    staff: dict = Depends(require_capability("activity.view")),
):
    """Activity log entries, newest first"""
    return await get_activity_logs(
        store,
        user_id=user_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action_type=action_type,
        limit=min(limit, 500),
        skip=skip,
    )
