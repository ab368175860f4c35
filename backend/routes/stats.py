"""
Routes for dashboard statistics
"""

from fastapi import APIRouter, Depends, Query
from typing import Optional

import config
from routes.auth import get_store
from services.metrics import compute_dashboard_metrics, MAX_WINDOW_DAYS
from services.permissions import require_capability, assigned_scope

router = APIRouter(prefix="/stats", tags=["Stats"])


@router.get("/dashboard")
async def get_dashboard(
    days: Optional[int] = Query(None, ge=1, le=MAX_WINDOW_DAYS),
    staff_id: Optional[str] = None,
    top_n: int = Query(10, ge=1, le=50),
    store=Depends(get_store),
    staff: dict = Depends(require_capability("dashboard.view")),
):
    """
    Dashboard metrics for the last `days` days vs the window before.
    Staff limited to their assigned leads always get their own numbers.
    """
    scope = assigned_scope(staff) or staff_id
    return await compute_dashboard_metrics(
        store,
        days=days or config.METRICS_DEFAULT_DAYS,
        staff_id=scope,
        top_n=top_n,
    )
