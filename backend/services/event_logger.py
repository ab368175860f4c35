"""
RepairDesk CRM - Event Logger

Centralized audit trail for every mutating workflow action.
Single function to call from any route/service.
"""

import logging
import uuid
from config import now_iso
from services.errors import PersistenceError

logger = logging.getLogger("event_logger")


async def log_activity(
    store,
    action_type: str,
    entity_type: str,
    entity_id: str = None,
    user_id: str = None,
    entity_name: str = None,
    old_value: dict = None,
    new_value: dict = None,
    metadata: dict = None,
):
    """
    Write a single entry to the activity_logs collection.

    Args:
        action_type: e.g. lead_created, lead_status_changed, invoice_generated, payment_received
        entity_type: lead | invoice | staff | system
        entity_id: ID of the primary entity
        user_id: staff id performing the action (None for system jobs)
        entity_name: human label (customer name, invoice number)
        old_value / new_value: changed fields
        metadata: free-form dict

    The audit entry is secondary to the action that triggered it: a store
    failure here is logged, the action itself has already succeeded.
    """
    entry = {
        "id": str(uuid.uuid4()),
        "action_type": action_type,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "entity_name": entity_name,
        "user_id": user_id,
        "old_value": old_value,
        "new_value": new_value,
        "metadata": metadata or {},
        "created_at": now_iso(),
    }
    try:
        return await store.insert("activity_logs", entry)
    except PersistenceError as e:
        logger.error(f"[ACTIVITY] Failed to log {action_type} on {entity_type} {entity_id}: {e}")
        return None


async def get_activity_logs(
    store,
    user_id: str = None,
    entity_type: str = None,
    entity_id: str = None,
    action_type: str = None,
    limit: int = 100,
    skip: int = 0,
):
    query = {}

    if user_id:
        query["user_id"] = user_id
    if entity_type:
        query["entity_type"] = entity_type
    if entity_id:
        query["entity_id"] = entity_id
    if action_type:
        query["action_type"] = action_type

    logs = await store.find(
        "activity_logs", query, sort=[("created_at", -1)], limit=limit, skip=skip
    )
    total = await store.count("activity_logs", query)

    return {"logs": logs, "total": total, "limit": limit, "skip": skip}
