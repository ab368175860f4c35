"""
RepairDesk CRM - Metrics Aggregator

Dashboard metrics over a time window (default 30 days) compared with the
equally-sized window right before it.

Read-only and idempotent: same window (same `now`) over unchanged data gives
the same output. Nothing is cached between calls.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

import config
from config import parse_iso
from models.lead import CONVERTED_STATUSES, IN_PROGRESS_STATUSES, VALID_LEAD_STATUSES
from services.errors import ValidationError

logger = logging.getLogger("metrics")

OVERDUE_REPAIR_HOURS = 48
PENDING_PAYMENT_STATUSES = ("pending", "partial")
MAX_WINDOW_DAYS = 366


# ════════════════════════════════════════════════════════════════════════
# PURE HELPERS
# ════════════════════════════════════════════════════════════════════════

def rate(numerator: float, denominator: float) -> float:
    """Percentage rounded to 1 decimal, 0 when the denominator is 0."""
    if not denominator:
        return 0
    return round(numerator / denominator * 100, 1)


def average(total: float, count: int) -> float:
    if not count:
        return 0
    return round(total / count, 2)


def period_delta(current: float, previous: float, unit: str = "percent") -> Dict[str, Any]:
    """
    Change between two windows.
    unit="percent": relative change in % (counts, amounts)
    unit="points":  absolute difference (rates)
    previous == 0 and current != 0 -> change None, no_prior_data True
    """
    delta = {
        "current": current,
        "previous": previous,
        "unit": unit,
        "change": 0,
        "no_prior_data": False,
    }
    if previous == 0:
        if current != 0:
            delta["change"] = None
            delta["no_prior_data"] = True
        return delta

    if unit == "points":
        delta["change"] = round(current - previous, 1)
    else:
        delta["change"] = round((current - previous) / previous * 100, 1)
    return delta


def _ts(record: Dict[str, Any], *fields) -> Optional[datetime]:
    for field in fields:
        value = record.get(field)
        if value:
            try:
                return parse_iso(value)
            except (TypeError, ValueError):
                logger.warning(f"[METRICS] Unparseable {field}={value!r} on {record.get('id')}")
    return None


def _in_window(record, start: datetime, end: datetime, *fields) -> bool:
    ts = _ts(record, *fields)
    return ts is not None and start <= ts < end


def _hours(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    if start is None or end is None:
        return None
    return (end - start).total_seconds() / 3600


def lead_counts(leads: List[Dict[str, Any]]) -> Dict[str, Any]:
    statuses = Counter(lead.get("status", "new") for lead in leads)
    total = len(leads)
    converted = sum(statuses[s] for s in CONVERTED_STATUSES)
    return {
        "total": total,
        "new": statuses["new"],
        "in_progress": sum(statuses[s] for s in IN_PROGRESS_STATUSES),
        "completed": converted,
        "cancelled": statuses["cancelled"],
        "conversion_rate": rate(converted, total),
    }


def revenue_totals(invoices: List[Dict[str, Any]]) -> Dict[str, Any]:
    paid = [i for i in invoices if i.get("payment_status") == "paid"]
    pending = [i for i in invoices if i.get("payment_status") in PENDING_PAYMENT_STATUSES]
    all_total = sum(i.get("total_amount") or 0 for i in invoices)
    return {
        "paid_total": round(sum(i.get("total_amount") or 0 for i in paid), 2),
        "pending_total": round(sum(i.get("total_amount") or 0 for i in pending), 2),
        "paid_count": len(paid),
        "pending_count": len(pending),
        "invoice_count": len(invoices),
        "avg_invoice_value": average(all_total, len(invoices)),
    }


def _grouped(values: Iterable[str], key_name: str, top_n: Optional[int] = None) -> List[Dict[str, Any]]:
    counts = Counter(v or "Unknown" for v in values)
    rows = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    if top_n:
        rows = rows[:top_n]
    return [{key_name: k, "count": c} for k, c in rows]


def breakdowns(leads: List[Dict[str, Any]], top_n: int = 10) -> Dict[str, Any]:
    by_status = {s: 0 for s in VALID_LEAD_STATUSES}
    for lead in leads:
        status = lead.get("status", "new")
        by_status[status] = by_status.get(status, 0) + 1

    return {
        "by_issue": _grouped((l.get("issue_reported") for l in leads), "issue", top_n),
        "by_device": _grouped((l.get("device_type") for l in leads), "device_type"),
        "by_source": _grouped((l.get("lead_source") for l in leads), "source"),
        "by_status": by_status,
    }


def converted_at(lead: Dict[str, Any]) -> Optional[datetime]:
    return _ts(lead, "repair_completed_at", "delivered_at", "updated_at")


def timeline(
    window_leads: List[Dict[str, Any]],
    converted_leads: List[Dict[str, Any]],
    start: datetime,
    end: datetime,
) -> List[Dict[str, Any]]:
    """
    One row per calendar day touched by [start, end) (oldest first), zero-filled.
    A window ending mid-day spans days + 1 calendar days: both partial days get a row.
    """
    first_day = start.date()
    last_day = (end - timedelta(microseconds=1)).date()
    series = {
        (first_day + timedelta(days=i)).isoformat(): {"new_leads": 0, "converted_leads": 0}
        for i in range((last_day - first_day).days + 1)
    }

    for lead in window_leads:
        ts = _ts(lead, "created_at")
        day = ts.astimezone(timezone.utc).date().isoformat() if ts else None
        if day in series:
            series[day]["new_leads"] += 1

    for lead in converted_leads:
        ts = converted_at(lead)
        if ts and start <= ts < end:
            series[ts.astimezone(timezone.utc).date().isoformat()]["converted_leads"] += 1

    return [{"date": day, **counts} for day, counts in series.items()]


def team_performance(leads: List[Dict[str, Any]], staff: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    assigned = Counter(l.get("assigned_to") for l in leads if l.get("assigned_to"))
    converted = Counter(
        l.get("assigned_to") for l in leads
        if l.get("assigned_to") and l.get("status") in CONVERTED_STATUSES
    )

    rows = []
    for member in staff:
        sid = member["id"]
        rows.append({
            "id": sid,
            "name": member.get("full_name", ""),
            "role": member.get("role"),
            "assigned_leads": assigned[sid],
            "converted_leads": converted[sid],
            "conversion_rate": rate(converted[sid], assigned[sid]),
        })

    rows.sort(key=lambda r: (-r["conversion_rate"], -r["assigned_leads"], r["name"]))
    return rows


def turnaround(leads: List[Dict[str, Any]], in_repair: List[Dict[str, Any]], end: datetime) -> Dict[str, Any]:
    response_hours = []
    repair_hours = []
    for lead in leads:
        h = _hours(_ts(lead, "created_at"), _ts(lead, "first_contact_at"))
        if h is not None and h >= 0:
            response_hours.append(h)
        h = _hours(_ts(lead, "repair_started_at"), _ts(lead, "repair_completed_at"))
        if h is not None and h >= 0:
            repair_hours.append(h)

    overdue_cutoff = end - timedelta(hours=OVERDUE_REPAIR_HOURS)
    overdue = [
        l for l in in_repair
        if not l.get("repair_completed_at")
        and (_ts(l, "repair_started_at") or end) < overdue_cutoff
    ]

    return {
        "avg_response_hours": round(sum(response_hours) / len(response_hours), 1) if response_hours else 0,
        "avg_repair_hours": round(sum(repair_hours) / len(repair_hours), 1) if repair_hours else 0,
        "fastest_repair_hours": round(min(repair_hours), 1) if repair_hours else None,
        "slowest_repair_hours": round(max(repair_hours), 1) if repair_hours else None,
        "repairs_completed": len(repair_hours),
        "overdue_repairs": len(overdue),
    }


# ════════════════════════════════════════════════════════════════════════
# AGGREGATION
# ════════════════════════════════════════════════════════════════════════

async def compute_dashboard_metrics(
    store,
    days: Optional[int] = None,
    now: Optional[datetime] = None,
    staff_id: Optional[str] = None,
    top_n: int = 10,
) -> Dict[str, Any]:
    """
    Headline counts, revenue, breakdowns, timeline, team performance,
    turnaround and period-over-period comparison.

    Args:
        days: window length (default METRICS_DEFAULT_DAYS)
        now: window end (default: current UTC time)
        staff_id: restrict lead-based metrics to leads assigned to this staff
        top_n: rows kept in the issue breakdown
    """
    if days is None:
        days = config.METRICS_DEFAULT_DAYS
    if days < 1 or days > MAX_WINDOW_DAYS:
        raise ValidationError(f"days must be between 1 and {MAX_WINDOW_DAYS}")

    end = now or datetime.now(timezone.utc)
    if end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    end = end.astimezone(timezone.utc)
    start = end - timedelta(days=days)
    prev_start = start - timedelta(days=days)

    scope = {"assigned_to": staff_id} if staff_id else {}

    # Both windows in one read; lower bound widened by a day for string compare drift
    lower = (prev_start - timedelta(days=1)).isoformat()
    leads = await store.find("leads", {**scope, "created_at": {"$gte": lower}}, limit=100000)
    invoices = await store.find("invoices", {"invoice_date": {"$gte": lower}}, limit=100000)
    converted = await store.find("leads", {**scope, "status": {"$in": CONVERTED_STATUSES}}, limit=100000)
    in_repair = await store.find("leads", {**scope, "status": "in_repair"}, limit=10000)

    staff_query = {"is_active": True}
    if staff_id:
        staff_query["id"] = staff_id
    staff = await store.find("staff", staff_query, sort=[("full_name", 1)], limit=1000)

    current_leads = [l for l in leads if _in_window(l, start, end, "created_at")]
    previous_leads = [l for l in leads if _in_window(l, prev_start, start, "created_at")]
    current_invoices = [i for i in invoices if _in_window(i, start, end, "invoice_date", "created_at")]
    previous_invoices = [i for i in invoices if _in_window(i, prev_start, start, "invoice_date", "created_at")]

    current = lead_counts(current_leads)
    previous = lead_counts(previous_leads)
    revenue = revenue_totals(current_invoices)
    previous_revenue = revenue_totals(previous_invoices)

    comparison = {
        "total_leads": period_delta(current["total"], previous["total"]),
        "new_leads": period_delta(current["new"], previous["new"]),
        "completed_leads": period_delta(current["completed"], previous["completed"]),
        "conversion_rate": period_delta(current["conversion_rate"], previous["conversion_rate"], "points"),
        "paid_revenue": period_delta(revenue["paid_total"], previous_revenue["paid_total"]),
        "avg_invoice_value": period_delta(revenue["avg_invoice_value"], previous_revenue["avg_invoice_value"]),
    }

    return {
        "window": {
            "days": days,
            "start": start.isoformat(),
            "end": end.isoformat(),
            "previous_start": prev_start.isoformat(),
            "previous_end": start.isoformat(),
            "staff_id": staff_id,
        },
        "leads": current,
        "revenue": revenue,
        "breakdowns": breakdowns(current_leads, top_n),
        "timeline": timeline(current_leads, converted, start, end),
        "team": team_performance(current_leads, staff),
        "turnaround": turnaround(current_leads, in_repair, end),
        "comparison": comparison,
    }
