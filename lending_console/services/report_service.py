from __future__ import annotations

import calendar
import math
from datetime import datetime, timezone
from typing import Iterable, TypeVar

from schemas.lending import EQUIPMENT_STATUSES, LOAN_STATUSES, Equipment, Loan


ALL_STATUSES = "All"
TOP_LOANED_LIMIT = 5
MONTHLY_WINDOW = 6
DUE_SOON_DAYS = 3

T = TypeVar("T", Equipment, Loan)


def percentage(part: int, total: int) -> int:
    if total <= 0:
        return 0
    return int(math.floor(part * 100 / total + 0.5))


def _status_breakdown(statuses: Iterable[str], known: tuple[str, ...]) -> dict:
    values = list(statuses)
    total = len(values)
    rows = []
    for status in known:
        count = sum(1 for value in values if value == status)
        rows.append({"status": status, "count": count, "percent": percentage(count, total)})
    return {"total": total, "rows": rows, "counts": {row["status"]: row["count"] for row in rows}}


def equipment_status_counts(equipment: list[Equipment]) -> dict:
    return _status_breakdown((item.status for item in equipment), EQUIPMENT_STATUSES)


def loan_status_counts(loans: list[Loan]) -> dict:
    return _status_breakdown((loan.status for loan in loans), LOAN_STATUSES)


def category_histogram(equipment: list[Equipment]) -> list[dict]:
    counts: dict[str, int] = {}
    for item in equipment:
        counts[item.category] = counts.get(item.category, 0) + 1
    total = len(equipment)
    rows = [
        {"category": category, "count": count, "percent": percentage(count, total)}
        for category, count in counts.items()
    ]
    rows.sort(key=lambda row: row["count"], reverse=True)
    return rows


def top_loaned_equipment(loans: list[Loan], limit: int = TOP_LOANED_LIMIT) -> list[dict]:
    tally: dict[int, dict] = {}
    for loan in loans:
        entry = tally.setdefault(loan.equipmentId, {"equipmentId": loan.equipmentId, "name": "", "count": 0})
        entry["name"] = loan.equipment.name
        entry["count"] += 1
    rows = sorted(tally.values(), key=lambda row: row["count"], reverse=True)[: max(limit, 0)]
    peak = max((row["count"] for row in rows), default=1)
    for row in rows:
        row["percent"] = percentage(row["count"], max(peak, 1))
    return rows


def monthly_loan_histogram(loans: list[Loan], months: int = MONTHLY_WINDOW) -> list[dict]:
    counts: dict[str, int] = {}
    for loan in loans:
        key = f"{loan.loanDate.year:04d}-{loan.loanDate.month:02d}"
        counts[key] = counts.get(key, 0) + 1
    keys = sorted(counts)[-months:] if months > 0 else []
    peak = max((counts[key] for key in keys), default=0)
    scale = max(peak, 1)
    rows = []
    for key in keys:
        month_number = int(key.split("-")[1])
        rows.append(
            {
                "key": key,
                "label": calendar.month_abbr[month_number],
                "count": counts[key],
                "percent": percentage(counts[key], scale),
            }
        )
    return rows


def dashboard_stats(equipment: list[Equipment], loans: list[Loan]) -> dict[str, int]:
    return {
        "totalEquipment": len(equipment),
        "loaned": sum(1 for item in equipment if item.status == "Loaned"),
        "available": sum(1 for item in equipment if item.status == "Available"),
        "activeLoans": sum(1 for loan in loans if loan.status == "Active"),
    }


def build_report(equipment: list[Equipment], loans: list[Loan]) -> dict:
    return {
        "equipment": equipment_status_counts(equipment),
        "loans": loan_status_counts(loans),
        "categories": category_histogram(equipment),
        "topLoaned": top_loaned_equipment(loans),
        "monthly": monthly_loan_histogram(loans),
    }


def days_until_due(loan: Loan, now: datetime | None = None) -> dict | None:
    if loan.status not in ("Active", "Overdue"):
        return None
    due = loan.scheduledReturnDate
    if now is None:
        now = datetime.now(timezone.utc) if due.tzinfo else datetime.now()
    elif (now.tzinfo is None) != (due.tzinfo is None):
        if due.tzinfo is None:
            due = due.replace(tzinfo=timezone.utc)
        else:
            now = now.replace(tzinfo=timezone.utc)
    days = math.ceil((due - now).total_seconds() / 86400)
    if days < 0:
        level = "overdue"
    elif days <= DUE_SOON_DAYS:
        level = "soon"
    else:
        level = "ok"
    return {"days": days, "level": level}


def filter_by_status(items: list[T], status: str | None) -> list[T]:
    if not status or status == ALL_STATUSES:
        return list(items)
    return [item for item in items if item.status == status]


def search_equipment(items: list[Equipment], term: str | None) -> list[Equipment]:
    needle = (term or "").strip().lower()
    if not needle:
        return []
    return [
        item
        for item in items
        if needle in item.name.lower() or needle in item.code.lower() or needle in item.category.lower()
    ]


def available_equipment(items: list[Equipment]) -> list[Equipment]:
    return [item for item in items if item.status == "Available"]
