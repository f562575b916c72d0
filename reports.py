"""
Reporting and analytics.

Everything is recomputed from the stored bills and inventory on each
request; nothing here writes. All datetimes are naive server-local time,
the same clock the bills are stamped with.
"""

import calendar
import logging
from datetime import datetime, time, timedelta
from typing import Optional, Tuple

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

from billing import EditPolicy, list_bills
from database import serialize
from errors import ValidationError

logger = logging.getLogger("salon.reports")

PERIODS = ("yesterday", "lastWeek", "lastMonth", "lastYear", "custom")
END_OF_DAY = time(23, 59, 59, 999999)


# ----- Time windows -----

def start_of_day(now: datetime) -> datetime:
    return datetime.combine(now.date(), time.min)


def day_window(now: datetime, kind: str = "day", morning_cutoff_hour: int = 12) -> Tuple[datetime, datetime]:
    """[start, end) of today's window: the whole calendar day, or midnight to the morning cutoff."""
    start = start_of_day(now)
    if kind == "morning":
        return start, start + timedelta(hours=morning_cutoff_hour)
    if kind == "day":
        return start, start + timedelta(days=1)
    raise ValidationError(f"Unknown window: {kind}")


def start_of_week(now: datetime) -> datetime:
    # weeks start on Sunday
    return start_of_day(now) - timedelta(days=(now.weekday() + 1) % 7)


def start_of_month(now: datetime) -> datetime:
    return datetime(now.year, now.month, 1)


def subtract_months(dt: datetime, months: int) -> datetime:
    month_index = dt.year * 12 + dt.month - 1 - months
    year, month = divmod(month_index, 12)
    day = min(dt.day, calendar.monthrange(year, month + 1)[1])
    return dt.replace(year=year, month=month + 1, day=day)


def parse_report_date(value: str, end: bool = False) -> datetime:
    """Parse YYYY-MM-DD or an ISO datetime. A bare date used as an end bound covers the whole day."""
    try:
        parsed = datetime.fromisoformat(value.strip())
    except (AttributeError, ValueError):
        raise ValidationError(f"Invalid date: {value}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    if end and len(value.strip()) == 10:
        parsed = datetime.combine(parsed.date(), END_OF_DAY)
    return parsed


def resolve_period(period: Optional[str], now: datetime, start_date: Optional[str] = None,
                   end_date: Optional[str] = None) -> Tuple[Optional[datetime], Optional[datetime], str]:
    """
    Turn a report period into a concrete [start, end] range.

    "yesterday" is the previous calendar day. The other "last" periods run
    from the same instant one week/month/year ago up to now. No period means
    no date filter at all.
    """
    if not period:
        return None, None, "all"
    if period == "yesterday":
        start = start_of_day(now) - timedelta(days=1)
        return start, datetime.combine(start.date(), END_OF_DAY), period
    if period == "lastWeek":
        return now - timedelta(days=7), now, period
    if period == "lastMonth":
        return subtract_months(now, 1), now, period
    if period == "lastYear":
        return subtract_months(now, 12), now, period
    if period == "custom":
        if not start_date or not end_date:
            raise ValidationError("startDate and endDate are required for a custom period")
        start = parse_report_date(start_date)
        end = parse_report_date(end_date, end=True)
        if start > end:
            raise ValidationError("startDate must be before endDate")
        return start, end, period
    raise ValidationError(f"Unknown period: {period}. Expected one of {', '.join(PERIODS)}")


def _range_filter(user_id: ObjectId, field: str, start: Optional[datetime], end: Optional[datetime]) -> dict:
    fil = {"userId": user_id}
    bounds = {}
    if start is not None:
        bounds["$gte"] = start
    if end is not None:
        bounds["$lte"] = end
    if bounds:
        fil[field] = bounds
    return fil


def _expenditure_total(bill: dict) -> float:
    return sum(float(exp.get("price", exp.get("amount", 0)) or 0) for exp in bill.get("expenditures") or [])


def _product_sales_total(bill: dict) -> float:
    return sum(float(sale.get("totalPrice") or 0) for sale in bill.get("productSales") or [])


def _daily_key(group_id: dict) -> str:
    return f"{group_id['year']:04d}-{group_id['month']:02d}-{group_id['day']:02d}"


def _daily_group_id(field: str) -> dict:
    return {
        "year": {"$year": f"${field}"},
        "month": {"$month": f"${field}"},
        "day": {"$dayOfMonth": f"${field}"},
    }


# ----- Dashboard -----

def inventory_stats(db: Database, user_id: ObjectId) -> dict:
    pipeline = [
        {"$match": {"userId": user_id}},
        {"$group": {"_id": "$paymentStatus", "value": {"$sum": "$total"}, "count": {"$sum": 1}}},
    ]
    stats = {"totalValue": 0, "paidValue": 0, "unpaidValue": 0}
    for row in db["inventory"].aggregate(pipeline):
        stats["totalValue"] += row["value"]
        if row["_id"] == "Paid":
            stats["paidValue"] += row["value"]
        elif row["_id"] == "Unpaid":
            stats["unpaidValue"] += row["value"]
    return stats


def package_usage(bills: list) -> dict:
    usage = {}
    for bill in bills:
        for item in bill.get("items", []):
            name = item.get("packageName")
            usage[name] = usage.get(name, 0) + int(item.get("quantity", 1) or 1)
    return usage


def most_used_package(usage: dict) -> Optional[dict]:
    best = None
    for name, count in usage.items():
        if best is None or count > best["count"]:
            best = {"name": name, "count": count}
    return best


def highest_bill(bills: list) -> Optional[dict]:
    highest = None
    top = 0
    for bill in bills:
        if bill.get("totalAmount", 0) > top:
            highest, top = bill, bill["totalAmount"]
    return highest


def _period_totals(db: Database, user_id: ObjectId, since: datetime) -> dict:
    bills = list(db["bills"].find({"userId": user_id, "createdAt": {"$gte": since}}))
    inventory = db["inventory"].find({"userId": user_id, "dateEntered": {"$gte": since}})
    sales = sum(b.get("totalAmount", 0) for b in bills)
    expenditures = sum(_expenditure_total(b) for b in bills)
    purchases = sum(item.get("total", 0) for item in inventory)
    return {
        "sales": sales,
        "expenditures": expenditures,
        "inventory": purchases,
        "profit": sales - purchases - expenditures,
    }


def get_dashboard_analytics(db: Database, user_id: ObjectId, now: datetime, policy: EditPolicy,
                            window: str = "day", morning_cutoff_hour: int = 12,
                            recent_limit: int = 15) -> dict:
    start, end = day_window(now, window, morning_cutoff_hour)
    todays_bills = list(
        db["bills"]
        .find({"userId": user_id, "createdAt": {"$gte": start, "$lt": end}})
        .sort([("createdAt", ASCENDING), ("_id", ASCENDING)])
    )
    todays_sales = sum(b.get("totalAmount", 0) for b in todays_bills)
    todays_expenditures = sum(_expenditure_total(b) for b in todays_bills)
    todays_inventory = sum(
        item.get("total", 0)
        for item in db["inventory"].find({"userId": user_id, "dateEntered": {"$gte": start, "$lt": end}})
    )

    usage = package_usage(todays_bills)
    top = highest_bill(todays_bills)
    week = _period_totals(db, user_id, start_of_week(now))
    month = _period_totals(db, user_id, start_of_month(now))

    return {
        "window": window,
        "windowStart": start,
        "windowEnd": end,
        "todaysTotalSales": todays_sales,
        "todaysBillsCount": len(todays_bills),
        "highestBillToday": serialize(top) if top else None,
        "packageUsage": usage,
        "mostUsedPackage": most_used_package(usage),
        "totalMorningPackages": sum(usage.values()),
        "todaysExpenditures": todays_expenditures,
        "todaysInventoryExpenses": todays_inventory,
        "todaysProfit": todays_sales - todays_inventory - todays_expenditures,
        "totalPackages": db["packages"].count_documents({"userId": user_id}),
        "totalBills": db["bills"].count_documents({"userId": user_id}),
        "totalInventoryItems": db["inventory"].count_documents({"userId": user_id}),
        "inventoryStats": inventory_stats(db, user_id),
        "thisWeeksTotalSales": week["sales"],
        "thisWeeksInventoryExpenses": week["inventory"],
        "thisWeeksExpenditures": week["expenditures"],
        "thisWeeksProfit": week["profit"],
        "thisMonthsTotalSales": month["sales"],
        "thisMonthsInventoryExpenses": month["inventory"],
        "thisMonthsExpenditures": month["expenditures"],
        "thisMonthsProfit": month["profit"],
        "recentBills": list_bills(db, user_id, policy, now, limit=recent_limit),
    }


# ----- Expense report -----

def empty_expense_summary() -> dict:
    return {"totalItems": 0, "totalQuantity": 0, "totalAmount": 0, "paidAmount": 0, "unpaidAmount": 0, "items": []}


def get_expense_report(db: Database, user_id: ObjectId, now: datetime, period: Optional[str] = None,
                       start_date: Optional[str] = None, end_date: Optional[str] = None) -> dict:
    start, end, label = resolve_period(period, now, start_date, end_date)
    match = _range_filter(user_id, "dateEntered", start, end)

    summary = empty_expense_summary()
    pipeline = [
        {"$match": match},
        {"$group": {
            "_id": "$paymentStatus",
            "totalItems": {"$sum": 1},
            "totalQuantity": {"$sum": "$quantity"},
            "totalAmount": {"$sum": "$total"},
        }},
    ]
    for row in db["inventory"].aggregate(pipeline):
        summary["totalItems"] += row["totalItems"]
        summary["totalQuantity"] += row["totalQuantity"]
        summary["totalAmount"] += row["totalAmount"]
        if row["_id"] == "Paid":
            summary["paidAmount"] += row["totalAmount"]
        elif row["_id"] == "Unpaid":
            summary["unpaidAmount"] += row["totalAmount"]
    summary["items"] = serialize(list(db["inventory"].find(match).sort("dateEntered", DESCENDING)))

    daily_pipeline = [
        {"$match": match},
        {"$group": {
            "_id": _daily_group_id("dateEntered"),
            "dailyTotal": {"$sum": "$total"},
            "dailyItems": {"$sum": 1},
        }},
    ]
    daily = [
        {"_id": _daily_key(row["_id"]), "dailyTotal": row["dailyTotal"], "dailyItems": row["dailyItems"]}
        for row in db["inventory"].aggregate(daily_pipeline)
    ]
    daily.sort(key=lambda row: row["_id"])

    logger.debug("Expense report %s for %s: %d items", label, user_id, summary["totalItems"])
    return {"summary": summary, "dailyBreakdown": daily, "period": label}


# ----- Sales report -----

def get_sales_report(db: Database, user_id: ObjectId, now: datetime, period: Optional[str] = None,
                     start_date: Optional[str] = None, end_date: Optional[str] = None) -> dict:
    start, end, label = resolve_period(period, now, start_date, end_date)
    bills = db["bills"].find(_range_filter(user_id, "createdAt", start, end)).sort("createdAt", ASCENDING)

    summary = {
        "totalBills": 0, "totalSales": 0, "servicesTotal": 0, "productSalesTotal": 0,
        "expendituresTotal": 0, "upiTotal": 0, "cardTotal": 0, "cashTotal": 0,
    }
    daily = {}
    for bill in bills:
        products = _product_sales_total(bill)
        expenditures = _expenditure_total(bill)
        total = bill.get("totalAmount", 0)
        summary["totalBills"] += 1
        summary["totalSales"] += total
        summary["productSalesTotal"] += products
        summary["expendituresTotal"] += expenditures
        summary["servicesTotal"] += total - products - expenditures
        summary["upiTotal"] += bill.get("upiAmount", 0)
        summary["cardTotal"] += bill.get("cardAmount", 0)
        summary["cashTotal"] += bill.get("cashAmount", 0)

        key = bill["createdAt"].strftime("%Y-%m-%d")
        row = daily.setdefault(key, {"_id": key, "dailyTotal": 0, "dailyBills": 0})
        row["dailyTotal"] += total
        row["dailyBills"] += 1

    return {"summary": summary, "dailyBreakdown": sorted(daily.values(), key=lambda r: r["_id"]), "period": label}
