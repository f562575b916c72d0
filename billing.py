"""
Billing engine: creates, edits and deletes bills.

A bill snapshots the selected packages, records retail product sales and
ad-hoc expenditures, and splits the services total across UPI, card and cash.
`totalAmount` is always recomputed here from the line items; totals sent by
the client are ignored. Only recent bills can be changed, see EditPolicy.
"""

import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from bson import ObjectId
from pydantic import BaseModel, Field
from pymongo import DESCENDING
from pymongo.database import Database

from config import Settings
from database import parse_object_id, serialize
from errors import Forbidden, NotFound, ValidationError
from schemas import Bill, BillItem, Expenditure, ProductSale

logger = logging.getLogger("salon.billing")

BILL_ORDER = [("createdAt", DESCENDING), ("_id", DESCENDING)]


class BillRequest(BaseModel):
    packageIds: List[str] = Field(default_factory=list)
    clientName: str = Field(..., min_length=1)
    attendantBy: str = Field(..., min_length=1)
    customerMobile: Optional[str] = None
    upiAmount: float = Field(0.0, ge=0)
    cardAmount: float = Field(0.0, ge=0)
    cashAmount: float = Field(0.0, ge=0)
    productSales: List[ProductSale] = Field(default_factory=list)
    expenditures: List[Expenditure] = Field(default_factory=list)


class EditPolicy:
    """
    Decides whether a bill may still be edited or deleted.

    "recent": the bill is among the user's newest `limit` bills.
    "window": the bill was created at most `minutes` ago.
    Nothing is persisted; the answer is recomputed on every request.
    """

    def __init__(self, mode: str = "recent", limit: int = 15, minutes: int = 15):
        if mode not in ("recent", "window"):
            raise ValueError(f"Unknown edit policy: {mode}")
        self.mode = mode
        self.limit = limit
        self.minutes = minutes

    @classmethod
    def from_settings(cls, settings: Settings) -> "EditPolicy":
        return cls(settings.edit_policy, settings.edit_recent_limit, settings.edit_window_minutes)

    def recent_ids(self, db: Database, user_id: ObjectId) -> set:
        if self.mode != "recent":
            return set()
        cursor = db["bills"].find({"userId": user_id}, {"_id": 1}).sort(BILL_ORDER).limit(self.limit)
        return {doc["_id"] for doc in cursor}

    def allows(self, bill: dict, now: datetime, recent_ids: Optional[set] = None) -> bool:
        if self.mode == "window":
            return now - bill["createdAt"] <= timedelta(minutes=self.minutes)
        return bill["_id"] in (recent_ids or set())

    def describe(self) -> str:
        if self.mode == "window":
            return f"Bills can only be modified within {self.minutes} minutes of creation."
        return f"Only the last {self.limit} bills can be modified."


def _round(value: float) -> float:
    return round(value, 2)


def resolve_packages(db: Database, user_id: ObjectId, package_ids: List[str]) -> List[BillItem]:
    """Load the caller's packages and snapshot them as bill items, in request order."""
    if not package_ids:
        raise ValidationError("At least one package must be selected")
    oids = [parse_object_id(pid) for pid in package_ids]
    if any(oid is None for oid in oids):
        raise ValidationError("Invalid package id")
    found = {p["_id"]: p for p in db["packages"].find({"_id": {"$in": oids}, "userId": user_id})}
    if len(found) != len(package_ids):
        raise ValidationError("Some packages not found")
    return [
        BillItem(
            packageId=str(oid),
            packageName=found[oid]["name"],
            packagePrice=float(found[oid]["price"]),
            packageType=found[oid].get("type", "Basic"),
        )
        for oid in oids
    ]


def compute_totals(items: Iterable[BillItem], product_sales: Iterable[ProductSale],
                   expenditures: Iterable[Expenditure]) -> dict:
    services_total = sum(item.packagePrice * item.quantity for item in items)
    product_total = sum(sale.totalPrice or 0 for sale in product_sales)
    expenditure_total = sum(exp.price for exp in expenditures)
    return {
        "servicesTotal": services_total,
        "productSalesTotal": product_total,
        "expendituresTotal": expenditure_total,
        "totalAmount": _round(services_total + product_total + expenditure_total),
    }


def _priced_sales(sales: List[ProductSale]) -> List[ProductSale]:
    return [
        sale.model_copy(update={"totalPrice": _round(sale.quantity * sale.unitPrice)})
        for sale in sales
    ]


def _check_payment_split(payload: BillRequest, services_total: float, tolerance: float) -> None:
    paid = payload.upiAmount + payload.cardAmount + payload.cashAmount
    if abs(paid - services_total) > tolerance:
        raise ValidationError(
            f"Payment split ({paid:.2f}) does not match services total ({services_total:.2f})"
        )


# ----- Stock -----

def stock_lines(sales: List[ProductSale]) -> List[tuple]:
    """(inventory _id, quantity, product name) for each sale drawn from inventory."""
    lines = []
    for sale in sales:
        if not sale.inventoryId:
            continue
        oid = parse_object_id(sale.inventoryId)
        if oid is None:
            raise ValidationError(f"Invalid inventory id for {sale.productName}")
        lines.append((oid, sale.quantity, sale.productName))
    return lines


def take_stock(db: Database, user_id: ObjectId, lines: List[tuple], now: datetime) -> List[tuple]:
    """
    Decrement inventory for each (inventory _id, quantity, name) line.

    Each decrement is one conditional update guarded by `quantity >= n`, so
    stock never goes below zero. On failure the decrements already applied
    are reverted. Returns the applied (inventory _id, quantity) pairs.
    """
    applied = []
    for oid, qty, name in lines:
        updated = db["inventory"].find_one_and_update(
            {"_id": oid, "userId": user_id, "quantity": {"$gte": qty}},
            {"$inc": {"quantity": -qty}, "$set": {"updatedAt": now}},
        )
        if updated is None:
            release_stock(db, user_id, applied, now)
            existing = db["inventory"].find_one({"_id": oid, "userId": user_id})
            if existing is None:
                raise ValidationError(f"Inventory item not found for {name}")
            logger.warning("Stock shortfall for %s: wanted %s, have %s",
                           existing["name"], qty, existing.get("quantity", 0))
            raise ValidationError(
                f"Insufficient stock for {existing['name']}. Only {existing.get('quantity', 0)} available."
            )
        applied.append((oid, qty))
        logger.info("Took %s of inventory %s", qty, oid)
    return applied


def release_stock(db: Database, user_id: ObjectId, applied: List[tuple], now: datetime) -> None:
    for oid, qty in applied:
        db["inventory"].update_one(
            {"_id": oid, "userId": user_id},
            {"$inc": {"quantity": qty}, "$set": {"updatedAt": now}},
        )


def _linked_stock(bill: dict) -> List[tuple]:
    pairs = []
    for sale in bill.get("productSales") or []:
        oid = parse_object_id(sale.get("inventoryId"))
        if oid is not None:
            pairs.append((oid, sale.get("quantity", 0)))
    return pairs


def stock_changes(old: List[tuple], new: List[tuple]) -> Tuple[List[tuple], List[tuple]]:
    """
    Net the stock an edited bill already holds against what it now needs.

    Returns (lines to take, pairs to release). Units the bill keeps are never
    put back into stock, so no other bill can grab them mid-edit.
    """
    held = {}
    for oid, qty in old:
        held[oid] = held.get(oid, 0) + qty
    needed, names = {}, {}
    for oid, qty, name in new:
        needed[oid] = needed.get(oid, 0) + qty
        names.setdefault(oid, name)
    takes = [(oid, qty - held.get(oid, 0), names[oid]) for oid, qty in needed.items() if qty > held.get(oid, 0)]
    releases = [(oid, qty - needed.get(oid, 0)) for oid, qty in held.items() if qty > needed.get(oid, 0)]
    return takes, releases


# ----- Bill operations -----

def _build_bill(db: Database, user_id: ObjectId, payload: BillRequest, settings: Settings) -> Bill:
    items = resolve_packages(db, user_id, payload.packageIds)
    sales = _priced_sales(payload.productSales)
    totals = compute_totals(items, sales, payload.expenditures)
    _check_payment_split(payload, totals["servicesTotal"], settings.payment_tolerance)
    return Bill(
        items=items,
        productSales=sales,
        expenditures=payload.expenditures,
        upiAmount=payload.upiAmount,
        cardAmount=payload.cardAmount,
        cashAmount=payload.cashAmount,
        clientName=payload.clientName.strip(),
        customerMobile=payload.customerMobile,
        attendantBy=payload.attendantBy.strip(),
        totalAmount=totals["totalAmount"],
    )


def create_bill(db: Database, user_id: ObjectId, payload: BillRequest, settings: Settings, now: datetime) -> str:
    bill = _build_bill(db, user_id, payload, settings)
    applied = take_stock(db, user_id, stock_lines(bill.productSales), now)
    doc = bill.model_dump() | {"userId": user_id, "createdAt": now, "updatedAt": now}
    try:
        result = db["bills"].insert_one(doc)
    except Exception:
        release_stock(db, user_id, applied, now)
        raise
    logger.info("Created bill %s for user %s (total %.2f)", result.inserted_id, user_id, bill.totalAmount)
    return str(result.inserted_id)


def _owned_bill(db: Database, user_id: ObjectId, bill_id: str) -> dict:
    oid = parse_object_id(bill_id)
    bill = db["bills"].find_one({"_id": oid, "userId": user_id}) if oid else None
    if not bill:
        raise NotFound("Bill not found")
    return bill


def _ensure_editable(db: Database, user_id: ObjectId, bill: dict, policy: EditPolicy, now: datetime,
                     action: str) -> None:
    if not policy.allows(bill, now, policy.recent_ids(db, user_id)):
        raise Forbidden(f"This bill is too old to {action}. {policy.describe()}")


def get_bill(db: Database, user_id: ObjectId, bill_id: str) -> dict:
    return serialize(_owned_bill(db, user_id, bill_id))


def list_bills(db: Database, user_id: ObjectId, policy: EditPolicy, now: datetime,
               limit: Optional[int] = None) -> List[dict]:
    cursor = db["bills"].find({"userId": user_id}).sort(BILL_ORDER)
    if limit:
        cursor = cursor.limit(limit)
    bills = list(cursor)
    return annotate_editable(db, user_id, bills, policy, now)


def annotate_editable(db: Database, user_id: ObjectId, bills: List[dict], policy: EditPolicy,
                      now: datetime) -> List[dict]:
    recent = policy.recent_ids(db, user_id)
    return [serialize(bill) | {"isEditable": policy.allows(bill, now, recent)} for bill in bills]


def update_bill(db: Database, user_id: ObjectId, bill_id: str, payload: BillRequest, settings: Settings,
                policy: EditPolicy, now: datetime) -> None:
    existing = _owned_bill(db, user_id, bill_id)
    _ensure_editable(db, user_id, existing, policy, now, "edit")
    bill = _build_bill(db, user_id, payload, settings)

    takes, releases = stock_changes(_linked_stock(existing), stock_lines(bill.productSales))
    applied = take_stock(db, user_id, takes, now)
    try:
        result = db["bills"].update_one(
            {"_id": existing["_id"], "userId": user_id},
            {"$set": bill.model_dump() | {"updatedAt": now}},
        )
    except Exception:
        release_stock(db, user_id, applied, now)
        raise
    if result.matched_count == 0:
        release_stock(db, user_id, applied, now)
        raise NotFound("Bill not found")
    release_stock(db, user_id, releases, now)
    logger.info("Updated bill %s for user %s (total %.2f)", existing["_id"], user_id, bill.totalAmount)


def delete_bill(db: Database, user_id: ObjectId, bill_id: str, policy: EditPolicy, now: datetime) -> None:
    existing = _owned_bill(db, user_id, bill_id)
    _ensure_editable(db, user_id, existing, policy, now, "delete")
    result = db["bills"].delete_one({"_id": existing["_id"], "userId": user_id})
    if result.deleted_count == 0:
        raise NotFound("Bill not found")
    release_stock(db, user_id, _linked_stock(existing), now)
    logger.info("Deleted bill %s for user %s", existing["_id"], user_id)
