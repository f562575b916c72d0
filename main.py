import logging
import os
import re
from datetime import datetime
from typing import Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pymongo import DESCENDING
from pymongo.database import Database

import billing
import database
import reports
from auth import get_current_user_id, sign_in, sign_up, verify_email
from billing import BillRequest, EditPolicy
from config import Settings, get_settings
from database import create_document, get_documents, parse_object_id, serialize
from errors import NotFound
from schemas import InventoryItem, Package, PackageType, PaymentStatus

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("salon.api")

app = FastAPI(title="Salon POS & Bookkeeping API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----- Error handlers -----

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        detail = f"{field}: {first.get('msg')}" if field else first.get("msg")
    else:
        detail = "Invalid request"
    return JSONResponse(status_code=400, content={"detail": detail})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ----- Dependencies -----

def get_db() -> Database:
    if database.db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return database.db


def get_now() -> datetime:
    return datetime.now()


def get_edit_policy(settings: Settings = Depends(get_settings)) -> EditPolicy:
    return EditPolicy.from_settings(settings)


# ----- Auth -----

class SignInRequest(BaseModel):
    email: str = ""
    password: str = ""


class SignUpRequest(BaseModel):
    email: str
    password: str
    name: Optional[str] = None


@app.post("/api/auth/signup", status_code=201)
def signup(payload: SignUpRequest, db: Database = Depends(get_db), settings: Settings = Depends(get_settings),
           now: datetime = Depends(get_now)):
    sign_up(db, settings, payload.email, payload.password, payload.name, now=now)
    return {"message": "Account created. Please verify your email."}


@app.get("/api/auth/verify")
def verify(token: str, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    email = verify_email(db, settings, token)
    return {"message": "Email verified", "email": email}


@app.post("/api/auth/signin")
def signin(payload: SignInRequest, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    token = sign_in(db, settings, payload.email, payload.password)
    response = JSONResponse({"message": "Sign in successful", "token": token})
    response.set_cookie("auth-token", token, httponly=True, samesite="lax",
                        max_age=settings.token_expire_minutes * 60)
    return response


@app.get("/api/auth/me")
def me(user_id: ObjectId = Depends(get_current_user_id), db: Database = Depends(get_db)):
    user = db["users"].find_one({"_id": user_id}, {"password": 0})
    if not user:
        raise NotFound("User not found")
    return {"user": serialize(user)}


# ----- Packages -----

def _owned_filter(item_id: str, user_id: ObjectId, what: str) -> dict:
    oid = parse_object_id(item_id)
    if oid is None:
        raise NotFound(f"{what} not found")
    return {"_id": oid, "userId": user_id}


@app.get("/api/packages")
def list_packages(q: Optional[str] = None, type: Optional[PackageType] = None,
                  user_id: ObjectId = Depends(get_current_user_id), db: Database = Depends(get_db)):
    fil = {"userId": user_id}
    if q:
        fil["name"] = {"$regex": re.escape(q), "$options": "i"}
    if type:
        fil["type"] = type
    packages = get_documents(db, "packages", fil, sort=[("createdAt", DESCENDING), ("_id", DESCENDING)])
    return {"packages": serialize(packages)}


@app.post("/api/packages", status_code=201)
def add_package(package: Package, user_id: ObjectId = Depends(get_current_user_id),
                db: Database = Depends(get_db), now: datetime = Depends(get_now)):
    inserted_id = create_document(db, "packages", package.model_dump() | {"userId": user_id}, now=now)
    return {"message": "Package created successfully", "id": inserted_id}


@app.get("/api/packages/{package_id}")
def get_package(package_id: str, user_id: ObjectId = Depends(get_current_user_id), db: Database = Depends(get_db)):
    package = db["packages"].find_one(_owned_filter(package_id, user_id, "Package"))
    if not package:
        raise NotFound("Package not found")
    return {"package": serialize(package)}


@app.put("/api/packages/{package_id}")
def update_package(package_id: str, package: Package, user_id: ObjectId = Depends(get_current_user_id),
                   db: Database = Depends(get_db), now: datetime = Depends(get_now)):
    res = db["packages"].update_one(
        _owned_filter(package_id, user_id, "Package"),
        {"$set": package.model_dump() | {"updatedAt": now}},
    )
    if res.matched_count == 0:
        raise NotFound("Package not found")
    return {"message": "Package updated successfully"}


@app.delete("/api/packages/{package_id}")
def delete_package(package_id: str, user_id: ObjectId = Depends(get_current_user_id), db: Database = Depends(get_db)):
    res = db["packages"].delete_one(_owned_filter(package_id, user_id, "Package"))
    if res.deleted_count == 0:
        raise NotFound("Package not found")
    return {"message": "Package deleted successfully"}


# ----- Bills -----

@app.get("/api/bills")
def get_bills(user_id: ObjectId = Depends(get_current_user_id), db: Database = Depends(get_db),
              policy: EditPolicy = Depends(get_edit_policy), now: datetime = Depends(get_now)):
    return {"bills": billing.list_bills(db, user_id, policy, now)}


@app.post("/api/bills", status_code=201)
def create_bill(payload: BillRequest, user_id: ObjectId = Depends(get_current_user_id),
                db: Database = Depends(get_db), settings: Settings = Depends(get_settings),
                now: datetime = Depends(get_now)):
    bill_id = billing.create_bill(db, user_id, payload, settings, now)
    return {"message": "Bill created successfully", "billId": bill_id}


@app.get("/api/bills/{bill_id}")
def get_bill(bill_id: str, user_id: ObjectId = Depends(get_current_user_id), db: Database = Depends(get_db)):
    return {"bill": billing.get_bill(db, user_id, bill_id)}


@app.put("/api/bills/{bill_id}")
def update_bill(bill_id: str, payload: BillRequest, user_id: ObjectId = Depends(get_current_user_id),
                db: Database = Depends(get_db), settings: Settings = Depends(get_settings),
                policy: EditPolicy = Depends(get_edit_policy), now: datetime = Depends(get_now)):
    billing.update_bill(db, user_id, bill_id, payload, settings, policy, now)
    return {"message": "Bill updated successfully"}


@app.delete("/api/bills/{bill_id}")
def delete_bill(bill_id: str, user_id: ObjectId = Depends(get_current_user_id), db: Database = Depends(get_db),
                policy: EditPolicy = Depends(get_edit_policy), now: datetime = Depends(get_now)):
    billing.delete_bill(db, user_id, bill_id, policy, now)
    return {"message": "Bill deleted successfully"}


# ----- Inventory -----

def _inventory_fields(item: InventoryItem) -> dict:
    data = item.model_dump()
    data["total"] = item.quantity * item.pricePerUnit
    return data


@app.get("/api/inventory")
def list_inventory(category: Optional[str] = None, paymentStatus: Optional[PaymentStatus] = None,
                   user_id: ObjectId = Depends(get_current_user_id), db: Database = Depends(get_db)):
    fil = {"userId": user_id}
    if category:
        fil["category"] = {"$regex": f"^{re.escape(category)}$", "$options": "i"}
    if paymentStatus:
        fil["paymentStatus"] = paymentStatus
    items = get_documents(db, "inventory", fil, sort=[("createdAt", DESCENDING), ("_id", DESCENDING)])
    return {"inventory": serialize(items)}


@app.post("/api/inventory", status_code=201)
def add_inventory_item(item: InventoryItem, user_id: ObjectId = Depends(get_current_user_id),
                       db: Database = Depends(get_db), now: datetime = Depends(get_now)):
    doc = _inventory_fields(item) | {"userId": user_id, "dateEntered": now}
    inserted_id = create_document(db, "inventory", doc, now=now)
    logger.info("Added inventory item %s for user %s", inserted_id, user_id)
    return {"message": "Inventory item added successfully", "id": inserted_id}


@app.put("/api/inventory/{item_id}")
def update_inventory_item(item_id: str, item: InventoryItem, user_id: ObjectId = Depends(get_current_user_id),
                          db: Database = Depends(get_db), now: datetime = Depends(get_now)):
    res = db["inventory"].update_one(
        _owned_filter(item_id, user_id, "Inventory item"),
        {"$set": _inventory_fields(item) | {"updatedAt": now}},
    )
    if res.matched_count == 0:
        raise NotFound("Inventory item not found")
    return {"message": "Inventory item updated successfully"}


@app.delete("/api/inventory/{item_id}")
def delete_inventory_item(item_id: str, user_id: ObjectId = Depends(get_current_user_id),
                          db: Database = Depends(get_db)):
    res = db["inventory"].delete_one(_owned_filter(item_id, user_id, "Inventory item"))
    if res.deleted_count == 0:
        raise NotFound("Inventory item not found")
    return {"message": "Inventory item deleted successfully"}


# ----- Dashboard & Reports -----

@app.get("/api/dashboard/analytics")
def dashboard_analytics(window: Optional[str] = Query(None, pattern="^(day|morning)$"),
                        user_id: ObjectId = Depends(get_current_user_id), db: Database = Depends(get_db),
                        settings: Settings = Depends(get_settings), policy: EditPolicy = Depends(get_edit_policy),
                        now: datetime = Depends(get_now)):
    return reports.get_dashboard_analytics(
        db, user_id, now, policy,
        window=window or settings.dashboard_window,
        morning_cutoff_hour=settings.morning_cutoff_hour,
        recent_limit=settings.recent_bills_limit,
    )


@app.get("/api/reports/expenses")
def expense_report(period: Optional[str] = None, startDate: Optional[str] = None, endDate: Optional[str] = None,
                   user_id: ObjectId = Depends(get_current_user_id), db: Database = Depends(get_db),
                   now: datetime = Depends(get_now)):
    return reports.get_expense_report(db, user_id, now, period, startDate, endDate)


@app.get("/api/reports/sales")
def sales_report(period: Optional[str] = None, startDate: Optional[str] = None, endDate: Optional[str] = None,
                 user_id: ObjectId = Depends(get_current_user_id), db: Database = Depends(get_db),
                 now: datetime = Depends(get_now)):
    return reports.get_sales_report(db, user_id, now, period, startDate, endDate)


# ----- Misc -----

@app.get("/")
def read_root():
    return {"message": "Salon POS & Bookkeeping API"}


@app.get("/health")
def health():
    return {"status": "ok", "database": "configured" if database.db is not None else "not configured"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
