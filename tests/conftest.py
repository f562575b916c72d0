from datetime import datetime, timedelta

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import main
from auth import create_access_token, hash_password
from config import Settings, get_settings

# Wednesday
START = datetime(2025, 3, 12, 10, 0, 0)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def set(self, **kwargs):
        self.now = self.now.replace(**kwargs)
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def db():
    return mongomock.MongoClient().salon_test


@pytest.fixture
def clock():
    return Clock(START)


@pytest.fixture
def settings():
    return Settings(jwt_secret="test-secret")


@pytest.fixture
def client(db, clock, settings):
    main.app.dependency_overrides[main.get_db] = lambda: db
    main.app.dependency_overrides[main.get_now] = lambda: clock.now
    main.app.dependency_overrides[get_settings] = lambda: settings
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


def make_user(db, email="owner@salon.test", password="secret123", verified=True) -> ObjectId:
    result = db["users"].insert_one({
        "email": email,
        "name": email.split("@")[0],
        "password": hash_password(password),
        "isVerified": verified,
    })
    return result.inserted_id


def headers_for(settings, user_id, email="owner@salon.test") -> dict:
    return {"Authorization": f"Bearer {create_access_token(settings, str(user_id), email)}"}


@pytest.fixture
def user_id(db):
    return make_user(db)


@pytest.fixture
def auth(settings, user_id):
    return headers_for(settings, user_id)


@pytest.fixture
def other_auth(db, settings):
    other = make_user(db, email="rival@salon.test")
    return headers_for(settings, other, "rival@salon.test")


def add_package(client, headers, name="Haircut", price=500.0, type="Basic") -> str:
    res = client.post("/api/packages", json={"name": name, "price": price, "type": type,
                                             "description": f"{name} service"}, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()["id"]


def add_inventory(client, headers, name="Shampoo", quantity=10, price=50.0, status="Unpaid", **extra) -> str:
    body = {"name": name, "quantity": quantity, "pricePerUnit": price, "paymentStatus": status} | extra
    res = client.post("/api/inventory", json=body, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()["id"]


def bill_body(package_ids, upi=0.0, card=0.0, cash=0.0, **extra) -> dict:
    return {
        "packageIds": package_ids,
        "clientName": "Asha",
        "attendantBy": "Meera",
        "upiAmount": upi,
        "cardAmount": card,
        "cashAmount": cash,
    } | extra


def create_bill(client, headers, package_ids, **kwargs) -> str:
    res = client.post("/api/bills", json=bill_body(package_ids, **kwargs), headers=headers)
    assert res.status_code == 201, res.text
    return res.json()["billId"]
