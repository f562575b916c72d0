from datetime import datetime, timedelta

import pytest
from bson import ObjectId

import billing
from billing import EditPolicy, compute_totals, stock_changes
from schemas import BillItem, Expenditure, ProductSale
from tests.conftest import add_inventory, add_package, bill_body, create_bill


@pytest.fixture
def packages(client, auth):
    return [
        add_package(client, auth, name="Haircut", price=500),
        add_package(client, auth, name="Facial", price=1200, type="Premium"),
    ]


def test_create_bill_totals_include_sales_and_expenditures(client, auth, packages, db, clock):
    body = bill_body(
        packages, upi=1000, card=500, cash=200,
        customerMobile="9876543210",
        productSales=[{"productName": "Serum", "quantity": 2, "unitPrice": 250, "totalPrice": 1}],
        expenditures=[{"name": "Coffee", "amount": 40}, {"name": "Towels", "price": 60}],
    )
    res = client.post("/api/bills", json=body, headers=auth)
    assert res.status_code == 201

    bill = client.get(f"/api/bills/{res.json()['billId']}", headers=auth).json()["bill"]
    assert bill["totalAmount"] == 1700 + 500 + 100
    assert bill["productSales"][0]["totalPrice"] == 500
    assert [e["price"] for e in bill["expenditures"]] == [40, 60]
    assert [i["packageName"] for i in bill["items"]] == ["Haircut", "Facial"]
    assert bill["customerMobile"] == "9876543210"
    stored = db["bills"].find_one()
    assert stored["createdAt"] == stored["updatedAt"] == clock.now


def test_create_bill_requires_packages(client, auth):
    res = client.post("/api/bills", json=bill_body([]), headers=auth)
    assert res.status_code == 400
    assert res.json()["detail"] == "At least one package must be selected"


def test_create_bill_rejects_unknown_or_foreign_packages(client, auth, other_auth, packages):
    foreign = add_package(client, other_auth, name="Theirs", price=100)
    res = client.post("/api/bills", json=bill_body([packages[0], foreign], cash=600), headers=auth)
    assert res.status_code == 400
    assert res.json()["detail"] == "Some packages not found"

    res = client.post("/api/bills", json=bill_body([str(ObjectId())], cash=0), headers=auth)
    assert res.status_code == 400
    res = client.post("/api/bills", json=bill_body(["bogus"], cash=0), headers=auth)
    assert res.status_code == 400


def test_payment_split_must_match_services_total(client, auth, packages):
    res = client.post("/api/bills", json=bill_body(packages, upi=1000, cash=600), headers=auth)
    assert res.status_code == 400
    assert "1600.00" in res.json()["detail"] and "1700.00" in res.json()["detail"]

    res = client.post("/api/bills", json=bill_body(packages, upi=1000, cash=699.995), headers=auth)
    assert res.status_code == 201


def test_list_bills_newest_first_and_stable(client, auth, packages, clock):
    ids = []
    for _ in range(3):
        ids.append(create_bill(client, auth, [packages[0]], cash=500))
        clock.advance(minutes=5)

    first = client.get("/api/bills", headers=auth).json()["bills"]
    second = client.get("/api/bills", headers=auth).json()["bills"]
    assert [b["_id"] for b in first] == list(reversed(ids))
    assert first == second
    assert all(b["isEditable"] for b in first)


def test_snapshot_survives_package_edit(client, auth, packages):
    bill_id = create_bill(client, auth, [packages[0]], cash=500)
    client.put(f"/api/packages/{packages[0]}", json={"name": "Deluxe Haircut", "price": 900}, headers=auth)

    bill = client.get(f"/api/bills/{bill_id}", headers=auth).json()["bill"]
    assert bill["items"] == [{
        "packageId": packages[0], "packageName": "Haircut", "packagePrice": 500.0,
        "packageType": "Basic", "quantity": 1,
    }]
    assert bill["totalAmount"] == 500


def test_update_bill_recomputes(client, auth, packages, db, clock):
    bill_id = create_bill(client, auth, [packages[0]], cash=500)
    clock.advance(minutes=2)
    body = bill_body(packages, upi=1700, expenditures=[{"name": "Tea", "price": 20}], clientName="Riya")
    assert client.put(f"/api/bills/{bill_id}", json=body, headers=auth).status_code == 200

    stored = db["bills"].find_one({"_id": ObjectId(bill_id)})
    assert stored["totalAmount"] == 1720
    assert stored["clientName"] == "Riya"
    assert len(stored["items"]) == 2
    assert stored["updatedAt"] == clock.now
    assert stored["createdAt"] < stored["updatedAt"]


def test_update_bill_validates_like_create(client, auth, packages):
    bill_id = create_bill(client, auth, [packages[0]], cash=500)
    res = client.put(f"/api/bills/{bill_id}", json=bill_body(packages, cash=500), headers=auth)
    assert res.status_code == 400
    res = client.put(f"/api/bills/{bill_id}", json=bill_body([], cash=0), headers=auth)
    assert res.status_code == 400


def test_only_fifteen_newest_bills_are_mutable(client, auth, packages, clock):
    ids = []
    for _ in range(20):
        ids.append(create_bill(client, auth, [packages[0]], cash=500))
        clock.advance(minutes=1)

    listed = client.get("/api/bills", headers=auth).json()["bills"]
    assert [b["isEditable"] for b in listed] == [True] * 15 + [False] * 5

    body = bill_body([packages[0]], card=500)
    for bill_id in ids[:5]:
        res = client.put(f"/api/bills/{bill_id}", json=body, headers=auth)
        assert res.status_code == 403
        assert "too old to edit" in res.json()["detail"]
        res = client.delete(f"/api/bills/{bill_id}", headers=auth)
        assert res.status_code == 403
        assert "too old to delete" in res.json()["detail"]
    for bill_id in ids[5:]:
        assert client.put(f"/api/bills/{bill_id}", json=body, headers=auth).status_code == 200

    assert client.delete(f"/api/bills/{ids[-1]}", headers=auth).status_code == 200


def test_window_policy(client, auth, packages, clock, settings):
    settings.edit_policy = "window"
    bill_id = create_bill(client, auth, [packages[0]], cash=500)

    clock.advance(minutes=15)
    assert client.put(f"/api/bills/{bill_id}", json=bill_body([packages[0]], upi=500),
                      headers=auth).status_code == 200
    clock.advance(seconds=1)
    assert client.get("/api/bills", headers=auth).json()["bills"][0]["isEditable"] is False
    assert client.delete(f"/api/bills/{bill_id}", headers=auth).status_code == 403


def test_bills_are_scoped_to_owner(client, auth, other_auth, packages):
    bill_id = create_bill(client, auth, [packages[0]], cash=500)
    other_pkg = add_package(client, other_auth, price=500)

    assert client.get("/api/bills", headers=other_auth).json()["bills"] == []
    assert client.get(f"/api/bills/{bill_id}", headers=other_auth).status_code == 404
    assert client.put(f"/api/bills/{bill_id}", json=bill_body([other_pkg], cash=500),
                      headers=other_auth).status_code == 404
    assert client.delete(f"/api/bills/{bill_id}", headers=other_auth).status_code == 404
    assert client.get(f"/api/bills/{bill_id}", headers=auth).status_code == 200


def test_delete_missing_bill(client, auth):
    assert client.delete(f"/api/bills/{ObjectId()}", headers=auth).status_code == 404
    assert client.delete("/api/bills/zzz", headers=auth).status_code == 404


def test_product_sale_from_inventory_takes_stock(client, auth, packages, db):
    item_id = add_inventory(client, auth, name="Serum", quantity=5, price=100)
    sale = {"inventoryId": item_id, "productName": "Serum", "quantity": 2, "unitPrice": 300}
    bill_id = create_bill(client, auth, [packages[0]], cash=500, productSales=[sale])

    assert db["inventory"].find_one({"_id": ObjectId(item_id)})["quantity"] == 3

    body = bill_body([packages[0]], cash=500, productSales=[sale | {"quantity": 4}])
    assert client.put(f"/api/bills/{bill_id}", json=body, headers=auth).status_code == 200
    assert db["inventory"].find_one({"_id": ObjectId(item_id)})["quantity"] == 1

    assert client.delete(f"/api/bills/{bill_id}", headers=auth).status_code == 200
    assert db["inventory"].find_one({"_id": ObjectId(item_id)})["quantity"] == 5


def test_stock_shortfall_rolls_back(client, auth, packages, db):
    serum = add_inventory(client, auth, name="Serum", quantity=5, price=100)
    mask = add_inventory(client, auth, name="Mask", quantity=1, price=80)
    sales = [
        {"inventoryId": serum, "productName": "Serum", "quantity": 2, "unitPrice": 300},
        {"inventoryId": mask, "productName": "Mask", "quantity": 3, "unitPrice": 150},
    ]
    res = client.post("/api/bills", json=bill_body([packages[0]], cash=500, productSales=sales), headers=auth)
    assert res.status_code == 400
    assert "Insufficient stock for Mask" in res.json()["detail"]
    assert db["inventory"].find_one({"_id": ObjectId(serum)})["quantity"] == 5
    assert db["bills"].count_documents({}) == 0


def test_failed_edit_never_drives_stock_negative(client, auth, packages, db, monkeypatch):
    item_id = add_inventory(client, auth, name="Serum", quantity=5, price=100)
    oid = ObjectId(item_id)
    sale = {"inventoryId": item_id, "productName": "Serum", "quantity": 2, "unitPrice": 300}
    bill_id = create_bill(client, auth, [packages[0]], cash=500, productSales=[sale])

    real_take_stock = billing.take_stock

    def rival_sells_everything_first(db_, user_id, lines, now):
        db["inventory"].update_one({"_id": oid}, {"$set": {"quantity": 0}})
        return real_take_stock(db_, user_id, lines, now)

    monkeypatch.setattr(billing, "take_stock", rival_sells_everything_first)
    body = bill_body([packages[0]], cash=500, productSales=[sale | {"quantity": 4}])
    res = client.put(f"/api/bills/{bill_id}", json=body, headers=auth)

    assert res.status_code == 400
    assert "Insufficient stock for Serum" in res.json()["detail"]
    assert db["inventory"].find_one({"_id": oid})["quantity"] == 0
    assert db["bills"].find_one({"_id": ObjectId(bill_id)})["productSales"][0]["quantity"] == 2


def test_edit_keeps_held_stock_when_shelf_is_empty(client, auth, packages, db):
    item_id = add_inventory(client, auth, name="Serum", quantity=3, price=100)
    sale = {"inventoryId": item_id, "productName": "Serum", "quantity": 3, "unitPrice": 300}
    bill_id = create_bill(client, auth, [packages[0]], cash=500, productSales=[sale])
    assert db["inventory"].find_one({"_id": ObjectId(item_id)})["quantity"] == 0

    body = bill_body([packages[0]], upi=500, productSales=[sale | {"unitPrice": 280}])
    assert client.put(f"/api/bills/{bill_id}", json=body, headers=auth).status_code == 200
    assert db["inventory"].find_one({"_id": ObjectId(item_id)})["quantity"] == 0

    body = bill_body([packages[0]], upi=500, productSales=[sale | {"quantity": 1}])
    assert client.put(f"/api/bills/{bill_id}", json=body, headers=auth).status_code == 200
    assert db["inventory"].find_one({"_id": ObjectId(item_id)})["quantity"] == 2


def test_stock_changes_nets_old_against_new():
    a, b, c = ObjectId(), ObjectId(), ObjectId()
    takes, releases = stock_changes(
        [(a, 2), (b, 5), (b, 1)],
        [(a, 3, "Serum"), (b, 4, "Mask"), (c, 1, "Oil")],
    )
    assert takes == [(a, 1, "Serum"), (c, 1, "Oil")]
    assert releases == [(b, 2)]


def test_product_sale_cannot_use_foreign_inventory(client, auth, other_auth, packages):
    theirs = add_inventory(client, other_auth, name="Serum", quantity=5, price=100)
    sale = {"inventoryId": theirs, "productName": "Serum", "quantity": 1, "unitPrice": 300}
    res = client.post("/api/bills", json=bill_body([packages[0]], cash=500, productSales=[sale]), headers=auth)
    assert res.status_code == 400


def test_compute_totals():
    items = [BillItem(packageId="a", packageName="A", packagePrice=100.1, packageType="Basic"),
             BillItem(packageId="b", packageName="B", packagePrice=200.2, packageType="Premium")]
    sales = [ProductSale(productName="Oil", quantity=1, unitPrice=50, totalPrice=50)]
    spent = [Expenditure(name="Tea", amount=10)]
    totals = compute_totals(items, sales, spent)
    assert totals["servicesTotal"] == pytest.approx(300.3)
    assert totals["totalAmount"] == 360.3


def test_edit_policy_window():
    policy = EditPolicy("window", minutes=15)
    now = datetime(2025, 3, 12, 10, 0)
    assert policy.allows({"_id": 1, "createdAt": now - timedelta(minutes=15)}, now)
    assert not policy.allows({"_id": 1, "createdAt": now - timedelta(minutes=16)}, now)
    with pytest.raises(ValueError):
        EditPolicy("forever")
