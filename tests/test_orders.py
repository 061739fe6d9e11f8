import pytest

import orders
from cart import add_item
from conftest import ADDRESS, auth_header, make_product, make_seller, make_user
from errors import AccessDenied, EmptyCart, NotFound, OutOfStock, ValidationFailed
from schemas import ShippingAddress


def test_checkout_snapshots_cart_and_clears_it(client, db, customer, seller):
    product = make_product(db, seller, price=1000, stock=5)
    add_item(db, str(customer["_id"]), str(product["_id"]), 2)

    res = client.post("/api/orders", json={"shipping_address": ADDRESS, "payment_method": "momo"},
                      headers=auth_header(customer))

    assert res.status_code == 201
    order = res.json()["order"]
    assert order["total_price"] == 2000
    assert order["shipping_fee"] == 2000
    assert order["grand_total"] == 4000
    assert order["payment_status"] == "pending"
    assert order["order_status"] == "pending"
    assert order["items"][0]["name"] == "Imigongo Canvas"
    assert db["cart"].find_one({"user_id": str(customer["_id"])})["items"] == []
    # stock is only taken once the payment is confirmed
    assert db["product"].find_one({"_id": product["_id"]})["stock"] == 5


def test_totals_hold_for_multi_line_orders(db, customer, seller):
    first = make_product(db, seller, name="Agaseke Basket", price=15000, stock=10)
    second = make_product(db, seller, name="Kitenge Shirt", price=20000, stock=10)
    add_item(db, str(customer["_id"]), str(first["_id"]), 2)
    add_item(db, str(customer["_id"]), str(second["_id"]), 1)

    order = orders.create_order(db, str(customer["_id"]), ShippingAddress(**ADDRESS), "stripe")

    assert order["total_price"] == sum(i["price"] * i["quantity"] for i in order["items"]) == 50000
    assert order["shipping_fee"] == 0
    assert order["grand_total"] == order["total_price"] + order["shipping_fee"]


def test_shipping_fee_threshold():
    assert orders.calculate_shipping_fee(49999) == 2000
    assert orders.calculate_shipping_fee(50000) == 0


def test_empty_cart_is_rejected(client, db, customer):
    res = client.post("/api/orders", json={"shipping_address": ADDRESS, "payment_method": "momo"},
                      headers=auth_header(customer))
    assert res.status_code == 400
    assert res.json()["code"] == "EMPTY_CART"
    with pytest.raises(EmptyCart):
        orders.create_order(db, str(customer["_id"]), ShippingAddress(**ADDRESS), "momo")


def test_out_of_stock_at_checkout_names_product(db, customer, seller):
    product = make_product(db, seller, stock=3)
    add_item(db, str(customer["_id"]), str(product["_id"]), 3)
    db["product"].update_one({"_id": product["_id"]}, {"$set": {"stock": 1}})

    with pytest.raises(OutOfStock) as exc:
        orders.create_order(db, str(customer["_id"]), ShippingAddress(**ADDRESS), "momo")

    assert exc.value.extra["product_id"] == str(product["_id"])
    assert db["order"].count_documents({}) == 0
    assert len(db["cart"].find_one({"user_id": str(customer["_id"])})["items"]) == 1


def test_deleted_product_in_cart(db, customer, seller):
    product = make_product(db, seller)
    add_item(db, str(customer["_id"]), str(product["_id"]), 1)
    db["product"].delete_one({"_id": product["_id"]})

    with pytest.raises(NotFound):
        orders.create_order(db, str(customer["_id"]), ShippingAddress(**ADDRESS), "momo")


def test_invalid_payment_method_and_address(client, db, customer, seller):
    product = make_product(db, seller)
    add_item(db, str(customer["_id"]), str(product["_id"]), 1)

    with pytest.raises(ValidationFailed):
        orders.create_order(db, str(customer["_id"]), ShippingAddress(**ADDRESS), "cash")

    res = client.post("/api/orders", json={"shipping_address": {**ADDRESS, "city": ""}, "payment_method": "momo"},
                      headers=auth_header(customer))
    assert res.status_code == 400
    assert res.json()["code"] == "VALIDATION"


def test_sellers_only_see_their_own_lines(client, db, customer, seller):
    other = make_seller(db, email="other@kuisoko.rw", name="Claudine")
    mine = make_product(db, seller, name="Imigongo Canvas")
    theirs = make_product(db, other, name="Coffee Beans")
    add_item(db, str(customer["_id"]), str(mine["_id"]), 1)
    add_item(db, str(customer["_id"]), str(theirs["_id"]), 1)
    order = orders.create_order(db, str(customer["_id"]), ShippingAddress(**ADDRESS), "momo")

    res = client.get(f"/api/orders/{order['_id']}", headers=auth_header(seller))
    assert res.status_code == 200
    assert [i["name"] for i in res.json()["order"]["items"]] == ["Imigongo Canvas"]

    res = client.get("/api/orders/seller-orders", headers=auth_header(other))
    assert [i["name"] for i in res.json()["orders"][0]["items"]] == ["Coffee Beans"]

    stranger = make_user(db, email="stranger@kuisoko.rw")
    with pytest.raises(AccessDenied):
        orders.get_order_for(db, str(order["_id"]), stranger)


def test_my_orders_and_admin_filters(client, db, customer, seller, admin):
    product = make_product(db, seller)
    add_item(db, str(customer["_id"]), str(product["_id"]), 1)
    order = orders.create_order(db, str(customer["_id"]), ShippingAddress(**ADDRESS), "momo")

    res = client.get("/api/orders/my-orders", headers=auth_header(customer))
    assert res.json()["pagination"]["total"] == 1

    res = client.get("/api/orders", params={"payment_status": "paid"}, headers=auth_header(admin))
    assert res.json()["orders"] == []

    res = client.put(f"/api/orders/{order['_id']}/status", json={"shipping_status": "in_transit"},
                     headers=auth_header(admin))
    assert res.status_code == 200
    assert res.json()["order"]["shipping_status"] == "in_transit"
    assert res.json()["order"]["order_status"] == "pending"


def test_customers_cannot_override_status(client, db, customer, seller):
    product = make_product(db, seller)
    add_item(db, str(customer["_id"]), str(product["_id"]), 1)
    order = orders.create_order(db, str(customer["_id"]), ShippingAddress(**ADDRESS), "momo")

    res = client.put(f"/api/orders/{order['_id']}/status", json={"order_status": "paid"},
                     headers=auth_header(customer))
    assert res.status_code == 403
    assert res.json()["code"] == "ACCESS_DENIED"
