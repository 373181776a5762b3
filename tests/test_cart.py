import pytest
from bson import ObjectId

import cart as carts
from conftest import make_product


def test_effective_price_applies_discount():
    assert carts.effective_price({"price": 100, "discount": 10}) == pytest.approx(90)
    assert carts.effective_price({"price": 20.5}) == 20.5


def test_get_or_create_cart_is_lazy_and_unique(db):
    first = carts.get_or_create_cart(db, "u1")
    second = carts.get_or_create_cart(db, "u1")
    assert first["_id"] == second["_id"]
    assert first["items"] == []
    assert first["total_items"] == 0
    assert db["cart"].count_documents({"user_id": "u1"}) == 1


def test_discounted_line_totals(db):
    pid = make_product(db, name="A", price=100, discount=10, stock=5)
    cart = carts.add_item(db, carts.get_or_create_cart(db, "u1"), pid, 2)

    assert cart["total_items"] == 2
    assert cart["total_price"] == 180.0
    stored = db["cart"].find_one({"user_id": "u1"})
    assert stored["total_price"] == 180.0
    assert stored["total_items"] == 2


def test_add_existing_product_increases_quantity(db):
    pid = make_product(db, price=10)
    cart = carts.get_or_create_cart(db, "u1")
    carts.add_item(db, cart, pid, 1)
    cart = carts.add_item(db, cart, pid, 3)

    assert len(cart["items"]) == 1
    assert cart["items"][0]["quantity"] == 4
    assert cart["total_price"] == 40.0


def test_quantity_is_not_clamped_to_stock(db):
    pid = make_product(db, price=10, stock=1)
    cart = carts.add_item(db, carts.get_or_create_cart(db, "u1"), pid, 7)
    assert cart["total_items"] == 7


def test_update_quantity_sets_and_removes(db):
    a = make_product(db, name="A", price=10)
    b = make_product(db, name="B", price=5)
    cart = carts.get_or_create_cart(db, "u1")
    carts.add_item(db, cart, a, 1)
    carts.add_item(db, cart, b, 1)

    cart = carts.update_quantity(db, cart, a, 3)
    assert cart["total_items"] == 4
    assert cart["total_price"] == 35.0

    cart = carts.update_quantity(db, cart, a, 0)
    assert [i["product_id"] for i in cart["items"]] == [b]
    assert cart["total_price"] == 5.0


def test_update_quantity_of_absent_product_changes_nothing(db):
    a = make_product(db, price=10)
    cart = carts.add_item(db, carts.get_or_create_cart(db, "u1"), a, 2)
    cart = carts.update_quantity(db, cart, str(ObjectId()), 5)
    assert cart["total_items"] == 2
    assert len(cart["items"]) == 1


def test_remove_absent_product_is_noop(db):
    a = make_product(db, price=10)
    cart = carts.add_item(db, carts.get_or_create_cart(db, "u1"), a, 2)
    cart = carts.remove_item(db, cart, str(ObjectId()))
    assert cart["total_items"] == 2
    assert cart["total_price"] == 20.0


def test_items_keep_insertion_order(db):
    ids = [make_product(db, name=n, price=1) for n in ("A", "B", "C")]
    cart = carts.get_or_create_cart(db, "u1")
    for pid in ids:
        carts.add_item(db, cart, pid, 1)
    carts.add_item(db, cart, ids[0], 1)
    assert [i["product_id"] for i in cart["items"]] == ids


def test_clear_empties_cart(db):
    a = make_product(db, price=10)
    cart = carts.add_item(db, carts.get_or_create_cart(db, "u1"), a, 2)
    cart = carts.clear(db, cart)
    assert cart["items"] == []
    assert cart["total_items"] == 0
    assert cart["total_price"] == 0.0


def test_deleted_product_is_skipped_but_kept(db):
    a = make_product(db, name="A", price=10)
    b = make_product(db, name="B", price=20)
    cart = carts.get_or_create_cart(db, "u1")
    carts.add_item(db, cart, a, 1)
    carts.add_item(db, cart, b, 2)

    db["product"].delete_one({"_id": ObjectId(b)})
    cart = carts.add_item(db, cart, a, 1)

    assert len(cart["items"]) == 2
    assert cart["total_items"] == 4
    assert cart["total_price"] == 20.0


def test_totals_use_current_price_on_next_mutation(db):
    a = make_product(db, price=10)
    cart = carts.add_item(db, carts.get_or_create_cart(db, "u1"), a, 2)
    assert cart["total_price"] == 20.0

    db["product"].update_one({"_id": ObjectId(a)}, {"$set": {"price": 15, "discount": 20}})
    # cached value is stale until the cart changes
    assert db["cart"].find_one({"user_id": "u1"})["total_price"] == 20.0

    cart = carts.update_quantity(db, cart, a, 2)
    assert cart["total_price"] == 24.0


def test_describe_marks_unavailable_lines(db):
    a = make_product(db, name="A", price=100, discount=10)
    cart = carts.add_item(db, carts.get_or_create_cart(db, "u1"), a, 1)
    carts.add_item(db, cart, str(ObjectId()), 1)

    view = carts.describe(db, cart)
    assert view["items"][0]["effective_price"] == 90.0
    assert view["items"][0]["name"] == "A"
    assert view["items"][1]["unavailable"] is True
