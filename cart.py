"""
Cart aggregate maintenance.

A cart document caches total_items and total_price. Every mutation
recomputes both from the current product documents before saving, so the
cache only goes stale when a product changes between cart mutations.

Lines whose product no longer exists are kept in `items` but contribute
nothing to total_price.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument

from schemas import Cart

logger = logging.getLogger(__name__)


def to_object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def find_product(db, product_id: str) -> Optional[Dict[str, Any]]:
    oid = to_object_id(product_id)
    if oid is None:
        return None
    return db["product"].find_one({"_id": oid})


def effective_price(product: Dict[str, Any]) -> float:
    price = float(product.get("price", 0))
    discount = int(product.get("discount") or 0)
    if discount > 0:
        return price * (1 - discount / 100)
    return price


def unit_price(product: Dict[str, Any]) -> float:
    """Charged price per unit: the effective price rounded to cents."""
    return round(effective_price(product), 2)


def get_cart(db, user_id: str) -> Optional[Dict[str, Any]]:
    return db["cart"].find_one({"user_id": user_id})


def get_or_create_cart(db, user_id: str) -> Dict[str, Any]:
    """Return the user's cart, creating an empty one on first use."""
    now = datetime.utcnow()
    empty = Cart(user_id=user_id).model_dump()
    empty.pop("user_id")
    return db["cart"].find_one_and_update(
        {"user_id": user_id},
        {"$setOnInsert": {**empty, "created_at": now, "updated_at": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def calculate_totals(db, cart: Dict[str, Any]) -> Dict[str, Any]:
    total_items = 0
    total_price = 0.0
    for item in cart.get("items", []):
        total_items += item["quantity"]
        product = find_product(db, item["product_id"])
        if not product:
            logger.warning("Cart %s references missing product %s", cart.get("_id"), item["product_id"])
            continue
        total_price += unit_price(product) * item["quantity"]

    cart["total_items"] = total_items
    cart["total_price"] = round(total_price, 2)
    cart["last_updated"] = datetime.utcnow()
    return cart


def _save(db, cart: Dict[str, Any]) -> Dict[str, Any]:
    calculate_totals(db, cart)
    db["cart"].update_one(
        {"_id": cart["_id"]},
        {"$set": {
            "items": cart["items"],
            "total_items": cart["total_items"],
            "total_price": cart["total_price"],
            "last_updated": cart["last_updated"],
            "updated_at": cart["last_updated"],
        }},
    )
    return cart


def _find_line(items: List[Dict[str, Any]], product_id: str) -> Optional[Dict[str, Any]]:
    for item in items:
        if item["product_id"] == product_id:
            return item
    return None


def add_item(db, cart: Dict[str, Any], product_id: str, quantity: int = 1) -> Dict[str, Any]:
    items = cart.setdefault("items", [])
    line = _find_line(items, product_id)
    if line:
        line["quantity"] += quantity
    else:
        items.append({"product_id": product_id, "quantity": quantity, "added_at": datetime.utcnow()})
    return _save(db, cart)


def remove_item(db, cart: Dict[str, Any], product_id: str) -> Dict[str, Any]:
    cart["items"] = [i for i in cart.get("items", []) if i["product_id"] != product_id]
    return _save(db, cart)


def update_quantity(db, cart: Dict[str, Any], product_id: str, quantity: int) -> Dict[str, Any]:
    if quantity <= 0:
        return remove_item(db, cart, product_id)
    line = _find_line(cart.get("items", []), product_id)
    if line:
        line["quantity"] = quantity
    return _save(db, cart)


def clear(db, cart: Dict[str, Any]) -> Dict[str, Any]:
    cart["items"] = []
    return _save(db, cart)


def describe(db, cart: Dict[str, Any]) -> Dict[str, Any]:
    """Public view of a cart with each line joined to its current product."""
    lines = []
    for item in cart.get("items", []):
        product = find_product(db, item["product_id"])
        line = {"product_id": item["product_id"], "quantity": item["quantity"], "added_at": item.get("added_at")}
        if product:
            images = product.get("images") or []
            line.update({
                "name": product.get("name"),
                "price": product.get("price"),
                "discount": product.get("discount", 0),
                "effective_price": unit_price(product),
                "stock": product.get("stock", 0),
                "image": images[0].get("url") if images else None,
            })
        else:
            line["unavailable"] = True
        lines.append(line)
    return {
        "id": str(cart["_id"]),
        "user_id": cart["user_id"],
        "items": lines,
        "total_items": cart.get("total_items", 0),
        "total_price": cart.get("total_price", 0.0),
        "last_updated": cart.get("last_updated"),
    }
