"""
Checkout orchestration and order lifecycle.

    cart -> stock check -> payment intent            (create_payment_intent)
    intent succeeded -> stock decrement -> order -> clear cart   (finalize_order)

finalize_order is idempotent per payment intent: the unique index on
order.payment_intent_id guarantees one order per payment, and both the
synchronous POST /orders call and the Stripe webhook go through it.

Stock is taken with a conditional $inc (only if stock >= quantity). If any
later step fails, every decrement already applied is given back before the
error propagates.
"""

import json
import logging
import secrets
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pymongo.errors import DuplicateKeyError

import cart as carts
from errors import (
    AuthorizationError,
    BusinessRuleError,
    EmptyCartError,
    InsufficientStockError,
    InvalidStatusTransitionError,
    NotFoundError,
    OrderNotCancellableError,
    PaymentAmountMismatchError,
    PaymentNotCompletedError,
)
from payments import INTENT_SUCCEEDED, PAYMENT_CURRENCY
from schemas import (
    Address,
    CANCELLABLE_STATUSES,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    STATUS_TRANSITIONS,
)

logger = logging.getLogger(__name__)

TAX_RATE = 0.08
FREE_SHIPPING_THRESHOLD = 50
SHIPPING_FEE = 5


# ----------------------------------------------------------------------------
# Pricing
# ----------------------------------------------------------------------------

def price_breakdown(subtotal: float) -> Dict[str, float]:
    shipping = 0 if subtotal >= FREE_SHIPPING_THRESHOLD else SHIPPING_FEE
    tax = subtotal * TAX_RATE
    total = subtotal + shipping + tax
    return {
        "subtotal": round(subtotal, 2),
        "shipping": round(float(shipping), 2),
        "tax": round(tax, 2),
        "total": round(total, 2),
    }


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def order_amounts(lines: List[Tuple[Dict[str, Any], int]]) -> Dict[str, float]:
    """Amounts for resolved cart lines, priced per unit the way the cart prices them."""
    subtotal = sum(carts.unit_price(product) * quantity for product, quantity in lines)
    return price_breakdown(round(subtotal, 2))


def generate_order_number() -> str:
    return f"ORD-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


# ----------------------------------------------------------------------------
# Stock
# ----------------------------------------------------------------------------

def _load_lines(db, cart: Dict[str, Any]) -> List[Tuple[Dict[str, Any], int]]:
    """Resolve every cart line to its product and check availability."""
    lines = []
    for item in cart.get("items", []):
        product = carts.find_product(db, item["product_id"])
        if not product:
            raise BusinessRuleError("Product in cart no longer exists")
        if product.get("stock", 0) < item["quantity"]:
            raise InsufficientStockError(product.get("name", item["product_id"]))
        lines.append((product, item["quantity"]))
    return lines


def take_stock(db, product_id, quantity: int) -> bool:
    """Atomically decrement stock only when enough is available."""
    res = db["product"].update_one(
        {"_id": product_id, "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity}, "$set": {"updated_at": datetime.utcnow()}},
    )
    return res.modified_count == 1


def restore_stock(db, product_id, quantity: int) -> bool:
    res = db["product"].update_one(
        {"_id": product_id},
        {"$inc": {"stock": quantity}, "$set": {"updated_at": datetime.utcnow()}},
    )
    return res.matched_count == 1


def _give_back(db, taken: List[Tuple[Any, int]]) -> None:
    for product_id, quantity in taken:
        restore_stock(db, product_id, quantity)
    if taken:
        logger.warning("Restored stock for %d product(s) after failed checkout", len(taken))


# ----------------------------------------------------------------------------
# Payment intent
# ----------------------------------------------------------------------------

def create_payment_intent(db, gateway, user_id: str, shipping_address: Address,
                          billing_address: Address) -> Dict[str, Any]:
    cart = carts.get_cart(db, user_id)
    if not cart or not cart.get("items"):
        raise EmptyCartError()

    carts.calculate_totals(db, cart)
    db["cart"].update_one(
        {"_id": cart["_id"]},
        {"$set": {"total_items": cart["total_items"], "total_price": cart["total_price"],
                  "last_updated": cart["last_updated"]}},
    )
    amounts = order_amounts(_load_lines(db, cart))

    intent = gateway.create_intent(
        to_minor_units(amounts["total"]),
        PAYMENT_CURRENCY,
        {
            "user_id": user_id,
            "cart_id": str(cart["_id"]),
            "shipping_address": json.dumps(shipping_address.model_dump()),
            "billing_address": json.dumps(billing_address.model_dump()),
        },
    )
    logger.info("Payment intent %s created for user %s (total %.2f)", intent.id, user_id, amounts["total"])
    return {
        "client_secret": intent.client_secret,
        "payment_intent_id": intent.id,
        "amount": amounts["total"],
        **amounts,
    }


# ----------------------------------------------------------------------------
# Order finalization
# ----------------------------------------------------------------------------

def _order_for_intent(db, intent_id: str) -> Optional[Dict[str, Any]]:
    return db["order"].find_one({"payment_intent_id": intent_id})


def finalize_order(db, gateway, user_id: str, payment_intent_id: str,
                   shipping_address: Address, billing_address: Address,
                   payment_method: str = "card", intent=None) -> Tuple[Dict[str, Any], bool]:
    """
    Turn a succeeded payment intent into an order.

    Returns (order, created). When an order already exists for the intent it
    is returned with created=False and nothing else happens.
    """
    if intent is None:
        intent = gateway.retrieve_intent(payment_intent_id)
    if intent.status != INTENT_SUCCEEDED:
        raise PaymentNotCompletedError()
    owner = intent.metadata.get("user_id")
    if owner and owner != user_id:
        raise AuthorizationError("Payment does not belong to this user")

    existing = _order_for_intent(db, payment_intent_id)
    if existing:
        logger.info("Order %s already exists for intent %s", existing["order_number"], payment_intent_id)
        return existing, False

    cart = carts.get_cart(db, user_id)
    if not cart or not cart.get("items"):
        raise EmptyCartError()

    lines = _load_lines(db, cart)
    amounts = order_amounts(lines)
    if to_minor_units(amounts["total"]) != intent.amount:
        logger.warning("Intent %s charged %d but cart now totals %.2f; order refused",
                       payment_intent_id, intent.amount, amounts["total"])
        raise PaymentAmountMismatchError()

    # snapshot from the product state read before any decrement
    items: List[OrderItem] = []
    for product, quantity in lines:
        images = product.get("images") or []
        items.append(OrderItem(
            product_id=str(product["_id"]),
            quantity=quantity,
            price=carts.unit_price(product),
            name=product.get("name", ""),
            image=images[0].get("url") if images else None,
        ))

    taken: List[Tuple[Any, int]] = []
    try:
        for product, quantity in lines:
            if not take_stock(db, product["_id"], quantity):
                raise InsufficientStockError(product.get("name", str(product["_id"])))
            taken.append((product["_id"], quantity))
        order = Order(
            user_id=user_id,
            order_number=generate_order_number(),
            items=items,
            shipping_address=shipping_address,
            billing_address=billing_address,
            payment_method=payment_method,
            payment_intent_id=payment_intent_id,
            payment_status=PaymentStatus.paid,
            status=OrderStatus.processing,
            **amounts,
        )
        now = datetime.utcnow()
        doc = {**order.model_dump(), "created_at": now, "updated_at": now}
        doc["_id"] = db["order"].insert_one(doc).inserted_id
    except DuplicateKeyError:
        _give_back(db, taken)
        existing = _order_for_intent(db, payment_intent_id)
        if existing is None:
            raise
        logger.info("Concurrent finalize for intent %s resolved to order %s", payment_intent_id, existing["order_number"])
        return existing, False
    except Exception:
        _give_back(db, taken)
        raise

    carts.clear(db, cart)
    logger.info("Order %s created for user %s (intent %s, total %.2f)",
                doc["order_number"], user_id, payment_intent_id, doc["total"])
    return doc, True


# ----------------------------------------------------------------------------
# Lifecycle
# ----------------------------------------------------------------------------

def get_order(db, order_id: str) -> Dict[str, Any]:
    oid = carts.to_object_id(order_id)
    order = db["order"].find_one({"_id": oid}) if oid else None
    if not order:
        raise NotFoundError("Order not found")
    return order


def set_status(db, order_id: str, status: OrderStatus, tracking_number: Optional[str] = None) -> Dict[str, Any]:
    order = get_order(db, order_id)
    current = OrderStatus(order["status"])
    status = OrderStatus(status)
    if status != current and status not in STATUS_TRANSITIONS[current]:
        raise InvalidStatusTransitionError(current.value, status.value)

    update: Dict[str, Any] = {"status": status.value, "updated_at": datetime.utcnow()}
    if tracking_number:
        update["tracking_number"] = tracking_number
    if status == OrderStatus.delivered and current != OrderStatus.delivered:
        update["delivered_at"] = datetime.utcnow()

    db["order"].update_one({"_id": order["_id"]}, {"$set": update})
    order.update(update)
    logger.info("Order %s status %s -> %s", order["order_number"], current.value, status.value)
    return order


def cancel_order(db, gateway, order_id: str, user_id: str) -> Dict[str, Any]:
    order = get_order(db, order_id)
    if order["user_id"] != user_id:
        raise AuthorizationError("Access denied")
    if OrderStatus(order["status"]) not in CANCELLABLE_STATUSES:
        raise OrderNotCancellableError()

    if order.get("payment_status") == PaymentStatus.paid.value and order.get("payment_intent_id"):
        # PaymentGatewayError propagates: nothing has been changed yet
        refund_id = gateway.refund(order["payment_intent_id"])
        # persisted before restocking; a retried cancel then skips the refund
        refunded = {"payment_status": PaymentStatus.refunded.value, "updated_at": datetime.utcnow()}
        db["order"].update_one({"_id": order["_id"]}, {"$set": refunded})
        order.update(refunded)
        logger.info("Refund %s issued for order %s", refund_id, order["order_number"])

    for item in order.get("items", []):
        product_oid = carts.to_object_id(item["product_id"])
        if product_oid is None or not restore_stock(db, product_oid, item["quantity"]):
            logger.warning("Skipped stock restore for missing product %s (order %s)",
                           item["product_id"], order["order_number"])

    update = {"status": OrderStatus.cancelled.value, "updated_at": datetime.utcnow()}
    db["order"].update_one({"_id": order["_id"]}, {"$set": update})
    order.update(update)
    logger.info("Order %s cancelled by user %s", order["order_number"], user_id)
    return order


# ----------------------------------------------------------------------------
# Webhook
# ----------------------------------------------------------------------------

def handle_payment_succeeded(db, gateway, intent) -> Optional[Dict[str, Any]]:
    """Create the order for a succeeded intent if the client never called POST /orders."""
    user_id = intent.metadata.get("user_id")
    if not user_id:
        logger.warning("Intent %s has no user_id metadata; ignoring", intent.id)
        return None
    try:
        shipping = Address(**json.loads(intent.metadata["shipping_address"]))
        billing = Address(**json.loads(intent.metadata["billing_address"]))
    except (KeyError, ValueError) as e:
        logger.warning("Intent %s carries unusable address metadata: %s", intent.id, e)
        return None

    try:
        order, created = finalize_order(db, gateway, user_id, intent.id, shipping, billing, intent=intent)
    except BusinessRuleError as e:
        logger.warning("Webhook could not create order for intent %s: %s", intent.id, e.message)
        return None
    if created:
        logger.info("Webhook created order %s for intent %s", order["order_number"], intent.id)
    return order
