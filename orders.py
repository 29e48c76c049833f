"""
Order pipeline

submit_order turns a cart snapshot into an order:

1. the request body has already been validated by OrderRequest;
2. every line is re-priced from the catalog, client prices are only compared;
3. stock is taken with conditional decrements inside a StockReservation;
4. the order, with its frozen item snapshot, is inserted under a fresh
   order number;
5. any failure before the insert succeeds restores the taken stock.

The module also holds order lookup and the admin-side status changes that
must respect the pipeline's stock bookkeeping.
"""
import hashlib
import json
import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional

from bson import ObjectId
from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from cart import line_key, shipping_cost
from catalog import variant_label
from config import Settings
from database import oid_to_str, to_object_id
from errors import (
    Conflict,
    IdempotencyConflict,
    InvalidTransition,
    OrderNotFound,
    PartialCommitFailure,
    PriceMismatch,
    ProductUnavailable,
    ValidationError,
)
from order_numbers import insert_with_order_number
from schemas import (
    PAYMENT_METHOD_LABELS,
    Order,
    OrderConfirmation,
    OrderItem,
    OrderLineIn,
    OrderRequest,
    OrderStatus,
    OrderUpdate,
    PaymentStatus,
)
from stock import StockReservation, restock_items

logger = logging.getLogger(__name__)

_email_adapter = TypeAdapter(EmailStr)

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

# manual payment changes from the back office (e.g. verified bank transfers)
ADMIN_PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.FAILED: {PaymentStatus.PAID},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED},
    PaymentStatus.REFUNDED: set(),
}


class PricedLine(NamedTuple):
    product_oid: ObjectId
    variant_oid: Optional[ObjectId]
    item: OrderItem


# ---------------------- Pricing ----------------------

def merge_lines(lines: List[OrderLineIn]) -> List[OrderLineIn]:
    merged: Dict[str, OrderLineIn] = {}
    for line in lines:
        key = line_key(line.product_id, line.variant_id)
        if key in merged:
            prev = merged[key]
            merged[key] = prev.model_copy(update={"quantity": prev.quantity + line.quantity})
        else:
            merged[key] = line
    return list(merged.values())


def price_line(db: Database, line: OrderLineIn, settings: Settings) -> PricedLine:
    product_oid = to_object_id(line.product_id, "product id")
    product = db["product"].find_one({"_id": product_oid})
    if not product or not product.get("is_active", False):
        raise ProductUnavailable(product["name"] if product else (line.product_name or line.product_id))

    variant = None
    variant_oid = None
    if line.variant_id:
        variant_oid = to_object_id(line.variant_id, "variant id")
        variant = db["product_variant"].find_one({"_id": variant_oid})
        if not variant:
            raise ProductUnavailable(product["name"])
        if variant.get("product_id") != str(product_oid):
            raise ValidationError(f"Variant {line.variant_id} does not belong to {product['name']}")
        if not variant.get("is_active", False):
            raise ProductUnavailable(f"{product['name']} ({variant_label(variant)})")

    base = product["discount_price"] if product.get("discount_price") is not None else product["price"]
    unit_price = base + (variant.get("additional_price", 0) if variant else 0)

    if line.price is not None and line.price != unit_price:
        logger.warning(
            "Client price for %s was %s, catalog price is %d",
            product["name"], line.price, unit_price,
        )
        if settings.reject_price_mismatch:
            raise PriceMismatch(product["name"], line.price, unit_price)

    item = OrderItem(
        product_id=str(product_oid),
        variant_id=str(variant_oid) if variant_oid else None,
        product_name=product["name"],
        variant_info=variant_label(variant),
        price=unit_price,
        quantity=line.quantity,
        subtotal=unit_price * line.quantity,
    )
    return PricedLine(product_oid, variant_oid, item)


def price_lines(db: Database, lines: List[OrderLineIn], settings: Settings) -> List[PricedLine]:
    return [price_line(db, line, settings) for line in merge_lines(lines)]


# ---------------------- Submission ----------------------

def request_hash(request: OrderRequest) -> str:
    body = json.dumps(request.model_dump(mode="json"), sort_keys=True)
    return hashlib.sha256(body.encode()).hexdigest()


def _claim_idempotency_key(db: Database, key: str, body_hash: str) -> Optional[OrderConfirmation]:
    """Reserve `key` for this request, or return the confirmation it already produced."""
    try:
        db["idempotency_key"].insert_one({
            "key": key,
            "request_hash": body_hash,
            "response": None,
            "created_at": datetime.now(timezone.utc),
        })
        return None
    except DuplicateKeyError:
        rec = db["idempotency_key"].find_one({"key": key})

    if rec is None:
        raise IdempotencyConflict("Idempotency key was released mid-request, please retry")
    if rec.get("request_hash") != body_hash:
        raise IdempotencyConflict("Idempotency key was already used with a different request")
    if not rec.get("response"):
        raise IdempotencyConflict("A request with this idempotency key is still being processed")
    logger.info("Replaying order %s for idempotency key %s", rec["response"].get("order_number"), key)
    return OrderConfirmation(**rec["response"])


def submit_order(db: Database, request: OrderRequest, settings: Settings, idempotency_key: Optional[str] = None) -> OrderConfirmation:
    if idempotency_key:
        replay = _claim_idempotency_key(db, idempotency_key, request_hash(request))
        if replay is not None:
            return replay

    try:
        confirmation = _commit_order(db, request, settings, idempotency_key)
    except Exception:
        if idempotency_key:
            db["idempotency_key"].delete_one({"key": idempotency_key, "response": None})
        raise

    if idempotency_key:
        db["idempotency_key"].update_one(
            {"key": idempotency_key},
            {"$set": {"response": confirmation.model_dump()}},
        )
    return confirmation


def _commit_order(db: Database, request: OrderRequest, settings: Settings, idempotency_key: Optional[str]) -> OrderConfirmation:
    lines = price_lines(db, request.items, settings)
    items = [line.item for line in lines]
    subtotal = sum(item.subtotal for item in items)
    shipping = shipping_cost(subtotal, settings)
    payment_method = PAYMENT_METHOD_LABELS[request.payment_method.method]
    now = datetime.now(timezone.utc)

    def build(order_number: str) -> Dict[str, Any]:
        order = Order(
            order_number=order_number,
            customer_name=request.customer_info.name,
            customer_email=request.customer_info.email,
            customer_phone=request.customer_info.phone,
            shipping_address=request.shipping_address,
            items=items,
            subtotal=subtotal,
            shipping_cost=shipping,
            total_amount=subtotal + shipping,
            payment_method=payment_method,
            notes=request.notes,
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
        )
        return order.model_dump()

    with StockReservation(db) as reservation:
        for line in lines:
            reservation.take(line.product_oid, line.variant_oid, line.item.quantity, line.item.product_name)
        doc = insert_with_order_number(db, build, attempts=settings.order_number_attempts)
        reservation.commit()

    logger.info("Order %s created: %d line(s), total %d", doc["order_number"], len(items), doc["total_amount"])
    return OrderConfirmation(
        order_id=str(doc["_id"]),
        order_number=doc["order_number"],
        total_amount=doc["total_amount"],
        payment_method=doc["payment_method"],
        status=doc["status"],
        payment_status=doc["payment_status"],
    )


# ---------------------- Lookup ----------------------

def serialize_order(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = oid_to_str(doc)
    out.pop("idempotency_key", None)
    return out


def normalize_email(email: str) -> str:
    """Normalize `email` the way checkout stored it (domain lowercased)."""
    try:
        return _email_adapter.validate_python(email.strip())
    except PydanticValidationError:
        raise ValidationError("Invalid email address")


def find_orders(db: Database, order_number: Optional[str] = None, email: Optional[str] = None) -> List[Dict[str, Any]]:
    if not order_number and not email:
        raise ValidationError("Order number or email is required")
    where: Dict[str, Any] = {}
    if order_number:
        where["order_number"] = order_number
    if email:
        where["customer_email"] = normalize_email(email)
    docs = db["order"].find(where).sort([("created_at", DESCENDING)])
    return [serialize_order(d) for d in docs]


def _load_order(db: Database, order_id: str) -> Dict[str, Any]:
    doc = db["order"].find_one({"_id": to_object_id(order_id, "order id")})
    if not doc:
        raise OrderNotFound(order_id)
    return doc


def get_order(db: Database, order_id: str) -> Dict[str, Any]:
    return serialize_order(_load_order(db, order_id))


def list_orders(
    db: Database,
    status: Optional[OrderStatus] = None,
    payment_status: Optional[PaymentStatus] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    where: Dict[str, Any] = {}
    if status:
        where["status"] = status.value
    if payment_status:
        where["payment_status"] = payment_status.value
    if search:
        pattern = re.escape(search)
        where["$or"] = [
            {"order_number": {"$regex": pattern, "$options": "i"}},
            {"customer_name": {"$regex": pattern, "$options": "i"}},
            {"customer_email": {"$regex": pattern, "$options": "i"}},
        ]
    docs = db["order"].find(where).sort([("created_at", DESCENDING)]).skip((page - 1) * limit).limit(limit)
    total_count = db["order"].count_documents(where)
    total_pages = math.ceil(total_count / limit)
    return {
        "orders": [serialize_order(d) for d in docs],
        "pagination": {
            "page": page,
            "limit": limit,
            "total_count": total_count,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


# ---------------------- Admin ----------------------

def _restock_or_restore(db: Database, order: Dict[str, Any], restore) -> None:
    """Return an order's stock after it was cancelled or deleted.

    If the restock fails the order change is undone with `restore`, so the
    cancel or delete can be retried.
    """
    try:
        restock_items(db, order["items"])
    except PartialCommitFailure:
        raise
    except Exception:
        try:
            restore()
        except Exception:
            logger.critical("Could not restore order %s after a failed restock", order["order_number"], exc_info=True)
            raise PartialCommitFailure(
                f"Order {order['order_number']} changed but its stock was not returned; needs manual correction"
            )
        logger.error("Restock for order %s failed, order change undone", order["order_number"])
        raise


def update_order(db: Database, order_id: str, changes: OrderUpdate) -> Dict[str, Any]:
    order = _load_order(db, order_id)
    current_status = OrderStatus(order["status"])
    current_payment = PaymentStatus(order["payment_status"])
    update: Dict[str, Any] = {}

    if changes.status is not None and changes.status != current_status:
        if changes.status not in ORDER_TRANSITIONS[current_status]:
            raise InvalidTransition(f"Cannot change order status from {current_status.value} to {changes.status.value}")
        update["status"] = changes.status.value

    if changes.payment_status is not None and changes.payment_status != current_payment:
        if changes.payment_status not in ADMIN_PAYMENT_TRANSITIONS[current_payment]:
            raise InvalidTransition(
                f"Cannot change payment status from {current_payment.value} to {changes.payment_status.value}"
            )
        update["payment_status"] = changes.payment_status.value

    for field in ("tracking_number", "notes"):
        if field in changes.model_fields_set:
            update[field] = getattr(changes, field)

    if not update:
        return serialize_order(order)

    update["updated_at"] = datetime.now(timezone.utc)
    result = db["order"].update_one(
        {"_id": order["_id"], "status": order["status"], "payment_status": order["payment_status"]},
        {"$set": update},
    )
    if result.modified_count == 0:
        raise Conflict("Order was changed by another request, reload and retry")

    if update.get("status") == OrderStatus.CANCELLED.value:
        previous = {field: order.get(field) for field in update}
        _restock_or_restore(
            db, order,
            lambda: db["order"].update_one(
                {"_id": order["_id"], "status": OrderStatus.CANCELLED.value}, {"$set": previous},
            ),
        )
        logger.info("Order %s cancelled, stock restored", order["order_number"])

    return get_order(db, order_id)


def delete_order(db: Database, order_id: str) -> None:
    order = _load_order(db, order_id)
    if order["status"] != OrderStatus.PENDING.value:
        raise InvalidTransition("Can only delete pending orders")
    result = db["order"].delete_one({"_id": order["_id"], "status": OrderStatus.PENDING.value})
    if result.deleted_count == 0:
        raise InvalidTransition("Can only delete pending orders")
    _restock_or_restore(db, order, lambda: db["order"].insert_one(order))
    logger.info("Order %s deleted, stock restored", order["order_number"])
