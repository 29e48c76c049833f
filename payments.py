"""
Payment reconciliation for Midtrans HTTP notifications.

The signature scheme is Midtrans' own:
sha512(order_id + status_code + gross_amount + server_key) as hex. It sits
behind SignatureVerifier so the reconciliation steps do not depend on it.

Notifications are recorded by (transaction_id, transaction_status); a
redelivered notification is acknowledged without being applied again.
Stock is never touched here.
"""
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Protocol

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from errors import ConfigurationError, OrderNotFound, SignatureInvalid, ValidationError
from schemas import ApiModel, PaymentStatus

logger = logging.getLogger(__name__)

PAID_STATUSES = {"capture", "settlement"}
FAILED_STATUSES = {"deny", "cancel", "expire"}


class PaymentNotification(BaseModel):
    model_config = ConfigDict(extra="allow")

    order_id: str
    status_code: str
    gross_amount: str
    transaction_status: str
    signature_key: str = ""
    transaction_id: Optional[str] = None
    transaction_time: Optional[str] = None
    payment_type: Optional[str] = None
    fraud_status: Optional[str] = None
    status_message: Optional[str] = None
    merchant_id: Optional[str] = None
    currency: Optional[str] = None
    settlement_time: Optional[str] = None


class PaymentAck(ApiModel):
    order_id: str
    order_number: str
    payment_status: PaymentStatus
    already_processed: bool = False


class SignatureVerifier(Protocol):
    def verify(self, notification: PaymentNotification, signature: str) -> bool:
        ...


class Sha512SignatureVerifier:
    def __init__(self, server_key: Optional[str]):
        if not server_key:
            raise ConfigurationError("MIDTRANS_SERVER_KEY is not configured")
        self.server_key = server_key

    def expected(self, notification: PaymentNotification) -> str:
        raw = notification.order_id + notification.status_code + notification.gross_amount + self.server_key
        return hashlib.sha512(raw.encode()).hexdigest()

    def verify(self, notification: PaymentNotification, signature: str) -> bool:
        return hmac.compare_digest(self.expected(notification).encode(), (signature or "").encode())


def map_transaction_status(transaction_status: str) -> PaymentStatus:
    if transaction_status in PAID_STATUSES:
        return PaymentStatus.PAID
    if transaction_status in FAILED_STATUSES:
        return PaymentStatus.FAILED
    return PaymentStatus.PENDING


def _audit_payment_method(current: str, payment_type: Optional[str]) -> str:
    if not payment_type or f"({payment_type})" in current:
        return current
    return f"{current} ({payment_type})"


def _amount_matches(gross_amount: str, total_amount: int) -> bool:
    try:
        return Decimal(gross_amount) == Decimal(total_amount)
    except InvalidOperation:
        return False


def _record(db: Database, notification: PaymentNotification, order_number: str, applied: PaymentStatus) -> None:
    if not notification.transaction_id:
        return
    try:
        db["payment_notification"].insert_one({
            "transaction_id": notification.transaction_id,
            "transaction_status": notification.transaction_status,
            "order_number": order_number,
            "payment_status": applied.value,
            "payload": notification.model_dump(exclude={"signature_key"}),
            "received_at": datetime.now(timezone.utc),
        })
    except DuplicateKeyError:
        # a concurrent delivery of the same notification got here first
        pass


def _already_seen(db: Database, notification: PaymentNotification) -> bool:
    if not notification.transaction_id:
        return False
    return db["payment_notification"].count_documents({
        "transaction_id": notification.transaction_id,
        "transaction_status": notification.transaction_status,
    }) > 0


def handle_payment_notification(
    db: Database,
    payload: Dict[str, Any],
    signature: Optional[str],
    verifier: SignatureVerifier,
) -> PaymentAck:
    try:
        notification = PaymentNotification(**payload)
    except PydanticValidationError as e:
        raise ValidationError(f"Malformed payment notification: {e.error_count()} invalid field(s)")
    signature = signature if signature is not None else notification.signature_key

    if not verifier.verify(notification, signature):
        logger.warning("Rejected payment notification for %s: invalid signature", notification.order_id)
        raise SignatureInvalid()

    order = db["order"].find_one({"order_number": notification.order_id})
    if not order:
        logger.error("Payment notification for unknown order %s", notification.order_id)
        raise OrderNotFound(notification.order_id)

    def ack(status, already_processed: bool = False) -> PaymentAck:
        return PaymentAck(
            order_id=str(order["_id"]),
            order_number=order["order_number"],
            payment_status=status,
            already_processed=already_processed,
        )

    if _already_seen(db, notification):
        logger.info(
            "Duplicate notification %s/%s for %s ignored",
            notification.transaction_id, notification.transaction_status, order["order_number"],
        )
        return ack(order["payment_status"], already_processed=True)

    if not _amount_matches(notification.gross_amount, order["total_amount"]):
        logger.warning(
            "Gross amount %s for %s differs from order total %d",
            notification.gross_amount, order["order_number"], order["total_amount"],
        )

    incoming = map_transaction_status(notification.transaction_status)
    current_status = PaymentStatus(order["payment_status"])

    if incoming == current_status:
        _record(db, notification, order["order_number"], current_status)
        return ack(current_status)

    if current_status != PaymentStatus.PENDING:
        logger.warning(
            "Ignoring %s for order %s: payment already %s",
            notification.transaction_status, order["order_number"], current_status.value,
        )
        _record(db, notification, order["order_number"], current_status)
        return ack(current_status)

    result = db["order"].update_one(
        {"_id": order["_id"], "payment_status": PaymentStatus.PENDING.value},
        {"$set": {
            "payment_status": incoming.value,
            "payment_method": _audit_payment_method(order["payment_method"], notification.payment_type),
            "updated_at": datetime.now(timezone.utc),
        }},
    )
    if result.modified_count == 0:
        # another delivery settled the payment first
        latest = db["order"].find_one({"_id": order["_id"]}) or order
        return ack(latest["payment_status"], already_processed=True)

    _record(db, notification, order["order_number"], incoming)
    logger.info("Order %s updated with payment status: %s", order["order_number"], incoming.value)
    return ack(incoming)
