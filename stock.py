"""
Stock counters

Product and variant stock are only ever changed with a single conditional
update: the filter carries `stock >= qty`, so check and decrement happen in
one round-trip and concurrent orders cannot both take the last unit.

StockReservation is the unit of work around an order commit. Each decrement
registers the matching restock; leaving the block with an exception replays
them in reverse order.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo.database import Database

from errors import InsufficientStock, PartialCommitFailure

logger = logging.getLogger(__name__)


def _target(product_id: ObjectId, variant_id: Optional[ObjectId]) -> Tuple[str, Dict[str, Any]]:
    if variant_id is not None:
        return "product_variant", {"_id": variant_id, "product_id": str(product_id)}
    return "product", {"_id": product_id}


def decrement(db: Database, product_id: ObjectId, variant_id: Optional[ObjectId], quantity: int) -> bool:
    """Take `quantity` units if at least that many are left. Returns False otherwise."""
    collection, where = _target(product_id, variant_id)
    result = db[collection].update_one(
        {**where, "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity}, "$set": {"updated_at": datetime.now(timezone.utc)}},
    )
    return result.modified_count == 1


def restock(db: Database, product_id: ObjectId, variant_id: Optional[ObjectId], quantity: int) -> None:
    collection, where = _target(product_id, variant_id)
    db[collection].update_one(
        where,
        {"$inc": {"stock": quantity}, "$set": {"updated_at": datetime.now(timezone.utc)}},
    )


def available(db: Database, product_id: ObjectId, variant_id: Optional[ObjectId]) -> int:
    collection, where = _target(product_id, variant_id)
    doc = db[collection].find_one(where, {"stock": 1})
    return int(doc.get("stock", 0)) if doc else 0


def withdraw(db: Database, product_id: ObjectId, variant_id: Optional[ObjectId], quantity: int) -> None:
    """Take back units returned by a restock that has to be undone."""
    collection, where = _target(product_id, variant_id)
    db[collection].update_one(
        where,
        {"$inc": {"stock": -quantity}, "$set": {"updated_at": datetime.now(timezone.utc)}},
    )


def restock_items(db: Database, items: List[Dict[str, Any]]) -> None:
    """Return the quantities of an order's item snapshot to the catalog.

    All or nothing: if a line fails, the lines already returned are taken back
    before the error propagates.
    """
    returned: List[Tuple[ObjectId, Optional[ObjectId], int]] = []
    try:
        for item in items:
            variant_id = ObjectId(item["variant_id"]) if item.get("variant_id") else None
            product_id = ObjectId(item["product_id"])
            restock(db, product_id, variant_id, item["quantity"])
            returned.append((product_id, variant_id, item["quantity"]))
    except Exception as e:
        if returned:
            logger.warning("Undoing %d restock(s): %s", len(returned), e)
        _withdraw_all(db, returned)
        raise


def _withdraw_all(db: Database, returned: List[Tuple[ObjectId, Optional[ObjectId], int]]) -> None:
    failed = []
    for product_id, variant_id, quantity in reversed(returned):
        try:
            withdraw(db, product_id, variant_id, quantity)
        except Exception:
            logger.critical(
                "Could not take back %d unit(s) of product %s variant %s",
                quantity, product_id, variant_id, exc_info=True,
            )
            failed.append((product_id, variant_id, quantity))
    if failed:
        raise PartialCommitFailure("Restock undo incomplete; stock needs manual correction")


class StockReservation:
    def __init__(self, db: Database):
        self.db = db
        self._taken: List[Tuple[ObjectId, Optional[ObjectId], int]] = []
        self._committed = False

    def take(self, product_id: ObjectId, variant_id: Optional[ObjectId], quantity: int, product_name: str) -> None:
        if not decrement(self.db, product_id, variant_id, quantity):
            raise InsufficientStock(product_name, available(self.db, product_id, variant_id))
        self._taken.append((product_id, variant_id, quantity))

    def commit(self) -> None:
        self._committed = True

    def rollback(self) -> None:
        failed = []
        while self._taken:
            product_id, variant_id, quantity = self._taken.pop()
            try:
                restock(self.db, product_id, variant_id, quantity)
            except Exception:
                logger.critical(
                    "Could not restore %d unit(s) of product %s variant %s",
                    quantity, product_id, variant_id, exc_info=True,
                )
                failed.append((product_id, variant_id, quantity))
        if failed:
            raise PartialCommitFailure("Order rollback incomplete; stock needs manual correction")

    def __enter__(self) -> "StockReservation":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None and not self._committed:
            if self._taken:
                logger.warning("Rolling back %d stock decrement(s): %s", len(self._taken), exc)
            self.rollback()
        return False
