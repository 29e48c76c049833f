"""
Order numbers: ORD-<yyyymmdd>-<6 digit daily sequence>.

The sequence is a per-day counter document bumped with an atomic $inc, so
concurrent checkouts never read the same value. The order collection also
has a unique index on order_number; a collision there (e.g. a counter that
was reset by hand) is retried with a fresh number.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from errors import DuplicateOrderNumber

logger = logging.getLogger(__name__)


def next_order_number(db: Database, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    day = now.strftime("%Y%m%d")
    counter = db["order_sequence"].find_one_and_update(
        {"_id": day},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return f"ORD-{day}-{counter['seq']:06d}"


def insert_with_order_number(
    db: Database,
    build: Callable[[str], Dict[str, Any]],
    attempts: int = 5,
    generate: Callable[[Database], str] = next_order_number,
) -> Dict[str, Any]:
    """Insert the document returned by `build(order_number)`, regenerating on collision."""
    for attempt in range(1, attempts + 1):
        order_number = generate(db)
        doc = build(order_number)
        try:
            result = db["order"].insert_one(doc)
        except DuplicateKeyError:
            # order_number is the only unique key on the order collection
            logger.warning("Order number %s already taken (attempt %d/%d)", order_number, attempt, attempts)
            continue
        doc["_id"] = result.inserted_id
        return doc
    raise DuplicateOrderNumber("Could not allocate an order number, please retry")
