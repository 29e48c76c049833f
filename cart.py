"""
Cart engine

The cart lives with the client; this module models it so that the same
arithmetic can be shown to shoppers and reused for shipping rules. Totals
computed here are advisory: checkout re-prices every line from the catalog.
"""
from typing import Any, Dict, List, Optional

from pydantic import Field

from config import Settings
from schemas import ApiModel


class CartLine(ApiModel):
    product_id: str
    variant_id: Optional[str] = None
    product_name: str = ""
    variant_info: Optional[str] = None
    unit_price: int = Field(..., ge=0, description="Price when added, including variant surcharge")
    quantity: int = Field(..., ge=1)

    @property
    def key(self) -> str:
        return line_key(self.product_id, self.variant_id)

    @property
    def subtotal(self) -> int:
        return self.unit_price * self.quantity


class CartSummary(ApiModel):
    item_count: int
    total_items: int
    subtotal: int
    shipping: int
    total: int


def line_key(product_id: str, variant_id: Optional[str] = None) -> str:
    return f"{product_id}-{variant_id}" if variant_id else product_id


def shipping_cost(subtotal: int, settings: Settings) -> int:
    """Flat fee unless the subtotal is above the free-shipping threshold."""
    if subtotal > settings.free_shipping_threshold:
        return 0
    return settings.flat_shipping_fee


class Cart:
    def __init__(self, settings: Settings, lines: Optional[List[CartLine]] = None):
        self.settings = settings
        self._lines: List[CartLine] = []
        for line in lines or []:
            self.add_item(line)

    @property
    def items(self) -> List[CartLine]:
        return list(self._lines)

    def get_item(self, product_id: str, variant_id: Optional[str] = None) -> Optional[CartLine]:
        key = line_key(product_id, variant_id)
        return next((line for line in self._lines if line.key == key), None)

    def add_item(self, line: CartLine) -> CartLine:
        existing = self.get_item(line.product_id, line.variant_id)
        if existing is None:
            self._lines.append(line)
            return line
        merged = existing.model_copy(update={"quantity": existing.quantity + line.quantity})
        self._replace(merged)
        return merged

    def update_quantity(self, key: str, quantity: int) -> None:
        if quantity <= 0:
            self.remove_item(key)
            return
        for line in self._lines:
            if line.key == key:
                self._replace(line.model_copy(update={"quantity": quantity}))
                return

    def remove_item(self, key: str) -> None:
        self._lines = [line for line in self._lines if line.key != key]

    def clear(self) -> None:
        self._lines = []

    def summary(self) -> CartSummary:
        subtotal = sum(line.subtotal for line in self._lines)
        shipping = shipping_cost(subtotal, self.settings)
        return CartSummary(
            item_count=len(self._lines),
            total_items=sum(line.quantity for line in self._lines),
            subtotal=subtotal,
            shipping=shipping,
            total=subtotal + shipping,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"items": [line.model_dump() for line in self._lines]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], settings: Settings) -> "Cart":
        return cls(settings, [CartLine(**item) for item in data.get("items", [])])

    def _replace(self, updated: CartLine) -> None:
        self._lines = [updated if line.key == updated.key else line for line in self._lines]
