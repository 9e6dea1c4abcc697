from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Tuple

from cafeloyalty.errors import ValidationError
from cafeloyalty.menu import MenuSnapshot


# 1 star per 350 RSD spent, rounded up
STAR_PRICE = 350


@dataclass(frozen=True)
class PricedLine:
    id: str
    name: str
    quantity: int
    unit_price: int

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class PricedOrder:
    total_amount: int
    lines: List[PricedLine]


def stars_for_amount(amount: int) -> int:
    if amount <= 0:
        return 0
    return (amount + STAR_PRICE - 1) // STAR_PRICE


def _quantity(raw: Any) -> int:
    if isinstance(raw, bool):
        return 0
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.strip().isdigit():
        return int(raw.strip())
    return 0


def price_order(requested: Iterable[Any], snapshot: MenuSnapshot) -> PricedOrder:
    """Recompute an order from menu prices.

    Client prices are never read. Entries with an unknown id or a
    non-positive quantity are dropped, so a zero total means nothing valid
    was ordered.
    """
    total = 0
    lines: List[PricedLine] = []
    for entry in requested:
        if not isinstance(entry, dict):
            continue
        item_id = entry.get("id")
        if not isinstance(item_id, str):
            continue
        item = snapshot.by_id.get(item_id)
        qty = _quantity(entry.get("qty"))
        if item is None or qty <= 0:
            continue
        total += item.price * qty
        lines.append(PricedLine(id=item.id, name=item.name, quantity=qty, unit_price=item.price))
    return PricedOrder(total_amount=total, lines=lines)


def _positive_int(raw: Any, name: str) -> int:
    value = _quantity(raw)
    if value <= 0:
        raise ValidationError(f"{name} must be a positive integer")
    return value


def admin_accrual(amount: Optional[Any] = None, stars: Optional[Any] = None) -> Tuple[int, str]:
    """Stars to credit and the ledger description for a manual accrual."""
    if stars:
        n = _positive_int(stars, "stars")
        return n, f"Admin manual add: {n} stars"
    if amount:
        total = _positive_int(amount, "amount")
        return stars_for_amount(total), f"Admin amount accrual: {total} RSD"
    raise ValidationError("Missing params")
