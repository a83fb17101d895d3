"""Cart aggregate, totals and immutable snapshots."""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from storefront.models.cart_line import CartLine
from storefront.models.discount_rule import DiscountRule
from storefront.utils.number_format import ZERO, round_money, money_to_json


class Cart:
    """
    Ordered collection of lines keyed by product id.

    Insertion order is kept for display; pricing never depends on it.
    """

    def __init__(self, lines: Iterable[CartLine] = ()):
        self._lines: Dict[str, CartLine] = {}
        for line in lines:
            self.put(line)

    def __contains__(self, product_id) -> bool:
        return str(product_id) in self._lines

    def __len__(self) -> int:
        return len(self._lines)

    def __iter__(self) -> Iterator[CartLine]:
        return iter(list(self._lines.values()))

    def get(self, product_id) -> Optional[CartLine]:
        return self._lines.get(str(product_id))

    def put(self, line: CartLine) -> None:
        """Insert or replace a line, keeping its original position."""
        self._lines[line.product_id] = line

    def remove(self, product_id) -> Optional[CartLine]:
        return self._lines.pop(str(product_id), None)

    def clear(self) -> None:
        self._lines.clear()

    @property
    def lines(self) -> List[CartLine]:
        return list(self._lines.values())

    @property
    def product_ids(self) -> List[str]:
        return list(self._lines.keys())

    def quantities(self) -> Dict[str, int]:
        return {pid: line.quantity for pid, line in self._lines.items()}

    def to_list(self) -> List[Dict[str, Any]]:
        return [line.to_dict() for line in self._lines.values()]

    @classmethod
    def from_list(cls, data: Optional[Iterable[Dict[str, Any]]]) -> 'Cart':
        return cls(CartLine.from_dict(item) for item in (data or ()))


@dataclass(frozen=True)
class CartTotals:
    """Aggregate money figures for a set of lines."""

    subtotal: Decimal = ZERO
    discount: Decimal = ZERO
    total: Decimal = ZERO
    item_count: int = 0
    discounted_item_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'subtotal': money_to_json(self.subtotal),
            'discount': money_to_json(self.discount),
            'total': money_to_json(self.total),
            'item_count': self.item_count,
            'discounted_item_count': self.discounted_item_count,
        }


def compute_totals(lines: Iterable[CartLine]) -> CartTotals:
    """
    Compute totals from list prices and effective prices.

    subtotal = sum(original * qty); discount = round(sum((original - unit) * qty));
    total = subtotal - discount, floored at zero.
    """
    subtotal = ZERO
    raw_discount = ZERO
    item_count = 0
    discounted = 0
    for line in lines:
        subtotal += line.original_total
        raw_discount += (line.original_unit_price - line.unit_price) * line.quantity
        item_count += line.quantity
        if line.is_discounted:
            discounted += 1

    discount = round_money(raw_discount)
    return CartTotals(
        subtotal=subtotal,
        discount=discount,
        total=max(ZERO, subtotal - discount),
        item_count=item_count,
        discounted_item_count=discounted,
    )


@dataclass(frozen=True)
class CartSnapshot:
    """
    Immutable view of a committed cart state.

    ``version`` grows by one every time a snapshot is published, repricing
    included.
    """

    version: int
    lines: Tuple[CartLine, ...] = ()
    totals: CartTotals = field(default_factory=CartTotals)
    manual_rule: Optional[DiscountRule] = None
    policy: str = 'tiered'

    @classmethod
    def build(cls, version: int, lines: Iterable[CartLine], manual_rule: Optional[DiscountRule] = None,
              policy: str = 'tiered') -> 'CartSnapshot':
        frozen_lines = tuple(line.copy() for line in lines)
        return cls(
            version=version,
            lines=frozen_lines,
            totals=compute_totals(frozen_lines),
            manual_rule=manual_rule,
            policy=policy,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'lines': [line.to_dict() for line in self.lines],
            'totals': self.totals.to_dict(),
            'manual_rule': self.manual_rule.to_dict() if self.manual_rule else None,
            'policy': self.policy,
        }
