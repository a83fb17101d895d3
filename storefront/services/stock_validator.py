"""Stock Validator - clamp cart quantities to live stock (no I/O)."""
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from storefront.models.cart_line import CartLine


@dataclass(frozen=True)
class StockEvent:
    """A line removed or clamped because of stock."""
    product_id: str
    name: str


@dataclass
class StockValidationResult:
    lines: List[CartLine] = field(default_factory=list)
    removed: List[StockEvent] = field(default_factory=list)
    clamped: List[StockEvent] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.removed or self.clamped)


def validate(lines: Iterable[CartLine], live_stock: Dict[str, Optional[int]]) -> StockValidationResult:
    """
    Apply live stock to a list of lines.

    - stock <= 0: the line is dropped and reported as removed
    - quantity > stock: quantity becomes max(1, stock) and the line is reported as clamped
    - unknown stock: the line is returned unchanged

    Never raises. Notification of the events is up to the caller.
    """
    result = StockValidationResult()

    for line in lines:
        stock = live_stock.get(line.product_id)
        if stock is None:
            result.lines.append(line)
            continue

        stock = int(stock)
        if stock <= 0:
            result.removed.append(StockEvent(line.product_id, line.name))
            continue

        if line.quantity > stock:
            result.clamped.append(StockEvent(line.product_id, line.name))
            line = line.copy(quantity=max(1, stock), stock_quantity=stock)
        elif line.stock_quantity != stock:
            line = line.copy(stock_quantity=stock)
        result.lines.append(line)

    return result
