"""Cart line model - one product entry in a cart."""
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Optional

from storefront.models.discount_rule import DiscountKind, DiscountSource
from storefront.utils.number_format import ZERO, to_decimal, money_to_json


@dataclass
class CartLine:
    """
    Cart line keyed by ``product_id``.

    Invariants:
    - quantity >= 1
    - 0 <= unit_price <= original_unit_price
    - quantity <= stock_quantity when stock is known
    """

    product_id: str
    name: str
    quantity: int
    unit_price: Decimal
    original_unit_price: Optional[Decimal] = None
    stock_quantity: Optional[int] = None
    category_ids: FrozenSet[str] = field(default_factory=frozenset)
    discount_source: Optional[DiscountSource] = None
    discount_type: Optional[DiscountKind] = None

    # Display fields carried through persistence
    image_url: Optional[str] = None
    slug: Optional[str] = None
    discount_amount: Decimal = ZERO
    discount_percentage: Decimal = ZERO

    def __post_init__(self):
        self.product_id = str(self.product_id)
        self.quantity = int(self.quantity)
        self.unit_price = max(ZERO, to_decimal(self.unit_price))
        if self.original_unit_price is None:
            self.original_unit_price = self.unit_price
        else:
            self.original_unit_price = max(self.unit_price, to_decimal(self.original_unit_price))
        if self.quantity < 1:
            raise ValueError(f"Line {self.product_id}: quantity must be >= 1")
        self.category_ids = frozenset(self.category_ids or ())

    @property
    def is_free(self) -> bool:
        """A line given away by a promotion: zero price but a positive list price."""
        return self.unit_price <= 0 and self.original_unit_price > 0

    @property
    def is_discounted(self) -> bool:
        return self.unit_price < self.original_unit_price

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    @property
    def original_total(self) -> Decimal:
        return self.original_unit_price * self.quantity

    def copy(self, **changes) -> 'CartLine':
        """Return a copy with ``changes`` applied (invariants re-checked)."""
        return replace(self, **changes)

    def reset_pricing(self) -> 'CartLine':
        """Copy with any discount removed (price back to the list price)."""
        return self.copy(
            unit_price=self.original_unit_price,
            discount_source=None,
            discount_type=None,
            discount_amount=ZERO,
            discount_percentage=ZERO,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the persistent local store and JSON responses."""
        return {
            'product_id': self.product_id,
            'name': self.name,
            'quantity': self.quantity,
            'unit_price': money_to_json(self.unit_price),
            'original_unit_price': money_to_json(self.original_unit_price),
            'stock_quantity': self.stock_quantity,
            'category_ids': sorted(self.category_ids),
            'discount_source': self.discount_source.value if self.discount_source else None,
            'discount_type': self.discount_type.value if self.discount_type else None,
            'discount_amount': money_to_json(self.discount_amount),
            'discount_percentage': money_to_json(self.discount_percentage),
            'image_url': self.image_url,
            'slug': self.slug,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CartLine':
        stock = data.get('stock_quantity')
        source = data.get('discount_source')
        kind = data.get('discount_type')
        return cls(
            product_id=data['product_id'],
            name=data.get('name') or '',
            quantity=data.get('quantity') or 1,
            unit_price=to_decimal(data.get('unit_price')),
            original_unit_price=to_decimal(data.get('original_unit_price'), default=None),
            stock_quantity=int(stock) if stock is not None else None,
            category_ids=frozenset(data.get('category_ids') or ()),
            discount_source=DiscountSource(source) if source else None,
            discount_type=DiscountKind(kind) if kind else None,
            discount_amount=to_decimal(data.get('discount_amount')),
            discount_percentage=to_decimal(data.get('discount_percentage')),
            image_url=data.get('image_url'),
            slug=data.get('slug'),
        )

    def __repr__(self):
        return f"<CartLine(product_id={self.product_id}, qty={self.quantity}, price={self.unit_price}/{self.original_unit_price})>"
