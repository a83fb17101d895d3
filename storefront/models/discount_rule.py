"""Discount rule model."""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Optional

from storefront.utils.number_format import to_decimal, money_to_json


class DiscountKind(str, enum.Enum):
    """How a rule's magnitude is interpreted."""
    PERCENTAGE = 'percentage'
    FIXED = 'fixed'


class DiscountScope(str, enum.Enum):
    """Which lines a rule can affect."""
    ALL = 'all'
    PRODUCTS = 'products'
    CATEGORIES = 'categories'


class DiscountSource(str, enum.Enum):
    """Provenance of the discount applied to a line."""
    AUTOMATIC = 'automatic'
    MANUAL = 'manual'


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return None


@dataclass(frozen=True)
class DiscountRule:
    """
    A promotional rule as delivered by the discount service.

    ``magnitude`` is a percentage (0-100) for percentage rules and a money
    amount for fixed rules. ``target_ids`` holds product ids for
    product-scoped rules and category names for category-scoped rules.
    """

    id: str
    kind: DiscountKind
    scope: DiscountScope
    magnitude: Decimal
    is_automatic: bool = True
    target_ids: FrozenSet[str] = field(default_factory=frozenset)

    # Coupon metadata (optional)
    code: Optional[str] = None
    name: Optional[str] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    min_order_amount: Decimal = Decimal('0')

    def __post_init__(self):
        if self.magnitude < 0:
            raise ValueError(f"Discount {self.id}: magnitude must be >= 0")
        if self.kind == DiscountKind.PERCENTAGE and self.magnitude > 100:
            raise ValueError(f"Discount {self.id}: percentage must be <= 100")

    @property
    def source(self) -> DiscountSource:
        return DiscountSource.AUTOMATIC if self.is_automatic else DiscountSource.MANUAL

    @property
    def normalized_targets(self) -> FrozenSet[str]:
        """Targets as compared against lines (categories are case-insensitive)."""
        if self.scope == DiscountScope.CATEGORIES:
            return frozenset(t.lower() for t in self.target_ids)
        return frozenset(self.target_ids)

    def applies_to(self, line) -> bool:
        """Return True when ``line`` falls inside this rule's scope."""
        if self.scope == DiscountScope.ALL:
            return True
        if self.scope == DiscountScope.PRODUCTS:
            return line.product_id in self.target_ids
        targets = self.normalized_targets
        return any(category.lower() in targets for category in line.category_ids)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DiscountRule':
        """Build a rule from the discount service payload."""
        scope = DiscountScope(data.get('targetType') or data.get('scope') or 'all')
        if scope == DiscountScope.PRODUCTS:
            targets = data.get('productIds') or data.get('target_ids') or []
        elif scope == DiscountScope.CATEGORIES:
            targets = data.get('categoryNames') or data.get('target_ids') or []
        else:
            targets = []

        return cls(
            id=str(data['id']),
            kind=DiscountKind(data.get('type') or data.get('kind')),
            scope=scope,
            magnitude=to_decimal(data.get('discountAmount', data.get('magnitude'))),
            is_automatic=bool(data.get('isAutomatic', data.get('is_automatic', True))),
            target_ids=frozenset(str(t) for t in targets),
            code=data.get('discountCode') or data.get('code'),
            name=data.get('discountName') or data.get('name'),
            starts_at=_parse_datetime(data.get('startDate') or data.get('starts_at')),
            ends_at=_parse_datetime(data.get('endDate') or data.get('ends_at')),
            min_order_amount=to_decimal(data.get('minOrderAmount', data.get('min_order_amount'))),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'kind': self.kind.value,
            'scope': self.scope.value,
            'magnitude': money_to_json(self.magnitude),
            'is_automatic': self.is_automatic,
            'target_ids': sorted(self.target_ids),
            'code': self.code,
            'name': self.name,
            'starts_at': self.starts_at.isoformat() if self.starts_at else None,
            'ends_at': self.ends_at.isoformat() if self.ends_at else None,
            'min_order_amount': money_to_json(self.min_order_amount),
        }

    def __repr__(self):
        return f"<DiscountRule(id={self.id}, kind={self.kind.value}, scope={self.scope.value}, magnitude={self.magnitude})>"
