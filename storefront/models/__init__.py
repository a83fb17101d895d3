"""Models package."""
from storefront.models.discount_rule import DiscountRule, DiscountKind, DiscountScope, DiscountSource
from storefront.models.cart_line import CartLine
from storefront.models.cart import Cart, CartTotals, CartSnapshot, compute_totals
from storefront.models.stored_value import StoredValue

__all__ = [
    'DiscountRule',
    'DiscountKind',
    'DiscountScope',
    'DiscountSource',
    'CartLine',
    'Cart',
    'CartTotals',
    'CartSnapshot',
    'compute_totals',
    'StoredValue',
]
