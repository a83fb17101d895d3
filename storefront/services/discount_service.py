"""
Discount Service - automatic rules, the manual coupon and its confirmation flow.

Coupon failures are returned as ``CouponOutcome`` values carrying a
ValidationError; they are never raised to the caller.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

from storefront.blueprints.metrics import discount_recomputations_total
from storefront.exceptions import StorefrontError, ValidationError
from storefront.models.cart import compute_totals
from storefront.models.cart_line import CartLine
from storefront.models.discount_rule import DiscountRule, DiscountScope
from storefront.services.discount_allocator import (
    AllocationPolicy, AllocationResult, TieredConsumptionPolicy, PerLineMaximizationPolicy
)
from storefront.services.notification_service import Notifier
from storefront.services.store_service import KeyValueStore
from storefront.utils.formatters import money_vnd
from storefront.utils.number_format import ZERO, to_decimal, money_to_json
from storefront.utils.scheduling import Throttle

logger = logging.getLogger(__name__)

STATE_KEY = 'discount'

APPLIED = 'applied'
CONFIRMATION_REQUIRED = 'confirmation_required'
INVALID = 'invalid'
KEPT_AUTOMATIC = 'kept_automatic'
REMOVED = 'removed'


@dataclass
class CouponOutcome:
    """Result of a coupon operation."""

    status: str
    message: str = ''
    rule: Optional[DiscountRule] = None
    manual_amount: Decimal = ZERO
    automatic_amount: Decimal = ZERO
    error: Optional[ValidationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def invalid(cls, message: str) -> 'CouponOutcome':
        return cls(status=INVALID, message=message, error=ValidationError(message))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'message': self.message,
            'rule': self.rule.to_dict() if self.rule else None,
            'manual_amount': money_to_json(self.manual_amount),
            'automatic_amount': money_to_json(self.automatic_amount),
        }


@dataclass
class PendingCoupon:
    """A valid coupon worth less than the automatic discounts, awaiting a decision."""
    rule: DiscountRule
    manual_amount: Decimal
    automatic_amount: Decimal
    targeted: List[str]


def _now_for(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return datetime.now(timezone.utc)
    return datetime.now()


def check_coupon(rule: DiscountRule, lines: Sequence[CartLine], subtotal: Decimal) -> Optional[str]:
    """
    Client-side coupon checks against the current cart.

    Returns a user-facing error message, or None when the coupon applies.
    """
    if rule.starts_at and _now_for(rule.starts_at) < rule.starts_at:
        return f"This coupon is not active yet. It starts on {rule.starts_at.date().isoformat()}"
    if rule.ends_at and _now_for(rule.ends_at) > rule.ends_at:
        return "This coupon has expired"
    if rule.min_order_amount and subtotal < rule.min_order_amount:
        return f"Your order must be at least {money_vnd(rule.min_order_amount)}"

    if rule.scope == DiscountScope.PRODUCTS and rule.target_ids:
        if not any(line.product_id in rule.target_ids for line in lines):
            return "This coupon does not apply to any product in your cart"
    if rule.scope == DiscountScope.CATEGORIES and rule.target_ids:
        if not any(rule.applies_to(line) for line in lines):
            return "This coupon does not apply to any category in your cart"
    return None


def pricing_context(lines: Sequence[CartLine]) -> Dict[str, Any]:
    """Cart description sent with discount requests."""
    categories = sorted({c for line in lines for c in line.category_ids})
    return {
        'productIds': [line.product_id for line in lines],
        'categoryNames': categories,
        'orderAmount': money_to_json(compute_totals(lines).subtotal),
        'productPrices': {line.product_id: money_to_json(line.unit_price * line.quantity) for line in lines},
    }


class DiscountService:
    """Discount session state for one cart."""

    def __init__(self, client, notifier: Notifier, store: Optional[KeyValueStore] = None,
                 min_interval: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self.client = client
        self.notifier = notifier
        self.store = store
        self.throttle = Throttle(min_interval, clock=clock)

        self.automatic_rules: List[DiscountRule] = []
        self.manual_rule: Optional[DiscountRule] = None
        self.applied_coupon_amount: Decimal = ZERO
        self.pending: Optional[PendingCoupon] = None
        self._validating = False

        self._load_state()

    # -- persistence -------------------------------------------------------

    def _load_state(self) -> None:
        if self.store is None:
            return
        state = self.store.get(STATE_KEY)
        if not state:
            return
        try:
            if state.get('manual_rule'):
                self.manual_rule = DiscountRule.from_dict(state['manual_rule'])
            self.applied_coupon_amount = to_decimal(state.get('applied_coupon_amount'))
        except (KeyError, ValueError) as e:
            logger.warning(f"[DISCOUNT] Ignoring unreadable coupon state: {e}")
            self.manual_rule = None
            self.applied_coupon_amount = ZERO

    def _save_state(self) -> None:
        if self.store is None:
            return
        if self.manual_rule is None:
            self.store.remove(STATE_KEY)
            return
        self.store.set(STATE_KEY, {
            'manual_rule': self.manual_rule.to_dict(),
            'applied_coupon_amount': money_to_json(self.applied_coupon_amount),
        })

    # -- automatic rules ---------------------------------------------------

    @property
    def is_using_manual(self) -> bool:
        return self.manual_rule is not None

    async def refresh_automatic(self, lines: Sequence[CartLine], force: bool = False) -> bool:
        """
        Fetch automatic rules for the cart, at most once per interval.

        Returns True when a fetch happened. A failed fetch keeps the previous rules.
        """
        if not lines:
            self.automatic_rules = []
            return False
        if self._validating:
            return False
        if not force and not self.throttle.ready():
            return False
        if force:
            self.throttle.reset()
            self.throttle.ready()

        self._validating = True
        try:
            self.automatic_rules = await self.client.list_automatic_discounts(pricing_context(lines))
            logger.info(f"[DISCOUNT] {len(self.automatic_rules)} automatic rules loaded")
            return True
        except StorefrontError as e:
            logger.warning(f"[DISCOUNT] Automatic discounts unavailable: {e.message}")
            return False
        finally:
            self._validating = False

    # -- pricing -----------------------------------------------------------

    def price(self, lines: Sequence[CartLine], policy: Optional[AllocationPolicy] = None) -> AllocationResult:
        """
        Allocate the current rule set with ``policy`` (tiered by default).

        With nothing to apply the lines are returned as they are.
        """
        policy = policy or TieredConsumptionPolicy()
        if not self.automatic_rules and self.manual_rule is None:
            lines = [line.copy() for line in lines]
            return AllocationResult(lines=lines, total_discount=compute_totals(lines).discount)
        discount_recomputations_total.labels(policy=policy.name).inc()
        return policy.allocate(lines, self.automatic_rules, self.manual_rule)

    def checkout_price(self, lines: Sequence[CartLine]) -> AllocationResult:
        """Per-line maximization; the manual coupon competes only while it is in use."""
        return self.price(lines, PerLineMaximizationPolicy(use_manual=self.is_using_manual))

    def automatic_amount(self, lines: Sequence[CartLine]) -> Decimal:
        return TieredConsumptionPolicy().allocate(lines, self.automatic_rules).total_discount

    # -- coupon flow -------------------------------------------------------

    async def validate_coupon(self, code: str, lines: Sequence[CartLine]):
        """
        Remote validation followed by the client-side checks.

        Returns (validation, error_message). ``validation`` is None on failure.
        """
        if not code or not code.strip():
            return None, "Please enter a coupon code"

        subtotal = compute_totals(lines).subtotal
        prices = {line.product_id: line.unit_price * line.quantity for line in lines}
        try:
            validation = await self.client.validate_coupon(
                code.strip(), subtotal, [line.product_id for line in lines], prices
            )
        except StorefrontError as e:
            logger.warning(f"[DISCOUNT] Coupon validation failed for {code}: {e.message}")
            return None, "Could not check the coupon code"

        if not validation.valid or validation.rule is None:
            return None, validation.error_message or "Invalid coupon code"

        error = check_coupon(validation.rule, lines, subtotal)
        if error:
            return None, error
        return validation, None

    async def apply_coupon(self, code: str, lines: Sequence[CartLine]) -> CouponOutcome:
        """
        Validate and apply a coupon.

        When the automatic discounts are worth strictly more, the coupon is held
        as pending and CONFIRMATION_REQUIRED is returned with both amounts.
        """
        validation, error = await self.validate_coupon(code, lines)
        if validation is None:
            logger.info(f"[DISCOUNT] Coupon {code!r} rejected: {error}")
            return CouponOutcome.invalid(error)

        rule = validation.rule
        targeted = [line.product_id for line in lines if rule.applies_to(line)]
        if rule.scope != DiscountScope.ALL and not targeted:
            return CouponOutcome.invalid("No products in your cart are eligible for this discount")

        manual_amount = validation.discount_amount
        if manual_amount <= 0:
            manual_amount = TieredConsumptionPolicy().allocate(lines, [], rule).total_discount
        automatic_amount = validation.automatic_discount_amount
        if automatic_amount <= 0:
            automatic_amount = self.automatic_amount(lines)

        if automatic_amount > manual_amount:
            self.pending = PendingCoupon(rule, manual_amount, automatic_amount, targeted)
            logger.info(f"[DISCOUNT] Coupon {rule.code} ({manual_amount}) weaker than automatic "
                        f"({automatic_amount}); waiting for confirmation")
            return CouponOutcome(
                status=CONFIRMATION_REQUIRED,
                message=(f"Automatic discounts save {money_vnd(automatic_amount)}, "
                         f"this coupon saves {money_vnd(manual_amount)}"),
                rule=rule,
                manual_amount=manual_amount,
                automatic_amount=automatic_amount,
            )

        return self._apply_manual(rule, manual_amount, automatic_amount, targeted, lines)

    def _apply_manual(self, rule: DiscountRule, manual_amount: Decimal, automatic_amount: Decimal,
                      targeted: List[str], lines: Sequence[CartLine]) -> CouponOutcome:
        subtotal = compute_totals(lines).subtotal
        self.manual_rule = rule
        self.applied_coupon_amount = min(manual_amount, subtotal)
        self.pending = None
        self._save_state()

        label = rule.name or rule.code or rule.id
        message = f"Coupon applied: {label}"
        if rule.scope == DiscountScope.PRODUCTS and targeted:
            message += f" for {len(targeted)} products"
        self.notifier.notify('success', message)
        logger.info(f"[DISCOUNT] Manual coupon {rule.code} applied ({self.applied_coupon_amount})")
        return CouponOutcome(
            status=APPLIED,
            message=message,
            rule=rule,
            manual_amount=self.applied_coupon_amount,
            automatic_amount=automatic_amount,
        )

    def confirm_manual(self, lines: Sequence[CartLine]) -> CouponOutcome:
        """Apply the pending coupon despite the better automatic discounts."""
        pending = self.pending
        if pending is None:
            return CouponOutcome.invalid("No coupon is waiting for confirmation")
        outcome = self._apply_manual(pending.rule, pending.manual_amount, pending.automatic_amount,
                                     pending.targeted, lines)
        self.notifier.warning("You chose a manual discount worth less than the automatic discount")
        return outcome

    def keep_automatic(self) -> CouponOutcome:
        """Drop the pending coupon and keep the automatic discounts."""
        pending = self.pending
        self.pending = None
        if pending is None:
            return CouponOutcome(status=KEPT_AUTOMATIC, message='')
        message = f"Kept automatic discount with a higher value: {money_vnd(pending.automatic_amount)}"
        self.notifier.notify('success', message)
        return CouponOutcome(
            status=KEPT_AUTOMATIC,
            message=message,
            rule=pending.rule,
            manual_amount=pending.manual_amount,
            automatic_amount=pending.automatic_amount,
        )

    def remove_coupon(self) -> CouponOutcome:
        """Forget the manual coupon; automatic rules apply again on the next pricing pass."""
        rule = self.manual_rule
        self.manual_rule = None
        self.applied_coupon_amount = ZERO
        self.pending = None
        self._save_state()
        if rule is not None:
            logger.info(f"[DISCOUNT] Manual coupon {rule.code} removed")
        return CouponOutcome(status=REMOVED, message='Coupon removed', rule=rule)

    async def recalculate_manual(self, lines: Sequence[CartLine]) -> bool:
        """
        Re-validate the active coupon after a cart change and refresh its amount.

        Returns True when the amount was refreshed.
        """
        rule = self.manual_rule
        if rule is None or self._validating or not rule.code:
            return False

        self._validating = True
        try:
            subtotal = compute_totals(lines).subtotal
            prices = {line.product_id: line.unit_price * line.quantity for line in lines}
            validation = await self.client.validate_coupon(
                rule.code, subtotal, [line.product_id for line in lines], prices
            )
        except StorefrontError as e:
            logger.warning(f"[DISCOUNT] Coupon re-validation failed: {e.message}")
            return False
        finally:
            self._validating = False

        if not validation.valid:
            logger.info(f"[DISCOUNT] Coupon {rule.code} no longer valid for this cart: {validation.error_message}")
            return False
        if self.manual_rule is not rule:
            return False

        self.applied_coupon_amount = min(validation.discount_amount, subtotal)
        self._save_state()
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'manual_rule': self.manual_rule.to_dict() if self.manual_rule else None,
            'applied_coupon_amount': money_to_json(self.applied_coupon_amount),
            'automatic_rules': [rule.to_dict() for rule in self.automatic_rules],
            'pending': {
                'rule': self.pending.rule.to_dict(),
                'manual_amount': money_to_json(self.pending.manual_amount),
                'automatic_amount': money_to_json(self.pending.automatic_amount),
            } if self.pending else None,
        }
