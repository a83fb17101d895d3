"""
Discount Allocator - effective per-line prices from a set of discount rules.

Two named policies share the ``AllocationPolicy`` interface and callers pick
one explicitly:

- TieredConsumptionPolicy: automatic-only allocation and recomputation of an
  active manual coupon. Rules run by scope (products -> categories -> all) and
  a line discounted in an earlier tier is not touched again.
- PerLineMaximizationPolicy: checkout annotation. Every line independently
  takes the single rule worth the most money for it.

Free lines (price 0 with a positive list price) are given away by a promotion
and are passed through untouched by both policies.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from storefront.models.cart_line import CartLine
from storefront.models.discount_rule import DiscountRule, DiscountKind, DiscountScope
from storefront.utils.number_format import ZERO, round_money, floor_money

logger = logging.getLogger(__name__)

HUNDRED = Decimal('100')

TIER_ORDER = (DiscountScope.PRODUCTS, DiscountScope.CATEGORIES, DiscountScope.ALL)


@dataclass
class AllocationResult:
    lines: List[CartLine] = field(default_factory=list)
    total_discount: Decimal = ZERO
    applied_rules: List[DiscountRule] = field(default_factory=list)


def total_discount(lines: Iterable[CartLine]) -> Decimal:
    """round(sum((original - unit) * qty))"""
    return round_money(sum(
        ((line.original_unit_price - line.unit_price) * line.quantity for line in lines),
        ZERO,
    ))


def eligible_value(lines: Iterable[CartLine]) -> Decimal:
    return sum((line.original_unit_price * line.quantity for line in lines), ZERO)


def rule_benefit(rule: DiscountRule, lines: Sequence[CartLine]) -> Decimal:
    """
    Money a rule is worth against ``lines`` as a whole.

    Percentage: eligible value * pct / 100. Fixed: the magnitude capped at the
    eligible value.
    """
    value = eligible_value(line for line in lines if rule.applies_to(line))
    if rule.kind == DiscountKind.PERCENTAGE:
        return value * rule.magnitude / HUNDRED
    return min(rule.magnitude, value)


def percentage_price(original: Decimal, pct: Decimal) -> Decimal:
    """Per-unit price after a percentage discount, rounded half-up."""
    return max(ZERO, round_money(original * (HUNDRED - pct) / HUNDRED))


class AllocationPolicy(ABC):
    """Common interface of the discount resolution strategies."""

    name = 'base'

    @abstractmethod
    def allocate(self, lines: Sequence[CartLine], automatic_rules: Sequence[DiscountRule],
                 manual_rule: Optional[DiscountRule] = None) -> AllocationResult:
        """Return annotated copies of ``lines``; the input is never mutated."""

    @staticmethod
    def _split_free(lines: Sequence[CartLine]) -> Tuple[List[CartLine], Set[str]]:
        working = []
        free_ids = set()
        for line in lines:
            if line.is_free:
                free_ids.add(line.product_id)
                working.append(line.copy())
            else:
                working.append(line.reset_pricing())
        return working, free_ids


class TieredConsumptionPolicy(AllocationPolicy):
    """
    Tiered consumption.

    Only one regime is active: when ``manual_rule`` is given the automatic
    rules are ignored entirely.
    """

    name = 'tiered'

    def allocate(self, lines, automatic_rules, manual_rule=None):
        working, free_ids = self._split_free(lines)
        rules = [manual_rule] if manual_rule is not None else list(automatic_rules)

        candidates = self._rank(rules, [line for line in working if line.product_id not in free_ids])
        claimed: Set[str] = set(free_ids)
        applied: List[DiscountRule] = []

        by_id: Dict[str, int] = {line.product_id: i for i, line in enumerate(working)}
        for scope in TIER_ORDER:
            for rule in (r for r in candidates if r.scope == scope):
                eligible = [
                    line for line in working
                    if line.product_id not in claimed and rule.applies_to(line)
                ]
                if not eligible:
                    continue
                value = eligible_value(eligible)
                if value <= 0:
                    continue

                updated = self._apply_rule(rule, eligible, value)
                for line in updated:
                    working[by_id[line.product_id]] = line
                    claimed.add(line.product_id)
                if updated:
                    applied.append(rule)

        result = AllocationResult(lines=working, total_discount=total_discount(working), applied_rules=applied)
        logger.debug(f"[DISCOUNT] tiered: {len(applied)} rules applied, total {result.total_discount}")
        return result

    @staticmethod
    def _rank(rules: Iterable[DiscountRule], lines: List[CartLine]) -> List[DiscountRule]:
        """Drop rules worth nothing, then order by benefit (desc) and id."""
        scored = []
        for rule in rules:
            if not any(rule.applies_to(line) for line in lines):
                continue
            benefit = rule_benefit(rule, lines)
            if benefit <= 0:
                continue
            scored.append((benefit, rule))
        scored.sort(key=lambda item: (-item[0], item[1].id))
        return [rule for _, rule in scored]

    def _apply_rule(self, rule: DiscountRule, eligible: List[CartLine], value: Decimal) -> List[CartLine]:
        """Return the lines this rule discounts (and therefore claims)."""
        if rule.kind == DiscountKind.PERCENTAGE:
            updated = []
            for line in eligible:
                price = percentage_price(line.original_unit_price, rule.magnitude)
                updated.append(line.copy(
                    unit_price=price,
                    discount_source=rule.source,
                    discount_type=rule.kind,
                    discount_percentage=rule.magnitude,
                    discount_amount=line.original_unit_price - price,
                ))
            return updated

        pool = min(rule.magnitude, value)
        if rule.scope == DiscountScope.ALL:
            return self._proportional(rule, eligible, value, pool)
        return self._running_pool(rule, eligible, pool)

    @staticmethod
    def _proportional(rule, eligible, value, pool):
        """Fixed order-wide rule: each line gets its value share, as a per-unit amount."""
        updated = []
        for line in eligible:
            share = pool * line.original_total / value
            per_unit = min(line.original_unit_price, floor_money(share / line.quantity))
            updated.append(line.copy(
                unit_price=line.original_unit_price - per_unit,
                discount_source=rule.source,
                discount_type=rule.kind,
                discount_amount=per_unit,
            ))
        return updated

    @staticmethod
    def _running_pool(rule, eligible, pool):
        """
        Fixed product/category rule: one application per unique product.

        Each product takes min(remaining, unit price) regardless of quantity;
        once the pool is empty the remaining products are left unclaimed.
        """
        updated = []
        remaining = pool
        seen = set()
        for line in eligible:
            if remaining <= 0:
                break
            if line.product_id in seen:
                continue
            seen.add(line.product_id)
            amount = min(remaining, line.original_unit_price)
            remaining -= amount
            updated.append(line.copy(
                unit_price=line.original_unit_price - amount,
                discount_source=rule.source,
                discount_type=rule.kind,
                discount_amount=amount,
            ))
        return updated


class PerLineMaximizationPolicy(AllocationPolicy):
    """
    Per-line maximization.

    The manual rule competes only when ``use_manual`` is set. Candidates are
    evaluated manual first, then automatic in the given order; a later rule
    replaces the current best only when strictly better. No cross-line pool.
    """

    name = 'per_line'

    def __init__(self, use_manual: bool = True):
        self.use_manual = use_manual

    @staticmethod
    def line_amount(rule: DiscountRule, base: Decimal) -> Decimal:
        if rule.kind == DiscountKind.PERCENTAGE:
            return round_money(base * rule.magnitude / HUNDRED)
        return min(rule.magnitude, base)

    def allocate(self, lines, automatic_rules, manual_rule=None):
        working, free_ids = self._split_free(lines)

        candidates: List[DiscountRule] = []
        if manual_rule is not None and self.use_manual:
            candidates.append(manual_rule)
        seen_ids = {r.id for r in candidates}
        for rule in automatic_rules:
            if rule.id not in seen_ids:
                seen_ids.add(rule.id)
                candidates.append(rule)

        annotated = []
        applied: Dict[str, DiscountRule] = {}
        for line in working:
            if line.product_id in free_ids:
                annotated.append(line)
                continue

            base = line.original_unit_price
            best: Optional[DiscountRule] = None
            best_amount = ZERO
            for rule in candidates:
                if not rule.applies_to(line):
                    continue
                amount = self.line_amount(rule, base)
                if amount > best_amount:
                    best, best_amount = rule, amount

            if best is None:
                annotated.append(line)
                continue

            applied.setdefault(best.id, best)
            annotated.append(line.copy(
                unit_price=base - best_amount,
                discount_amount=best_amount,
                discount_source=best.source,
                discount_type=best.kind,
                discount_percentage=best.magnitude if best.kind == DiscountKind.PERCENTAGE else ZERO,
            ))

        return AllocationResult(
            lines=annotated,
            total_discount=total_discount(annotated),
            applied_rules=list(applied.values()),
        )


POLICIES = {
    TieredConsumptionPolicy.name: TieredConsumptionPolicy,
    PerLineMaximizationPolicy.name: PerLineMaximizationPolicy,
}
