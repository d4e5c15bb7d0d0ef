"""
Discount Engine - Applies, removes and recomputes scoped discounts.

Every change recomputes all affected discount amounts from their formula
against the current base. Amounts are never adjusted incrementally, so
repeated edits cannot drift.

calculate_discounts() is the automatic counterpart: given the catalog's
discounts it proposes the best combination for a priced quote without
touching it.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional

from .errors import NotFoundError, PreconditionError, ValidationError
from .models import (
    AppliedDiscount,
    CatalogSnapshot,
    Discount,
    DiscountScope,
    DiscountTier,
    DiscountType,
    Product,
    Quote,
    QuoteLineItem,
    QuoteStatus,
)
from .money import HUNDRED, ZERO, round_money, to_date, to_decimal, within_window

logger = logging.getLogger(__name__)

_LINE_SCOPES = (DiscountScope.LINE_ITEM, DiscountScope.PRODUCT_CATEGORY)


def find_discount_tier(tiers: list[DiscountTier], quantity: int) -> Optional[DiscountTier]:
    """First ascending-range match by quantity wins, same as price tiers."""
    for tier in tiers:
        if tier.matches(quantity):
            return tier
    return None


def calculate_amount(base: Decimal, discount_type: DiscountType, value: Decimal) -> Decimal:
    """PERCENTAGE scales the base; FIXED_AMOUNT is taken as-is."""
    if discount_type == DiscountType.PERCENTAGE:
        return round_money(base * value / HUNDRED)
    return round_money(value)


def tier_value(discount: Discount, quantity: int) -> Decimal:
    tier = find_discount_tier(discount.tiers, quantity)
    return tier.value if tier is not None else discount.value


# ---------------------------------------------------------------------------
# Automatic discount calculation
# ---------------------------------------------------------------------------

@dataclass
class DiscountCalculation:
    """Proposed discounts for a quote; nothing here is attached to it."""
    applied_discounts: list[AppliedDiscount] = field(default_factory=list)
    line_discounts: dict[str, Decimal] = field(default_factory=dict)  # line id → total
    quote_discount: Decimal = ZERO
    total_discount: Decimal = ZERO


def _capped_amount(base: Decimal, discount_type: DiscountType, value: Decimal) -> Decimal:
    """Never discount more than the base."""
    return min(calculate_amount(base, discount_type, value), max(ZERO, round_money(base)))


def _in_category(product: Optional[Product], category_id: Optional[str]) -> bool:
    if not category_id:
        return True
    return product is not None and category_id in product.category_ids


def calculate_discounts(
    discounts: Iterable[Discount],
    quote: Quote,
    products: dict[str, Product],
    as_of=None
) -> DiscountCalculation:
    """
    Pick the best catalog discounts for a priced quote.

    Per line (LINE_ITEM and PRODUCT_CATEGORY scope):
    - stackable discounts apply in priority order, each against what is left
      of the line's extended price
    - the largest non-stackable discount replaces them when it is bigger

    Then for the quote (QUOTE scope), against the subtotal after line discounts:
    - stackable discounts apply in priority order against the remaining subtotal
    - the largest non-stackable discount replaces them when it is bigger

    FIXED_AMOUNT discounts are capped at their base. Bundle parent lines
    carry no price and get no discounts.
    """
    as_of = to_date(as_of) or date.today()
    valid = [
        d for d in discounts
        if d.is_active and within_window(as_of, d.valid_from, d.valid_to)
    ]
    stackable = sorted((d for d in valid if d.stackable), key=lambda d: d.priority)
    exclusive = sorted((d for d in valid if not d.stackable), key=lambda d: d.priority)

    result = DiscountCalculation()
    gross = ZERO

    def propose(discount: Discount, value: Decimal, amount: Decimal, line: Optional[QuoteLineItem] = None):
        return AppliedDiscount(
            id='',
            quote_id=quote.id,
            type=discount.type,
            value=value,
            calculated_amount=amount,
            line_item_id=line.id if line is not None else None,
            discount_id=discount.id,
            scope=discount.scope,
            reason="Category discount" if discount.scope == DiscountScope.PRODUCT_CATEGORY else None,
            discount_name=discount.name,
            applied_by='system',
        )

    for line in quote.line_items:
        product = products.get(line.product_id)
        if product is not None and product.is_bundle and line.parent_line_id is None:
            continue
        line_total = line.extended_price
        gross += line_total

        def eligible(pool):
            for discount in pool:
                if discount.scope not in _LINE_SCOPES:
                    continue
                if not discount.meets_quantity(line.quantity):
                    continue
                if discount.scope == DiscountScope.PRODUCT_CATEGORY and not _in_category(product, discount.category_id):
                    continue
                yield discount

        stacked: list[AppliedDiscount] = []
        stacked_total = ZERO
        for discount in eligible(stackable):
            value = tier_value(discount, line.quantity)
            amount = _capped_amount(line_total - stacked_total, discount.type, value)
            if amount > 0:
                stacked.append(propose(discount, value, amount, line))
                stacked_total += amount

        best: Optional[AppliedDiscount] = None
        for discount in eligible(exclusive):
            value = tier_value(discount, line.quantity)
            amount = _capped_amount(line_total, discount.type, value)
            if best is None or amount > best.calculated_amount:
                best = propose(discount, value, amount, line)

        if best is not None and best.calculated_amount > stacked_total:
            result.applied_discounts.append(best)
            result.line_discounts[line.id] = best.calculated_amount
        else:
            result.applied_discounts.extend(stacked)
            result.line_discounts[line.id] = stacked_total

    line_discount_total = sum(result.line_discounts.values(), ZERO)
    after_lines = gross - line_discount_total
    quantity = quote.total_quantity

    def quote_eligible(pool):
        for discount in pool:
            if discount.scope != DiscountScope.QUOTE:
                continue
            if discount.min_order_value is not None and gross < discount.min_order_value:
                continue
            if not discount.meets_quantity(quantity):
                continue
            yield discount

    stacked, stacked_total = [], ZERO
    for discount in quote_eligible(stackable):
        value = tier_value(discount, quantity)
        amount = _capped_amount(after_lines - stacked_total, discount.type, value)
        if amount > 0:
            stacked.append(propose(discount, value, amount))
            stacked_total += amount

    best = None
    for discount in quote_eligible(exclusive):
        value = tier_value(discount, quantity)
        amount = _capped_amount(after_lines, discount.type, value)
        if best is None or amount > best.calculated_amount:
            best = propose(discount, value, amount)

    if best is not None and best.calculated_amount > stacked_total:
        result.applied_discounts.append(best)
        result.quote_discount = best.calculated_amount
    else:
        result.applied_discounts.extend(stacked)
        result.quote_discount = stacked_total

    result.total_discount = round_money(line_discount_total + result.quote_discount)
    logger.debug(
        "Proposed %d discounts for quote %s totalling %s",
        len(result.applied_discounts), quote.id, result.total_discount
    )
    return result


class DiscountEngine:
    """
    Attaches/detaches AppliedDiscounts on a quote and recomputes their amounts.

    The catalog's Discount records are read-only here.
    """

    def __init__(self, catalog: CatalogSnapshot, now: Optional[datetime] = None):
        self.catalog = catalog
        self.as_of: date = to_date(now) or date.today()

    # ------------------------------------------------------------------
    # Apply / remove
    # ------------------------------------------------------------------

    def apply_discount(
        self,
        quote: Quote,
        discount_id: Optional[str] = None,
        line_item_id: Optional[str] = None,
        discount_type: Optional[DiscountType] = None,
        value=None,
        reason: Optional[str] = None,
        applied_by: str = 'user'
    ) -> AppliedDiscount:
        """
        Attach a catalog discount (discount_id) or a manual one (type/value/reason).

        All preconditions are checked before the quote is touched.
        """
        self._require_draft(quote, "apply discounts to")

        line = quote.get_line(line_item_id) if line_item_id else None
        if line is not None and self._is_bundle_parent(line):
            self._reject("Discounts apply to bundle components, not the bundle parent line")

        if discount_id:
            discount = self.catalog.discounts.get(discount_id)
            if discount is None:
                raise NotFoundError(f"Discount '{discount_id}' not found")
            quantity = self._target_quantity(quote, discount, line)
            self._check_catalog_discount(quote, discount, line, quantity)
            applied = AppliedDiscount(
                id=self._next_id(quote),
                quote_id=quote.id,
                line_item_id=line_item_id,
                discount_id=discount.id,
                discount_name=discount.name,
                scope=discount.scope,
                type=discount.type,
                value=tier_value(discount, quantity),
                reason=reason,
                applied_by=applied_by,
            )
        elif discount_type is not None and value is not None:
            try:
                discount_type = DiscountType(discount_type)
            except ValueError as e:
                raise ValidationError(f"Invalid discount type {discount_type!r}") from e
            try:
                value = to_decimal(value)
            except (ArithmeticError, TypeError, ValueError) as e:
                raise ValidationError(f"Invalid discount value {value!r}") from e
            if not value.is_finite():
                raise ValidationError(f"Invalid discount value {value!r}")
            if value < 0:
                raise ValidationError("Discount value cannot be negative")
            if discount_type == DiscountType.PERCENTAGE and value > HUNDRED:
                raise ValidationError("Percentage discount cannot exceed 100")
            if not reason or not str(reason).strip():
                self._reject("Reason is required for manual discounts")
            applied = AppliedDiscount(
                id=self._next_id(quote),
                quote_id=quote.id,
                line_item_id=line_item_id,
                scope=DiscountScope.LINE_ITEM if line_item_id else DiscountScope.QUOTE,
                type=discount_type,
                value=value,
                reason=str(reason).strip(),
                applied_by=applied_by,
            )
        else:
            raise ValidationError("Either discount_id or discount_type/value must be provided")

        quote.applied_discounts.append(applied)
        if line is not None:
            self.recompute_line_discounts(quote, line)
        else:
            self.recompute_quote_discounts(quote, quote.subtotal)

        logger.info(
            "Applied %s discount %s to quote %s%s: %s",
            applied.type.value, applied.discount_id or "manual", quote.id,
            f" line {line_item_id}" if line_item_id else "", applied.calculated_amount
        )
        return applied

    def remove_discount(self, quote: Quote, applied_discount_id: str) -> AppliedDiscount:
        """Detach an applied discount and recompute its scope."""
        self._require_draft(quote, "remove discounts from")

        for applied in quote.applied_discounts:
            if applied.id == applied_discount_id:
                break
        else:
            raise NotFoundError(f"Applied discount '{applied_discount_id}' not found on quote {quote.id}")

        quote.applied_discounts.remove(applied)
        if applied.line_item_id:
            self.recompute_line_discounts(quote, quote.get_line(applied.line_item_id))
        else:
            self.recompute_quote_discounts(quote, quote.subtotal)

        logger.info("Removed applied discount %s from quote %s", applied_discount_id, quote.id)
        return applied

    # ------------------------------------------------------------------
    # Recompute
    # ------------------------------------------------------------------

    def recompute_line_discounts(self, quote: Quote, line: QuoteLineItem):
        """Recompute every discount on a line, then its discount and net price."""
        base = line.extended_price
        total = ZERO
        for applied in quote.line_discounts(line.id):
            applied.calculated_amount = self._recalculate(applied, base, line.quantity)
            total += applied.calculated_amount

        line.discount = round_money(total)
        line.net_price = max(ZERO, round_money(line.extended_price - line.discount))

    def recompute_quote_discounts(self, quote: Quote, subtotal: Decimal) -> Decimal:
        """Recompute every quote-level discount against subtotal; returns their sum."""
        total = ZERO
        for applied in quote.quote_discounts():
            base, quantity = self._quote_target(quote, self._catalog_discount(applied), subtotal)
            applied.calculated_amount = self._recalculate(applied, base, quantity)
            total += applied.calculated_amount
        return round_money(total)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _recalculate(self, applied: AppliedDiscount, base: Decimal, quantity: int) -> Decimal:
        discount = self._catalog_discount(applied)
        if discount is not None:
            if not discount.meets_quantity(quantity):
                logger.debug("Discount %s below quantity threshold (%s)", discount.id, quantity)
                return ZERO
            applied.value = tier_value(discount, quantity)
        return calculate_amount(base, applied.type, applied.value)

    def _catalog_discount(self, applied: AppliedDiscount) -> Optional[Discount]:
        return self.catalog.discounts.get(applied.discount_id) if applied.discount_id else None

    def _quote_target(self, quote: Quote, discount: Optional[Discount], subtotal: Decimal) -> tuple[Decimal, int]:
        """Base and quantity a quote-level discount is measured against.

        Category discounts only see the net price and quantity of lines in
        their category; everything else sees the whole quote.
        """
        if discount is None or discount.scope != DiscountScope.PRODUCT_CATEGORY or not discount.category_id:
            return subtotal, quote.total_quantity

        base, quantity = ZERO, 0
        for line in quote.line_items:
            if self._is_bundle_parent(line):
                continue
            product = self.catalog.products.get(line.product_id)
            if product is not None and discount.category_id in product.category_ids:
                base += line.net_price
                quantity += line.quantity
        return base, quantity

    def _target_quantity(self, quote: Quote, discount: Discount, line: Optional[QuoteLineItem]) -> int:
        if line is not None:
            return line.quantity
        return self._quote_target(quote, discount, quote.subtotal)[1]

    def _check_catalog_discount(
        self,
        quote: Quote,
        discount: Discount,
        line: Optional[QuoteLineItem],
        quantity: int
    ):
        if not discount.is_active:
            self._reject(f"Discount '{discount.name}' is not active")
        if not within_window(self.as_of, discount.valid_from, None):
            self._reject(f"Discount '{discount.name}' is not yet valid")
        if not within_window(self.as_of, None, discount.valid_to):
            self._reject(f"Discount '{discount.name}' has expired")

        if line is not None and discount.scope != DiscountScope.LINE_ITEM:
            self._reject(f"Discount '{discount.name}' can only be applied to the entire quote")
        if line is None and discount.scope == DiscountScope.LINE_ITEM:
            self._reject(f"Discount '{discount.name}' can only be applied to line items")

        if discount.min_order_value is not None and quote.subtotal < discount.min_order_value:
            self._reject(f"Minimum order value of {discount.min_order_value} not met")

        if not discount.meets_quantity(quantity):
            self._reject(f"Discount '{discount.name}' quantity threshold not met ({quantity})")

        if not discount.stackable:
            if any(d.discount_id == discount.id for d in quote.applied_discounts):
                self._reject(f"Discount '{discount.name}' is already applied")

    def _is_bundle_parent(self, line: QuoteLineItem) -> bool:
        product = self.catalog.products.get(line.product_id)
        return product is not None and product.is_bundle and line.parent_line_id is None

    @staticmethod
    def _require_draft(quote: Quote, verb: str):
        if quote.status != QuoteStatus.DRAFT:
            DiscountEngine._reject(f"Can only {verb} draft quotes (quote {quote.id} is {quote.status.value})")

    @staticmethod
    def _reject(message: str):
        logger.warning(message)
        raise PreconditionError(message)

    @staticmethod
    def _next_id(quote: Quote) -> str:
        """Generate a unique applied discount ID."""
        existing_ids = {d.id for d in quote.applied_discounts}
        counter = len(existing_ids) + 1
        candidate = f"{quote.id}-AD{counter}"
        while candidate in existing_ids:
            counter += 1
            candidate = f"{quote.id}-AD{counter}"
        return candidate
