"""
Quote Service - Line item, discount and status operations on a quote.

Every mutation validates first, then changes the quote, then recomputes it
in full. Configuration rules for the affected line run before the change;
an exclusion rejects the mutation and leaves the quote untouched.
"""
import logging
from datetime import date, datetime
from typing import Optional

from ..engine import workflow
from ..engine.discount_engine import DiscountCalculation, DiscountEngine, calculate_discounts
from ..engine.errors import NotFoundError, PreconditionError, ValidationError
from ..engine.models import (
    AppliedDiscount,
    CatalogSnapshot,
    Quote,
    QuoteLineItem,
    QuoteStatus,
    RuleTrigger,
    RuleType,
)
from ..engine.money import ZERO, to_date
from ..engine.price_resolver import PriceResolver
from ..engine.quote_aggregator import CalculationResult, QuoteAggregator
from ..engine.rule_engine import EvaluationResult, evaluate_rules

logger = logging.getLogger(__name__)


class QuoteService:
    """Service for editing and progressing an in-memory quote."""

    def __init__(
        self,
        catalog: CatalogSnapshot,
        now: Optional[datetime] = None,
        default_term_months: int = 12,
        default_trigger: RuleTrigger = RuleTrigger.ON_QUOTE_SAVE
    ):
        self.catalog = catalog
        self.default_trigger = RuleTrigger(default_trigger)
        self.now = now
        self.as_of: date = to_date(now) or date.today()
        self.aggregator = QuoteAggregator(catalog, now=self.as_of, default_term_months=default_term_months)
        self.discounts = DiscountEngine(catalog, now=self.as_of)
        self.resolver = PriceResolver()

    # ------------------------------------------------------------------
    # Line items
    # ------------------------------------------------------------------

    def add_product(
        self,
        quote: Quote,
        product_id: str,
        quantity: int = 1,
        term_months: Optional[int] = None
    ) -> QuoteLineItem:
        """Add a standalone product line and recompute."""
        self._require_draft(quote)
        self._validate_quantity(quantity)

        product = self.catalog.get_product(product_id)
        if product.is_bundle:
            raise ValidationError(f"Product '{product.name}' is a bundle; use add_bundle")
        if product_id not in self.catalog.entries:
            raise NotFoundError(f"Product '{product_id}' is not in price book {self.catalog.price_book_id}")

        self._check_configuration(quote, product_id, quantity, RuleTrigger.ON_PRODUCT_ADD)

        line = QuoteLineItem(
            id=self._generate_line_id(quote),
            product_id=product_id,
            quantity=quantity,
            term_months=term_months,
            sort_order=len(quote.line_items),
        )
        quote.line_items.append(line)
        self.recalculate(quote)
        logger.info("Added %s x%d to quote %s as %s", product_id, quantity, quote.id, line.id)
        return line

    def add_bundle(
        self,
        quote: Quote,
        product_id: str,
        components: dict[str, int],
        quantity: int = 1
    ) -> QuoteLineItem:
        """
        Add a bundle parent line and one child line per component.

        Args:
            components: Dict of {product_id: quantity per bundle}

        The parent carries no price; each child is priced at
        component quantity × bundle quantity.
        """
        self._require_draft(quote)
        self._validate_quantity(quantity)

        product = self.catalog.get_product(product_id)
        if not product.is_bundle:
            raise ValidationError(f"Product '{product.name}' is not a bundle")
        if not components:
            raise ValidationError(f"Bundle '{product.name}' needs at least one component")

        for component_id, component_qty in components.items():
            self.catalog.get_product(component_id)
            self._validate_quantity(component_qty)
            if component_id not in self.catalog.entries:
                raise NotFoundError(
                    f"Product '{component_id}' is not in price book {self.catalog.price_book_id}"
                )

        self._check_configuration(quote, product_id, quantity, RuleTrigger.ON_PRODUCT_ADD)

        parent = QuoteLineItem(
            id=self._generate_line_id(quote),
            product_id=product_id,
            quantity=quantity,
            sort_order=len(quote.line_items),
        )
        quote.line_items.append(parent)
        for component_id, component_qty in components.items():
            quote.line_items.append(QuoteLineItem(
                id=self._generate_line_id(quote),
                product_id=component_id,
                quantity=component_qty * quantity,
                parent_line_id=parent.id,
                sort_order=len(quote.line_items),
            ))

        self.recalculate(quote)
        logger.info(
            "Added bundle %s x%d with %d components to quote %s",
            product_id, quantity, len(components), quote.id
        )
        return parent

    def update_quantity(self, quote: Quote, line_item_id: str, quantity: int) -> QuoteLineItem:
        """Change a line's quantity; tiers and discounts re-resolve on recompute."""
        return self.update_line(quote, line_item_id, quantity=quantity)

    def update_line(
        self,
        quote: Quote,
        line_item_id: str,
        quantity: Optional[int] = None,
        term_months: Optional[int] = None
    ) -> QuoteLineItem:
        """
        Change a line's quantity and/or subscription term, then recompute.

        Bundle children keep their own quantities.
        """
        self._require_draft(quote)
        line = quote.get_line(line_item_id)
        if quantity is None and term_months is None:
            raise ValidationError("Nothing to update: provide quantity or term_months")
        if quantity is not None:
            self._validate_quantity(quantity)
        if term_months is not None:
            self._validate_term(term_months)

        if quantity is not None:
            self._check_configuration(quote, line.product_id, quantity, RuleTrigger.ON_QUANTITY_CHANGE)
            line.quantity = quantity
        if term_months is not None:
            line.term_months = term_months

        self.recalculate(quote)
        logger.info(
            "Quote %s line %s updated: quantity=%s term=%s",
            quote.id, line_item_id, line.quantity, line.term_months
        )
        return line

    def set_proration(self, quote: Quote, line_item_id: str, start_date) -> QuoteLineItem:
        """
        Prorate a subscription line's first billing period from start_date.

        None turns proration off. One-time products cannot be prorated.
        """
        self._require_draft(quote)
        line = quote.get_line(line_item_id)
        start = to_date(start_date)
        if start is not None and not self.catalog.get_product(line.product_id).is_recurring:
            raise ValidationError(f"Line {line_item_id} is a one-time charge and cannot be prorated")

        line.proration_start = start
        self.recalculate(quote)
        return line

    def remove_line_item(self, quote: Quote, line_item_id: str) -> list[QuoteLineItem]:
        """Remove a line, its bundle children and their line-level discounts."""
        self._require_draft(quote)
        line = quote.get_line(line_item_id)

        removed = [line] + quote.children_of(line.id)
        removed_ids = {item.id for item in removed}
        quote.line_items = [item for item in quote.line_items if item.id not in removed_ids]
        quote.applied_discounts = [
            d for d in quote.applied_discounts if d.line_item_id not in removed_ids
        ]

        self.recalculate(quote)
        logger.info("Removed %d line(s) from quote %s", len(removed), quote.id)
        return removed

    # ------------------------------------------------------------------
    # Discounts
    # ------------------------------------------------------------------

    def apply_discount(
        self,
        quote: Quote,
        discount_id: Optional[str] = None,
        line_item_id: Optional[str] = None,
        discount_type=None,
        value=None,
        reason: Optional[str] = None,
        applied_by: str = 'user'
    ) -> AppliedDiscount:
        """Attach a catalog or manual discount, then recompute the quote."""
        applied = self.discounts.apply_discount(
            quote,
            discount_id=discount_id,
            line_item_id=line_item_id,
            discount_type=discount_type,
            value=value,
            reason=reason,
            applied_by=applied_by,
        )
        self.recalculate(quote)
        return applied

    def remove_discount(self, quote: Quote, applied_discount_id: str) -> AppliedDiscount:
        removed = self.discounts.remove_discount(quote, applied_discount_id)
        self.recalculate(quote)
        return removed

    def suggest_discounts(self, quote: Quote) -> DiscountCalculation:
        """Best catalog discount combination for the quote's current lines; nothing is attached."""
        return calculate_discounts(
            self.catalog.discounts.values(), quote, self.catalog.products, as_of=self.as_of
        )

    def recalculate(self, quote: Quote, trigger: Optional[RuleTrigger] = None) -> CalculationResult:
        return self.aggregator.recompute(quote, trigger or self.default_trigger)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def submit(self, quote: Quote) -> CalculationResult:
        """
        Recompute with ON_QUOTE_SAVE and ON_FINALIZE rules, then submit.

        A blocking rule error keeps the quote in DRAFT.
        """
        self._require_draft(quote)
        result = self.aggregator.recompute(quote, RuleTrigger.ON_QUOTE_SAVE)
        evaluation = result.evaluation.merge(self.aggregator.evaluate(quote, RuleTrigger.ON_FINALIZE))

        if not evaluation.success:
            raise PreconditionError(f"Quote {quote.id} failed validation: {'; '.join(evaluation.errors)}")

        quote.requires_approval = evaluation.requires_approval
        quote.approval_reasons = list(evaluation.approval_reasons)
        result.evaluation = evaluation
        result.requires_approval = evaluation.requires_approval
        result.approval_reasons = list(evaluation.approval_reasons)
        for warning in evaluation.warnings:
            result.add_warning(warning)

        workflow.submit(quote, now=self.now)
        return result

    def approve(self, quote: Quote, approved_by: str) -> QuoteStatus:
        return workflow.approve(quote, approved_by, now=self.now)

    def reject(self, quote: Quote, reason: Optional[str] = None) -> QuoteStatus:
        return workflow.reject(quote, reason)

    def accept(self, quote: Quote) -> QuoteStatus:
        return workflow.accept(quote)

    def finalize(self, quote: Quote) -> QuoteStatus:
        return workflow.finalize(quote)

    def cancel(self, quote: Quote) -> QuoteStatus:
        return workflow.cancel(quote)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def line_context(self, quote: Quote, product_id: str, quantity: int) -> dict:
        """Rule context for a line being added or changed."""
        product = self.catalog.get_product(product_id)
        line_total = ZERO
        if not product.is_bundle and product_id in self.catalog.entries:
            resolution = self.resolver.lookup(
                self.catalog.entries, product_id, quantity,
                contract=self.catalog.contract, as_of=self.as_of
            )
            line_total = resolution.total_price

        customer = self.catalog.customer
        return {
            "product_id": product_id,
            "product_sku": product.sku,
            "quantity": quantity,
            "line_total": line_total,
            "quote_total": quote.total,
            "customer_id": quote.customer_id,
            "customer": customer.to_context() if customer else {},
            "line_items": [
                {"product_id": line.product_id, "quantity": line.quantity}
                for line in quote.line_items
            ],
        }

    def _check_configuration(
        self,
        quote: Quote,
        product_id: str,
        quantity: int,
        trigger: RuleTrigger
    ) -> EvaluationResult:
        context = self.line_context(quote, product_id, quantity)
        evaluation = evaluate_rules(self.catalog.rules, trigger, context, RuleType.CONFIGURATION)
        if not evaluation.success:
            message = "; ".join(evaluation.errors)
            logger.warning("Configuration rejected for %s on quote %s: %s", product_id, quote.id, message)
            raise PreconditionError(message)
        return evaluation

    @staticmethod
    def _validate_quantity(quantity):
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError(f"Quantity must be a whole number of at least 1, got {quantity!r}")

    @staticmethod
    def _validate_term(term_months):
        if isinstance(term_months, bool) or not isinstance(term_months, int) or term_months < 1:
            raise ValidationError(f"Term must be a whole number of months, got {term_months!r}")

    @staticmethod
    def _require_draft(quote: Quote):
        if quote.status != QuoteStatus.DRAFT:
            raise PreconditionError(f"Can only modify draft quotes (quote {quote.id} is {quote.status.value})")

    @staticmethod
    def _generate_line_id(quote: Quote) -> str:
        """Generate a unique line item ID."""
        existing_ids = {line.id for line in quote.line_items}
        counter = len(existing_ids) + 1
        candidate = f"{quote.id}-L{counter}"
        while candidate in existing_ids:
            counter += 1
            candidate = f"{quote.id}-L{counter}"
        return candidate
