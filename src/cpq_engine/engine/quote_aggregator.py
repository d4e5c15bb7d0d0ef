"""
Quote Aggregator - Full recompute of a quote from its catalog snapshot.

Recompute order:
1. Per line: resolve price (tiers + contract), recompute line discounts,
   net price = max(0, extended price - line discounts)
2. Subtotal = Σ line net prices
3. Recompute quote-level discounts against the new subtotal
4. Subtotal after quote discounts
5. Taxable base → tax breakdown
6. Total = max(0, subtotal after quote discounts) + tax
7. Rules for the trigger → approval flags and warnings
8. Recurring metrics (one-time, MRR, ARR, TCV)
"""
import copy
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from .discount_engine import DiscountEngine
from .errors import PreconditionError
from .models import (
    AppliedDiscount,
    CatalogSnapshot,
    Quote,
    QuoteLineItem,
    QuoteStatus,
    RuleTrigger,
    TaxBreakdownItem,
    TraceStep,
    format_trace,
)
from .money import HUNDRED, ZERO, round_money, to_date
from .price_resolver import PriceResolver
from .recurring import RecurringMetrics, calculate_proration, calculate_recurring_metrics
from .rule_engine import EvaluationResult, evaluate_rules
from .tax_engine import TaxEngine

logger = logging.getLogger(__name__)


@dataclass
class CalculationResult:
    """Complete result of a quote recompute."""
    quote_id: str
    trigger: RuleTrigger
    lines: list[QuoteLineItem]
    applied_discounts: list[AppliedDiscount]
    subtotal: Decimal = ZERO
    discount_total: Decimal = ZERO
    quote_discount_total: Decimal = ZERO
    taxable_subtotal: Decimal = ZERO
    tax_amount: Decimal = ZERO
    tax_breakdown: list[TaxBreakdownItem] = field(default_factory=list)
    total: Decimal = ZERO
    is_tax_exempt: bool = False
    exemption_expired: bool = False
    requires_approval: bool = False
    approval_reasons: list[str] = field(default_factory=list)
    recurring: RecurringMetrics = field(default_factory=RecurringMetrics)
    evaluation: EvaluationResult = field(default_factory=EvaluationResult)
    warnings: list[str] = field(default_factory=list)
    trace: list[TraceStep] = field(default_factory=list)

    def add_trace(self, step: str, description: str, value: str = None):
        """Add a step to the result-level trace."""
        self.trace.append(TraceStep(step=step, description=description, value=value))

    def add_warning(self, warning: str):
        if warning not in self.warnings:
            self.warnings.append(warning)

    def get_trace_text(self) -> str:
        """Get human-readable result trace as formatted text."""
        return format_trace(self.trace, "•")

    def to_dict(self) -> dict:
        """Serialise with camelCase keys; Decimals become strings."""
        return {
            "quoteId": self.quote_id,
            "trigger": self.trigger.value,
            "subtotal": str(self.subtotal),
            "discountTotal": str(self.discount_total),
            "quoteDiscountTotal": str(self.quote_discount_total),
            "taxableSubtotal": str(self.taxable_subtotal),
            "taxAmount": str(self.tax_amount),
            "taxBreakdown": [item.to_dict() for item in self.tax_breakdown],
            "total": str(self.total),
            "isTaxExempt": self.is_tax_exempt,
            "exemptionExpired": self.exemption_expired,
            "requiresApproval": self.requires_approval,
            "approvalReasons": list(self.approval_reasons),
            "oneTimeTotal": str(self.recurring.one_time_total),
            "mrr": str(self.recurring.mrr),
            "arr": str(self.recurring.arr),
            "tcv": str(self.recurring.tcv),
            "revenueByFrequency": {k: str(v) for k, v in self.recurring.by_frequency.items()},
            "lineItems": [
                {
                    "id": line.id,
                    "productId": line.product_id,
                    "parentLineId": line.parent_line_id,
                    "quantity": line.quantity,
                    "listPrice": str(line.list_price),
                    "unitPrice": str(line.unit_price),
                    "extendedPrice": str(line.extended_price),
                    "discount": str(line.discount),
                    "netPrice": str(line.net_price),
                    "tierApplied": line.tier_applied,
                    "contractApplied": line.contract_applied,
                    "margin": str(line.margin) if line.margin is not None else None,
                    "termMonths": line.term_months,
                    "isProrated": line.is_prorated,
                    "prorationStart": line.proration_start.isoformat() if line.proration_start else None,
                    "proratedAmount": str(line.prorated_amount) if line.prorated_amount is not None else None,
                }
                for line in self.lines
            ],
            "appliedDiscounts": [
                {
                    "id": d.id,
                    "discountId": d.discount_id,
                    "lineItemId": d.line_item_id,
                    "scope": d.scope.value,
                    "type": d.type.value,
                    "value": str(d.value),
                    "calculatedAmount": str(d.calculated_amount),
                    "reason": d.reason,
                }
                for d in self.applied_discounts
            ],
            "evaluation": self.evaluation.to_dict(),
            "warnings": list(self.warnings),
        }


def build_rule_context(quote: Quote, catalog: CatalogSnapshot, quote_discount_total: Decimal) -> dict:
    """Snapshot of quote totals, customer and lines exposed to rule conditions."""
    gross = sum((line.extended_price for line in quote.line_items), ZERO)
    discount_percent = round_money(quote.discount_total / gross * HUNDRED) if gross > 0 else ZERO

    line_items = []
    for line in quote.line_items:
        product = catalog.products.get(line.product_id)
        line_items.append({
            "id": line.id,
            "product_id": line.product_id,
            "product_sku": product.sku if product else None,
            "quantity": line.quantity,
            "unit_price": line.unit_price,
            "net_price": line.net_price,
            "parent_line_id": line.parent_line_id,
        })

    return {
        "quote": {
            "id": quote.id,
            "subtotal": quote.subtotal,
            "discount_total": quote.discount_total,
            "quote_discount_total": quote_discount_total,
            "tax_amount": quote.tax_amount,
            "total": quote.total,
            "line_item_count": len(quote.line_items),
            "total_quantity": quote.total_quantity,
            "discount_percent": discount_percent,
        },
        "customer": catalog.customer.to_context() if catalog.customer else {},
        "line_items": line_items,
    }


class QuoteAggregator:
    """
    Recomputes every derived figure on a quote from scratch.

    Two recomputes with no intervening mutation produce identical results.
    """

    def __init__(
        self,
        catalog: CatalogSnapshot,
        now: Optional[datetime] = None,
        default_term_months: int = 12
    ):
        self.catalog = catalog
        self.as_of: date = to_date(now) or date.today()
        self.default_term_months = default_term_months
        self.resolver = PriceResolver()
        self.discounts = DiscountEngine(catalog, now=self.as_of)
        self.tax = TaxEngine(catalog.tax_rates, now=self.as_of)

    def recompute(self, quote: Quote, trigger: RuleTrigger = RuleTrigger.ON_QUOTE_SAVE) -> CalculationResult:
        """Recompute lines, discounts, tax, rules and recurring metrics in place."""
        if quote.status != QuoteStatus.DRAFT:
            raise PreconditionError(
                f"Can only recalculate draft quotes (quote {quote.id} is {quote.status.value})"
            )
        trigger = RuleTrigger(trigger)

        # Steps 1-2: lines and subtotal
        subtotal = ZERO
        for line in quote.line_items:
            self._price_line(quote, line)
            subtotal += line.net_price
        quote.subtotal = round_money(subtotal)

        # Steps 3-4: quote-level discounts
        quote_discount_total = self.discounts.recompute_quote_discounts(quote, quote.subtotal)
        line_discount_total = sum((line.discount for line in quote.line_items), ZERO)
        quote.discount_total = round_money(line_discount_total + quote_discount_total)
        after_quote_discount = max(ZERO, quote.subtotal - quote_discount_total)

        # Step 5: tax
        taxable = self.tax.taxable_subtotal(
            quote.line_items, self.catalog.products, quote_discount_total, quote.subtotal
        )
        tax = self.tax.calculate_quote_tax(self.catalog.customer, taxable)
        quote.tax_amount = tax.tax_amount
        quote.tax_breakdown = tax.tax_breakdown
        quote.is_tax_exempt = tax.is_tax_exempt
        quote.exemption_expired = tax.exemption_expired

        # Step 6: total
        quote.total = round_money(after_quote_discount + quote.tax_amount)

        # Step 7: rules
        evaluation = self.evaluate(quote, trigger, quote_discount_total)
        quote.requires_approval = evaluation.requires_approval
        quote.approval_reasons = list(evaluation.approval_reasons)

        # Step 8: recurring metrics
        metrics = calculate_recurring_metrics(
            quote.line_items, self.catalog.products, self.default_term_months
        )
        quote.one_time_total = metrics.one_time_total
        quote.mrr = metrics.mrr
        quote.arr = metrics.arr
        quote.tcv = metrics.tcv

        logger.info(
            "Recomputed quote %s: subtotal=%s tax=%s total=%s approval=%s",
            quote.id, quote.subtotal, quote.tax_amount, quote.total, quote.requires_approval
        )

        result = CalculationResult(
            quote_id=quote.id,
            trigger=trigger,
            lines=copy.deepcopy(quote.line_items),
            applied_discounts=copy.deepcopy(quote.applied_discounts),
            subtotal=quote.subtotal,
            discount_total=quote.discount_total,
            quote_discount_total=quote_discount_total,
            taxable_subtotal=taxable,
            tax_amount=quote.tax_amount,
            tax_breakdown=list(quote.tax_breakdown),
            total=quote.total,
            is_tax_exempt=quote.is_tax_exempt,
            exemption_expired=quote.exemption_expired,
            requires_approval=quote.requires_approval,
            approval_reasons=list(quote.approval_reasons),
            recurring=metrics,
            evaluation=evaluation,
        )
        self._trace_totals(result, quote)
        return result

    def evaluate(
        self,
        quote: Quote,
        trigger: RuleTrigger,
        quote_discount_total: Optional[Decimal] = None
    ) -> EvaluationResult:
        """Evaluate the trigger's rules against the quote's current totals."""
        if quote_discount_total is None:
            quote_discount_total = sum((d.calculated_amount for d in quote.quote_discounts()), ZERO)
        context = build_rule_context(quote, self.catalog, quote_discount_total)
        return evaluate_rules(self.catalog.rules, trigger, context)

    def _price_line(self, quote: Quote, line: QuoteLineItem):
        """Resolve price and discounts for one line."""
        line.trace = []
        product = self.catalog.products.get(line.product_id)

        if product is not None and product.is_bundle and line.parent_line_id is None:
            # Bundle parents carry no price of their own
            entry = self.catalog.entries.get(line.product_id)
            line.list_price = entry.list_price if entry is not None else ZERO
            line.unit_price = ZERO
            line.extended_price = ZERO
            line.tier_applied = False
            line.contract_applied = False
            line.margin = None
            line.add_trace("Bundle", "Parent line priced through its components", "$0.00")
        else:
            resolution = self.resolver.lookup(
                self.catalog.entries,
                line.product_id,
                line.quantity,
                contract=self.catalog.contract,
                as_of=self.as_of,
            )
            line.list_price = resolution.list_price
            line.unit_price = resolution.unit_price
            line.extended_price = round_money(resolution.total_price)
            line.tier_applied = resolution.tier_applied
            line.contract_applied = resolution.contract_applied
            line.margin = resolution.margin
            line.trace.extend(resolution.trace)

        self.discounts.recompute_line_discounts(quote, line)
        if line.discount > 0:
            line.add_trace("Discount", "Line discounts", f"-${line.discount:.2f}")
        line.add_trace("Net", "Net price", f"${line.net_price:.2f}")

        line.prorated_amount = None
        if line.proration_start is not None and product is not None and product.is_recurring:
            proration = calculate_proration(
                line.net_price,
                product.billing_frequency,
                line.proration_start,
                product.custom_billing_months,
                as_of=self.as_of,
            )
            line.prorated_amount = proration.prorated_amount
            line.add_trace(
                "Proration",
                f"{proration.days_remaining} of {proration.total_days} days in first period",
                f"${proration.prorated_amount:.2f}"
            )

    @staticmethod
    def _trace_totals(result: CalculationResult, quote: Quote):
        result.add_trace("Lines", f"{len(quote.line_items)} line items", f"${quote.subtotal:.2f}")
        if result.quote_discount_total > 0:
            result.add_trace("Quote Discounts", "Quote-level discounts", f"-${result.quote_discount_total:.2f}")
        if quote.is_tax_exempt:
            result.add_trace("Tax", "Customer is tax exempt", "$0.00")
        else:
            for item in quote.tax_breakdown:
                result.add_trace("Tax", f"{item.name} ({item.rate})", f"${item.amount:.2f}")
        result.add_trace("Total", "Quote total", f"${quote.total:.2f}")

        if quote.exemption_expired:
            result.add_warning("Customer tax exemption has expired")
        for warning in result.evaluation.warnings:
            result.add_warning(warning)
        for error in result.evaluation.errors:
            result.add_warning(error)
