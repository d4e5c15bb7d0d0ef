"""
Tax Engine - Customer exemption, rate resolution and multi-rate tax breakdown.

Rates stack: a country VAT and a state tax both apply to the same base.
Only lines whose product is taxable contribute to the tax base.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from .models import Customer, Product, QuoteLineItem, TaxBreakdownItem, TaxRate
from .money import ZERO, round_money, to_date, within_window

logger = logging.getLogger(__name__)


@dataclass
class TaxExemption:
    """Exemption status; exemption_expired means the flag is set but lapsed."""
    is_tax_exempt: bool = False
    exemption_expired: bool = False
    exemption_reason: Optional[str] = None


@dataclass
class TaxResult:
    tax_amount: Decimal = ZERO
    tax_breakdown: list[TaxBreakdownItem] = field(default_factory=list)
    taxable_subtotal: Decimal = ZERO
    is_tax_exempt: bool = False
    exemption_expired: bool = False


class TaxEngine:
    """Computes tax from an in-memory list of tax rates."""

    def __init__(self, tax_rates: list[TaxRate], now: Optional[datetime] = None):
        self.tax_rates = tax_rates
        self.as_of: date = to_date(now) or date.today()

    def check_exemption(self, customer: Optional[Customer]) -> TaxExemption:
        """A customer is exempt only while the flag is set and not past expiry."""
        if customer is None or not customer.is_tax_exempt:
            return TaxExemption()

        expiry = to_date(customer.tax_exempt_expiry)
        expired = expiry is not None and expiry < self.as_of
        if expired:
            logger.info("Tax exemption for customer %s expired on %s", customer.id, expiry)

        return TaxExemption(
            is_tax_exempt=not expired,
            exemption_expired=expired,
            exemption_reason=customer.tax_exempt_reason,
        )

    def resolve_tax_rates(self, customer: Optional[Customer], as_of: Optional[date] = None) -> list[TaxRate]:
        """
        Find all rates for the customer's location on as_of.

        Country-level rates (state=None) and the customer's state rates both
        match. State-level rates sort first, then by rate descending.
        """
        if customer is None or not customer.country:
            return []

        as_of = to_date(as_of) or self.as_of
        matches = []
        for rate in self.tax_rates:
            if not rate.is_active:
                continue
            if rate.country != customer.country:
                continue
            if rate.state is not None and rate.state != customer.state:
                continue
            if not within_window(as_of, rate.valid_from, rate.valid_to):
                continue
            matches.append(rate)

        matches.sort(key=lambda r: (r.state is None, -r.rate))
        return matches

    @staticmethod
    def calculate_tax(
        taxable_subtotal: Decimal,
        rates: list[TaxRate],
        exempt: bool = False
    ) -> tuple[Decimal, list[TaxBreakdownItem]]:
        """Each rate is applied independently to the full taxable subtotal."""
        if exempt or not rates or taxable_subtotal <= 0:
            return ZERO, []

        breakdown = []
        total = ZERO
        for rate in rates:
            amount = round_money(taxable_subtotal * rate.rate)
            breakdown.append(TaxBreakdownItem(name=rate.name, rate=rate.rate, amount=amount))
            total += amount

        return round_money(total), breakdown

    @staticmethod
    def taxable_subtotal(
        lines: list[QuoteLineItem],
        products: dict[str, Product],
        quote_discount: Decimal,
        subtotal: Decimal
    ) -> Decimal:
        """
        Net price of taxable lines, less their share of quote-level discounts.

        The quote discount is prorated by the taxable lines' share of the subtotal.
        """
        taxable_net = ZERO
        for line in lines:
            product = products.get(line.product_id)
            if product is None or product.is_taxable:
                taxable_net += line.net_price

        if quote_discount > 0 and subtotal > 0:
            taxable_net -= quote_discount * taxable_net / subtotal

        return max(ZERO, round_money(taxable_net))

    def calculate_quote_tax(self, customer: Optional[Customer], taxable_subtotal: Decimal) -> TaxResult:
        """Exemption check, rate resolution and breakdown in one pass."""
        exemption = self.check_exemption(customer)
        result = TaxResult(
            taxable_subtotal=taxable_subtotal,
            is_tax_exempt=exemption.is_tax_exempt,
            exemption_expired=exemption.exemption_expired,
        )
        if exemption.is_tax_exempt:
            return result

        rates = self.resolve_tax_rates(customer)
        result.tax_amount, result.tax_breakdown = self.calculate_tax(taxable_subtotal, rates)
        return result
