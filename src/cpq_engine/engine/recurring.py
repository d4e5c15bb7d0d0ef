"""
Recurring revenue metrics: MRR, ARR and TCV from line billing frequency,
plus first-period proration for subscriptions starting mid-period.
"""
import calendar
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional

from .errors import ValidationError
from .models import BillingFrequency, Product, QuoteLineItem
from .money import ZERO, round_money, to_date, to_decimal

_FREQUENCY_MONTHS = {
    BillingFrequency.ONE_TIME: 0,
    BillingFrequency.MONTHLY: 1,
    BillingFrequency.QUARTERLY: 3,
    BillingFrequency.ANNUAL: 12,
}


def billing_frequency_to_months(frequency: BillingFrequency, custom_months: Optional[int] = None) -> int:
    """Months per billing period; 0 means one-time."""
    if frequency == BillingFrequency.CUSTOM:
        return custom_months or 1
    return _FREQUENCY_MONTHS.get(frequency, 0)


def calculate_mrr(price: Decimal, frequency: BillingFrequency, custom_months: Optional[int] = None) -> Decimal:
    """Monthly recurring revenue for a price billed at the given frequency."""
    months = billing_frequency_to_months(frequency, custom_months)
    if months == 0:
        return ZERO
    return price / months


def add_months(start: date, months: int) -> date:
    """Same day `months` later, clamped to the end of a shorter month."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


@dataclass
class Proration:
    prorated_amount: Decimal
    days_remaining: int
    total_days: int


def calculate_proration(
    full_price: Decimal,
    frequency: BillingFrequency,
    start_date,
    custom_months: Optional[int] = None,
    as_of=None
) -> Proration:
    """
    Share of one billing period still ahead of as_of.

    The period runs from start_date for one billing interval. One-time
    charges are never prorated. A period that has not started yet is
    charged in full; one that has ended is charged nothing.
    """
    months = billing_frequency_to_months(frequency, custom_months)
    if months == 0:
        return Proration(prorated_amount=round_money(full_price), days_remaining=0, total_days=0)

    start = to_date(start_date)
    if start is None:
        raise ValidationError("Proration needs a billing start date")
    as_of = to_date(as_of) or date.today()
    period_end = add_months(start, months)
    total_days = (period_end - start).days
    days_remaining = min(total_days, max(0, (period_end - as_of).days))

    amount = round_money(to_decimal(full_price) / total_days * days_remaining)
    return Proration(prorated_amount=amount, days_remaining=days_remaining, total_days=total_days)


@dataclass
class RecurringMetrics:
    one_time_total: Decimal = ZERO
    mrr: Decimal = ZERO
    arr: Decimal = ZERO
    tcv: Decimal = ZERO
    by_frequency: dict[str, Decimal] = field(default_factory=dict)


def calculate_recurring_metrics(
    lines: list[QuoteLineItem],
    products: dict[str, Product],
    default_term_months: int = 12
) -> RecurringMetrics:
    """
    Sum line net prices grouped by billing frequency.

    - one_time_total = net price of ONE_TIME lines
    - mrr = Σ net price / months-per-period over recurring lines
    - arr = mrr × 12
    - tcv = Σ line mrr × term months + one_time_total
    """
    one_time = ZERO
    mrr = ZERO
    tcv = ZERO
    by_frequency: dict[str, Decimal] = {}

    for line in lines:
        product = products.get(line.product_id)
        frequency = product.billing_frequency if product else BillingFrequency.ONE_TIME
        by_frequency[frequency.value] = by_frequency.get(frequency.value, ZERO) + line.net_price

        if product is None or not product.is_recurring:
            one_time += line.net_price
            tcv += line.net_price
            continue

        line_mrr = calculate_mrr(line.net_price, frequency, product.custom_billing_months)
        term = line.term_months or product.default_term_months or default_term_months
        mrr += line_mrr
        tcv += line_mrr * term

    return RecurringMetrics(
        one_time_total=round_money(one_time),
        mrr=round_money(mrr),
        arr=round_money(mrr * 12),
        tcv=round_money(tcv),
        by_frequency={k: round_money(v) for k, v in sorted(by_frequency.items())},
    )
