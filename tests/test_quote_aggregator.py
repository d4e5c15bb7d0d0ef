"""
Full quote recompute: totals, tax, rules, recurring metrics and idempotence.
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from cpq_engine.engine.errors import NotFoundError, PreconditionError
from cpq_engine.engine.models import (
    AppliedDiscount,
    Contract,
    ContractPriceEntry,
    ContractStatus,
    DiscountScope,
    DiscountType,
    QuoteLineItem,
    QuoteStatus,
    RuleTrigger,
)
from cpq_engine.engine.quote_aggregator import QuoteAggregator

from conftest import NOW, TODAY, make_rule


@pytest.fixture
def aggregator(catalog):
    return QuoteAggregator(catalog, now=NOW)


@pytest.fixture
def discounted_quote(quote):
    """
    P-STD x5 ($500) with 10% line discount → 450
    P-SVC x1 ($200, not taxable)
    5% quote discount on the 650 subtotal → 32.50
    """
    quote.line_items = [
        QuoteLineItem(id="L1", product_id="P-STD", quantity=5),
        QuoteLineItem(id="L2", product_id="P-SVC", quantity=1),
    ]
    quote.applied_discounts = [
        AppliedDiscount(id="Q-1-AD1", quote_id="Q-1", line_item_id="L1", discount_id="D-LINE10",
                        scope=DiscountScope.LINE_ITEM, type=DiscountType.PERCENTAGE, value=Decimal("10")),
        AppliedDiscount(id="Q-1-AD2", quote_id="Q-1", discount_id="D-QUOTE5",
                        scope=DiscountScope.QUOTE, type=DiscountType.PERCENTAGE, value=Decimal("5")),
    ]
    return quote


def test_totals_with_line_and_quote_discounts(aggregator, discounted_quote):
    result = aggregator.recompute(discounted_quote)

    assert result.subtotal == Decimal("650.00")
    assert result.quote_discount_total == Decimal("32.50")
    assert result.discount_total == Decimal("82.50"), "Line 50.00 + quote 32.50"
    assert result.taxable_subtotal == Decimal("427.50"), "450 less its 450/650 share of 32.50"
    assert result.tax_amount == Decimal("26.72")
    assert result.total == Decimal("644.22"), "617.50 after quote discount + 26.72 tax"
    assert discounted_quote.total == result.total


def test_sum_of_net_prices_equals_subtotal(aggregator, discounted_quote):
    discounted_quote.line_items.append(QuoteLineItem(id="L3", product_id="P-TIER", quantity=25))
    result = aggregator.recompute(discounted_quote)

    assert sum(line.net_price for line in discounted_quote.line_items) == result.subtotal


def test_recompute_is_idempotent(aggregator, discounted_quote):
    first = aggregator.recompute(discounted_quote)
    second = aggregator.recompute(discounted_quote)

    assert first.to_dict() == second.to_dict()


def test_scenario_a_list_price(aggregator, quote):
    quote.line_items = [QuoteLineItem(id="L1", product_id="P-STD", quantity=5)]
    result = aggregator.recompute(quote)

    line = result.lines[0]
    assert line.unit_price == Decimal("100")
    assert line.net_price == Decimal("500.00")


def test_scenario_b_unit_tier(aggregator, quote):
    quote.line_items = [QuoteLineItem(id="L1", product_id="P-TIER", quantity=25)]
    line = aggregator.recompute(quote).lines[0]

    assert line.tier_applied
    assert line.unit_price == Decimal("80")
    assert line.net_price == Decimal("2000.00")


def test_scenario_c_flat_tier(aggregator, quote):
    quote.line_items = [QuoteLineItem(id="L1", product_id="P-FLAT", quantity=25)]
    line = aggregator.recompute(quote).lines[0]

    assert line.unit_price == Decimal("20")
    assert line.net_price == Decimal("500.00")


def test_contract_pricing_flows_into_lines(aggregator, catalog, quote):
    catalog.contract = Contract(
        id="K-1", name="MSA", status=ContractStatus.ACTIVE,
        start_date=TODAY - timedelta(days=30), end_date=TODAY + timedelta(days=30),
        price_entries=[ContractPriceEntry("P-TIER", Decimal("40"))],
    )
    quote.line_items = [QuoteLineItem(id="L1", product_id="P-TIER", quantity=10)]

    line = aggregator.recompute(quote).lines[0]

    assert line.contract_applied
    assert line.unit_price == Decimal("40")
    assert line.net_price == Decimal("400.00")


def test_expired_exemption_warns_and_taxes(aggregator, catalog, quote):
    catalog.customer.is_tax_exempt = True
    catalog.customer.tax_exempt_expiry = TODAY - timedelta(days=1)
    quote.line_items = [QuoteLineItem(id="L1", product_id="P-STD", quantity=10)]

    result = aggregator.recompute(quote)

    assert not result.is_tax_exempt
    assert result.exemption_expired
    assert result.tax_amount == Decimal("62.50")
    assert "Customer tax exemption has expired" in result.warnings


def test_exempt_customer_pays_no_tax(aggregator, catalog, quote):
    catalog.customer.is_tax_exempt = True
    quote.line_items = [QuoteLineItem(id="L1", product_id="P-STD", quantity=10)]

    result = aggregator.recompute(quote)

    assert result.is_tax_exempt
    assert result.tax_amount == Decimal("0.00")
    assert result.total == Decimal("1000.00")


def test_approval_rule_on_large_total(aggregator, catalog, quote):
    """ON_QUOTE_SAVE rule quote.total > 10000 → approval at 15000."""
    catalog.rules = [make_rule(
        "BIG-DEAL", {"field": "quote.total", "op": "gt", "value": 10000},
        {"type": "REQUIRE_APPROVAL", "message": "Deals over $10,000 need approval"}
    )]
    quote.line_items = [QuoteLineItem(id="L1", product_id="P-BIG", quantity=1)]

    result = aggregator.recompute(quote)

    assert result.total == Decimal("15000.00")
    assert result.requires_approval
    assert quote.requires_approval
    assert quote.approval_reasons == ["Deals over $10,000 need approval"]


def test_rule_context_exposes_discount_percent(aggregator, catalog, discounted_quote):
    catalog.rules = [make_rule(
        "DEEP", {"field": "quote.discount_percent", "op": "gte", "value": 10},
        {"type": "REQUIRE_APPROVAL"}
    )]

    result = aggregator.recompute(discounted_quote)

    # 82.50 off a 700 gross
    assert result.requires_approval, "11.79% discount should trip the 10% threshold"


def test_bundle_parent_has_zero_net(aggregator, quote):
    quote.line_items = [
        QuoteLineItem(id="L1", product_id="B-KIT", quantity=2),
        QuoteLineItem(id="L2", product_id="P-STD", quantity=2, parent_line_id="L1"),
        QuoteLineItem(id="L3", product_id="P-SUB", quantity=2, parent_line_id="L1"),
    ]

    result = aggregator.recompute(quote)
    parent = result.lines[0]

    assert parent.net_price == Decimal("0.00")
    assert result.subtotal == Decimal("300.00")


def test_recurring_metrics(aggregator, quote):
    quote.line_items = [
        QuoteLineItem(id="L1", product_id="P-STD", quantity=5),   # one-time 500
        QuoteLineItem(id="L2", product_id="P-SUB", quantity=2),   # 100/month, 12 months
    ]

    result = aggregator.recompute(quote)

    assert result.recurring.one_time_total == Decimal("500.00")
    assert result.recurring.mrr == Decimal("100.00")
    assert result.recurring.arr == Decimal("1200.00")
    assert result.recurring.tcv == Decimal("1700.00")
    assert quote.mrr == Decimal("100.00")


def test_line_term_overrides_product_term(aggregator, quote):
    quote.line_items = [QuoteLineItem(id="L1", product_id="P-SUB", quantity=1, term_months=36)]
    result = aggregator.recompute(quote)
    assert result.recurring.tcv == Decimal("1800.00")


def test_non_draft_quote_cannot_recompute(aggregator, quote):
    quote.status = QuoteStatus.PENDING_APPROVAL
    with pytest.raises(PreconditionError):
        aggregator.recompute(quote)


def test_missing_price_book_entry(aggregator, catalog, quote):
    del catalog.entries["P-STD"]
    quote.line_items = [QuoteLineItem(id="L1", product_id="P-STD", quantity=1)]

    with pytest.raises(NotFoundError):
        aggregator.recompute(quote)


def test_result_lines_are_snapshots(aggregator, quote):
    quote.line_items = [QuoteLineItem(id="L1", product_id="P-STD", quantity=1)]
    result = aggregator.recompute(quote)

    quote.line_items[0].quantity = 99
    assert result.lines[0].quantity == 1


def test_to_dict_uses_camel_case_and_strings(aggregator, discounted_quote):
    data = aggregator.recompute(discounted_quote).to_dict()

    assert data["quoteId"] == "Q-1"
    assert data["trigger"] == RuleTrigger.ON_QUOTE_SAVE.value
    assert data["total"] == "644.22"
    assert data["taxBreakdown"] == [{"name": "Texas State Tax", "rate": "0.0625", "amount": "26.72"}]
    assert data["lineItems"][0]["netPrice"] == "450.00"
    assert data["appliedDiscounts"][1]["calculatedAmount"] == "32.50"
    assert data["evaluation"]["success"] is True


def test_trace_text(aggregator, discounted_quote):
    result = aggregator.recompute(discounted_quote)
    text = result.get_trace_text()

    assert "• Total: Quote total = $644.22" in text
    assert "Texas State Tax" in text
    assert "→ Net: Net price = $450.00" in result.lines[0].get_trace_text()
