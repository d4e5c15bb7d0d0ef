"""
Shared catalog fixtures.

Catalog (price book PB-STD, as of 2026-03-01):
    P-STD   list 100, cost 60, taxable, one-time
    P-TIER  list 100, unit tiers 1-9 → 100, 10-50 → 80, 51+ → 70
    P-FLAT  list 30, flat tier 10-50 → 500 total
    P-SVC   list 200, not taxable
    P-SUB   list 50, monthly, 12 month default term
    P-BIG   list 15000, not taxable
    B-KIT   bundle (components P-STD, P-SUB)
"""
from datetime import date, datetime
from decimal import Decimal

import pytest

from cpq_engine.engine.models import (
    BillingFrequency,
    CatalogSnapshot,
    Customer,
    Discount,
    DiscountScope,
    DiscountTier,
    DiscountType,
    PriceBookEntry,
    PriceTier,
    Product,
    ProductType,
    Quote,
    Rule,
    RuleTrigger,
    RuleType,
    TaxRate,
    TierType,
)

NOW = datetime(2026, 3, 1, 9, 30)
TODAY = date(2026, 3, 1)


def make_entry(product_id, list_price, tiers=None, cost=None) -> PriceBookEntry:
    return PriceBookEntry(
        price_book_id="PB-STD",
        product_id=product_id,
        list_price=Decimal(str(list_price)),
        cost=Decimal(str(cost)) if cost is not None else None,
        tiers=tiers or [],
    )


def make_rule(rule_id, condition, action, trigger=RuleTrigger.ON_QUOTE_SAVE,
              rule_type=RuleType.PRICING, priority=100, is_active=True) -> Rule:
    return Rule(
        id=rule_id,
        name=rule_id.replace('-', ' ').title(),
        type=rule_type,
        trigger=trigger,
        condition=condition,
        action=action,
        priority=priority,
        is_active=is_active,
    )


@pytest.fixture
def products():
    return {
        "P-STD": Product(id="P-STD", name="Standard Widget", sku="STD-001", category_ids=["hardware"]),
        "P-TIER": Product(id="P-TIER", name="Tiered Seat", sku="TIER-001", category_ids=["software"]),
        "P-FLAT": Product(id="P-FLAT", name="Flat Pack", sku="FLAT-001"),
        "P-SVC": Product(id="P-SVC", name="Setup Service", sku="SVC-001", is_taxable=False),
        "P-SUB": Product(
            id="P-SUB", name="Monthly Support", sku="SUB-001",
            billing_frequency=BillingFrequency.MONTHLY, default_term_months=12,
            category_ids=["software"],
        ),
        "P-BIG": Product(id="P-BIG", name="Enterprise License", sku="BIG-001", is_taxable=False),
        "B-KIT": Product(id="B-KIT", name="Starter Kit", sku="KIT-001", type=ProductType.BUNDLE),
    }


@pytest.fixture
def entries():
    return {
        "P-STD": make_entry("P-STD", 100, cost=60),
        "P-TIER": make_entry("P-TIER", 100, tiers=[
            PriceTier(1, 9, Decimal("100")),
            PriceTier(10, 50, Decimal("80")),
            PriceTier(51, None, Decimal("70")),
        ]),
        "P-FLAT": make_entry("P-FLAT", 30, tiers=[
            PriceTier(10, 50, Decimal("500"), TierType.FLAT_PRICE),
        ]),
        "P-SVC": make_entry("P-SVC", 200),
        "P-SUB": make_entry("P-SUB", 50),
        "P-BIG": make_entry("P-BIG", 15000),
        "B-KIT": make_entry("B-KIT", 0),
    }


@pytest.fixture
def discounts():
    return {
        "D-LINE10": Discount(
            id="D-LINE10", name="Line 10%", type=DiscountType.PERCENTAGE,
            scope=DiscountScope.LINE_ITEM, value=Decimal("10"),
        ),
        "D-QUOTE5": Discount(
            id="D-QUOTE5", name="Quote 5%", type=DiscountType.PERCENTAGE,
            scope=DiscountScope.QUOTE, value=Decimal("5"),
        ),
        "D-BIGORDER": Discount(
            id="D-BIGORDER", name="Big Order $50", type=DiscountType.FIXED_AMOUNT,
            scope=DiscountScope.QUOTE, value=Decimal("50"), min_order_value=Decimal("1000"),
        ),
        "D-INACTIVE": Discount(
            id="D-INACTIVE", name="Retired", type=DiscountType.PERCENTAGE,
            scope=DiscountScope.QUOTE, value=Decimal("5"), is_active=False,
        ),
        "D-EXPIRED": Discount(
            id="D-EXPIRED", name="Winter Promo", type=DiscountType.PERCENTAGE,
            scope=DiscountScope.QUOTE, value=Decimal("5"), valid_to=date(2025, 12, 31),
        ),
        "D-VOLUME": Discount(
            id="D-VOLUME", name="Volume", type=DiscountType.PERCENTAGE,
            scope=DiscountScope.LINE_ITEM, value=Decimal("5"), stackable=True,
            tiers=[
                DiscountTier(1, 1, 9, Decimal("5")),
                DiscountTier(2, 10, None, Decimal("15")),
            ],
        ),
        "D-SOFTWARE": Discount(
            id="D-SOFTWARE", name="Software 20%", type=DiscountType.PERCENTAGE,
            scope=DiscountScope.PRODUCT_CATEGORY, value=Decimal("20"), category_id="software",
        ),
    }


@pytest.fixture
def texas_customer():
    return Customer(id="C-TX", name="Lone Star Co", country="US", state="TX")


@pytest.fixture
def tax_rates():
    return [
        TaxRate(id="T-TX", name="Texas State Tax", rate=Decimal("0.0625"), country="US", state="TX"),
        TaxRate(id="T-CA", name="California State Tax", rate=Decimal("0.0725"), country="US", state="CA"),
    ]


@pytest.fixture
def catalog(products, entries, discounts, tax_rates, texas_customer):
    return CatalogSnapshot(
        price_book_id="PB-STD",
        entries=entries,
        products=products,
        discounts=discounts,
        tax_rates=tax_rates,
        customer=texas_customer,
    )


@pytest.fixture
def quote():
    return Quote(id="Q-1", price_book_id="PB-STD", customer_id="C-TX")
