"""
Data models for the CPQ engine.

Uses dataclasses for structured, type-safe data representation.
Catalog records (price books, contracts, discounts, tax rates, rules,
customers) are read-only inputs; only Quote, QuoteLineItem and
AppliedDiscount are mutated, and only by the engine.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from .errors import NotFoundError
from .money import ZERO, to_date, within_window


class TierType(str, Enum):
    UNIT_PRICE = 'UNIT_PRICE'
    FLAT_PRICE = 'FLAT_PRICE'


class ContractStatus(str, Enum):
    DRAFT = 'DRAFT'
    ACTIVE = 'ACTIVE'
    EXPIRED = 'EXPIRED'


class DiscountType(str, Enum):
    PERCENTAGE = 'PERCENTAGE'
    FIXED_AMOUNT = 'FIXED_AMOUNT'


class DiscountScope(str, Enum):
    LINE_ITEM = 'LINE_ITEM'
    QUOTE = 'QUOTE'
    PRODUCT_CATEGORY = 'PRODUCT_CATEGORY'


class ProductType(str, Enum):
    STANDALONE = 'STANDALONE'
    BUNDLE = 'BUNDLE'


class BillingFrequency(str, Enum):
    ONE_TIME = 'ONE_TIME'
    MONTHLY = 'MONTHLY'
    QUARTERLY = 'QUARTERLY'
    ANNUAL = 'ANNUAL'
    CUSTOM = 'CUSTOM'


class QuoteStatus(str, Enum):
    DRAFT = 'DRAFT'
    PENDING_APPROVAL = 'PENDING_APPROVAL'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'
    ACCEPTED = 'ACCEPTED'
    FINALIZED = 'FINALIZED'
    CANCELLED = 'CANCELLED'


class RuleType(str, Enum):
    CONFIGURATION = 'CONFIGURATION'
    PRICING = 'PRICING'


class RuleTrigger(str, Enum):
    ON_PRODUCT_ADD = 'ON_PRODUCT_ADD'
    ON_QUANTITY_CHANGE = 'ON_QUANTITY_CHANGE'
    ON_QUOTE_SAVE = 'ON_QUOTE_SAVE'
    ON_FINALIZE = 'ON_FINALIZE'


@dataclass
class TraceStep:
    """A single step in a price or quote resolution trace."""
    step: str
    description: str
    value: Optional[str] = None


def format_trace(trace: list[TraceStep], bullet: str) -> str:
    lines = []
    for t in trace:
        if t.value:
            lines.append(f"{bullet} {t.step}: {t.description} = {t.value}")
        else:
            lines.append(f"{bullet} {t.step}: {t.description}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Price book
# ---------------------------------------------------------------------------

@dataclass
class PriceTier:
    """A quantity band priced per unit or as a flat total."""
    min_quantity: int
    max_quantity: Optional[int]
    tier_price: Decimal
    tier_type: TierType = TierType.UNIT_PRICE

    def matches(self, quantity: int) -> bool:
        """Inclusive on both bounds; max_quantity=None is unbounded."""
        if quantity < self.min_quantity:
            return False
        return self.max_quantity is None or quantity <= self.max_quantity


@dataclass
class PriceBookEntry:
    price_book_id: str
    product_id: str
    list_price: Decimal
    cost: Optional[Decimal] = None
    tiers: list[PriceTier] = field(default_factory=list)  # ascending by min_quantity


@dataclass
class Product:
    id: str
    name: str
    sku: str = ''
    type: ProductType = ProductType.STANDALONE
    is_taxable: bool = True
    billing_frequency: BillingFrequency = BillingFrequency.ONE_TIME
    custom_billing_months: Optional[int] = None
    default_term_months: Optional[int] = None
    category_ids: list[str] = field(default_factory=list)

    @property
    def is_bundle(self) -> bool:
        return self.type == ProductType.BUNDLE

    @property
    def is_recurring(self) -> bool:
        return self.billing_frequency != BillingFrequency.ONE_TIME


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------

@dataclass
class ContractPriceEntry:
    product_id: str
    fixed_price: Decimal


@dataclass
class Contract:
    """A negotiated agreement overriding price book pricing while active."""
    id: str
    name: str
    status: ContractStatus
    start_date: Optional[date]
    end_date: Optional[date]
    customer_id: Optional[str] = None
    discount_percent: Optional[Decimal] = None
    price_entries: list[ContractPriceEntry] = field(default_factory=list)

    def is_applicable(self, as_of: date) -> bool:
        """Only ACTIVE contracts inside their date window apply."""
        if self.status != ContractStatus.ACTIVE:
            return False
        return within_window(to_date(as_of), self.start_date, self.end_date)

    def fixed_price_for(self, product_id: str) -> Optional[Decimal]:
        for entry in self.price_entries:
            if entry.product_id == product_id:
                return entry.fixed_price
        return None


# ---------------------------------------------------------------------------
# Discounts
# ---------------------------------------------------------------------------

@dataclass
class DiscountTier:
    tier_number: int
    min_quantity: int
    max_quantity: Optional[int]
    value: Decimal

    def matches(self, quantity: int) -> bool:
        if quantity < self.min_quantity:
            return False
        return self.max_quantity is None or quantity <= self.max_quantity


@dataclass
class Discount:
    """A catalog discount definition. Never mutated by the engine."""
    id: str
    name: str
    type: DiscountType
    scope: DiscountScope
    value: Decimal
    is_active: bool = True
    stackable: bool = False
    priority: int = 100
    min_quantity: Optional[int] = None
    max_quantity: Optional[int] = None
    min_order_value: Optional[Decimal] = None
    valid_from: Optional[date] = None
    valid_to: Optional[date] = None
    category_id: Optional[str] = None
    tiers: list[DiscountTier] = field(default_factory=list)

    def meets_quantity(self, quantity: int) -> bool:
        if self.min_quantity is not None and quantity < self.min_quantity:
            return False
        if self.max_quantity is not None and quantity > self.max_quantity:
            return False
        return True


@dataclass
class AppliedDiscount:
    """A discount (catalog or manual) attached to a line item or the whole quote."""
    id: str
    quote_id: str
    type: DiscountType
    value: Decimal
    calculated_amount: Decimal = ZERO
    line_item_id: Optional[str] = None  # None = quote-level
    discount_id: Optional[str] = None   # None = manual
    scope: DiscountScope = DiscountScope.QUOTE
    reason: Optional[str] = None
    discount_name: Optional[str] = None
    applied_by: str = 'user'

    @property
    def is_quote_level(self) -> bool:
        return self.line_item_id is None

    @property
    def is_manual(self) -> bool:
        return self.discount_id is None


# ---------------------------------------------------------------------------
# Tax and customers
# ---------------------------------------------------------------------------

@dataclass
class TaxRate:
    id: str
    name: str
    rate: Decimal  # fraction, e.g. 0.0825
    country: str
    state: Optional[str] = None  # None = country-wide
    category_id: Optional[str] = None
    is_active: bool = True
    valid_from: Optional[date] = None
    valid_to: Optional[date] = None


@dataclass
class TaxBreakdownItem:
    name: str
    rate: Decimal
    amount: Decimal

    def to_dict(self) -> dict:
        return {"name": self.name, "rate": str(self.rate), "amount": str(self.amount)}


@dataclass
class Customer:
    id: str
    name: str = ''
    is_tax_exempt: bool = False
    tax_exempt_reason: Optional[str] = None
    tax_exempt_expiry: Optional[date] = None
    country: Optional[str] = None
    state: Optional[str] = None

    def to_context(self) -> dict:
        """Flat dict exposed to rule conditions as `customer.*`."""
        return {
            "id": self.id,
            "name": self.name,
            "is_tax_exempt": self.is_tax_exempt,
            "country": self.country,
            "state": self.state,
        }


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

@dataclass
class Rule:
    """A business rule. condition/action stay raw JSON until evaluation."""
    id: str
    name: str
    type: RuleType
    trigger: RuleTrigger
    condition: dict
    action: dict
    priority: int = 100
    is_active: bool = True


# ---------------------------------------------------------------------------
# Quote
# ---------------------------------------------------------------------------

@dataclass
class QuoteLineItem:
    """A single line item on a quote."""
    id: str
    product_id: str
    quantity: int
    list_price: Decimal = ZERO       # price book list price
    unit_price: Decimal = ZERO       # after tiers / contract
    extended_price: Decimal = ZERO   # resolved line total before discounts
    discount: Decimal = ZERO
    net_price: Decimal = ZERO
    parent_line_id: Optional[str] = None
    term_months: Optional[int] = None
    proration_start: Optional[date] = None  # first billing period start
    prorated_amount: Optional[Decimal] = None
    tier_applied: bool = False
    contract_applied: bool = False
    margin: Optional[Decimal] = None
    sort_order: int = 0
    trace: list[TraceStep] = field(default_factory=list)

    def add_trace(self, step: str, description: str, value: str = None):
        """Add a step to the trace for this line item."""
        self.trace.append(TraceStep(step=step, description=description, value=value))

    def get_trace_text(self) -> str:
        """Get human-readable trace as formatted text."""
        return format_trace(self.trace, "→")

    @property
    def is_prorated(self) -> bool:
        return self.prorated_amount is not None


@dataclass
class Quote:
    """A quote snapshot. Totals are written by the aggregator only."""
    id: str
    price_book_id: str
    customer_id: Optional[str] = None
    status: QuoteStatus = QuoteStatus.DRAFT
    line_items: list[QuoteLineItem] = field(default_factory=list)
    applied_discounts: list[AppliedDiscount] = field(default_factory=list)

    subtotal: Decimal = ZERO
    discount_total: Decimal = ZERO
    tax_amount: Decimal = ZERO
    tax_breakdown: list[TaxBreakdownItem] = field(default_factory=list)
    total: Decimal = ZERO
    is_tax_exempt: bool = False
    exemption_expired: bool = False

    requires_approval: bool = False
    approval_reasons: list[str] = field(default_factory=list)

    one_time_total: Decimal = ZERO
    mrr: Decimal = ZERO
    arr: Decimal = ZERO
    tcv: Decimal = ZERO

    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejection_reason: Optional[str] = None

    def get_line(self, line_item_id: str) -> QuoteLineItem:
        for line in self.line_items:
            if line.id == line_item_id:
                return line
        raise NotFoundError(f"Line item '{line_item_id}' not found on quote {self.id}")

    def children_of(self, line_item_id: str) -> list[QuoteLineItem]:
        return [line for line in self.line_items if line.parent_line_id == line_item_id]

    def line_discounts(self, line_item_id: str) -> list[AppliedDiscount]:
        return [d for d in self.applied_discounts if d.line_item_id == line_item_id]

    def quote_discounts(self) -> list[AppliedDiscount]:
        return [d for d in self.applied_discounts if d.is_quote_level]

    @property
    def total_quantity(self) -> int:
        """Units on priced lines; a bundle parent's units are counted through its children."""
        parent_ids = {line.parent_line_id for line in self.line_items if line.parent_line_id}
        return sum(line.quantity for line in self.line_items if line.id not in parent_ids)


@dataclass
class CatalogSnapshot:
    """
    Fully loaded, read-only inputs for one calculation.

    The persistence layer builds this before calling the engine; nothing
    in the engine reaches outside it.
    """
    price_book_id: str
    entries: dict[str, PriceBookEntry] = field(default_factory=dict)  # product_id → entry
    products: dict[str, Product] = field(default_factory=dict)
    discounts: dict[str, Discount] = field(default_factory=dict)
    tax_rates: list[TaxRate] = field(default_factory=list)
    rules: list[Rule] = field(default_factory=list)
    customer: Optional[Customer] = None
    contract: Optional[Contract] = None

    def get_product(self, product_id: str) -> Product:
        product = self.products.get(product_id)
        if product is None:
            raise NotFoundError(f"Product '{product_id}' not found in catalog")
        return product
