"""
Price Resolver - Resolves unit and total prices for (product, quantity, price book).

Resolution order:
1. Scan price tiers (ascending min_quantity) for the first inclusive match
2. UNIT_PRICE tier → tier price per unit; FLAT_PRICE tier → tier price / quantity
3. No matching tier → price book list price
4. Active contract: product fixed price replaces the result, otherwise the
   contract-wide percent discount is applied on top
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional

from .errors import NotFoundError
from .models import (
    Contract,
    PriceBookEntry,
    PriceTier,
    TierType,
    TraceStep,
    format_trace,
)
from .money import HUNDRED, round_money, to_date

logger = logging.getLogger(__name__)


@dataclass
class ContractOverride:
    """Details of a contract price that replaced the tier/list price."""
    contract_id: str
    price_type: str  # "fixed" or "percentage"
    original_price: Decimal
    discount_percent: Optional[Decimal] = None


@dataclass
class PriceResolution:
    """Result of resolving one product at one quantity."""
    product_id: str
    quantity: int
    list_price: Decimal
    unit_price: Decimal
    total_price: Decimal
    tier_applied: bool = False
    tier: Optional[PriceTier] = None
    contract_override: Optional[ContractOverride] = None
    cost: Optional[Decimal] = None
    margin: Optional[Decimal] = None
    trace: list[TraceStep] = field(default_factory=list)

    @property
    def contract_applied(self) -> bool:
        return self.contract_override is not None

    def add_trace(self, step: str, description: str, value: str = None):
        self.trace.append(TraceStep(step=step, description=description, value=value))

    def get_trace_text(self) -> str:
        return format_trace(self.trace, "→")


class PriceResolver:
    """
    Resolves prices from a price book entry, its tiers and an optional contract.

    Tier ordering is trusted, not validated: the first matching tier wins.
    Quantity must already be validated >= 1 by the caller.
    """

    @staticmethod
    def find_tier(tiers: list[PriceTier], quantity: int) -> Optional[PriceTier]:
        """Return the first tier whose inclusive range contains quantity."""
        for tier in tiers:
            if tier.matches(quantity):
                return tier
        return None

    def lookup(
        self,
        entries: dict[str, PriceBookEntry],
        product_id: str,
        quantity: int,
        contract: Optional[Contract] = None,
        as_of: Optional[date] = None
    ) -> PriceResolution:
        """Resolve a product from a price book; a missing entry is fatal for the line."""
        entry = entries.get(product_id)
        if entry is None:
            raise NotFoundError(f"Product '{product_id}' is not in the price book")
        return self.resolve(entry, quantity, contract=contract, as_of=as_of)

    def resolve(
        self,
        entry: PriceBookEntry,
        quantity: int,
        contract: Optional[Contract] = None,
        as_of: Optional[date] = None
    ) -> PriceResolution:
        """Resolve unit price, total price, tier and contract details."""
        as_of = to_date(as_of) or date.today()

        result = PriceResolution(
            product_id=entry.product_id,
            quantity=quantity,
            list_price=entry.list_price,
            unit_price=entry.list_price,
            total_price=entry.list_price * quantity,
            cost=entry.cost,
        )
        result.add_trace("Price Book", "List price", f"${entry.list_price:.2f}")

        tier = self.find_tier(entry.tiers, quantity)
        if tier is not None:
            result.tier_applied = True
            result.tier = tier
            range_text = f"{tier.min_quantity}-{tier.max_quantity if tier.max_quantity is not None else '∞'}"
            if tier.tier_type == TierType.UNIT_PRICE:
                result.unit_price = tier.tier_price
                result.add_trace("Tier", f"Unit price tier {range_text}", f"${tier.tier_price:.2f}")
            else:
                # Flat tier price is the total for any quantity in range
                result.unit_price = tier.tier_price / quantity
                result.add_trace("Tier", f"Flat price tier {range_text}", f"${tier.tier_price:.2f} total")
            logger.debug("Product %s qty %s matched tier %s", entry.product_id, quantity, range_text)
        else:
            result.add_trace("Tier", "No tier matched, using list price", None)

        if contract is not None and contract.is_applicable(as_of):
            self._apply_contract(result, contract)

        if result.tier_applied and result.tier.tier_type == TierType.FLAT_PRICE and not result.contract_applied:
            result.total_price = result.tier.tier_price
        else:
            result.total_price = result.unit_price * quantity
        result.add_trace("Extension", f"Quantity {quantity}", f"${result.total_price:.2f}")

        if result.cost is not None and result.unit_price != 0:
            result.margin = round_money((result.unit_price - result.cost) / result.unit_price * HUNDRED)

        return result

    def _apply_contract(self, result: PriceResolution, contract: Contract):
        """Apply a contract fixed price or contract-wide percent discount."""
        original = result.unit_price
        fixed_price = contract.fixed_price_for(result.product_id)

        if fixed_price is not None:
            result.unit_price = fixed_price
            result.contract_override = ContractOverride(
                contract_id=contract.id,
                price_type="fixed",
                original_price=original,
            )
            result.add_trace("Contract", f"{contract.name} fixed price", f"${fixed_price:.2f}")
        elif contract.discount_percent:
            pct = contract.discount_percent
            result.unit_price = original * (1 - pct / HUNDRED)
            result.contract_override = ContractOverride(
                contract_id=contract.id,
                price_type="percentage",
                original_price=original,
                discount_percent=pct,
            )
            result.add_trace(
                "Contract",
                f"{contract.name} {pct}% off: ${original:.2f} → ${result.unit_price:.2f}",
                f"${result.unit_price:.2f}"
            )

        if result.contract_override is not None:
            logger.debug(
                "Contract %s override (%s) for product %s",
                contract.id, result.contract_override.price_type, result.product_id
            )
