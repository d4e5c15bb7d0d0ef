"""
Snapshot Loader - Builds a CatalogSnapshot from CSV exports.

Expected files under data_dir (any may be absent):
    products.csv, price_book_entries.csv, price_tiers.csv, discounts.csv,
    discount_tiers.csv, tax_rates.csv, customers.csv, contracts.csv,
    contract_prices.csv, compiled_rules.json
"""
import logging
from decimal import Decimal
from pathlib import Path
from typing import Callable, Optional

import pandas as pd

from ..engine.errors import NotFoundError, ValidationError
from ..engine.models import (
    BillingFrequency,
    CatalogSnapshot,
    Contract,
    ContractPriceEntry,
    ContractStatus,
    Customer,
    Discount,
    DiscountScope,
    DiscountTier,
    DiscountType,
    PriceBookEntry,
    PriceTier,
    Product,
    ProductType,
    TaxRate,
    TierType,
)
from ..engine.money import to_date
from ..rules.compile_rules import load_compiled_rules

logger = logging.getLogger(__name__)


def _opt(value) -> Optional[str]:
    return value if value != '' else None


def _opt_int(value) -> Optional[int]:
    return int(value) if value != '' else None


def _opt_decimal(value) -> Optional[Decimal]:
    return Decimal(value) if value != '' else None


def _bool(value, default: bool = False) -> bool:
    if value == '':
        return default
    return value.lower() in ('true', '1', 'yes', 'y')


class SnapshotLoader:
    """Reads catalog CSV exports into engine models."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)

    def _load_csv(self, filename: str) -> pd.DataFrame:
        path = self.data_dir / filename
        if path.exists():
            df = pd.read_csv(path, dtype=str).fillna('')
            # Strip all strings and headers
            df.columns = [c.strip() for c in df.columns]
            for col in df.columns:
                df[col] = df[col].astype(str).str.strip()
            return df
        logger.debug("%s not found in %s, skipping", filename, self.data_dir)
        return pd.DataFrame()

    def _rows(self, filename: str, build: Callable[[dict], object]) -> list:
        """Convert each row with build(); bad values raise ValidationError naming the row."""
        df = self._load_csv(filename)
        items = []
        for line_num, row in enumerate(df.to_dict('records'), start=2):
            try:
                items.append(build(row))
            except (KeyError, ValueError, ArithmeticError) as e:
                raise ValidationError(f"{filename} line {line_num}: {e!r}") from e
        return items

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def load_products(self) -> dict[str, Product]:
        def build(row: dict) -> Product:
            categories = row.get('category_ids', '')
            return Product(
                id=row['id'],
                name=row.get('name', '') or row['id'],
                sku=row.get('sku', ''),
                type=ProductType(row.get('type') or 'STANDALONE'),
                is_taxable=_bool(row.get('is_taxable', ''), default=True),
                billing_frequency=BillingFrequency(row.get('billing_frequency') or 'ONE_TIME'),
                custom_billing_months=_opt_int(row.get('custom_billing_months', '')),
                default_term_months=_opt_int(row.get('default_term_months', '')),
                category_ids=[c.strip() for c in categories.split(';') if c.strip()],
            )

        return {p.id: p for p in self._rows('products.csv', build)}

    def load_price_book(self, price_book_id: str) -> dict[str, PriceBookEntry]:
        def build_entry(row: dict) -> PriceBookEntry:
            return PriceBookEntry(
                price_book_id=row['price_book_id'],
                product_id=row['product_id'],
                list_price=Decimal(row['list_price']),
                cost=_opt_decimal(row.get('cost', '')),
            )

        def build_tier(row: dict) -> tuple[str, str, PriceTier]:
            return row['price_book_id'], row['product_id'], PriceTier(
                min_quantity=int(row['min_quantity']),
                max_quantity=_opt_int(row.get('max_quantity', '')),
                tier_price=Decimal(row['tier_price']),
                tier_type=TierType(row.get('tier_type') or 'UNIT_PRICE'),
            )

        entries = {
            e.product_id: e
            for e in self._rows('price_book_entries.csv', build_entry)
            if e.price_book_id == price_book_id
        }
        for book_id, product_id, tier in self._rows('price_tiers.csv', build_tier):
            if book_id == price_book_id and product_id in entries:
                entries[product_id].tiers.append(tier)

        for entry in entries.values():
            entry.tiers.sort(key=lambda t: t.min_quantity)
        return entries

    def load_discounts(self) -> dict[str, Discount]:
        def build(row: dict) -> Discount:
            return Discount(
                id=row['id'],
                name=row.get('name', '') or row['id'],
                type=DiscountType(row['type']),
                scope=DiscountScope(row['scope']),
                value=Decimal(row['value']),
                is_active=_bool(row.get('is_active', ''), default=True),
                stackable=_bool(row.get('stackable', '')),
                priority=_opt_int(row.get('priority', '')) or 100,
                min_quantity=_opt_int(row.get('min_quantity', '')),
                max_quantity=_opt_int(row.get('max_quantity', '')),
                min_order_value=_opt_decimal(row.get('min_order_value', '')),
                valid_from=to_date(row.get('valid_from', '')),
                valid_to=to_date(row.get('valid_to', '')),
                category_id=_opt(row.get('category_id', '')),
            )

        def build_tier(row: dict) -> tuple[str, DiscountTier]:
            return row['discount_id'], DiscountTier(
                tier_number=int(row.get('tier_number') or 0),
                min_quantity=int(row['min_quantity']),
                max_quantity=_opt_int(row.get('max_quantity', '')),
                value=Decimal(row['value']),
            )

        discounts = {d.id: d for d in self._rows('discounts.csv', build)}
        for discount_id, tier in self._rows('discount_tiers.csv', build_tier):
            if discount_id in discounts:
                discounts[discount_id].tiers.append(tier)

        for discount in discounts.values():
            discount.tiers.sort(key=lambda t: t.min_quantity)
        return discounts

    def load_tax_rates(self) -> list[TaxRate]:
        def build(row: dict) -> TaxRate:
            return TaxRate(
                id=row['id'],
                name=row.get('name', '') or row['id'],
                rate=Decimal(row['rate']),
                country=row['country'],
                state=_opt(row.get('state', '')),
                category_id=_opt(row.get('category_id', '')),
                is_active=_bool(row.get('is_active', ''), default=True),
                valid_from=to_date(row.get('valid_from', '')),
                valid_to=to_date(row.get('valid_to', '')),
            )

        return self._rows('tax_rates.csv', build)

    def load_customers(self) -> dict[str, Customer]:
        def build(row: dict) -> Customer:
            return Customer(
                id=row['id'],
                name=row.get('name', ''),
                is_tax_exempt=_bool(row.get('is_tax_exempt', '')),
                tax_exempt_reason=_opt(row.get('tax_exempt_reason', '')),
                tax_exempt_expiry=to_date(row.get('tax_exempt_expiry', '')),
                country=_opt(row.get('country', '')),
                state=_opt(row.get('state', '')),
            )

        return {c.id: c for c in self._rows('customers.csv', build)}

    def load_contracts(self) -> dict[str, Contract]:
        def build(row: dict) -> Contract:
            return Contract(
                id=row['id'],
                name=row.get('name', '') or row['id'],
                status=ContractStatus(row.get('status') or 'DRAFT'),
                start_date=to_date(row['start_date']),
                end_date=to_date(row['end_date']),
                customer_id=_opt(row.get('customer_id', '')),
                discount_percent=_opt_decimal(row.get('discount_percent', '')),
            )

        def build_price(row: dict) -> tuple[str, ContractPriceEntry]:
            return row['contract_id'], ContractPriceEntry(
                product_id=row['product_id'],
                fixed_price=Decimal(row['fixed_price']),
            )

        contracts = {c.id: c for c in self._rows('contracts.csv', build)}
        for contract_id, price in self._rows('contract_prices.csv', build_price):
            if contract_id in contracts:
                contracts[contract_id].price_entries.append(price)
        return contracts

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def load(
        self,
        price_book_id: str,
        customer_id: Optional[str] = None,
        contract_id: Optional[str] = None
    ) -> CatalogSnapshot:
        """
        Load everything one quote calculation needs.

        Without an explicit contract_id, the customer's first ACTIVE
        contract (if any) is used.
        """
        customer = None
        if customer_id:
            customer = self.load_customers().get(customer_id)
            if customer is None:
                raise NotFoundError(f"Customer '{customer_id}' not found in {self.data_dir}")

        contracts = self.load_contracts()
        contract = None
        if contract_id:
            contract = contracts.get(contract_id)
            if contract is None:
                raise NotFoundError(f"Contract '{contract_id}' not found in {self.data_dir}")
        elif customer_id:
            contract = next(
                (c for c in contracts.values()
                 if c.customer_id == customer_id and c.status == ContractStatus.ACTIVE),
                None
            )

        snapshot = CatalogSnapshot(
            price_book_id=price_book_id,
            entries=self.load_price_book(price_book_id),
            products=self.load_products(),
            discounts=self.load_discounts(),
            tax_rates=self.load_tax_rates(),
            rules=load_compiled_rules(self.data_dir / 'compiled_rules.json'),
            customer=customer,
            contract=contract,
        )
        logger.info(
            "Loaded snapshot for price book %s: %d entries, %d products, %d discounts, %d rules",
            price_book_id, len(snapshot.entries), len(snapshot.products),
            len(snapshot.discounts), len(snapshot.rules)
        )
        return snapshot


def load_catalog(
    data_dir: Path,
    price_book_id: str,
    customer_id: Optional[str] = None,
    contract_id: Optional[str] = None
) -> CatalogSnapshot:
    return SnapshotLoader(data_dir).load(price_book_id, customer_id=customer_id, contract_id=contract_id)
