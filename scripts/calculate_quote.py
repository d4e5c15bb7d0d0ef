#!/usr/bin/env python
"""
Calculate a quote from CSV exports and print totals with the full trace.

Usage:
    python scripts/calculate_quote.py --price-book PB-STD --customer C-100 SKU-1=5 SKU-2=1
    python scripts/calculate_quote.py --price-book PB-STD --json PROD-1=10
"""
import argparse
import json
import sys
from pathlib import Path

# Add src to path
src_path = Path(__file__).parent.parent / 'src'
sys.path.insert(0, str(src_path))

from cpq_engine.config.settings import configure_logging, get_settings
from cpq_engine.data.snapshot_loader import load_catalog
from cpq_engine.engine.errors import CPQError
from cpq_engine.engine.models import Quote, RuleTrigger
from cpq_engine.services.quote_service import QuoteService


def parse_items(values: list[str]) -> dict[str, int]:
    """Parse PRODUCT=QTY arguments; a bare PRODUCT means quantity 1."""
    items = {}
    for value in values:
        product_id, _, qty = value.partition('=')
        items[product_id.strip()] = int(qty) if qty else 1
    return items


def main():
    parser = argparse.ArgumentParser(description="Calculate a CPQ quote from catalog CSV exports")
    parser.add_argument('items', nargs='+', help="PRODUCT_ID=QUANTITY pairs")
    parser.add_argument('--price-book', required=True)
    parser.add_argument('--customer')
    parser.add_argument('--contract')
    parser.add_argument('--data-dir', type=Path)
    parser.add_argument('--trigger', choices=[t.value for t in RuleTrigger],
                        help="Rule trigger for the recompute (default: settings.default_trigger)")
    parser.add_argument('--submit', action='store_true', help="Submit the quote after calculating")
    parser.add_argument('--json', action='store_true', help="Print the result as JSON")
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings)
    data_dir = args.data_dir or settings.data_dir

    try:
        catalog = load_catalog(data_dir, args.price_book, customer_id=args.customer, contract_id=args.contract)
        quote = Quote(id="Q-CLI", price_book_id=args.price_book, customer_id=args.customer)
        service = QuoteService(
            catalog,
            default_term_months=settings.default_term_months,
            default_trigger=args.trigger or settings.default_trigger,
        )

        for product_id, qty in parse_items(args.items).items():
            service.add_product(quote, product_id, qty)

        result = service.submit(quote) if args.submit else service.recalculate(quote)
    except CPQError as e:
        print(f"❌ {e}")
        sys.exit(1)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return

    print("=" * 60)
    print(f"QUOTE {quote.id}  ({quote.status.value})")
    print("=" * 60)
    for line in result.lines:
        print(f"\n{line.product_id} x{line.quantity}: ${line.net_price:.2f}")
        print(line.get_trace_text())

    print()
    print(result.get_trace_text())
    print()
    print(f"  Subtotal:  ${result.subtotal:.2f}")
    print(f"  Discounts: ${result.discount_total:.2f}")
    print(f"  Tax:       ${result.tax_amount:.2f}")
    print(f"  Total:     ${result.total:.2f}")
    print(f"  MRR / ARR / TCV: ${result.recurring.mrr:.2f} / ${result.recurring.arr:.2f} / ${result.recurring.tcv:.2f}")

    if result.requires_approval:
        print("\nApproval required:")
        for reason in result.approval_reasons:
            print(f"  - {reason}")
    if result.warnings:
        print("\nWarnings:")
        for warning in result.warnings:
            print(f"  ⚠️ {warning}")


if __name__ == "__main__":
    main()
