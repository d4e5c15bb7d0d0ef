"""Engine subpackage - pricing, discount, tax and rule evaluation."""
from .discount_engine import DiscountEngine, calculate_discounts
from .errors import CPQError, NotFoundError, PreconditionError, ValidationError
from .models import CatalogSnapshot, Quote, QuoteLineItem
from .price_resolver import PriceResolver
from .quote_aggregator import CalculationResult, QuoteAggregator
from .rule_engine import evaluate_rules
from .tax_engine import TaxEngine

__all__ = [
    'PriceResolver', 'DiscountEngine', 'TaxEngine', 'QuoteAggregator', 'evaluate_rules', 'calculate_discounts',
    'CatalogSnapshot', 'Quote', 'QuoteLineItem', 'CalculationResult',
    'CPQError', 'ValidationError', 'NotFoundError', 'PreconditionError',
]
