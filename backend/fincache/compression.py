"""
Compaction of financial records before storage.

Compaction is lossy and one-directional. Essential fields, the ones every
supported valuation needs, survive every tier and are at most rounded.
"""

from dataclasses import dataclass, replace
from typing import Any, Dict, List
import copy
import json
import logging
import math

from .errors import CompressionError

logger = logging.getLogger(__name__)

STATEMENT_KEYS = ('income_statement', 'balance_sheet', 'cash_flow_statement')

# Record-level fields that identify the company and are never dropped
IDENTITY_FIELDS = frozenset({
    'symbol',
    'name',
    'current_price',
    'shares_outstanding',
})

# Statement fields needed to recompute DCF, DDM, NAV and EPV
ESSENTIAL_FIELDS = frozenset({
    'date',
    'revenue',
    'operating_income',
    'net_income',
    'eps',
    'shares_outstanding',
    'total_assets',
    'total_liabilities',
    'total_equity',
    'book_value_per_share',
    'operating_cash_flow',
    'capital_expenditure',
    'free_cash_flow',
    'dividends_paid',
})

# Ratios and totals that can be recomputed from other fields
DERIVED_FIELDS = frozenset({
    'gross_margin',
    'operating_margin',
    'net_margin',
    'return_on_equity',
    'return_on_assets',
    'debt_to_equity_ratio',
    'current_ratio',
    'quick_ratio',
    'price_to_book_ratio',
    'price_to_earnings_ratio',
    'enterprise_value',
    'ev_to_ebitda',
    'ev_to_sales',
    'market_cap',
    'working_capital',
    'net_tangible_assets',
})

RATIO_FIELDS = frozenset({'gross_margin', 'operating_margin', 'net_margin'})

TAX_FIELDS = frozenset({'income_tax_expense', 'effective_tax_rate'})

ASSET_BREAKDOWN_FIELDS = frozenset({
    'current_assets',
    'cash',
    'cash_and_equivalents',
    'marketable_securities',
    'accounts_receivable',
    'inventory',
    'prepaid_expenses',
    'other_current_assets',
    'property_plant_equipment',
    'intangible_assets',
    'goodwill',
    'investments',
    'other_non_current_assets',
})

LIABILITY_BREAKDOWN_FIELDS = frozenset({
    'current_liabilities',
    'accounts_payable',
    'accrued_expenses',
    'short_term_debt',
    'other_current_liabilities',
    'deferred_revenue',
    'long_term_debt',
    'pension_obligations',
    'deferred_tax_liabilities',
    'other_non_current_liabilities',
    'deferred_revenue_non_current',
})

# Tier thresholds on the estimated stored size, in bytes
LIGHT_TIER_MAX_BYTES = 50_000
DEFAULT_TIER_MAX_BYTES = 200_000


@dataclass(frozen=True)
class CompressionConfig:
    """Settings for one compaction pass."""
    max_periods: int = 5
    remove_empty_fields: bool = True
    round_numbers: bool = True
    decimal_places: int = 2
    remove_derived_fields: bool = True


DEFAULT_COMPRESSION_CONFIG = CompressionConfig()

LIGHT_COMPRESSION_CONFIG = replace(
    DEFAULT_COMPRESSION_CONFIG,
    max_periods=10,
    round_numbers=False,
    remove_derived_fields=False,
)

AGGRESSIVE_COMPRESSION_CONFIG = replace(
    DEFAULT_COMPRESSION_CONFIG,
    max_periods=3,
    decimal_places=0,
)


def _is_empty(value: Any) -> bool:
    if value is None or value == '':
        return True
    return isinstance(value, float) and math.isnan(value)


def _process_value(value: Any, config: CompressionConfig) -> Any:
    if config.round_numbers and isinstance(value, float) and not math.isnan(value):
        return round(value, config.decimal_places)
    if isinstance(value, (dict, list)):
        return copy.deepcopy(value)
    return value


def _compress_statement(statement: Dict[str, Any], config: CompressionConfig) -> Dict[str, Any]:
    compressed = {}
    for key, value in statement.items():
        if key in ESSENTIAL_FIELDS:
            compressed[key] = _process_value(value, config)
            continue
        if config.remove_derived_fields and key in DERIVED_FIELDS:
            continue
        if config.remove_empty_fields and _is_empty(value):
            continue
        compressed[key] = _process_value(value, config)
    return compressed


def _compress_statements(statements: List[Dict[str, Any]], config: CompressionConfig) -> List[Dict[str, Any]]:
    if not statements:
        return []
    # Statements are ordered most recent first
    return [_compress_statement(s, config) for s in statements[:config.max_periods]]


def compress_financial_data(record: Dict[str, Any], config: CompressionConfig = DEFAULT_COMPRESSION_CONFIG) -> Dict[str, Any]:
    """
    Compact a record with a single configuration.

    Args:
        record: Company financials (symbol, name, statements, ...)
        config: Compression settings

    Returns:
        A new record; the input is left untouched
    """
    compressed = {}
    for key, value in record.items():
        if key in STATEMENT_KEYS:
            compressed[key] = _compress_statements(value, config)
        elif key in IDENTITY_FIELDS:
            compressed[key] = _process_value(value, config)
        elif config.remove_empty_fields and _is_empty(value):
            continue
        else:
            compressed[key] = _process_value(value, config)

    return compressed


def selective_compress(
    record: Dict[str, Any],
    remove_ratios: bool = False,
    remove_asset_breakdown: bool = False,
    remove_liability_breakdown: bool = False,
    remove_tax_fields: bool = False,
    core_income_only: bool = False,
) -> Dict[str, Any]:
    """Drop whole field categories, keeping totals and essentials."""
    income_drop = set()
    if remove_ratios:
        income_drop |= RATIO_FIELDS
    if remove_tax_fields:
        income_drop |= TAX_FIELDS

    balance_drop = set()
    if remove_asset_breakdown:
        balance_drop |= ASSET_BREAKDOWN_FIELDS
    if remove_liability_breakdown:
        balance_drop |= LIABILITY_BREAKDOWN_FIELDS

    def strip(statement, drop):
        return {
            k: copy.deepcopy(v) for k, v in statement.items()
            if k in ESSENTIAL_FIELDS or k not in drop
        }

    compressed = {}
    for key, value in record.items():
        if key == 'income_statement':
            if core_income_only:
                compressed[key] = [
                    {k: v for k, v in s.items() if k in ESSENTIAL_FIELDS} for s in value or []
                ]
            else:
                compressed[key] = [strip(s, income_drop) for s in value or []]
        elif key == 'balance_sheet':
            compressed[key] = [strip(s, balance_drop) for s in value or []]
        else:
            compressed[key] = copy.deepcopy(value)
    return compressed


def estimate_storage_size(record: Dict[str, Any]) -> float:
    """Estimated stored size in bytes (JSON length times ~1.5 bytes per char)."""
    return len(json.dumps(record, default=str)) * 1.5


def calculate_compression_ratio(original: Dict[str, Any], compressed: Dict[str, Any]) -> int:
    """Percentage of size saved by compaction."""
    original_size = len(json.dumps(original, default=str))
    if original_size == 0:
        return 0
    compressed_size = len(json.dumps(compressed, default=str))
    return round((1 - compressed_size / original_size) * 100)


def smart_compress(record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Compact a record with a tier chosen by its estimated size.

    Raises:
        CompressionError: If the record cannot be compacted
    """
    try:
        size = estimate_storage_size(record)

        if size < LIGHT_TIER_MAX_BYTES:
            tier = 'light'
            compressed = compress_financial_data(record, LIGHT_COMPRESSION_CONFIG)
        elif size < DEFAULT_TIER_MAX_BYTES:
            tier = 'default'
            compressed = compress_financial_data(record, DEFAULT_COMPRESSION_CONFIG)
        else:
            tier = 'aggressive'
            compressed = selective_compress(
                compress_financial_data(record, AGGRESSIVE_COMPRESSION_CONFIG),
                remove_ratios=True,
                remove_asset_breakdown=True,
                remove_liability_breakdown=True,
                remove_tax_fields=True,
            )
    except Exception as e:
        raise CompressionError(f"Could not compress {record.get('symbol')}: {e}") from e

    logger.debug(
        f"Compressed {record.get('symbol')} with {tier} tier "
        f"({calculate_compression_ratio(record, compressed)}% smaller)"
    )
    return compressed


def validate_compression(original: Dict[str, Any], compressed: Dict[str, Any]) -> Dict[str, Any]:
    """
    Check that compaction kept what downstream calculations rely on.

    Returns:
        Dict with 'valid' flag and list of 'issues'
    """
    issues = []

    if compressed.get('symbol') != original.get('symbol'):
        issues.append('Symbol mismatch after compression')

    for key in STATEMENT_KEYS:
        if original.get(key) and not compressed.get(key):
            issues.append(f'{key} completely removed')

    for key in STATEMENT_KEYS:
        for before, after in zip(original.get(key) or [], compressed.get(key) or []):
            missing = [f for f in ESSENTIAL_FIELDS if f in before and f not in after]
            if missing:
                issues.append(f'{key} lost essential fields: {", ".join(sorted(missing))}')
                break

    if original.get('income_statement') and compressed.get('income_statement'):
        if original['income_statement'][0].get('date') != compressed['income_statement'][0].get('date'):
            issues.append('Latest income statement date changed')

    return {'valid': len(issues) == 0, 'issues': issues}
