"""
Tests for record compaction.

Run with: python -m pytest tests/test_compression.py
From the backend directory.
"""

import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import copy

import pytest

from fincache.compression import (
    AGGRESSIVE_COMPRESSION_CONFIG,
    ESSENTIAL_FIELDS,
    calculate_compression_ratio,
    compress_financial_data,
    estimate_storage_size,
    selective_compress,
    smart_compress,
    validate_compression,
)
from fincache.errors import CompressionError


def make_record(periods=12, padding=0):
    """Record with `periods` annual statements, most recent first."""
    income, balance, cash_flow = [], [], []
    for i in range(periods):
        year = 2023 - i
        income.append({
            'date': f'{year}-09-30',
            'revenue': 383285000000.123 - i,
            'operating_income': 114301000000.456,
            'net_income': 96995000000.789,
            'eps': 6.137,
            'shares_outstanding': 15744231000.0,
            'gross_margin': 0.4413,
            'income_tax_expense': 16741000000.0,
            'notes': 'x' * padding,
            'segment': None,
        })
        balance.append({
            'date': f'{year}-09-30',
            'total_assets': 352583000000.0,
            'total_liabilities': 290437000000.0,
            'total_equity': 62146000000.0,
            'book_value_per_share': 3.9473,
            'cash': 29965000000.0,
            'inventory': 6331000000.0,
            'long_term_debt': 95281000000.0,
            'working_capital': -1742000000.0,
        })
        cash_flow.append({
            'date': f'{year}-09-30',
            'operating_cash_flow': 110543000000.0,
            'capital_expenditure': 10959000000.0,
            'free_cash_flow': 99584000000.0,
            'dividends_paid': 15025000000.0,
        })
    return {
        'symbol': 'AAPL',
        'name': 'Apple Inc.',
        'current_price': 189.9876,
        'shares_outstanding': 15550061000.0,
        'income_statement': income,
        'balance_sheet': balance,
        'cash_flow_statement': cash_flow,
    }


def test_light_tier_keeps_ten_periods_unrounded():
    record = make_record(periods=12)
    assert estimate_storage_size(record) < 50_000

    compressed = smart_compress(record)

    assert len(compressed['income_statement']) == 10
    assert compressed['income_statement'][0]['eps'] == 6.137
    assert 'gross_margin' in compressed['income_statement'][0]
    assert 'segment' not in compressed['income_statement'][0]


def test_default_tier_rounds_and_drops_derived_fields():
    record = make_record(periods=12, padding=3000)
    assert 50_000 <= estimate_storage_size(record) < 200_000

    compressed = smart_compress(record)
    latest = compressed['income_statement'][0]

    assert len(compressed['income_statement']) == 5
    assert latest['eps'] == 6.14
    assert 'gross_margin' not in latest
    assert 'working_capital' not in compressed['balance_sheet'][0]


def test_aggressive_tier_reduces_to_totals():
    record = make_record(periods=12, padding=15000)
    assert estimate_storage_size(record) >= 200_000

    compressed = smart_compress(record)
    latest_balance = compressed['balance_sheet'][0]

    assert len(compressed['balance_sheet']) == 3
    assert 'cash' not in latest_balance
    assert 'long_term_debt' not in latest_balance
    assert 'income_tax_expense' not in compressed['income_statement'][0]
    assert latest_balance['total_assets'] == 352583000000.0
    assert compressed['income_statement'][0]['eps'] == 6.0


@pytest.mark.parametrize('padding', [0, 3000, 15000])
def test_essential_fields_survive_every_tier(padding):
    record = make_record(periods=12, padding=padding)
    compressed = smart_compress(record)

    for key in ('symbol', 'name', 'current_price', 'shares_outstanding'):
        assert key in compressed
    for key in ('income_statement', 'balance_sheet', 'cash_flow_statement'):
        for statement in compressed[key]:
            original = next(s for s in record[key] if s['date'] == statement['date'])
            kept = {f for f in original if f in ESSENTIAL_FIELDS}
            assert kept <= set(statement)
    assert validate_compression(record, compressed)['valid']


@pytest.mark.parametrize('padding', [0, 3000, 15000])
def test_smart_compress_is_idempotent(padding):
    once = smart_compress(make_record(periods=12, padding=padding))
    assert smart_compress(once) == once


def test_input_is_not_mutated():
    record = make_record(periods=12, padding=3000)
    snapshot = copy.deepcopy(record)
    smart_compress(record)
    assert record == snapshot


def test_compress_does_not_add_missing_statements():
    record = {'symbol': 'NEW', 'name': 'New Co', 'income_statement': []}
    compressed = compress_financial_data(record)
    assert compressed == {'symbol': 'NEW', 'name': 'New Co', 'income_statement': []}


def test_selective_core_income_only():
    record = make_record(periods=2)
    compressed = selective_compress(record, core_income_only=True)
    assert set(compressed['income_statement'][0]) <= ESSENTIAL_FIELDS
    assert compressed['balance_sheet'] == record['balance_sheet']


def test_aggressive_config_rounds_to_integers():
    compressed = compress_financial_data(make_record(periods=4), AGGRESSIVE_COMPRESSION_CONFIG)
    assert compressed['current_price'] == 190.0
    assert len(compressed['cash_flow_statement']) == 3


def test_compression_ratio():
    record = make_record(periods=12, padding=3000)
    assert calculate_compression_ratio(record, smart_compress(record)) > 0
    assert calculate_compression_ratio({}, {}) >= 0


def test_validate_compression_reports_missing_statement():
    record = make_record(periods=2)
    broken = dict(record, balance_sheet=[])
    result = validate_compression(record, broken)
    assert not result['valid']
    assert 'balance_sheet completely removed' in result['issues']


def test_malformed_record_raises_compression_error():
    with pytest.raises(CompressionError):
        smart_compress({'symbol': 'BAD', 'income_statement': 5})
