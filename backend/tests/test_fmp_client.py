"""
Tests for the Financial Modeling Prep record source.

Run with: python -m pytest tests/test_fmp_client.py
From the backend directory.
"""

import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
import requests

from fmp_client import FMPApiError, FMPClient
from fincache.errors import FetchError


class FakeResponse:
    def __init__(self, payload, status_code=200, text=''):
        self.payload = payload
        self.status_code = status_code
        self.text = text

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeSession:
    """Serves canned payloads keyed by endpoint path."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def get(self, url, params=None, timeout=None):
        self.requests.append((url, params, timeout))
        path = url.split('/api/v3/', 1)[1]
        route = self.routes[path]
        if isinstance(route, Exception):
            raise route
        return route


PROFILE = [{'symbol': 'AAPL', 'companyName': 'Apple Inc.', 'price': 190.0, 'mktCap': 1900.0}]
INCOME = [
    {'date': '2022-09-24', 'revenue': 394328, 'netIncome': 99803, 'eps': 6.15, 'operatingIncome': 119437},
    {'date': '2023-09-30', 'revenue': 383285, 'netIncome': 96995, 'eps': 6.16, 'operatingIncome': None},
]
BALANCE = [{
    'date': '2023-09-30', 'totalAssets': 1000, 'totalLiabilities': 600,
    'totalStockholdersEquity': 400, 'commonStock': 100, 'goodwill': 50, 'intangibleAssets': 25,
    'totalCurrentAssets': 300, 'totalCurrentLiabilities': 200,
}]
CASH_FLOW = [{
    'date': '2023-09-30', 'netCashProvidedByOperatingActivities': 110,
    'capitalExpenditure': -11, 'freeCashFlow': 99, 'dividendsPaid': -15,
}]


def make_client(**overrides):
    routes = {
        'profile/AAPL': FakeResponse(PROFILE),
        'income-statement/AAPL': FakeResponse(INCOME),
        'balance-sheet-statement/AAPL': FakeResponse(BALANCE),
        'cash-flow-statement/AAPL': FakeResponse(CASH_FLOW),
    }
    routes.update(overrides)
    session = FakeSession(routes)
    client = FMPClient(
        api_key='test-key',
        base_url='https://financialmodelingprep.com/api/v3/',
        timeout=5,
        session=session,
    )
    return client, session


def test_fetch_company_financials_normalizes_record():
    client, session = make_client()
    record = client.fetch_company_financials('aapl')

    assert record['symbol'] == 'AAPL'
    assert record['name'] == 'Apple Inc.'
    assert record['current_price'] == 190.0
    # Derived from market cap when the profile has no share count
    assert record['shares_outstanding'] == 10.0
    assert [s['date'] for s in record['income_statement']] == ['2023-09-30', '2022-09-24']
    assert record['income_statement'][0]['operating_income'] == 0
    assert record['income_statement'][0]['net_income'] == 96995

    url, params, timeout = session.requests[0]
    assert url == 'https://financialmodelingprep.com/api/v3/profile/AAPL'
    assert params == {'apikey': 'test-key'}
    assert timeout == 5
    assert session.requests[1][1] == {'limit': 10, 'apikey': 'test-key'}


def test_balance_sheet_derived_fields():
    client, _ = make_client()
    sheet = client.get_balance_sheet('AAPL')[0]

    assert sheet['book_value_per_share'] == 4.0
    assert sheet['tangible_book_value'] == 325
    assert sheet['working_capital'] == 100
    assert sheet['net_tangible_assets'] == 325


def test_cash_flow_outflows_are_positive():
    client, _ = make_client()
    flow = client.get_cash_flow_statement('AAPL')[0]
    assert flow['capital_expenditure'] == 11
    assert flow['dividends_paid'] == 15


def test_http_error_carries_status_code():
    client, _ = make_client(**{'profile/AAPL': FakeResponse(None, status_code=429, text='Limit Reach')})

    with pytest.raises(FMPApiError) as exc_info:
        client.fetch_company_financials('AAPL')

    assert exc_info.value.status_code == 429
    assert exc_info.value.symbol == 'AAPL'
    assert '429' in str(exc_info.value)
    assert isinstance(exc_info.value, FetchError)


def test_network_error_is_wrapped():
    client, _ = make_client(**{'profile/AAPL': requests.ConnectionError('refused')})
    with pytest.raises(FMPApiError, match='Network error for AAPL'):
        client.get_company_profile('AAPL')


def test_error_payload_is_raised():
    client, _ = make_client(**{'profile/AAPL': FakeResponse({'Error Message': 'Invalid API KEY.'})})
    with pytest.raises(FMPApiError, match='Invalid API KEY'):
        client.get_company_profile('AAPL')


def test_invalid_json_is_raised():
    client, _ = make_client(**{'profile/AAPL': FakeResponse(ValueError('Expecting value'))})
    with pytest.raises(FMPApiError, match='Invalid response'):
        client.get_company_profile('AAPL')


@pytest.mark.parametrize('payload', [[], [{'symbol': 'AAPL'}]])
def test_missing_profile_is_raised(payload):
    client, _ = make_client(**{'profile/AAPL': FakeResponse(payload)})
    with pytest.raises(FMPApiError):
        client.get_company_profile('AAPL')


def test_empty_statements():
    client, _ = make_client(**{'income-statement/AAPL': FakeResponse([])})
    assert client.get_income_statement('AAPL') == []
