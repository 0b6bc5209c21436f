"""Financial Modeling Prep client used as the cache's record source."""

from typing import Dict, List, Optional
import logging

import requests

from config import Config
from fincache.errors import FetchError

logger = logging.getLogger(__name__)

# Annual periods requested per statement
DEFAULT_YEARS = 10


class FMPApiError(FetchError):
    """Financial Modeling Prep rejected the request or was unreachable."""


def _num(value, default=0):
    return value if value is not None else default


class FMPClient:
    """
    Fetches company financials from Financial Modeling Prep.

    Responses are normalized into the snake_case record shape stored by the
    cache, with statements ordered most recent first.
    """

    def __init__(
        self,
        api_key: str = None,
        base_url: str = None,
        timeout: float = None,
        session: requests.Session = None
    ):
        self.api_key = api_key if api_key is not None else Config.FMP_API_KEY
        self.base_url = (base_url or Config.FMP_BASE_URL).rstrip('/')
        self.timeout = timeout if timeout is not None else Config.FMP_TIMEOUT
        self.session = session or requests.Session()

    def _get(self, symbol: str, path: str, params: Optional[Dict] = None):
        url = f"{self.base_url}/{path}"
        query = dict(params or {})
        query['apikey'] = self.api_key

        logger.debug(f"FMP request: {url}")
        try:
            response = self.session.get(url, params=query, timeout=self.timeout)
        except requests.RequestException as e:
            raise FMPApiError(symbol, f"Network error for {symbol}: {e}") from e

        if response.status_code != 200:
            raise FMPApiError(
                symbol,
                f"API error for {symbol}: {response.status_code} - {response.text}",
                status_code=response.status_code
            )

        try:
            data = response.json()
        except ValueError as e:
            raise FMPApiError(symbol, f"Invalid response for {symbol}: {e}") from e

        if isinstance(data, dict):
            message = data.get('error') or data.get('Error Message')
            if message:
                raise FMPApiError(symbol, message)
        return data

    def get_company_profile(self, symbol: str) -> Dict:
        data = self._get(symbol, f"profile/{symbol}")
        if not data:
            raise FMPApiError(symbol, f"Company profile not found for symbol: {symbol}")

        profile = data[0]
        if not profile.get('symbol') or not profile.get('companyName'):
            raise FMPApiError(symbol, f"Invalid company data received for symbol: {symbol}")

        price = _num(profile.get('price'))
        shares = profile.get('sharesOutstanding')
        if not shares and profile.get('mktCap') and price:
            shares = profile['mktCap'] / price

        return {
            'symbol': profile['symbol'],
            'name': profile['companyName'],
            'current_price': price,
            'shares_outstanding': _num(shares),
        }

    def get_income_statement(self, symbol: str, years: int = DEFAULT_YEARS) -> List[Dict]:
        data = self._get(symbol, f"income-statement/{symbol}", {'limit': years})
        return [
            {
                'date': item.get('date'),
                'revenue': _num(item.get('revenue')),
                'operating_income': _num(item.get('operatingIncome')),
                'net_income': _num(item.get('netIncome')),
                'eps': _num(item.get('eps')),
                'shares_outstanding': _num(item.get('weightedAverageShsOut')),
                'income_tax_expense': item.get('incomeTaxExpense'),
            }
            for item in data or []
        ]

    def get_balance_sheet(self, symbol: str, years: int = DEFAULT_YEARS) -> List[Dict]:
        data = self._get(symbol, f"balance-sheet-statement/{symbol}", {'limit': years})

        statements = []
        for item in data or []:
            total_equity = _num(item.get('totalStockholdersEquity'))
            total_assets = _num(item.get('totalAssets'))
            total_liabilities = _num(item.get('totalLiabilities'))
            shares = item.get('commonStock') or 1
            goodwill = _num(item.get('goodwill'))
            intangibles = _num(item.get('intangibleAssets'))

            statements.append({
                'date': item.get('date'),
                'total_assets': total_assets,
                'total_liabilities': total_liabilities,
                'total_equity': total_equity,
                'book_value_per_share': total_equity / shares,

                'current_assets': item.get('totalCurrentAssets'),
                'cash': item.get('cashAndCashEquivalents'),
                'cash_and_equivalents': item.get('cashAndShortTermInvestments') or item.get('cashAndCashEquivalents'),
                'marketable_securities': item.get('shortTermInvestments'),
                'accounts_receivable': item.get('netReceivables'),
                'inventory': item.get('inventory'),
                'other_current_assets': item.get('otherCurrentAssets'),
                'property_plant_equipment': item.get('propertyPlantEquipmentNet'),
                'intangible_assets': intangibles,
                'goodwill': goodwill,
                'investments': item.get('longTermInvestments'),
                'other_non_current_assets': item.get('otherNonCurrentAssets'),

                'current_liabilities': item.get('totalCurrentLiabilities'),
                'accounts_payable': item.get('accountPayables'),
                'short_term_debt': item.get('shortTermDebt'),
                'other_current_liabilities': item.get('otherCurrentLiabilities'),
                'deferred_revenue': item.get('deferredRevenue'),
                'long_term_debt': item.get('longTermDebt'),
                'deferred_tax_liabilities': item.get('deferredTaxLiabilitiesNonCurrent'),
                'other_non_current_liabilities': item.get('otherNonCurrentLiabilities'),
                'deferred_revenue_non_current': item.get('deferredRevenueNonCurrent'),

                'tangible_book_value': total_equity - goodwill - intangibles,
                'working_capital': _num(item.get('totalCurrentAssets')) - _num(item.get('totalCurrentLiabilities')),
                'net_tangible_assets': total_assets - goodwill - intangibles - total_liabilities,
            })
        return statements

    def get_cash_flow_statement(self, symbol: str, years: int = DEFAULT_YEARS) -> List[Dict]:
        data = self._get(symbol, f"cash-flow-statement/{symbol}", {'limit': years})
        return [
            {
                'date': item.get('date'),
                'operating_cash_flow': _num(item.get('netCashProvidedByOperatingActivities')),
                'capital_expenditure': abs(_num(item.get('capitalExpenditure'))),
                'free_cash_flow': _num(item.get('freeCashFlow')),
                'dividends_paid': abs(_num(item.get('dividendsPaid'))),
            }
            for item in data or []
        ]

    def fetch_company_financials(self, symbol: str) -> Dict:
        """
        Fetch profile and the three annual statements for one company.

        Args:
            symbol: Stock symbol (e.g., 'AAPL')

        Returns:
            Record dict with symbol, name, current_price, shares_outstanding
            and income_statement, balance_sheet, cash_flow_statement lists

        Raises:
            FMPApiError: On HTTP, network or payload errors
        """
        symbol = symbol.upper()
        profile = self.get_company_profile(symbol)

        def most_recent_first(statements):
            return sorted(statements, key=lambda s: s.get('date') or '', reverse=True)

        record = dict(profile)
        record['income_statement'] = most_recent_first(self.get_income_statement(symbol))
        record['balance_sheet'] = most_recent_first(self.get_balance_sheet(symbol))
        record['cash_flow_statement'] = most_recent_first(self.get_cash_flow_statement(symbol))

        logger.info(
            f"Fetched {symbol} financials: {len(record['income_statement'])} income statements"
        )
        return record
