"""
Publication cadence detection for financial statements.

Estimates when a company will publish its next report from the dates of the
statements it has already filed. The estimate is stored with each cache entry
and lets the staleness policy expire an entry as soon as a new report is
likely out, even when its TTL has not elapsed.
"""

from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional
import logging

import numpy as np
import pandas as pd

from .errors import DetectionError
from .models import CadenceAnalysis

logger = logging.getLogger(__name__)

STATEMENT_KEYS = ('income_statement', 'balance_sheet', 'cash_flow_statement')

# Days between quarter end and the expected filing
REPORT_DELAYS = {1: 45, 2: 45, 3: 45, 4: 90}

QUARTERLY_MIN_DAYS = 80
QUARTERLY_MAX_DAYS = 100
QUARTERLY_SHARE = 0.75
RECENT_DAYS = 120
MAX_INTERVAL_STD_DAYS = 30


def quarter_of(day) -> int:
    """Return the calendar quarter (1-4) of a date."""
    return (day.month - 1) // 3 + 1


def quarter_end(quarter: int, year: int) -> datetime:
    """Last day of the given quarter."""
    end = pd.Timestamp(year=year, month=quarter * 3, day=1) + pd.offsets.MonthEnd(0)
    return end.to_pydatetime()


def _parse_dates(dates: Iterable) -> pd.Series:
    parsed = pd.to_datetime(pd.Series(list(dates), dtype=object), errors='coerce')
    return parsed.dropna().drop_duplicates().sort_values().reset_index(drop=True)


def _intervals(parsed: pd.Series) -> np.ndarray:
    deltas = parsed.diff().dropna()
    return np.round(deltas.dt.total_seconds().to_numpy() / 86400.0)


def is_quarterly_pattern(intervals) -> bool:
    """True when most intervals between filings are roughly three months."""
    if len(intervals) < 2:
        return False
    intervals = np.asarray(intervals)
    quarterly = (intervals >= QUARTERLY_MIN_DAYS) & (intervals <= QUARTERLY_MAX_DAYS)
    return quarterly.sum() / len(intervals) >= QUARTERLY_SHARE


def confidence_level(dates: List, now: datetime = None) -> float:
    """
    Score how far the filing history can be trusted for an estimate.

    Args:
        dates: Statement dates (strings or dates), any order
        now: Reference time (defaults to now)

    Returns:
        Confidence between 0 and 1
    """
    if len(dates) == 0:
        return 0.0
    if len(dates) == 1:
        return 0.3

    parsed = _parse_dates(dates)
    if len(parsed) < 2:
        return 0.2

    now = now or datetime.now()
    intervals = _intervals(parsed)
    confidence = 0.5

    if len(parsed) >= 4:
        confidence += 0.2
    if len(parsed) >= 8:
        confidence += 0.1
    if is_quarterly_pattern(intervals):
        confidence += 0.2
    if len(intervals) > 0 and float(np.std(intervals)) > MAX_INTERVAL_STD_DAYS:
        confidence -= 0.2

    days_since_recent = (pd.Timestamp(now) - parsed.iloc[-1]).total_seconds() / 86400.0
    if days_since_recent <= RECENT_DAYS:
        confidence += 0.1

    return max(0.0, min(1.0, round(confidence, 4)))


def estimate_next_publication(last_date: datetime, quarterly: bool) -> datetime:
    """
    Estimate the next filing after ``last_date``.

    With a confirmed quarterly pattern the estimate is the end of the next
    quarter plus the usual reporting delay; otherwise three months out.
    """
    if not quarterly:
        return (pd.Timestamp(last_date) + pd.DateOffset(months=3)).to_pydatetime()

    quarter = quarter_of(last_date)
    year = last_date.year
    if quarter == 4:
        next_quarter, year = 1, year + 1
    else:
        next_quarter = quarter + 1

    return quarter_end(next_quarter, year) + timedelta(days=REPORT_DELAYS[next_quarter])


def statement_dates(record: dict) -> List[str]:
    """Collect the statement dates of a record, de-duplicated."""
    dates = []
    for key in STATEMENT_KEYS:
        for statement in record.get(key) or []:
            value = statement.get('date')
            if value:
                dates.append(value)
    return sorted(set(dates))


def analyze_filing_dates(dates: List, now: datetime = None) -> CadenceAnalysis:
    """Detect the filing cadence and estimate the next publication."""
    parsed = _parse_dates(dates)
    if len(parsed) == 0:
        return CadenceAnalysis()

    last = parsed.iloc[-1].to_pydatetime()
    confidence = confidence_level(dates, now)
    quarterly = bool(len(parsed) > 1 and is_quarterly_pattern(_intervals(parsed)))

    return CadenceAnalysis(
        confidence=confidence,
        next_publication_estimate=estimate_next_publication(last, quarterly),
        last_publication_date=last,
        quarterly_pattern=quarterly,
        method='pattern',
    )


def analyze_cadence(record: dict, now: datetime = None) -> CadenceAnalysis:
    """
    Analyze a fetched record's filing history.

    Raises:
        DetectionError: If the record cannot be analyzed
    """
    try:
        return analyze_filing_dates(statement_dates(record), now)
    except Exception as e:
        symbol = record.get('symbol') if isinstance(record, dict) else None
        raise DetectionError(f"Cadence detection failed for {symbol}: {e}") from e


def is_earnings_season(day: Optional[date] = None) -> bool:
    """True between 15 and 60 days after the most recent quarter end."""
    day = day or datetime.now()
    if not isinstance(day, datetime):
        day = datetime(day.year, day.month, day.day)
    quarter = quarter_of(day)
    if quarter == 1:
        end = quarter_end(4, day.year - 1)
    else:
        end = quarter_end(quarter - 1, day.year)
    return end + timedelta(days=15) <= day <= end + timedelta(days=60)
