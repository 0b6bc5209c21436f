"""
Tests for the staleness policy.

Run with: python -m pytest tests/test_staleness.py
From the backend directory.
"""

import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import datetime, timedelta

from fincache.models import CacheConfig, CacheMetadata, CadenceAnalysis, Freshness
from fincache.staleness import StalenessPolicy

NOW = datetime(2024, 3, 1, 12, 0, 0)


def metadata(age_days=0, ttl_days=90, **hints):
    cached_at = NOW - timedelta(days=age_days)
    return CacheMetadata(cached_at=cached_at, expires_at=cached_at + timedelta(days=ttl_days), **hints)


def test_fresh_within_ttl():
    assert StalenessPolicy().classify(metadata(age_days=10), NOW) is Freshness.FRESH


def test_stale_at_expiry():
    policy = StalenessPolicy()
    assert policy.classify(metadata(age_days=90), NOW) is Freshness.STALE
    assert policy.classify(metadata(age_days=91), NOW) is Freshness.STALE


def test_stale_beyond_max_age_even_with_long_ttl():
    policy = StalenessPolicy(CacheConfig(max_age=timedelta(days=30)))
    entry = metadata(age_days=31, ttl_days=365)
    assert not policy.within_max_age(entry, NOW)
    assert not policy.is_fresh(entry, NOW)


def test_within_max_age_at_100_days():
    assert StalenessPolicy().within_max_age(metadata(age_days=100), NOW)


def test_passed_publication_estimate_overrides_ttl():
    entry = metadata(
        age_days=20,
        next_publication_estimate=NOW - timedelta(days=1),
        publication_confidence=0.8,
    )
    assert StalenessPolicy().classify(entry, NOW) is Freshness.STALE


def test_low_confidence_hints_are_ignored():
    entry = metadata(
        age_days=20,
        next_publication_estimate=NOW - timedelta(days=1),
        publication_confidence=0.3,
    )
    assert StalenessPolicy().classify(entry, NOW) is Freshness.FRESH


def test_future_publication_estimate_keeps_entry_fresh():
    entry = metadata(
        age_days=20,
        next_publication_estimate=NOW + timedelta(days=30),
        publication_confidence=0.9,
    )
    assert StalenessPolicy().is_fresh(entry, NOW)


def test_publication_after_cache_write_is_stale():
    entry = metadata(
        age_days=20,
        last_publication_date=NOW - timedelta(days=5),
        publication_confidence=0.9,
    )
    assert not StalenessPolicy().is_fresh(entry, NOW)


def test_hinted_entries_older_than_publication_window_are_stale():
    policy = StalenessPolicy(CacheConfig(default_ttl=timedelta(days=150)))
    entry = metadata(
        age_days=121,
        ttl_days=150,
        next_publication_estimate=NOW + timedelta(days=10),
        publication_confidence=0.9,
    )
    assert not policy.is_fresh(entry, NOW)


def test_broken_hints_fall_back_to_ttl():
    entry = metadata(age_days=5, publication_confidence=0.9)
    # Not comparable with datetimes; must not raise
    entry.last_publication_date = 'garbage'
    assert StalenessPolicy().is_fresh(entry, NOW)


def test_refresh_ahead_window():
    policy = StalenessPolicy()
    assert policy.needs_refresh_ahead(metadata(age_days=85), NOW)
    assert not policy.needs_refresh_ahead(metadata(age_days=10), NOW)


def test_config_swap_is_picked_up():
    policy = StalenessPolicy()
    entry = metadata(age_days=50, ttl_days=365)
    assert policy.is_fresh(entry, NOW)
    policy.config = CacheConfig(max_age=timedelta(days=40))
    assert not policy.is_fresh(entry, NOW)


def test_compute_ttl_without_cadence_is_default():
    assert StalenessPolicy().compute_ttl(None, NOW) == timedelta(days=90)


def test_compute_ttl_expires_before_next_report():
    cadence = CadenceAnalysis(confidence=0.9, next_publication_estimate=NOW + timedelta(days=40))
    # Outside earnings season: 40 days left, expire 4 days ahead
    ttl = StalenessPolicy().compute_ttl(cadence, NOW)
    assert ttl == timedelta(days=36)


def test_compute_ttl_never_below_one_week():
    cadence = CadenceAnalysis(confidence=0.9, next_publication_estimate=NOW + timedelta(days=3))
    assert StalenessPolicy().compute_ttl(cadence, NOW) == timedelta(days=7)


def test_compute_ttl_capped_in_earnings_season():
    season = datetime(2024, 2, 1)
    assert StalenessPolicy().compute_ttl(CadenceAnalysis(confidence=0.2), season) == timedelta(days=14)


def test_compute_ttl_never_exceeds_max_age():
    policy = StalenessPolicy(CacheConfig(default_ttl=timedelta(days=170), max_age=timedelta(days=180)))
    cadence = CadenceAnalysis(confidence=0.9, quarterly_pattern=True)
    assert policy.compute_ttl(cadence, NOW) == timedelta(days=180)
