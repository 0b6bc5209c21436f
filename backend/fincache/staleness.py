"""Staleness policy for cached financial statements."""

from datetime import datetime, timedelta
from typing import Optional
import logging

from .earnings import is_earnings_season
from .models import CacheConfig, CacheMetadata, CadenceAnalysis, Freshness

logger = logging.getLogger(__name__)


class StalenessPolicy:
    """
    Decides whether a cached entry can be served as-is.

    Two signals must both pass for an entry to be fresh:
    - TTL: the entry has not reached its ``expires_at``
    - Publication cadence: no new report is judged to have been published
      since the entry was cached

    The cadence signal only applies when the stored hints came from a
    detection with enough confidence. Anything else means "no override".
    """

    # Minimum detector confidence for the publication hints to count
    MIN_CONFIDENCE = 0.5

    # With publication hints, entries older than this are stale regardless
    PUBLICATION_MAX_AGE_DAYS = 120

    # Adaptive TTL bounds
    MIN_ADAPTIVE_TTL_DAYS = 7
    EARNINGS_SEASON_TTL_DAYS = 14

    def __init__(
        self,
        config: CacheConfig = None,
        min_confidence: float = None,
        publication_max_age_days: int = None,
    ):
        """
        Initialize the policy.

        Args:
            config: Cache configuration (max_age and refresh_ahead are read
                from whatever config is current at call time)
            min_confidence: Override for MIN_CONFIDENCE
            publication_max_age_days: Override for PUBLICATION_MAX_AGE_DAYS
        """
        self.config = config or CacheConfig()
        if min_confidence is not None:
            self.MIN_CONFIDENCE = min_confidence
        if publication_max_age_days is not None:
            self.PUBLICATION_MAX_AGE_DAYS = publication_max_age_days

    def classify(self, metadata: CacheMetadata, now: datetime = None) -> Freshness:
        """Classify an entry as fresh or stale at ``now``."""
        now = now or datetime.now()

        if not self.within_max_age(metadata, now):
            return Freshness.STALE
        if now >= metadata.expires_at:
            return Freshness.STALE
        if self.publication_override(metadata, now):
            return Freshness.STALE
        return Freshness.FRESH

    def is_fresh(self, metadata: CacheMetadata, now: datetime = None) -> bool:
        return self.classify(metadata, now) is Freshness.FRESH

    def within_max_age(self, metadata: CacheMetadata, now: datetime = None) -> bool:
        """False once an entry is older than max_age; it may then never be served."""
        now = now or datetime.now()
        return metadata.age(now) <= self.config.max_age

    def needs_refresh_ahead(self, metadata: CacheMetadata, now: datetime = None) -> bool:
        """True when a fresh entry is close enough to expiry to refresh it early."""
        now = now or datetime.now()
        return metadata.expires_at - now < self.config.refresh_ahead

    def publication_override(self, metadata: CacheMetadata, now: datetime) -> bool:
        """
        Check whether a new publication has likely appeared since caching.

        Returns:
            True if the entry should be considered stale. Low-confidence hints
            and any failure inside the check mean no override.
        """
        try:
            if metadata.publication_confidence < self.MIN_CONFIDENCE:
                return False

            cached_at = metadata.cached_at
            last_published = metadata.last_publication_date
            if last_published is not None and last_published > cached_at:
                logger.debug(f"Publication on {last_published} postdates cache write {cached_at}")
                return True

            estimate = metadata.next_publication_estimate
            if estimate is None:
                return False

            if now > estimate and cached_at < estimate:
                logger.debug(f"Estimated publication {estimate} passed since cache write {cached_at}")
                return True

            return now - cached_at > timedelta(days=self.PUBLICATION_MAX_AGE_DAYS)
        except Exception as e:
            logger.warning(f"Publication staleness check failed, using TTL only: {e}")
            return False

    def compute_ttl(self, cadence: Optional[CadenceAnalysis], now: datetime = None) -> timedelta:
        """
        Derive a TTL from the detected publication cadence.

        Expires shortly before the next expected report, is extended for
        predictable quarterly filers, shortened during earnings season, and
        never exceeds max_age.
        """
        now = now or datetime.now()
        ttl = self.config.default_ttl

        if cadence is None:
            return min(ttl, self.config.max_age)

        estimate = cadence.next_publication_estimate
        if estimate is not None and cadence.confidence > 0.7:
            days_left = (estimate - now).total_seconds() / 86400.0
            if days_left > 0:
                lead_days = min(7.0, max(1.0, days_left * 0.1))
                ttl = max(
                    timedelta(days=self.MIN_ADAPTIVE_TTL_DAYS),
                    timedelta(days=days_left - lead_days),
                )

        if cadence.quarterly_pattern and cadence.confidence > 0.5:
            ttl = min(ttl * 1.2, self.config.max_age)

        if is_earnings_season(now):
            ttl = min(ttl, timedelta(days=self.EARNINGS_SEASON_TTL_DAYS))

        return min(ttl, self.config.max_age)
