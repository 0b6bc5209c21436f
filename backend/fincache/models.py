"""Data model for cached financial records."""

from dataclasses import dataclass, field, fields, replace, asdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
import json

from .errors import ConfigurationError

# Bump when the stored entry layout changes; older entries are dropped on read.
CACHE_VERSION = "1.0.0"

DATA_SOURCES = ("api", "manual", "estimated")


class Freshness(Enum):
    """Read-time classification of a cached entry."""
    FRESH = "fresh"
    STALE = "stale"


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class CacheMetadata:
    """Freshness bookkeeping stored alongside each record."""
    cached_at: datetime
    expires_at: datetime
    data_source: str = "api"
    version: str = CACHE_VERSION
    next_publication_estimate: Optional[datetime] = None
    last_publication_date: Optional[datetime] = None
    publication_confidence: float = 0.0

    def __post_init__(self):
        if self.expires_at < self.cached_at:
            raise ValueError(
                f"expires_at ({self.expires_at}) precedes cached_at ({self.cached_at})"
            )

    def age(self, now: datetime) -> timedelta:
        return now - self.cached_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cached_at': _to_iso(self.cached_at),
            'expires_at': _to_iso(self.expires_at),
            'data_source': self.data_source,
            'version': self.version,
            'next_publication_estimate': _to_iso(self.next_publication_estimate),
            'last_publication_date': _to_iso(self.last_publication_date),
            'publication_confidence': self.publication_confidence,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "CacheMetadata":
        return cls(
            cached_at=_from_iso(raw['cached_at']),
            expires_at=_from_iso(raw['expires_at']),
            data_source=raw.get('data_source', 'api'),
            version=raw.get('version', ''),
            next_publication_estimate=_from_iso(raw.get('next_publication_estimate')),
            last_publication_date=_from_iso(raw.get('last_publication_date')),
            publication_confidence=float(raw.get('publication_confidence') or 0.0),
        )


@dataclass
class CacheEntry:
    """One stored record plus its metadata for a (user_id, symbol) key."""
    id: str
    user_id: str
    symbol: str
    data: Dict[str, Any]
    metadata: CacheMetadata

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'symbol': self.symbol,
            'data': self.data,
            'metadata': self.metadata.to_dict(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(',', ':'))

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "CacheEntry":
        return cls(
            id=raw['id'],
            user_id=raw['user_id'],
            symbol=raw['symbol'],
            data=raw['data'],
            metadata=CacheMetadata.from_dict(raw['metadata']),
        )

    @classmethod
    def from_json(cls, text: str) -> "CacheEntry":
        return cls.from_dict(json.loads(text))

    def size_bytes(self) -> int:
        return len(self.to_json().encode('utf-8'))


_DURATION_FIELDS = ('default_ttl', 'max_age', 'refresh_ahead')


@dataclass(frozen=True)
class CacheConfig:
    """
    Immutable configuration snapshot.

    Durations are timedeltas; plain numbers passed to ``with_changes`` are
    read as milliseconds.
    """
    default_ttl: timedelta = timedelta(days=90)
    max_age: timedelta = timedelta(days=180)
    max_cache_size: int = 50 * 1024 * 1024
    use_local_storage: bool = True
    use_remote_storage: bool = True
    enable_compression: bool = False
    enable_background_refresh: bool = True
    enable_adaptive_ttl: bool = False
    coalesce_fetches: bool = False
    refresh_ahead: timedelta = timedelta(days=7)

    def with_changes(self, **changes) -> "CacheConfig":
        """Return a new config with ``changes`` merged in."""
        known = {f.name for f in fields(self)}
        normalized = {}
        for name, value in changes.items():
            if name not in known:
                raise ConfigurationError(name)
            if name in _DURATION_FIELDS and not isinstance(value, timedelta):
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    raise ConfigurationError(name, f"{name} must be a duration")
                value = timedelta(milliseconds=value)
            normalized[name] = value
        return replace(self, **normalized)

    @classmethod
    def from_settings(cls, settings) -> "CacheConfig":
        """Build a config from the environment-driven ``Config`` class."""
        return cls(
            default_ttl=timedelta(days=settings.CACHE_DEFAULT_TTL_DAYS),
            max_age=timedelta(days=settings.CACHE_MAX_AGE_DAYS),
            max_cache_size=settings.CACHE_MAX_SIZE_BYTES,
            use_local_storage=settings.CACHE_USE_LOCAL,
            use_remote_storage=settings.CACHE_USE_REMOTE,
            enable_compression=settings.CACHE_ENABLE_COMPRESSION,
            enable_background_refresh=settings.CACHE_BACKGROUND_REFRESH,
            enable_adaptive_ttl=settings.CACHE_ADAPTIVE_TTL,
            coalesce_fetches=settings.CACHE_COALESCE_FETCHES,
        )

    def to_dict(self) -> Dict[str, Any]:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, timedelta):
                value = int(value.total_seconds() * 1000)
            out[f.name] = value
        return out


@dataclass
class CacheStatistics:
    """Derived statistics; recomputed on every request."""
    total_entries: int = 0
    fresh_entries: int = 0
    stale_entries: int = 0
    total_size: int = 0
    hit_ratio: float = 0.0
    average_age: float = 0.0
    newest_entry: Optional[str] = None
    oldest_entry: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CacheOperationResult:
    """Outcome of a backend write or an explicit refresh."""
    success: bool
    entry_id: Optional[str] = None
    error: Optional[str] = None
    from_cache: Optional[bool] = None


@dataclass
class CacheResult:
    """Outcome of ``FinancialDataCache.get_data``."""
    success: bool
    data: Optional[Dict[str, Any]] = None
    from_cache: bool = False
    is_stale: Optional[bool] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CacheRefreshOptions:
    """Per-call options for reads and refreshes."""
    force_refresh: bool = False
    background: bool = False
    custom_ttl: Optional[timedelta] = None
    metadata_only: bool = False


@dataclass
class CadenceAnalysis:
    """Result of publication cadence detection for one record."""
    confidence: float = 0.0
    next_publication_estimate: Optional[datetime] = None
    last_publication_date: Optional[datetime] = None
    quarterly_pattern: bool = False
    method: str = "unknown"


@dataclass
class BatchResult:
    """Summary of a background fan-out over many symbols."""
    total: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    failed_keys: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
