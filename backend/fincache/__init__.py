"""
Freshness-aware cache for per-company financial statements.

Minimizes calls to slow, rate-limited financial data APIs by reusing stored
records until a TTL expires or a new filing is likely to have been published.
"""

from .db import init_db, get_connection, get_db_stats
from .errors import (
    CacheError,
    InputValidationError,
    ConfigurationError,
    FetchError,
    StorageError,
    CompressionError,
    DetectionError,
)
from .models import (
    CACHE_VERSION,
    BatchResult,
    CacheConfig,
    CacheEntry,
    CacheMetadata,
    CacheOperationResult,
    CacheRefreshOptions,
    CacheResult,
    CacheStatistics,
    CadenceAnalysis,
    Freshness,
)
from .compression import smart_compress
from .earnings import analyze_cadence, is_earnings_season
from .staleness import StalenessPolicy
from .strategy import (
    CacheStrategy,
    MemoryCacheStrategy,
    SQLiteCacheStrategy,
    TieredCacheStrategy,
    create_cache_strategy,
)
from .maintenance import fan_out
from .manager import FinancialDataCache

__all__ = [
    'init_db',
    'get_connection',
    'get_db_stats',
    'CacheError',
    'InputValidationError',
    'ConfigurationError',
    'FetchError',
    'StorageError',
    'CompressionError',
    'DetectionError',
    'CACHE_VERSION',
    'BatchResult',
    'CacheConfig',
    'CacheEntry',
    'CacheMetadata',
    'CacheOperationResult',
    'CacheRefreshOptions',
    'CacheResult',
    'CacheStatistics',
    'CadenceAnalysis',
    'Freshness',
    'smart_compress',
    'analyze_cadence',
    'is_earnings_season',
    'StalenessPolicy',
    'CacheStrategy',
    'MemoryCacheStrategy',
    'SQLiteCacheStrategy',
    'TieredCacheStrategy',
    'create_cache_strategy',
    'fan_out',
    'FinancialDataCache',
]
