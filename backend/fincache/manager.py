"""Freshness-aware cache for per-company financial statements."""

from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union
import asyncio
import copy
import inspect
import logging

from .compression import smart_compress
from .earnings import analyze_cadence
from .errors import CompressionError, FetchError, InputValidationError, StorageError
from .maintenance import SKIPPED, fan_out
from .models import (
    BatchResult,
    CacheConfig,
    CacheEntry,
    CacheMetadata,
    CacheOperationResult,
    CacheRefreshOptions,
    CacheResult,
    CacheStatistics,
    CadenceAnalysis,
)
from .staleness import StalenessPolicy
from .strategy import (
    CacheStrategy,
    MemoryCacheStrategy,
    SQLiteCacheStrategy,
    create_cache_strategy,
)

logger = logging.getLogger(__name__)


def _as_duration(value) -> Optional[timedelta]:
    """Durations may be given as timedeltas or as milliseconds."""
    if value is None or isinstance(value, timedelta):
        return value
    return timedelta(milliseconds=value)


class FinancialDataCache:
    """
    Caching facade in front of a slow, rate-limited record source.

    Provides a transparent layer that:
    - Returns stored records while they are fresh
    - Re-fetches stale or missing records and stores them for later reads
    - Falls back to the last stored record when a fetch fails, as long as it
      is within max_age
    - Refreshes stored records in the background without blocking reads
    """

    def __init__(
        self,
        fetch_func: Callable,
        config: CacheConfig = None,
        local_store: Dict[str, str] = None,
        db_path: Union[str, Path] = None,
        detector: Callable[[dict], CadenceAnalysis] = None,
        clock: Callable[[], datetime] = None,
        local: CacheStrategy = None,
        remote: CacheStrategy = None
    ):
        """
        Initialize the cache.

        Args:
            fetch_func: Callable(symbol) -> record, sync or async
            config: Initial configuration (defaults apply when omitted)
            local_store: Mutable mapping backing the local store
            db_path: SQLite path for the durable store
            detector: Callable(record) -> CadenceAnalysis; may raise
            clock: Callable returning the current time
            local: Prebuilt local backend (overrides local_store)
            remote: Prebuilt durable backend (overrides db_path)
        """
        self._fetch_func = fetch_func
        self.db_path = db_path
        self._config = config or CacheConfig()
        self._clock = clock or datetime.now
        self._detector = detector or analyze_cadence
        self.policy = StalenessPolicy(self._config)

        self._local = local or MemoryCacheStrategy(
            local_store, self._config.max_cache_size, self.policy, self._clock
        )
        self._remote = remote or SQLiteCacheStrategy(db_path, self.policy, self._clock)
        self._strategy = self._compose()

        self._hits: Dict[str, int] = defaultdict(int)
        self._misses: Dict[str, int] = defaultdict(int)
        self._in_flight: Dict[Tuple[str, str], asyncio.Future] = {}
        self._background: Dict[str, asyncio.Task] = {}

    def _compose(self) -> CacheStrategy:
        return create_cache_strategy(self._config, self._local, self._remote, self.policy, self._clock)

    @property
    def strategy(self) -> CacheStrategy:
        return self._strategy

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_key(user_id, symbol=None, require_symbol: bool = True) -> Tuple[str, Optional[str]]:
        if not isinstance(user_id, str) or not user_id.strip():
            raise InputValidationError('user_id')
        if symbol is None and not require_symbol:
            return user_id, None
        if not isinstance(symbol, str) or not symbol.strip():
            raise InputValidationError('symbol')
        return user_id, symbol.strip().upper()

    async def get_data(
        self,
        user_id: str,
        symbol: str,
        options: CacheRefreshOptions = None
    ) -> CacheResult:
        """
        Get a record, fetching from the source only if needed.

        Args:
            user_id: Owner of the cached entry
            symbol: Record symbol (e.g., 'AAPL'); normalized to upper case
            options: Per-call refresh options

        Returns:
            CacheResult; failures are reported in the result, never raised
        """
        options = options or CacheRefreshOptions()
        try:
            user_id, symbol = self._validate_key(user_id, symbol)
            if options.custom_ttl is not None and _as_duration(options.custom_ttl) <= timedelta(0):
                raise InputValidationError('custom_ttl', "custom_ttl must be positive")
        except InputValidationError as e:
            return CacheResult(success=False, error=str(e))

        entry = None
        if not options.force_refresh:
            entry = await self._read(user_id, symbol)
            now = self._clock()
            if entry is not None and self.policy.is_fresh(entry.metadata, now):
                self._hits[user_id] += 1
                logger.debug(f"Cache hit for {user_id}/{symbol}")
                self._maybe_refresh_ahead(user_id, symbol, entry, now, options)
                return CacheResult(success=True, data=entry.data, from_cache=True, is_stale=False)

            self._misses[user_id] += 1
            if entry is None:
                logger.info(f"Cache miss for {user_id}/{symbol}: fetching")
            else:
                logger.info(f"Cached {symbol} is stale for {user_id}: fetching")

        try:
            record, _ = await self._fetch_and_store(user_id, symbol, options)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            if options.background:
                logger.warning(f"Background fetch failed for {symbol}: {message}")
            else:
                logger.error(f"Fetch failed for {symbol}: {message}")

            if options.force_refresh:
                entry = await self._read(user_id, symbol)
            if entry is not None and self.policy.within_max_age(entry.metadata, self._clock()):
                logger.warning(f"Serving stale cached {symbol} to {user_id} after fetch failure")
                return CacheResult(success=True, data=entry.data, from_cache=True, is_stale=True)
            return CacheResult(success=False, error=message)

        return CacheResult(success=True, data=record, from_cache=False, is_stale=False)

    async def _read(self, user_id: str, symbol: str) -> Optional[CacheEntry]:
        try:
            return await self._strategy.get(user_id, symbol)
        except StorageError as e:
            logger.warning(f"Cache read failed for {user_id}/{symbol}, treating as miss: {e}")
            return None

    def _maybe_refresh_ahead(
        self,
        user_id: str,
        symbol: str,
        entry: CacheEntry,
        now: datetime,
        options: CacheRefreshOptions
    ) -> None:
        if options.background or not self._config.enable_background_refresh:
            return
        if self.policy.needs_refresh_ahead(entry.metadata, now):
            logger.debug(f"{symbol} expires {entry.metadata.expires_at}, refreshing ahead")
            self._schedule_symbol(user_id, symbol)

    # ------------------------------------------------------------------
    # Fetch and store
    # ------------------------------------------------------------------

    async def _fetch_and_store(
        self,
        user_id: str,
        symbol: str,
        options: CacheRefreshOptions
    ) -> Tuple[dict, CacheOperationResult]:
        """Fetch a record, optionally sharing one in-flight fetch per key."""
        if not self._config.coalesce_fetches:
            return await self._fetch_compact_store(user_id, symbol, options)

        key = (user_id, symbol)
        pending = self._in_flight.get(key)
        if pending is not None:
            logger.debug(f"Joining in-flight fetch for {user_id}/{symbol}")
            record, result = await asyncio.shield(pending)
            return copy.deepcopy(record), result

        task = asyncio.ensure_future(self._fetch_compact_store(user_id, symbol, options))
        self._in_flight[key] = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._in_flight.get(key) is task:
                del self._in_flight[key]

    async def _call_fetch(self, symbol: str) -> dict:
        if inspect.iscoroutinefunction(self._fetch_func):
            return await self._fetch_func(symbol)
        result = await asyncio.to_thread(self._fetch_func, symbol)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _fetch_compact_store(
        self,
        user_id: str,
        symbol: str,
        options: CacheRefreshOptions
    ) -> Tuple[dict, CacheOperationResult]:
        record = await self._call_fetch(symbol)
        if not record:
            raise FetchError(symbol, f"No data returned for {symbol}")

        now = self._clock()
        cadence = self._detect(record)

        stored = record
        if self._config.enable_compression:
            try:
                stored = smart_compress(record)
            except CompressionError as e:
                logger.warning(f"Storing {symbol} uncompressed: {e}")

        metadata = self._build_metadata(now, cadence, _as_duration(options.custom_ttl))
        result = await self._strategy.set(user_id, symbol, stored, metadata)
        if result.success:
            logger.info(f"Cached {symbol} for {user_id} until {metadata.expires_at:%Y-%m-%d}")
        else:
            logger.warning(f"Could not cache {symbol} for {user_id}: {result.error}")
        return record, result

    def _detect(self, record: dict) -> Optional[CadenceAnalysis]:
        try:
            return self._detector(record)
        except Exception as e:
            logger.warning(f"Cadence detection failed for {record.get('symbol')}, using TTL only: {e}")
            return None

    def _build_metadata(
        self,
        now: datetime,
        cadence: Optional[CadenceAnalysis],
        custom_ttl: Optional[timedelta] = None
    ) -> CacheMetadata:
        if custom_ttl is not None:
            ttl = custom_ttl
        elif self._config.enable_adaptive_ttl:
            ttl = self.policy.compute_ttl(cadence, now)
        else:
            ttl = self._config.default_ttl

        metadata = CacheMetadata(cached_at=now, expires_at=now + ttl, data_source="api")
        if cadence is not None:
            metadata.next_publication_estimate = cadence.next_publication_estimate
            metadata.last_publication_date = cadence.last_publication_date
            metadata.publication_confidence = cadence.confidence
        return metadata

    # ------------------------------------------------------------------
    # Key management and reporting
    # ------------------------------------------------------------------

    async def invalidate_cache(self, user_id: str, symbol: str = None) -> bool:
        """
        Remove one entry, or every entry of the user when ``symbol`` is None.

        Returns:
            Backend success flag; never raises
        """
        try:
            user_id, symbol = self._validate_key(user_id, symbol, require_symbol=False)
        except InputValidationError as e:
            logger.warning(f"Invalid invalidation request: {e}")
            return False

        try:
            if symbol is not None:
                removed = await self._strategy.remove(user_id, symbol)
                logger.info(f"Invalidated {symbol} for {user_id}")
                return removed
            count = await self._strategy.clear(user_id)
            self._hits.pop(user_id, None)
            self._misses.pop(user_id, None)
            logger.info(f"Invalidated {count} entries for {user_id}")
            return True
        except Exception as e:
            logger.error(f"Cache invalidation failed for {user_id}: {e}")
            return False

    async def is_symbol_cached(self, user_id: str, symbol: str) -> bool:
        """True iff a fresh entry exists. Never fetches."""
        try:
            user_id, symbol = self._validate_key(user_id, symbol)
            return await self._strategy.is_fresh(user_id, symbol)
        except Exception as e:
            logger.debug(f"is_symbol_cached({user_id}, {symbol}) failed: {e}")
            return False

    async def get_cached_symbols(self, user_id: str) -> List[str]:
        try:
            user_id, _ = self._validate_key(user_id, require_symbol=False)
            return await self._strategy.get_cached_symbols(user_id)
        except Exception as e:
            logger.warning(f"Could not list cached symbols for {user_id}: {e}")
            return []

    async def get_cache_statistics(self, user_id: str) -> CacheStatistics:
        try:
            user_id, _ = self._validate_key(user_id, require_symbol=False)
            stats = await self._strategy.get_statistics(user_id)
        except Exception as e:
            logger.warning(f"Could not compute cache statistics for {user_id}: {e}")
            return CacheStatistics()
        stats.hit_ratio = self._hit_ratio(user_id)
        return stats

    def _hit_ratio(self, user_id: str) -> float:
        hits = self._hits.get(user_id, 0)
        total = hits + self._misses.get(user_id, 0)
        if total == 0:
            return 0.0
        return round(hits / total, 4)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def update_configuration(self, **changes) -> CacheConfig:
        """
        Merge ``changes`` into the live configuration.

        Stored entries are kept. Toggling a backend recomposes the strategy
        over the same backend instances.

        Raises:
            ConfigurationError: On an unknown option name
        """
        old = self._config
        new = old.with_changes(**changes)

        self._config = new
        self.policy.config = new
        if isinstance(self._local, MemoryCacheStrategy):
            self._local.max_size = new.max_cache_size

        if (new.use_local_storage, new.use_remote_storage) != (old.use_local_storage, old.use_remote_storage):
            self._strategy = self._compose()
            logger.info(f"Cache backends recomposed: {self._strategy.name}")

        logger.info(f"Cache configuration updated: {', '.join(sorted(changes))}")
        return new

    def get_configuration(self) -> CacheConfig:
        return self._config

    # ------------------------------------------------------------------
    # Background maintenance
    # ------------------------------------------------------------------

    async def preload_data(
        self,
        user_id: str,
        symbols: List[str],
        on_progress: Callable[[int, int, str], None] = None
    ) -> BatchResult:
        """
        Fetch and store every symbol that is not already fresh.

        Per-symbol failures are logged and counted; they do not stop the batch.
        """
        try:
            user_id, _ = self._validate_key(user_id, require_symbol=False)
        except InputValidationError as e:
            logger.warning(f"Preload skipped: {e}")
            return BatchResult()

        async def preload_one(symbol: str):
            _, symbol = self._validate_key(user_id, symbol)
            if await self.is_symbol_cached(user_id, symbol):
                return SKIPPED
            await self._fetch_and_store(user_id, symbol, CacheRefreshOptions(background=True))

        keys = list(dict.fromkeys(symbols or []))
        return await fan_out(keys, preload_one, f"Preload for {user_id}", on_progress)

    async def refresh_cache_in_background(
        self,
        user_id: str,
        on_progress: Callable[[int, int, str], None] = None
    ) -> BatchResult:
        """
        Re-fetch every stale cached symbol of a user.

        No-op when background refresh is disabled.
        """
        if not self._config.enable_background_refresh:
            logger.debug("Background refresh disabled")
            return BatchResult()

        try:
            user_id, _ = self._validate_key(user_id, require_symbol=False)
            entries = await self._strategy.list_entries(user_id)
        except Exception as e:
            logger.warning(f"Background refresh skipped for {user_id}: {e}")
            return BatchResult()

        by_symbol = {entry.symbol: entry for entry in entries}
        now = self._clock()

        async def refresh_one(symbol: str):
            if self.policy.is_fresh(by_symbol[symbol].metadata, now):
                return SKIPPED
            await self._fetch_and_store(user_id, symbol, CacheRefreshOptions(background=True))

        return await fan_out(sorted(by_symbol), refresh_one, f"Background refresh for {user_id}", on_progress)

    async def refresh_cache(
        self,
        user_id: str,
        symbol: str,
        options: CacheRefreshOptions = None
    ) -> CacheOperationResult:
        """
        Refresh one key now.

        With ``options.metadata_only`` the stored record is re-analyzed and
        its metadata rewritten without fetching.
        """
        options = options or CacheRefreshOptions()
        try:
            user_id, symbol = self._validate_key(user_id, symbol)
        except InputValidationError as e:
            return CacheOperationResult(success=False, error=str(e))

        if options.metadata_only:
            return await self._refresh_metadata(user_id, symbol, _as_duration(options.custom_ttl))

        try:
            _, result = await self._fetch_and_store(user_id, symbol, options)
        except Exception as e:
            logger.error(f"Refresh failed for {user_id}/{symbol}: {e}")
            return CacheOperationResult(success=False, error=str(e) or e.__class__.__name__)
        return CacheOperationResult(success=True, entry_id=result.entry_id, from_cache=False)

    async def _refresh_metadata(
        self,
        user_id: str,
        symbol: str,
        custom_ttl: Optional[timedelta]
    ) -> CacheOperationResult:
        entry = await self._read(user_id, symbol)
        if entry is None:
            return CacheOperationResult(success=False, error="No cached data found to update metadata")

        metadata = entry.metadata
        cadence = self._detect(entry.data)
        if cadence is not None:
            metadata = replace(
                metadata,
                next_publication_estimate=cadence.next_publication_estimate,
                last_publication_date=cadence.last_publication_date,
                publication_confidence=cadence.confidence,
            )
        if custom_ttl is not None:
            metadata = replace(metadata, expires_at=self._clock() + custom_ttl)

        return await self._strategy.set(user_id, symbol, entry.data, metadata)

    async def schedule_background_refresh(self, user_id: str, symbol: str = None) -> bool:
        """
        Start a non-blocking refresh of one key, or of all stale keys of the user.

        Returns:
            False if the request was invalid or a refresh for it is already running
        """
        try:
            user_id, symbol = self._validate_key(user_id, symbol, require_symbol=False)
        except InputValidationError as e:
            logger.warning(f"Background refresh not scheduled: {e}")
            return False

        if symbol is None:
            return self._spawn(f"{user_id}:*", lambda: self.refresh_cache_in_background(user_id))
        return self._schedule_symbol(user_id, symbol)

    def _schedule_symbol(self, user_id: str, symbol: str) -> bool:
        options = CacheRefreshOptions(force_refresh=True, background=True)
        return self._spawn(f"{user_id}:{symbol}", lambda: self.get_data(user_id, symbol, options))

    def _spawn(self, key: str, factory: Callable) -> bool:
        running = self._background.get(key)
        if running is not None and not running.done():
            logger.debug(f"Background refresh already running for {key}")
            return False

        task = asyncio.get_running_loop().create_task(factory())
        self._background[key] = task
        task.add_done_callback(lambda t: self._on_background_done(key, t))
        return True

    def _on_background_done(self, key: str, task: asyncio.Task) -> None:
        if self._background.get(key) is task:
            del self._background[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background refresh for {key} failed: {task.exception()}")

    async def wait_for_background(self) -> None:
        """Wait until every scheduled background task has finished."""
        while True:
            pending = [task for task in self._background.values() if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
