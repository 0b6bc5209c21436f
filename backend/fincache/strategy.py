"""
Storage strategies for cached financial records.

Every backend implements the same small contract and only stores and
retrieves entries. Freshness is judged by the injected StalenessPolicy;
compression and TTL decisions are made by the caller.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterator, List, MutableMapping, Optional, Tuple, Union
import asyncio
import json
import logging
import sqlite3

from .db import get_connection, init_db
from .errors import StorageError
from .models import (
    CACHE_VERSION,
    CacheConfig,
    CacheEntry,
    CacheMetadata,
    CacheOperationResult,
    CacheStatistics,
)
from .staleness import StalenessPolicy

logger = logging.getLogger(__name__)


def make_entry_id(user_id: str, symbol: str, now: datetime) -> str:
    return f"{user_id}_{symbol}_{int(now.timestamp() * 1000)}"


def compute_statistics(entries: List[CacheEntry], policy: StalenessPolicy, now: datetime) -> CacheStatistics:
    """Derive statistics from a list of entries."""
    stats = CacheStatistics()
    if not entries:
        return stats

    total_age_hours = 0.0
    newest = oldest = None
    for entry in entries:
        stats.total_entries += 1
        stats.total_size += entry.size_bytes()
        if policy.is_fresh(entry.metadata, now):
            stats.fresh_entries += 1
        else:
            stats.stale_entries += 1

        total_age_hours += entry.metadata.age(now).total_seconds() / 3600
        if newest is None or entry.metadata.cached_at > newest.metadata.cached_at:
            newest = entry
        if oldest is None or entry.metadata.cached_at < oldest.metadata.cached_at:
            oldest = entry

    stats.average_age = round(total_age_hours / stats.total_entries, 2)
    stats.newest_entry = newest.symbol
    stats.oldest_entry = oldest.symbol
    return stats


class CacheStrategy(ABC):
    """Uniform storage contract implemented once per backend."""

    name = "strategy"

    def __init__(self, policy: StalenessPolicy = None, clock: Callable[[], datetime] = None):
        self.policy = policy or StalenessPolicy()
        self._clock = clock or datetime.now

    @abstractmethod
    async def get(self, user_id: str, symbol: str) -> Optional[CacheEntry]:
        """Return the stored entry, or None when absent."""

    @abstractmethod
    async def set(
        self,
        user_id: str,
        symbol: str,
        data: dict,
        metadata: CacheMetadata = None
    ) -> CacheOperationResult:
        """Store (replace) the entry for a key."""

    @abstractmethod
    async def remove(self, user_id: str, symbol: str) -> bool:
        """Remove one entry."""

    @abstractmethod
    async def clear(self, user_id: str) -> int:
        """Remove every entry of a user; returns how many were removed."""

    @abstractmethod
    async def list_entries(self, user_id: str) -> List[CacheEntry]:
        """All entries of a user, by backend-specific listing."""

    async def is_fresh(self, user_id: str, symbol: str) -> bool:
        entry = await self.get(user_id, symbol)
        return entry is not None and self.policy.is_fresh(entry.metadata, self._clock())

    async def get_cached_symbols(self, user_id: str) -> List[str]:
        entries = await self.list_entries(user_id)
        return sorted({entry.symbol for entry in entries})

    async def get_statistics(self, user_id: str) -> CacheStatistics:
        entries = await self.list_entries(user_id)
        return compute_statistics(entries, self.policy, self._clock())

    def _build_entry(self, user_id: str, symbol: str, data: dict, metadata: Optional[CacheMetadata]) -> CacheEntry:
        now = self._clock()
        if metadata is None:
            metadata = CacheMetadata(cached_at=now, expires_at=now + self.policy.config.default_ttl)
        return CacheEntry(
            id=make_entry_id(user_id, symbol, now),
            user_id=user_id,
            symbol=symbol,
            data=data,
            metadata=metadata,
        )

    @staticmethod
    def _is_current_version(entry: CacheEntry) -> bool:
        return entry.metadata.version == CACHE_VERSION


class MemoryCacheStrategy(CacheStrategy):
    """
    Fast, ephemeral, size-limited local store.

    Entries are kept as serialized JSON strings in an injected mutable
    mapping (a plain dict by default), so nothing stored is shared with
    callers. Writes that would take a user's stored bytes over ``max_size``
    are refused; nothing is ever evicted to make room.
    """

    name = "local"
    KEY_PREFIX = "financial_cache"

    def __init__(
        self,
        store: MutableMapping[str, str] = None,
        max_size: int = CacheConfig.max_cache_size,
        policy: StalenessPolicy = None,
        clock: Callable[[], datetime] = None
    ):
        super().__init__(policy, clock)
        self._store = store if store is not None else {}
        self.max_size = max_size

    def _key(self, user_id: str, symbol: str) -> str:
        return f"{self.KEY_PREFIX}:{user_id}:{symbol}"

    def _user_items(self, user_id: str) -> Iterator[Tuple[str, CacheEntry]]:
        prefix = f"{self.KEY_PREFIX}:{user_id}:"
        for key in list(self._store.keys()):
            if not key.startswith(prefix):
                continue
            raw = self._store.get(key)
            if raw is None:
                continue
            try:
                entry = CacheEntry.from_json(raw)
            except (ValueError, KeyError, TypeError) as e:
                logger.debug(f"Skipping unreadable local entry {key}: {e}")
                continue
            if entry.user_id == user_id:
                yield key, entry

    async def get(self, user_id: str, symbol: str) -> Optional[CacheEntry]:
        key = self._key(user_id, symbol)
        try:
            raw = self._store.get(key)
            if raw is None:
                return None
            entry = CacheEntry.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            raise StorageError(self.name, "get", e) from e

        if not self._is_current_version(entry):
            logger.info(f"Dropping {symbol} from local cache: schema version {entry.metadata.version}")
            await self.remove(user_id, symbol)
            return None
        return entry

    async def set(self, user_id: str, symbol: str, data: dict, metadata: CacheMetadata = None) -> CacheOperationResult:
        try:
            entry = self._build_entry(user_id, symbol, data, metadata)
            serialized = entry.to_json()
            size = len(serialized.encode('utf-8'))

            key = self._key(user_id, symbol)
            used = sum(
                len(self._store[k].encode('utf-8'))
                for k, _ in self._user_items(user_id) if k != key
            )
            if used + size > self.max_size:
                logger.warning(
                    f"Local cache capacity exceeded for {symbol}: "
                    f"{used + size} > {self.max_size} bytes"
                )
                # The previous version of this key must not outlive a refused replacement
                self._store.pop(key, None)
                return CacheOperationResult(success=False, error="Local cache capacity exceeded")

            self._store[key] = serialized
        except (TypeError, ValueError) as e:
            logger.warning(f"Local cache write failed for {symbol}: {e}")
            return CacheOperationResult(success=False, error=str(StorageError(self.name, "set", e)))

        logger.debug(f"Cached {symbol} in local store ({size} bytes)")
        return CacheOperationResult(success=True, entry_id=entry.id, from_cache=False)

    async def remove(self, user_id: str, symbol: str) -> bool:
        self._store.pop(self._key(user_id, symbol), None)
        return True

    async def clear(self, user_id: str) -> int:
        keys = [key for key, _ in self._user_items(user_id)]
        for key in keys:
            self._store.pop(key, None)
        logger.info(f"Cleared {len(keys)} entries from local cache for {user_id}")
        return len(keys)

    async def list_entries(self, user_id: str) -> List[CacheEntry]:
        return [entry for _, entry in self._user_items(user_id)]


class SQLiteCacheStrategy(CacheStrategy):
    """
    Durable document store backed by SQLite.

    One JSON document per (user_id, symbol) row. Blocking database calls run
    in worker threads so the event loop is never held.
    """

    name = "remote"

    def __init__(
        self,
        db_path: Union[str, Path] = None,
        policy: StalenessPolicy = None,
        clock: Callable[[], datetime] = None
    ):
        super().__init__(policy, clock)
        self.db_path = db_path
        init_db(db_path)

    def _get_sync(self, user_id: str, symbol: str) -> Optional[str]:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT document FROM cache_documents WHERE user_id = ? AND symbol = ?",
                (user_id, symbol)
            ).fetchone()
            return row['document'] if row else None

    def _set_sync(self, entry: CacheEntry) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute("""
                INSERT INTO cache_documents (user_id, symbol, document, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, symbol) DO UPDATE SET
                    document = excluded.document,
                    updated_at = excluded.updated_at
            """, (entry.user_id, entry.symbol, entry.to_json(), self._clock().isoformat()))
            conn.commit()

    def _remove_sync(self, user_id: str, symbol: str) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                "DELETE FROM cache_documents WHERE user_id = ? AND symbol = ?",
                (user_id, symbol)
            )
            conn.commit()

    def _clear_sync(self, user_id: str) -> int:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM cache_documents WHERE user_id = ?", (user_id,))
            conn.commit()
            return cursor.rowcount

    def _list_sync(self, user_id: str) -> List[str]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT document FROM cache_documents WHERE user_id = ? ORDER BY symbol",
                (user_id,)
            ).fetchall()
            return [row['document'] for row in rows]

    async def get(self, user_id: str, symbol: str) -> Optional[CacheEntry]:
        try:
            raw = await asyncio.to_thread(self._get_sync, user_id, symbol)
            if raw is None:
                return None
            entry = CacheEntry.from_json(raw)
        except (sqlite3.Error, ValueError, KeyError, TypeError) as e:
            raise StorageError(self.name, "get", e) from e

        if not self._is_current_version(entry):
            logger.info(f"Dropping {symbol} from durable cache: schema version {entry.metadata.version}")
            await self.remove(user_id, symbol)
            return None
        return entry

    async def set(self, user_id: str, symbol: str, data: dict, metadata: CacheMetadata = None) -> CacheOperationResult:
        try:
            entry = self._build_entry(user_id, symbol, data, metadata)
            await asyncio.to_thread(self._set_sync, entry)
        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.warning(f"Durable cache write failed for {symbol}: {e}")
            return CacheOperationResult(success=False, error=str(StorageError(self.name, "set", e)))

        logger.debug(f"Cached {symbol} in durable store")
        return CacheOperationResult(success=True, entry_id=entry.id, from_cache=False)

    async def remove(self, user_id: str, symbol: str) -> bool:
        try:
            await asyncio.to_thread(self._remove_sync, user_id, symbol)
            return True
        except sqlite3.Error as e:
            logger.warning(f"Durable cache remove failed for {symbol}: {e}")
            return False

    async def clear(self, user_id: str) -> int:
        try:
            count = await asyncio.to_thread(self._clear_sync, user_id)
        except sqlite3.Error as e:
            raise StorageError(self.name, "clear", e) from e
        logger.info(f"Cleared {count} entries from durable cache for {user_id}")
        return count

    async def list_entries(self, user_id: str) -> List[CacheEntry]:
        try:
            documents = await asyncio.to_thread(self._list_sync, user_id)
        except sqlite3.Error as e:
            raise StorageError(self.name, "list", e) from e

        entries = []
        for document in documents:
            try:
                entries.append(CacheEntry.from_json(document))
            except (ValueError, KeyError, TypeError) as e:
                logger.debug(f"Skipping unreadable durable entry for {user_id}: {e}")
        return entries


class TieredCacheStrategy(CacheStrategy):
    """
    Local store in front of the durable store.

    Reads check local first. A missing or stale local copy falls through to
    remote; the newer of the two is returned and a newer remote copy is
    written back to the local tier. Writes and removals go to both tiers;
    either succeeding is enough, and a write only the remote tier accepted
    drops the local copy.
    """

    name = "tiered"

    # Local entries older than this are demoted by optimize_distribution
    RECENT_ACCESS_DAYS = 30

    def __init__(
        self,
        local: CacheStrategy,
        remote: CacheStrategy,
        policy: StalenessPolicy = None,
        clock: Callable[[], datetime] = None
    ):
        super().__init__(policy, clock)
        self.local = local
        self.remote = remote

    async def get(self, user_id: str, symbol: str) -> Optional[CacheEntry]:
        local_entry = None
        local_error = None
        try:
            local_entry = await self.local.get(user_id, symbol)
            if local_entry is not None and self.policy.is_fresh(local_entry.metadata, self._clock()):
                logger.debug(f"Cache hit: {symbol} from local store")
                return local_entry
        except StorageError as e:
            logger.warning(f"Local read failed for {symbol}, trying durable store: {e}")
            local_error = e

        # Local copy is missing or stale; the durable store may hold a newer one
        try:
            entry = await self.remote.get(user_id, symbol)
        except StorageError:
            if local_error is not None:
                raise
            logger.warning(f"Durable read failed for {symbol}")
            return local_entry

        if entry is None:
            return local_entry
        if local_entry is not None and local_entry.metadata.cached_at >= entry.metadata.cached_at:
            return local_entry

        logger.debug(f"Cache hit: {symbol} from durable store, populating local")
        result = await self.local.set(user_id, symbol, entry.data, entry.metadata)
        if not result.success:
            logger.debug(f"Could not populate local store with {symbol}: {result.error}")
        return entry

    async def set(self, user_id: str, symbol: str, data: dict, metadata: CacheMetadata = None) -> CacheOperationResult:
        local_result, remote_result = await asyncio.gather(
            self.local.set(user_id, symbol, data, metadata),
            self.remote.set(user_id, symbol, data, metadata),
            return_exceptions=True
        )

        succeeded = [
            r for r in (local_result, remote_result)
            if isinstance(r, CacheOperationResult) and r.success
        ]
        if succeeded:
            if local_result not in succeeded:
                # Only the durable write landed; an older local copy would shadow it
                await self.local.remove(user_id, symbol)
            return CacheOperationResult(success=True, entry_id=succeeded[0].entry_id, from_cache=False)

        errors = [
            str(r) if isinstance(r, BaseException) else r.error
            for r in (local_result, remote_result)
        ]
        return CacheOperationResult(
            success=False,
            error=f"All cache tiers failed: {'; '.join(e for e in errors if e)}"
        )

    async def remove(self, user_id: str, symbol: str) -> bool:
        results = await asyncio.gather(
            self.local.remove(user_id, symbol),
            self.remote.remove(user_id, symbol),
            return_exceptions=True
        )
        return any(r is True for r in results)

    async def clear(self, user_id: str) -> int:
        results = await asyncio.gather(
            self.local.clear(user_id),
            self.remote.clear(user_id),
            return_exceptions=True
        )
        for tier, r in zip((self.local, self.remote), results):
            if isinstance(r, BaseException):
                raise StorageError(self.name, f"clear ({tier.name})", r) from r
        # Both tiers usually hold the same keys; avoid double counting
        return max(results)

    async def list_entries(self, user_id: str) -> List[CacheEntry]:
        local_entries, remote_entries = await asyncio.gather(
            self.local.list_entries(user_id),
            self.remote.list_entries(user_id),
            return_exceptions=True
        )
        if isinstance(local_entries, BaseException) and isinstance(remote_entries, BaseException):
            raise local_entries

        merged: Dict[str, CacheEntry] = {}
        for entries in (remote_entries, local_entries):
            if isinstance(entries, BaseException):
                logger.warning(f"Listing failed on one cache tier: {entries}")
                continue
            for entry in entries:
                merged[entry.symbol] = entry
        return list(merged.values())

    async def is_fresh(self, user_id: str, symbol: str) -> bool:
        if await self.local.is_fresh(user_id, symbol):
            return True
        return await self.remote.is_fresh(user_id, symbol)

    async def optimize_distribution(self, user_id: str) -> int:
        """
        Demote old or stale local entries to the durable tier only.

        Returns:
            Number of entries demoted
        """
        now = self._clock()
        demoted = 0
        for entry in await self.local.list_entries(user_id):
            recent = entry.metadata.age(now) < timedelta(days=self.RECENT_ACCESS_DAYS)
            if recent and self.policy.is_fresh(entry.metadata, now):
                continue

            result = await self.remote.set(user_id, entry.symbol, entry.data, entry.metadata)
            if not result.success:
                logger.warning(f"Not demoting {entry.symbol}: durable write failed ({result.error})")
                continue
            await self.local.remove(user_id, entry.symbol)
            demoted += 1
            logger.debug(f"Demoted {entry.symbol} from local to durable store")

        logger.info(f"Demoted {demoted} entries for {user_id}")
        return demoted


def create_cache_strategy(
    config: CacheConfig,
    local: CacheStrategy,
    remote: CacheStrategy,
    policy: StalenessPolicy = None,
    clock: Callable[[], datetime] = None
) -> CacheStrategy:
    """Compose the backends enabled by ``config``."""
    if config.use_local_storage and config.use_remote_storage:
        return TieredCacheStrategy(local, remote, policy, clock)
    if config.use_remote_storage:
        return remote
    if not config.use_local_storage:
        logger.warning("Both cache backends disabled in config; using local store")
    return local
