#!/usr/bin/env python3
"""Script to preload symbols or refresh stale cached financials for a user."""

import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from config import Config
from fincache import CacheConfig, FinancialDataCache, get_db_stats
from fmp_client import FMPClient


def on_progress(processed, total, symbol):
    pct = processed / total * 100
    print(f"\r  Progress: {processed}/{total} ({pct:.1f}%) - Last: {symbol}    ", end="", flush=True)


async def run(cache: FinancialDataCache, user_id: str, symbols: list):
    if symbols:
        print(f"\nPreloading {len(symbols)} symbols for {user_id}...")
        return await cache.preload_data(user_id, symbols, on_progress=on_progress)

    print(f"\nRefreshing stale cached symbols for {user_id}...")
    return await cache.refresh_cache_in_background(user_id, on_progress=on_progress)


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        print("Usage: refresh_cache.py <user_id> [SYMBOL ...]")
        sys.exit(2)

    logging.basicConfig(
        level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    api_key = Config.FMP_API_KEY
    if not api_key:
        print("Error: FMP_API_KEY not set in .env file")
        sys.exit(1)

    user_id, symbols = argv[0], [s.upper() for s in argv[1:]]

    client = FMPClient(api_key, Config.FMP_BASE_URL, Config.FMP_TIMEOUT)
    config = CacheConfig.from_settings(Config)
    # The CLI always refreshes, whatever the server-side toggle says
    cache = FinancialDataCache(
        client.fetch_company_financials,
        config=config.with_changes(enable_background_refresh=True),
        db_path=Config.CACHE_DB_PATH,
    )

    print(f"\nCache settings:")
    print(f"  Default TTL: {config.default_ttl.days} days")
    print(f"  Max age: {config.max_age.days} days")
    print(f"  Compression: {'Enabled' if config.enable_compression else 'Disabled'}")

    result = asyncio.run(run(cache, user_id, symbols))

    print(f"\n\nCache refresh complete!")
    print(f"  Successful: {result.succeeded}")
    print(f"  Skipped (fresh): {result.skipped}")
    print(f"  Failed: {result.failed}")
    print(f"  Duration: {result.duration_seconds:.1f} seconds")

    if result.failed_keys:
        print(f"  Failed symbols: {', '.join(result.failed_keys[:20])}")
        if len(result.failed_keys) > 20:
            print(f"    ... and {len(result.failed_keys) - 20} more")

    stats = get_db_stats(Config.CACHE_DB_PATH)
    print(f"  Database: {stats['total_documents']} documents, {stats['database_size_mb']} MB")


if __name__ == "__main__":
    main()
