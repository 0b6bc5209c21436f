"""Background maintenance: concurrent per-symbol work with isolated failures."""

from typing import Awaitable, Callable, Iterable, Optional
import asyncio
import logging
import time

from .models import BatchResult

logger = logging.getLogger(__name__)

# Worker outcome for a key that needed no work
SKIPPED = "skipped"

# Log progress every N completed keys
PROGRESS_EVERY = 50


async def fan_out(
    keys: Iterable[str],
    worker: Callable[[str], Awaitable[object]],
    label: str = "batch",
    on_progress: Optional[Callable[[int, int, str], None]] = None
) -> BatchResult:
    """
    Run ``worker`` once per key, concurrently.

    A raise from one worker is logged and counted against that key only; the
    others run to completion. There is no lock across the batch and no
    ordering between keys.

    Args:
        keys: Symbols to process
        worker: Coroutine function taking one key. Returning SKIPPED counts
            the key as skipped, anything else as succeeded.
        label: Name used in log lines
        on_progress: Optional callback(processed, total, key) for progress updates

    Returns:
        BatchResult summary
    """
    keys = list(keys)
    start_time = time.time()
    result = BatchResult(total=len(keys))

    if not keys:
        return result

    processed = 0

    async def run_one(key: str) -> None:
        nonlocal processed
        try:
            outcome = await worker(key)
            if outcome == SKIPPED:
                result.skipped += 1
            else:
                result.succeeded += 1
        except Exception as e:
            logger.warning(f"{label}: {key} failed: {e}")
            result.failed += 1
            result.failed_keys.append(key)
        finally:
            processed += 1
            if on_progress:
                on_progress(processed, len(keys), key)
            if processed % PROGRESS_EVERY == 0:
                logger.info(f"{label} progress: {processed}/{len(keys)}")

    logger.info(f"{label}: processing {len(keys)} symbols")
    await asyncio.gather(*(run_one(key) for key in keys))

    result.duration_seconds = round(time.time() - start_time, 2)
    logger.info(
        f"{label} completed: {result.succeeded} succeeded, "
        f"{result.skipped} skipped, {result.failed} failed"
    )
    return result
