#!/usr/bin/env python3
"""
xSTRK Holdings Backfill - daily holdings snapshot for every known receiver

Pipeline:
1. Load distinct users from the `users` table (filled by receiver_indexer)
2. For each user, list every day since the xSTRK deployment date that has no
   row in `xstrk_holdings` yet
3. Fetch the missing days from the holdings API (bounded concurrency, retries)
4. Insert results in fixed-size batches

Safe to re-run: pending days are always recomputed from what is stored, so a
crash mid-run just leaves fewer days for the next run.

Usage:
    python holdings_backfill.py
    python holdings_backfill.py --strategy nested
    python holdings_backfill.py --start-date 2025-01-01 --concurrency 10
"""
import argparse
import asyncio
import sys
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Dict, List, NamedTuple, Optional, Sequence

from loguru import logger

import config
from utils import date_range, parse_date

STRATEGIES = ('flat', 'nested')


class HoldingTask(NamedTuple):
    """One (user, day) snapshot to fetch"""
    user_address: str
    date: date


@dataclass
class BackfillSettings:
    strategy: str = 'flat'
    concurrency_limit: int = 5
    db_batch_size: int = 100
    batch_delay: float = 0.5
    user_batch_size: int = 5
    date_batch_size: int = 7
    user_batch_delay: float = 2.0
    date_batch_delay: float = 1.0
    start_date: date = field(default_factory=lambda: parse_date(config.HOLDINGS_START_DATE))
    end_date: Optional[date] = None  # None = today (UTC)

    @classmethod
    def from_config(cls, strategy: str = 'flat', **overrides) -> 'BackfillSettings':
        """Defaults from config.HOLDINGS_BACKFILL / NESTED_BACKFILL, then overrides"""
        flat_cfg = config.HOLDINGS_BACKFILL
        nested_cfg = config.NESTED_BACKFILL

        settings = cls(
            strategy=strategy,
            concurrency_limit=(
                nested_cfg['concurrency_limit'] if strategy == 'nested'
                else flat_cfg['concurrency_limit']
            ),
            db_batch_size=flat_cfg['db_batch_size'],
            batch_delay=flat_cfg['batch_delay'],
            user_batch_size=nested_cfg['user_batch_size'],
            date_batch_size=nested_cfg['date_batch_size'],
            user_batch_delay=nested_cfg['user_batch_delay'],
            date_batch_delay=nested_cfg['date_batch_delay'],
        )
        for key, value in overrides.items():
            if value is not None:
                setattr(settings, key, value)
        return settings

    def resolved_end_date(self) -> date:
        return self.end_date or datetime.now(timezone.utc).date()


@dataclass
class BackfillResult:
    users: int = 0
    tasks: int = 0
    inserted: int = 0
    failed: int = 0
    chunks: int = 0
    empty_chunks: int = 0
    peak_concurrency: int = 0


class ConcurrencyLimiter:
    """
    asyncio.Semaphore that also counts in-flight and peak usage

    Build one per run and share it; a limiter per chunk or per user would
    multiply the cap.
    """

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError(f"Concurrency limit must be >= 1, got {limit}")
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self.in_flight = 0
        self.peak = 0

    async def __aenter__(self):
        await self._semaphore.acquire()
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.in_flight -= 1
        self._semaphore.release()


def chunked(items: Sequence, size: int) -> List[Sequence]:
    if size < 1:
        raise ValueError(f"Batch size must be >= 1, got {size}")
    return [items[i:i + size] for i in range(0, len(items), size)]


async def pending_dates_for_user(db, user_address: str, start: date, end: date) -> List[date]:
    """Days in [start, end] with no stored snapshot for this user, ascending"""
    existing = await db.get_holding_dates(user_address)
    return [d for d in date_range(start, end) if d.isoformat() not in existing]


async def build_pending_tasks(db, users: Sequence[str], start: date, end: date) -> List[HoldingTask]:
    """
    Every missing (user, day) pair, user-major then date ascending

    Users with nothing missing contribute no tasks.
    """
    tasks: List[HoldingTask] = []
    total_days = len(list(date_range(start, end)))

    for user_address in users:
        pending = await pending_dates_for_user(db, user_address, start, end)
        logger.debug(
            f"   {user_address}: {len(pending)} new dates out of {total_days} total dates"
        )
        tasks.extend(HoldingTask(user_address, d) for d in pending)

    return tasks


async def commit_batch(db, results: Sequence[Optional[Dict]]) -> int:
    """
    Write one chunk's successful results with a single bulk insert

    None entries (failed fetches) are dropped. Nothing is written when no
    result survived. Storage errors propagate.
    """
    rows = [r for r in results if r]

    if not rows:
        logger.info(f"   ⚠️ No valid results in batch of {len(results)}, skipping insert")
        return 0

    inserted = await db.insert_holdings(rows)
    if inserted < len(rows):
        logger.info(f"   {len(rows) - inserted} rows already present, skipped")
    return inserted


class HoldingsBackfill:
    """Runs one backfill pass over all known users"""

    def __init__(self, db, fetcher, settings: Optional[BackfillSettings] = None):
        self.db = db
        self.fetcher = fetcher
        self.settings = settings or BackfillSettings()

        if self.settings.strategy not in STRATEGIES:
            raise ValueError(
                f"Unknown strategy '{self.settings.strategy}' (expected one of {STRATEGIES})"
            )

    async def run(self) -> BackfillResult:
        s = self.settings
        start, end = s.start_date, s.resolved_end_date()
        result = BackfillResult()
        limiter = ConcurrencyLimiter(s.concurrency_limit)

        users = await self.db.get_distinct_user_addresses()
        result.users = len(users)
        logger.info(f"Found {len(users)} users to process")
        logger.info(
            f"   Strategy: {s.strategy} | dates {start} -> {end} | "
            f"concurrency {s.concurrency_limit}"
        )

        if s.strategy == 'nested':
            await self._run_nested(users, start, end, limiter, result)
        else:
            await self._run_flat(users, start, end, limiter, result)

        result.peak_concurrency = limiter.peak
        logger.info(
            f"✅ Data fetching and storage complete. Total records inserted: {result.inserted} "
            f"(tasks {result.tasks}, failed {result.failed}, peak concurrency {result.peak_concurrency})"
        )
        return result

    async def _fetch_one(self, task: HoldingTask, limiter: ConcurrencyLimiter) -> Optional[Dict]:
        async with limiter:
            return await self.fetcher.fetch_holdings(task.user_address, task.date)

    async def _fetch_chunk(self, chunk: Sequence[HoldingTask], limiter: ConcurrencyLimiter) -> List[Optional[Dict]]:
        """All tasks of a chunk at once (limiter caps in-flight), results in input order"""
        return list(await asyncio.gather(*(self._fetch_one(t, limiter) for t in chunk)))

    async def _commit(self, results: List[Optional[Dict]], result: BackfillResult) -> int:
        result.failed += sum(1 for r in results if r is None)
        inserted = await commit_batch(self.db, results)
        if any(results):
            result.chunks += 1
        else:
            result.empty_chunks += 1
        result.inserted += inserted
        return inserted

    async def _run_flat(self, users, start, end, limiter, result: BackfillResult):
        """One global task list, committed every db_batch_size tasks"""
        s = self.settings
        tasks = await build_pending_tasks(self.db, users, start, end)
        result.tasks = len(tasks)
        logger.info(f"   {len(tasks)} (user, date) pairs to fetch")

        chunks = chunked(tasks, s.db_batch_size)
        for idx, chunk in enumerate(chunks, 1):
            results = await self._fetch_chunk(chunk, limiter)
            inserted = await self._commit(results, result)
            logger.info(f"   Batch {idx}/{len(chunks)}: inserted {inserted}/{len(chunk)} records")

            if idx < len(chunks):
                await asyncio.sleep(s.batch_delay)

    async def _run_nested(self, users, start, end, limiter, result: BackfillResult):
        """Users in batches, each user's dates in date_batch_size chunks"""
        s = self.settings
        user_batches = chunked(users, s.user_batch_size) if users else []

        for idx, user_batch in enumerate(user_batches, 1):
            logger.info(f"Processing user batch {idx} of {len(user_batches)}")

            counts = await asyncio.gather(
                *(self._process_user(u, start, end, limiter, result) for u in user_batch)
            )
            logger.info(f"   Completed user batch {idx}, inserted {sum(counts)} records")

            if idx < len(user_batches):
                await asyncio.sleep(s.user_batch_delay)

    async def _process_user(self, user_address, start, end, limiter, result: BackfillResult) -> int:
        s = self.settings
        dates = await pending_dates_for_user(self.db, user_address, start, end)
        result.tasks += len(dates)
        logger.info(f"   Processing {len(dates)} new dates for user {user_address}")

        if not dates:
            return 0

        inserted_total = 0
        chunks = chunked(dates, s.date_batch_size)
        for idx, chunk in enumerate(chunks, 1):
            tasks = [HoldingTask(user_address, d) for d in chunk]
            results = await self._fetch_chunk(tasks, limiter)
            inserted = await self._commit(results, result)
            inserted_total += inserted
            if inserted:
                logger.info(f"   Inserted {inserted} records for user {user_address} batch {idx}")

            if idx < len(chunks):
                await asyncio.sleep(s.date_batch_delay)

        return inserted_total


async def run_backfill(settings: BackfillSettings) -> BackfillResult:
    """Connect, backfill, disconnect"""
    from database import Database
    from holdings_fetcher import HoldingsFetcher

    db = Database()
    await db.connect()
    try:
        async with HoldingsFetcher() as fetcher:
            result = await HoldingsBackfill(db, fetcher, settings).run()
            logger.info(f"   API stats: {fetcher.stats}")
        logger.info(f"   {await db.count_holdings()} holdings snapshots stored")
        return result
    finally:
        await db.close()


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Backfill daily xSTRK holdings for every known user')
    parser.add_argument('--strategy', choices=STRATEGIES, default=config.HOLDINGS_BACKFILL['strategy'],
                        help='flat: one global task queue (default); nested: per-user weekly batches')
    parser.add_argument('--start-date', type=parse_date, default=None,
                        help=f'First day, YYYY-MM-DD (default: {config.HOLDINGS_START_DATE})')
    parser.add_argument('--end-date', type=parse_date, default=None,
                        help='Last day, YYYY-MM-DD (default: today UTC)')
    parser.add_argument('--concurrency', type=int, default=None,
                        help='Max in-flight API calls for the whole run')
    parser.add_argument('--batch-size', type=int, default=None,
                        help='Rows per insert (flat strategy)')
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    logger.remove()
    logger.add(
        sys.stdout,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>",
        level=config.LOG_LEVEL
    )

    settings = BackfillSettings.from_config(
        strategy=args.strategy,
        start_date=args.start_date,
        end_date=args.end_date,
        concurrency_limit=args.concurrency,
        db_batch_size=args.batch_size,
    )

    try:
        asyncio.run(run_backfill(settings))
    except Exception:
        logger.exception("💥 Fatal error during processing")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
