import asyncpg
import logging
from typing import Optional, List, Dict, Set

import config

logger = logging.getLogger(__name__)

USER_COLUMNS = (
    'user_address', 'block_number', 'tx_index', 'event_index',
    'tx_hash', 'timestamp', '_cursor'
)

HOLDING_COLUMNS = (
    'user_address', 'block_number', 'vesu_amount', 'ekubo_amount',
    'nostra_lending_amount', 'nostra_dex_amount', 'wallet_amount',
    'total_amount', 'date', 'timestamp'
)


def _rows_affected(status: str) -> int:
    """asyncpg returns the command tag, e.g. 'INSERT 0 42'"""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


class Database:
    def __init__(self, database_url: Optional[str] = None, dedup_users: Optional[bool] = None):
        self.pool = None
        self.database_url = database_url or config.DATABASE_URL
        self.dedup_users = config.DEDUP_USERS if dedup_users is None else dedup_users

        if not self.database_url:
            logger.error("❌ DATABASE_URL not found in environment variables")
            raise ValueError("DATABASE_URL environment variable is required")

    async def connect(self):
        """Create connection pool to PostgreSQL"""
        try:
            self.pool = await asyncpg.create_pool(self.database_url, min_size=2, max_size=10)
            logger.info("✅ Database pool created")
        except Exception as e:
            logger.error(f"❌ Failed to create database pool: {e}")
            raise
        await self.create_tables()

    async def close(self):
        """Close database connection pool"""
        if self.pool:
            await self.pool.close()
            logger.info("Database pool closed")

    async def create_tables(self):
        """Create necessary tables if they don't exist"""
        async with self.pool.acquire() as conn:
            # Receivers seen in xSTRK Transfer events
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS users (
                    id SERIAL PRIMARY KEY,
                    user_address TEXT NOT NULL,
                    block_number INTEGER NOT NULL,
                    tx_index INTEGER NOT NULL,
                    event_index INTEGER NOT NULL,
                    tx_hash TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    _cursor BIGINT
                )
            ''')

            # Daily xSTRK holdings per user
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS xstrk_holdings (
                    id SERIAL PRIMARY KEY,
                    user_address TEXT NOT NULL,
                    block_number INTEGER NOT NULL,
                    vesu_amount TEXT NOT NULL,
                    ekubo_amount TEXT NOT NULL,
                    nostra_lending_amount TEXT NOT NULL,
                    nostra_dex_amount TEXT NOT NULL,
                    wallet_amount TEXT NOT NULL,
                    total_amount TEXT NOT NULL,
                    date TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    UNIQUE(user_address, date)
                )
            ''')

            # Last processed block per indexer
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS indexer_state (
                    indexer_name TEXT PRIMARY KEY,
                    cursor BIGINT NOT NULL,
                    updated_at TIMESTAMP DEFAULT NOW()
                )
            ''')

            # Redelivered events must not produce a second row
            await conn.execute('''
                CREATE UNIQUE INDEX IF NOT EXISTS idx_users_event
                ON users(tx_hash, event_index)
            ''')
            await conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_users_address
                ON users(user_address)
            ''')

            if self.dedup_users:
                # One row per receiver; fails if the table already holds duplicates
                try:
                    await conn.execute('''
                        CREATE UNIQUE INDEX IF NOT EXISTS idx_users_unique_address
                        ON users(user_address)
                    ''')
                except asyncpg.UniqueViolationError as e:
                    logger.error(f"❌ Cannot enforce one row per user (existing duplicates): {e}")
                    raise
            else:
                await conn.execute('DROP INDEX IF EXISTS idx_users_unique_address')

            logger.info("✅ Database tables created/verified")

    async def insert_users(self, rows: List[Dict]) -> int:
        """
        Bulk insert user sightings in one statement

        Rows hitting a unique index (same event, or same user in dedup mode)
        are skipped. Returns the number of rows actually inserted.
        """
        if not rows:
            return 0

        columns = [[row[c] for row in rows] for c in USER_COLUMNS]
        async with self.pool.acquire() as conn:
            status = await conn.execute('''
                INSERT INTO users
                (user_address, block_number, tx_index, event_index, tx_hash, timestamp, _cursor)
                SELECT * FROM unnest(
                    $1::text[], $2::int[], $3::int[], $4::int[], $5::text[], $6::int[], $7::bigint[]
                )
                ON CONFLICT DO NOTHING
            ''', *columns)
        return _rows_affected(status)

    async def get_distinct_user_addresses(self) -> List[str]:
        """All receivers ever seen, one per address"""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch('''
                SELECT user_address FROM users
                GROUP BY user_address
                ORDER BY user_address
            ''')
            return [row['user_address'] for row in rows]

    async def get_holding_dates(self, user_address: str) -> Set[str]:
        """Dates (YYYY-MM-DD) that already have a holdings snapshot for this user"""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                'SELECT date FROM xstrk_holdings WHERE user_address = $1',
                user_address
            )
            return {row['date'] for row in rows}

    async def insert_holdings(self, rows: List[Dict]) -> int:
        """
        Bulk insert holdings snapshots in one statement

        (user_address, date) conflicts are skipped, so a snapshot written by
        someone else since enumeration is not duplicated.
        """
        if not rows:
            return 0

        columns = [[row[c] for row in rows] for c in HOLDING_COLUMNS]
        async with self.pool.acquire() as conn:
            status = await conn.execute('''
                INSERT INTO xstrk_holdings
                (user_address, block_number, vesu_amount, ekubo_amount, nostra_lending_amount,
                 nostra_dex_amount, wallet_amount, total_amount, date, timestamp)
                SELECT * FROM unnest(
                    $1::text[], $2::int[], $3::text[], $4::text[], $5::text[],
                    $6::text[], $7::text[], $8::text[], $9::text[], $10::int[]
                )
                ON CONFLICT (user_address, date) DO NOTHING
            ''', *columns)
        return _rows_affected(status)

    async def count_holdings(self) -> int:
        """Total holdings snapshots stored"""
        async with self.pool.acquire() as conn:
            count = await conn.fetchval('SELECT COUNT(*) FROM xstrk_holdings')
            return count or 0

    async def get_cursor(self, indexer_name: str) -> Optional[int]:
        """Last fully processed block for an indexer, or None on first run"""
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                'SELECT cursor FROM indexer_state WHERE indexer_name = $1',
                indexer_name
            )

    async def save_cursor(self, indexer_name: str, cursor: int):
        """Persist indexer progress"""
        async with self.pool.acquire() as conn:
            await conn.execute('''
                INSERT INTO indexer_state (indexer_name, cursor)
                VALUES ($1, $2)
                ON CONFLICT (indexer_name) DO UPDATE SET
                    cursor = EXCLUDED.cursor,
                    updated_at = NOW()
            ''', indexer_name, cursor)
