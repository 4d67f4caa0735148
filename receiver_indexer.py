#!/usr/bin/env python3
"""
Receiver Indexer - records every address that receives xSTRK

Follows Transfer events of the xSTRK contract and stores the receiver
(keys[2]) in the `users` table. Progress is saved per block in
`indexer_state`, so a restart resumes where it stopped.

Usage:
    python receiver_indexer.py
    python receiver_indexer.py --once                 # stop when caught up
    python receiver_indexer.py --starting-block 900000
"""
import argparse
import asyncio
import sys
from datetime import datetime
from typing import Dict, List, Optional

from loguru import logger

import config
from utils import standardise


def _timestamp_seconds(value) -> int:
    if isinstance(value, datetime):
        return round(value.timestamp())
    return int(value)


class ReceiverIndexer:
    """Turns decoded Transfer blocks into `users` rows"""

    def __init__(
        self,
        db,
        stream=None,
        dedup: Optional[bool] = None,
        indexer_name: Optional[str] = None,
        starting_block: Optional[int] = None,
        poll_interval: Optional[float] = None,
        block_range: Optional[int] = None
    ):
        self.db = db
        self.stream = stream
        self.dedup = config.DEDUP_USERS if dedup is None else dedup
        self.indexer_name = indexer_name or config.INDEXER_NAME
        self.starting_block = config.STARTING_BLOCK if starting_block is None else starting_block
        self.poll_interval = config.POLL_INTERVAL if poll_interval is None else poll_interval
        self.block_range = block_range or config.BLOCK_RANGE
        self.running = False

        self.stats = {
            'blocks': 0,
            'events': 0,
            'inserted': 0,
            'skipped_pending': 0,
        }

    def build_records(self, block: Dict) -> List[Dict]:
        """users rows for one block (no I/O)"""
        header = block.get('header') or {}
        block_number = header.get('blockNumber')
        timestamp = _timestamp_seconds(header['timestamp'])

        records = []
        seen = set()
        for event in block.get('events', []):
            user_address = standardise(event['keys'][2])

            if self.dedup:
                if user_address in seen:
                    continue
                seen.add(user_address)

            records.append({
                'user_address': user_address,
                'block_number': int(block_number),
                'tx_index': int(event['transactionIndex']),
                'event_index': int(event['eventIndex']),
                'tx_hash': event['transactionHash'],
                'timestamp': timestamp,
                '_cursor': int(block_number),
            })

        return records

    async def transform(self, block: Dict) -> int:
        """
        Store the receivers of one block

        Blocks without a block number are pending and skipped. Rows already
        stored (same event, or same user when dedup is on) are left alone by
        the unique indexes, so redelivered blocks are harmless.

        Returns:
            Number of rows inserted
        """
        header = block.get('header') or {}
        # block 0 is a real block, only a missing number means pending
        if header.get('blockNumber') is None:
            self.stats['skipped_pending'] += 1
            logger.debug("   Skipping pending block (no block number)")
            return 0

        records = self.build_records(block)
        self.stats['blocks'] += 1
        self.stats['events'] += len(block.get('events', []))

        if not records:
            return 0

        logger.info(f"Starknet: Inserting {len(records)} records (block {header['blockNumber']})...")
        inserted = await self.db.insert_users(records)
        self.stats['inserted'] += inserted
        logger.info(f"Starknet: Inserted {inserted} records !")
        return inserted

    async def next_block(self) -> int:
        cursor = await self.db.get_cursor(self.indexer_name)
        if cursor is None:
            return self.starting_block
        return cursor + 1

    async def run(self, follow: bool = True):
        """
        Poll the stream from the saved cursor

        Args:
            follow: keep polling after reaching the head; False = stop when caught up
        """
        self.running = True
        next_block = await self.next_block()
        logger.info(f"🚀 {self.indexer_name} starting at block {next_block}")

        while self.running:
            head = await self.stream.block_number()

            if next_block > head:
                if not follow:
                    break
                await asyncio.sleep(self.poll_interval)
                continue

            to_block = min(head, next_block + self.block_range - 1)
            logger.info(f"Transforming blocks {next_block}-{to_block} | head: {head}")

            async for block in self.stream.blocks(next_block, to_block):
                await self.transform(block)
                block_number = (block.get('header') or {}).get('blockNumber')
                if block_number is not None:
                    await self.db.save_cursor(self.indexer_name, int(block_number))

            await self.db.save_cursor(self.indexer_name, to_block)
            next_block = to_block + 1

        logger.info(f"   Indexer stopped at block {next_block - 1} | stats: {self.stats}")

    def stop(self):
        self.running = False


async def run_indexer(follow: bool = True, starting_block: Optional[int] = None):
    from database import Database
    from starknet_stream import StarknetEventStream

    db = Database()
    await db.connect()
    try:
        async with StarknetEventStream() as stream:
            indexer = ReceiverIndexer(db, stream, starting_block=starting_block)
            await indexer.run(follow=follow)
    finally:
        await db.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Index xSTRK Transfer receivers into the users table')
    parser.add_argument('--once', action='store_true',
                        help='Stop once the indexer reaches the chain head')
    parser.add_argument('--starting-block', type=int, default=None,
                        help='Block to start from when no cursor is stored')
    args = parser.parse_args(argv)

    logger.remove()
    logger.add(
        sys.stdout,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>",
        level=config.LOG_LEVEL
    )

    try:
        asyncio.run(run_indexer(follow=not args.once, starting_block=args.starting_block))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except Exception:
        logger.exception("💥 Fatal indexer error")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
