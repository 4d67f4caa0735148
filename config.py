"""
Configuration for the xSTRK holders indexer
Receiver indexer (Transfer events -> users) + daily holdings backfill
"""
import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# =============================================================================
# DATABASE & RPC
# =============================================================================

# PostgreSQL connection string (required by Database())
DATABASE_URL = os.getenv('DATABASE_URL')

# Starknet JSON-RPC node used by the receiver indexer
RPC_URL = os.getenv('RPC_URL', 'https://starknet-mainnet.public.blastapi.io')

# Logging level for entry points (DEBUG, INFO, WARNING, ERROR)
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

# =============================================================================
# xSTRK CONTRACT
# =============================================================================

XSTRK_CONTRACT_ADDRESS = os.getenv(
    'XSTRK_CONTRACT_ADDRESS',
    '0x028d709c875c0ceac3dce7065bec5328186dc89fe254527084d1689910954b0a'
)

# starknet_keccak("Transfer")
TRANSFER_EVENT_SELECTOR = '0x99cd8bde557814842a3121e8ddfd433a539b8c9f14bf31ebf108d12e6196e9'

# =============================================================================
# RECEIVER INDEXER
# =============================================================================

INDEXER_NAME = 'starknet-receiver'
# First block to scan when no cursor is stored (set to the xSTRK deployment block)
STARTING_BLOCK = int(os.getenv('STARTING_BLOCK', 0))

# Only keep the first sighting of each receiver (unique index on user_address)
DEDUP_USERS = os.getenv('DEDUP_USERS', 'true').lower() in ('1', 'true', 'yes')

POLL_INTERVAL = float(os.getenv('POLL_INTERVAL', 10))      # seconds to wait once caught up with head
EVENTS_CHUNK_SIZE = int(os.getenv('EVENTS_CHUNK_SIZE', 1000))  # starknet_getEvents page size
BLOCK_RANGE = int(os.getenv('BLOCK_RANGE', 5000))      # blocks per getEvents window
RPC_TIMEOUT = 30                                            # seconds per JSON-RPC call

# =============================================================================
# HOLDINGS API
# =============================================================================

HOLDINGS_API_URL = os.getenv('HOLDINGS_API_URL', 'http://localhost:3000/api/timestamp-holdings')

# First day we have holdings for (xSTRK mainnet deployment)
HOLDINGS_START_DATE = os.getenv('HOLDINGS_START_DATE', '2024-12-26')

# Venues returned by the holdings API, in response-key -> column order
HOLDING_COMPONENTS = {
    'vesu': 'vesu_amount',
    'ekubo': 'ekubo_amount',
    'nostraLending': 'nostra_lending_amount',
    'nostraDex': 'nostra_dex_amount',
    'wallet': 'wallet_amount',
}

HOLDINGS_FETCH = {
    'max_retries': 3,          # total attempts per (user, date)
    'retry_delay': 5.0,        # fixed sleep between attempts
    'request_timeout': 30.0,   # per-request deadline (seconds)
}

# =============================================================================
# HOLDINGS BACKFILL
# =============================================================================

# Default strategy: one flat task list, one global limiter
HOLDINGS_BACKFILL = {
    'strategy': 'flat',
    'concurrency_limit': 5,    # max in-flight API calls for the whole run
    'db_batch_size': 100,      # rows per insert
    'batch_delay': 0.5,        # pause between chunks
}

# Earlier per-user strategy: users in batches, each user's dates in weekly chunks
NESTED_BACKFILL = {
    'concurrency_limit': 3,
    'user_batch_size': 5,
    'date_batch_size': 7,      # a week at a time
    'user_batch_delay': 2.0,
    'date_batch_delay': 1.0,
}
