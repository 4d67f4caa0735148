"""
Pytest configuration and shared fixtures.

Storage and HTTP are replaced by in-memory fakes; async code is driven
with asyncio.run inside plain tests.
"""

import asyncio
from datetime import date
from typing import Dict, List, Optional

import pytest


def make_holding_row(user_address: str, day: date, amount: str = "1") -> Dict:
    return {
        "user_address": user_address,
        "block_number": 100,
        "vesu_amount": amount,
        "ekubo_amount": "0",
        "nostra_lending_amount": "0",
        "nostra_dex_amount": "0",
        "wallet_amount": "0",
        "total_amount": amount,
        "date": day.isoformat(),
        "timestamp": 0,
    }


class FakeDatabase:
    """Mirrors Database's unique constraints without PostgreSQL"""

    def __init__(self, users: Optional[List[str]] = None, dedup_users: bool = True):
        self.user_addresses = list(users or [])
        self.dedup_users = dedup_users
        self.users: List[Dict] = []
        self.holdings: Dict = {}
        self.cursors: Dict[str, int] = {}
        self.insert_holdings_calls: List[List[Dict]] = []
        self.insert_users_calls: List[List[Dict]] = []
        self.fail_on_insert = False

    def add_holding(self, user_address: str, day: date):
        self.holdings[(user_address, day.isoformat())] = make_holding_row(user_address, day)

    async def get_distinct_user_addresses(self) -> List[str]:
        seen = set(self.user_addresses) | {r["user_address"] for r in self.users}
        return sorted(seen)

    async def get_holding_dates(self, user_address: str):
        return {d for (u, d) in self.holdings if u == user_address}

    async def insert_holdings(self, rows: List[Dict]) -> int:
        self.insert_holdings_calls.append(list(rows))
        if self.fail_on_insert:
            raise RuntimeError("connection to server was lost")
        inserted = 0
        for row in rows:
            key = (row["user_address"], row["date"])
            if key not in self.holdings:
                self.holdings[key] = row
                inserted += 1
        return inserted

    async def insert_users(self, rows: List[Dict]) -> int:
        self.insert_users_calls.append(list(rows))
        inserted = 0
        for row in rows:
            same_event = any(
                u["tx_hash"] == row["tx_hash"] and u["event_index"] == row["event_index"]
                for u in self.users
            )
            same_user = self.dedup_users and any(
                u["user_address"] == row["user_address"] for u in self.users
            )
            if same_event or same_user:
                continue
            self.users.append(row)
            inserted += 1
        return inserted

    async def get_cursor(self, indexer_name: str) -> Optional[int]:
        return self.cursors.get(indexer_name)

    async def save_cursor(self, indexer_name: str, cursor: int):
        self.cursors[indexer_name] = cursor


class FakeFetcher:
    """Stands in for HoldingsFetcher; tracks how many calls overlap"""

    def __init__(self, fail=None, delay: float = 0.0):
        self.fail = set(fail or [])
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.peak = 0

    async def fetch_holdings(self, user_address: str, day: date) -> Optional[Dict]:
        self.calls.append((user_address, day))
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

        if (user_address, day) in self.fail:
            return None
        return make_holding_row(user_address, day)


@pytest.fixture
def make_db():
    """Factory for FakeDatabase."""
    return FakeDatabase


@pytest.fixture
def make_fetcher():
    """Factory for FakeFetcher."""
    return FakeFetcher


@pytest.fixture
def holdings_payload() -> Dict:
    """Holdings API response: 1 xSTRK in Vesu, nothing elsewhere."""
    def component(big_number: str) -> List[Dict]:
        return [{"xSTRKAmount": {"bigNumber": big_number, "decimals": 18}}]

    return {
        "blocks": [{"block": 100}],
        "vesu": component("1000000000000000000"),
        "ekubo": component("0"),
        "nostraLending": component("0"),
        "nostraDex": component("0"),
        "wallet": component("0"),
    }


@pytest.fixture
def transfer_block() -> Dict:
    """Decoded block with two Transfer events to the same receiver and one to another."""
    selector = "0x99cd8bde557814842a3121e8ddfd433a539b8c9f14bf31ebf108d12e6196e9"
    return {
        "header": {"blockNumber": 1000, "timestamp": 1735171200},
        "events": [
            {
                "keys": [selector, "0x1", "0x00ABC"],
                "transactionIndex": 0,
                "eventIndex": 3,
                "transactionHash": "0xaaa",
            },
            {
                "keys": [selector, "0x2", "2748"],
                "transactionIndex": 1,
                "eventIndex": 7,
                "transactionHash": "0xbbb",
            },
            {
                "keys": [selector, "0x3", "0xdef"],
                "transactionIndex": 2,
                "eventIndex": 9,
                "transactionHash": "0xccc",
            },
        ],
    }
